"""
Identity provider for the escrow service.

Turns bearer tokens into Party(party_id, role). Tokens are JWTs signed
with a shared secret; the subject is the party id and the role is read
from the app_metadata claim.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from models import Party, Role

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Raised when a token is missing, invalid or expired."""
    pass


class IdentityProvider:
    """Resolves a bearer token into the acting party."""

    def resolve(self, token: str) -> Party:
        raise NotImplementedError


class JWTIdentityProvider(IdentityProvider):
    """
    Verifies HS256 (or other python-jose supported) JWTs.

    Attributes:
        secret: Signing secret
        algorithm: JWT algorithm
        audience: Expected 'aud' claim, or None to skip the check
    """

    def __init__(self, secret: str, algorithm: str = 'HS256', audience: Optional[str] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience

    def resolve(self, token: str) -> Party:
        """
        Verify a token and return the party it identifies.

        Args:
            token: Encoded JWT

        Returns:
            Party with id from 'sub' and role from app_metadata.role
            (falling back to user_role, then customer)

        Raises:
            IdentityError: If the token is invalid, expired or has no subject
        """
        if not token:
            raise IdentityError("Missing bearer token")

        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={'verify_aud': self.audience is not None}
            )
        except jwt.ExpiredSignatureError:
            raise IdentityError("Token has expired")
        except jwt.JWTError as e:
            logger.warning(f"Rejected token: {e}")
            raise IdentityError(f"Invalid token: {e}")

        party_id = claims.get('sub')
        if not party_id:
            raise IdentityError("Token has no subject")

        metadata = claims.get('app_metadata') or {}
        raw_role = metadata.get('role') or claims.get('user_role') or Role.CUSTOMER.value
        try:
            role = Role(raw_role)
        except ValueError:
            raise IdentityError(f"Unknown role: {raw_role}")

        if role == Role.SYSTEM:
            raise IdentityError("System role cannot be assumed by a token")

        return Party(party_id=party_id, role=role)

    def issue_token(
        self,
        party_id: str,
        role: Role = Role.CUSTOMER,
        expires_in: timedelta = timedelta(hours=1),
        extra_claims: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Sign a token for development and tests.

        Example:
            >>> provider = JWTIdentityProvider('secret')
            >>> token = provider.issue_token('designer-1', Role.DESIGNER)
            >>> provider.resolve(token).role
            <Role.DESIGNER: 'designer'>
        """
        claims: Dict[str, Any] = {
            'sub': party_id,
            'exp': int((datetime.now(timezone.utc) + expires_in).timestamp()),
            'app_metadata': {'role': Role(role).value},
        }
        if self.audience:
            claims['aud'] = self.audience
        claims.update(extra_claims or {})
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)
