"""
KYC Service for marketplace designers.

Designers submit identity documents; an admin approves or rejects the
submission. When REQUIRE_DESIGNER_KYC is enabled, only approved designers
can receive orders.
"""

import logging
from datetime import datetime
from typing import List, Optional

from escrow_service import Unauthorized, ValidationError
from models import KycRecord, KycStatus, Party, Role
from order_store import OrderStore
from utils import sanitize_input

logger = logging.getLogger(__name__)


class KycService:
    """
    Designer identity verification.

    Attributes:
        store: Order store holding KYC records
    """

    def __init__(self, store: OrderStore):
        self.store = store

    async def submit(
        self,
        actor: Party,
        full_name: str,
        document_references: List[str]
    ) -> KycRecord:
        """
        Submit KYC documents for review.

        Args:
            actor: Designer submitting
            full_name: Legal name
            document_references: References to uploaded identity documents

        Returns:
            The pending KYC record

        Raises:
            Unauthorized: If the actor is not a designer
            ValidationError: If input is missing or a submission is pending or approved
        """
        if actor.role != Role.DESIGNER:
            raise Unauthorized("Only designers can submit KYC")

        full_name = sanitize_input(full_name or '', 255)
        if not full_name:
            raise ValidationError("Full name is required")

        documents = [ref.strip() for ref in document_references or [] if ref and ref.strip()]
        if not documents:
            raise ValidationError("At least one identity document is required")

        existing = await self.store.get_kyc(actor.party_id)
        if existing and existing.status != KycStatus.REJECTED:
            raise ValidationError(f"KYC already {existing.status.value} for {actor.party_id}")

        record = KycRecord(
            party_id=actor.party_id,
            full_name=full_name,
            document_references=documents,
        )
        await self.store.save_kyc(record)
        logger.info(f"KYC submitted by {actor.party_id} with {len(documents)} documents")
        return record

    async def review(
        self,
        actor: Party,
        party_id: str,
        approve: bool,
        notes: Optional[str] = None
    ) -> KycRecord:
        """
        Approve or reject a pending submission (admin function).

        Raises:
            Unauthorized: If the actor is not an admin
            ValidationError: If there is no pending submission for party_id
        """
        if not actor.is_admin:
            raise Unauthorized("Only admins can review KYC")

        record = await self.store.get_kyc(party_id)
        if record is None or record.status != KycStatus.PENDING:
            raise ValidationError(f"No pending KYC submission for {party_id}")

        reviewed = record.model_copy(update={
            'status': KycStatus.APPROVED if approve else KycStatus.REJECTED,
            'notes': sanitize_input(notes or '') or None,
            'reviewed_at': datetime.now(),
            'reviewed_by': actor.party_id,
        })
        await self.store.save_kyc(reviewed)
        logger.info(f"KYC for {party_id} {reviewed.status.value} by {actor.party_id}")
        return reviewed

    async def get(self, party_id: str) -> Optional[KycRecord]:
        return await self.store.get_kyc(party_id)

    async def is_approved(self, party_id: str) -> bool:
        record = await self.store.get_kyc(party_id)
        return record is not None and record.status == KycStatus.APPROVED

    async def list_records(self, status: Optional[KycStatus] = None) -> List[KycRecord]:
        return await self.store.list_kyc(status)
