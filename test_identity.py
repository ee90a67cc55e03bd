"""Tests for bearer token resolution."""

from datetime import timedelta

import pytest
from jose import jwt

from identity import IdentityError, JWTIdentityProvider
from models import Role

SECRET = "test-secret"


@pytest.fixture
def provider():
    return JWTIdentityProvider(SECRET, audience="authenticated")


def test_round_trip_role(provider):
    party = provider.resolve(provider.issue_token("designer-1", Role.DESIGNER))
    assert party.party_id == "designer-1"
    assert party.role == Role.DESIGNER


def test_role_defaults_to_customer(provider):
    token = jwt.encode({'sub': "customer-9", 'aud': "authenticated"}, SECRET, algorithm="HS256")
    assert provider.resolve(token).role == Role.CUSTOMER


def test_user_role_claim_fallback(provider):
    token = jwt.encode(
        {'sub': "admin-1", 'aud': "authenticated", 'user_role': "admin"}, SECRET, algorithm="HS256"
    )
    assert provider.resolve(token).role == Role.ADMIN


@pytest.mark.parametrize("claims", [
    {'app_metadata': {'role': "system"}},
    {'app_metadata': {'role': "superuser"}},
    {'sub': ""},
])
def test_rejected_claims(provider, claims):
    token = provider.issue_token("party-1", extra_claims=claims)
    with pytest.raises(IdentityError):
        provider.resolve(token)


def test_expired_token(provider):
    token = provider.issue_token("customer-1", expires_in=timedelta(seconds=-30))
    with pytest.raises(IdentityError, match="expired"):
        provider.resolve(token)


def test_wrong_secret_or_audience(provider):
    other = JWTIdentityProvider("other-secret", audience="authenticated")
    with pytest.raises(IdentityError):
        provider.resolve(other.issue_token("customer-1"))

    wrong_audience = JWTIdentityProvider(SECRET, audience="service")
    with pytest.raises(IdentityError):
        provider.resolve(wrong_audience.issue_token("customer-1"))


def test_garbage_and_missing_tokens(provider):
    with pytest.raises(IdentityError):
        provider.resolve("not-a-jwt")
    with pytest.raises(IdentityError):
        provider.resolve("")


def test_audience_check_optional():
    provider = JWTIdentityProvider(SECRET)
    token = jwt.encode({'sub': "customer-1", 'aud': "anything"}, SECRET, algorithm="HS256")
    assert provider.resolve(token).party_id == "customer-1"
