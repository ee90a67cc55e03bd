"""Tests for designer KYC submission and review."""

import pytest

from conftest import ADMIN, CUSTOMER, DESIGNER
from escrow_service import Unauthorized, ValidationError
from models import KycStatus


@pytest.mark.asyncio
async def test_submit_and_approve(kyc):
    record = await kyc.submit(DESIGNER, "Ada Designer", ["passport-123", " "])
    assert record.status == KycStatus.PENDING
    assert record.document_references == ["passport-123"]
    assert not await kyc.is_approved(DESIGNER.party_id)

    reviewed = await kyc.review(ADMIN, DESIGNER.party_id, approve=True, notes="Documents match")
    assert reviewed.status == KycStatus.APPROVED
    assert reviewed.reviewed_by == ADMIN.party_id
    assert await kyc.is_approved(DESIGNER.party_id)


@pytest.mark.asyncio
async def test_only_designers_submit(kyc):
    with pytest.raises(Unauthorized):
        await kyc.submit(CUSTOMER, "Cara Customer", ["id-1"])


@pytest.mark.asyncio
async def test_submission_requires_name_and_documents(kyc):
    with pytest.raises(ValidationError):
        await kyc.submit(DESIGNER, "", ["id-1"])
    with pytest.raises(ValidationError):
        await kyc.submit(DESIGNER, "Ada Designer", [])


@pytest.mark.asyncio
async def test_resubmission_only_after_rejection(kyc):
    await kyc.submit(DESIGNER, "Ada Designer", ["id-1"])
    with pytest.raises(ValidationError):
        await kyc.submit(DESIGNER, "Ada Designer", ["id-2"])

    await kyc.review(ADMIN, DESIGNER.party_id, approve=False, notes="Blurry scan")
    record = await kyc.submit(DESIGNER, "Ada Designer", ["id-2"])
    assert record.status == KycStatus.PENDING


@pytest.mark.asyncio
async def test_review_rules(kyc):
    with pytest.raises(ValidationError):
        await kyc.review(ADMIN, DESIGNER.party_id, approve=True)

    await kyc.submit(DESIGNER, "Ada Designer", ["id-1"])
    with pytest.raises(Unauthorized):
        await kyc.review(DESIGNER, DESIGNER.party_id, approve=True)

    assert len(await kyc.list_records(KycStatus.PENDING)) == 1
    assert await kyc.list_records(KycStatus.APPROVED) == []
