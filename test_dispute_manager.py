"""Tests for dispute opening, resolution and lookup."""

import pytest

from conftest import ADMIN, CUSTOMER, DESIGNER, STRANGER
from escrow_service import AlreadyResolved, InvalidTransition, Unauthorized
from models import DisputeOutcome, DisputeReason, DisputeStatus, EscrowStatus, OrderState
from order_store import DisputeNotFound


@pytest.mark.asyncio
async def test_damaged_item_refund(disputes, service, shipped_order):
    dispute = await disputes.open(
        CUSTOMER, shipped_order.order_id, DisputeReason.DAMAGED_ITEM, "Sleeve ripped"
    )
    order = await disputes.resolve(dispute.dispute_id, "refund", "Customer sent photos", ADMIN)

    assert order.state == OrderState.REFUNDED
    escrow = await service.get_escrow(order.order_id, ADMIN)
    assert escrow.status == EscrowStatus.REFUNDED

    stored = await disputes.get(dispute.dispute_id, CUSTOMER)
    assert stored.status == DisputeStatus.RESOLVED
    assert stored.outcome == DisputeOutcome.REFUND
    assert stored.resolved_by == ADMIN.party_id
    assert stored.resolution_notes == "Customer sent photos"

    with pytest.raises(AlreadyResolved):
        await disputes.resolve(dispute.dispute_id, "refund", None, ADMIN)


@pytest.mark.asyncio
async def test_resolve_checks_existence_then_admin(disputes, shipped_order):
    with pytest.raises(DisputeNotFound):
        await disputes.resolve("DSP_missing", "release", None, ADMIN)

    dispute = await disputes.open(DESIGNER, shipped_order.order_id, "other", "Customer unreachable")
    with pytest.raises(Unauthorized):
        await disputes.resolve(dispute.dispute_id, "release", None, CUSTOMER)


@pytest.mark.asyncio
async def test_dispute_after_delivery_is_invalid(disputes, service, shipped_order):
    await service.confirm_delivery(shipped_order.order_id, CUSTOMER)
    with pytest.raises(InvalidTransition):
        await disputes.open(CUSTOMER, shipped_order.order_id, "quality_issue", "Fabric pills")


@pytest.mark.asyncio
async def test_visibility(disputes, shipped_order):
    dispute = await disputes.open(CUSTOMER, shipped_order.order_id, "wrong_item", "Wrong size sent")

    assert (await disputes.get(dispute.dispute_id, DESIGNER)).dispute_id == dispute.dispute_id
    with pytest.raises(Unauthorized):
        await disputes.get(dispute.dispute_id, STRANGER)

    listed = await disputes.list_for_order(shipped_order.order_id, ADMIN)
    assert [d.dispute_id for d in listed] == [dispute.dispute_id]


@pytest.mark.asyncio
async def test_list_open_is_admin_only(disputes, shipped_order):
    await disputes.open(CUSTOMER, shipped_order.order_id, "delivery_issue", "Never arrived")

    assert len(await disputes.list_open(ADMIN)) == 1
    with pytest.raises(Unauthorized):
        await disputes.list_open(CUSTOMER)
