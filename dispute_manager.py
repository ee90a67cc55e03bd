"""
Dispute Manager for the fashion marketplace escrow lifecycle.

Dispute-facing entry points. Opening and resolving go through the
EscrowService, so the dispute row and the order transition are always
committed together; this module never writes rows itself.
"""

import logging
from typing import Any, List, Optional

from escrow_service import AlreadyResolved, EscrowService, Unauthorized
from models import Dispute, DisputeStatus, Order, Party, Role
from order_store import OrderStore

logger = logging.getLogger(__name__)


class DisputeManager:
    """
    Open, resolve and look up disputes.

    Attributes:
        store: Order store (reads only)
        escrow_service: State machine that applies dispute transitions
    """

    def __init__(self, store: OrderStore, escrow_service: EscrowService):
        self.store = store
        self.escrow_service = escrow_service

    async def open(
        self,
        actor: Party,
        order_id: str,
        reason: Any,
        description: str
    ) -> Dispute:
        """
        Open a dispute on an order.

        Raises:
            OrderNotFound, Unauthorized, ValidationError, DuplicateDispute,
            InvalidTransition: As raised by EscrowService.open_dispute
        """
        return await self.escrow_service.open_dispute(order_id, actor, reason, description)

    async def resolve(
        self,
        dispute_id: str,
        outcome: Any,
        notes: Optional[str],
        actor: Party
    ) -> Order:
        """
        Resolve a dispute by its id.

        Args:
            dispute_id: Dispute identifier
            outcome: 'release' (favor designer) or 'refund' (favor customer)
            notes: Resolution notes
            actor: Admin resolving the dispute

        Returns:
            The settled order

        Raises:
            DisputeNotFound: If the dispute does not exist
            Unauthorized: If the actor is not an admin
            AlreadyResolved: If the dispute is already closed
        """
        dispute = await self.store.get_dispute(dispute_id)

        if not actor.is_admin:
            logger.warning(f"{actor.party_id} tried to resolve dispute {dispute_id}")
            raise Unauthorized("Only admins can resolve disputes")

        if dispute.status == DisputeStatus.RESOLVED:
            raise AlreadyResolved(f"Dispute {dispute_id} has already been resolved")

        return await self.escrow_service.resolve_dispute(dispute.order_id, outcome, actor, notes)

    async def get(self, dispute_id: str, actor: Party) -> Dispute:
        """Get a dispute visible to the actor (its order's parties or an admin)."""
        dispute = await self.store.get_dispute(dispute_id)
        await self.escrow_service.get_order(dispute.order_id, actor)
        return dispute

    async def list_for_order(self, order_id: str, actor: Party) -> List[Dispute]:
        """All disputes of an order, oldest first."""
        await self.escrow_service.get_order(order_id, actor)
        return await self.store.get_disputes_for_order(order_id)

    async def list_open(self, actor: Party) -> List[Dispute]:
        """Open disputes awaiting an admin decision."""
        if actor.role != Role.ADMIN:
            raise Unauthorized("Only admins can list open disputes")
        return await self.store.list_disputes(DisputeStatus.OPEN)
