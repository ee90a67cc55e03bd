"""
Admin Review Surface for the escrow lifecycle.

Read projections for the admin dashboard and admin commands. Every command
is routed through the EscrowService, DisputeManager or KycService; nothing
here writes rows directly.
"""

import logging
from typing import Any, Dict, List, Optional

from dispute_manager import DisputeManager
from escrow_service import EscrowService, Unauthorized
from kyc_service import KycService
from models import Dispute, KycRecord, KycStatus, Order, OrderState, Party
from order_store import OrderStore

logger = logging.getLogger(__name__)


class AdminReviewService:
    """
    Admin-only projections and commands.

    Attributes:
        store: Order store (reads only)
        escrow_service: State machine for order commands
        dispute_manager: Dispute resolution
        kyc_service: KYC review
    """

    def __init__(
        self,
        store: OrderStore,
        escrow_service: EscrowService,
        dispute_manager: DisputeManager,
        kyc_service: KycService
    ):
        self.store = store
        self.escrow_service = escrow_service
        self.dispute_manager = dispute_manager
        self.kyc_service = kyc_service

    def _require_admin(self, actor: Party) -> None:
        if not actor.is_admin:
            logger.warning(f"Non-admin {actor.party_id} attempted admin access")
            raise Unauthorized("Admin access required")

    # ==================== ORDERS ====================

    async def list_orders(
        self,
        actor: Party,
        state: Optional[OrderState] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Order]:
        """All orders, optionally filtered by state, newest first."""
        self._require_admin(actor)
        return await self.store.list_orders(state=state, limit=limit, offset=offset)

    async def get_order_overview(self, actor: Party, order_id: str) -> Dict[str, Any]:
        """
        Everything known about one order.

        Returns:
            Dictionary with the order, its escrow record (or None), its
            disputes and its timeline

        Raises:
            Unauthorized: If the actor is not an admin
            OrderNotFound: If the order does not exist
        """
        self._require_admin(actor)
        order = await self.store.get_order(order_id)
        return {
            'order': order,
            'escrow': await self.store.get_escrow(order_id),
            'disputes': await self.store.get_disputes_for_order(order_id),
            'timeline': await self.store.get_order_events(order_id),
        }

    async def cancel_order(self, actor: Party, order_id: str, reason: Optional[str] = None) -> Order:
        """Cancel (and refund, if paid) an order that has not shipped."""
        self._require_admin(actor)
        return await self.escrow_service.cancel_order(order_id, actor, reason)

    async def get_escrow_summary(self, actor: Party) -> Dict[str, Any]:
        """
        Reporting summary.

        Returns:
            Dictionary containing:
                - total_orders: Total number of orders
                - orders_by_state: Order count per lifecycle state
                - escrow_totals: Locked, released and refunded sums per currency
                - open_disputes: Number of disputes awaiting a decision
                - pending_kyc: Number of KYC submissions awaiting review
        """
        self._require_admin(actor)
        summary = await self.store.order_statistics()
        summary['open_disputes'] = len(await self.dispute_manager.list_open(actor))
        summary['pending_kyc'] = len(await self.kyc_service.list_records(KycStatus.PENDING))
        return summary

    # ==================== DISPUTES ====================

    async def list_open_disputes(self, actor: Party) -> List[Dispute]:
        return await self.dispute_manager.list_open(actor)

    async def resolve_dispute(
        self,
        actor: Party,
        dispute_id: str,
        outcome: Any,
        notes: Optional[str] = None
    ) -> Order:
        """Resolve a dispute: 'release' pays the designer, 'refund' the customer."""
        self._require_admin(actor)
        return await self.dispute_manager.resolve(dispute_id, outcome, notes, actor)

    # ==================== KYC ====================

    async def list_kyc(self, actor: Party, status: Optional[KycStatus] = None) -> List[KycRecord]:
        self._require_admin(actor)
        return await self.kyc_service.list_records(status)

    async def review_kyc(
        self,
        actor: Party,
        party_id: str,
        approve: bool,
        notes: Optional[str] = None
    ) -> KycRecord:
        return await self.kyc_service.review(actor, party_id, approve, notes)
