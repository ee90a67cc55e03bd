"""
Order Store for the escrow lifecycle.

Pure persistence: orders carry a version stamp, and every transition is
written through commit_transition(), which only succeeds when the caller
read the current version. The order row, its escrow record, its dispute
and the timeline events of one transition are written together or not at
all. No business rules live here.

Two implementations share this interface:
    - InMemoryOrderStore: process-local, used for development and tests
    - PostgresOrderStore (database.py): asyncpg-backed
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from models import (
    Dispute,
    DisputeStatus,
    EscrowRecord,
    EscrowStatus,
    Item,
    KycRecord,
    KycStatus,
    Notification,
    Order,
    OrderEvent,
    OrderState,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for persistence errors."""
    pass


class OrderNotFound(StoreError):
    """Raised when an order id does not exist."""
    pass


class DisputeNotFound(StoreError):
    """Raised when a dispute id does not exist."""
    pass


class ItemNotFound(StoreError):
    """Raised when a catalog item id does not exist."""
    pass


class ConcurrentModification(StoreError):
    """
    Raised when a conditional write finds a different version than expected.

    The only retryable error in the lifecycle: reload the order and
    re-issue the command.
    """
    pass


class TransitionCommit(BaseModel):
    """Everything one transition writes, applied atomically."""
    order: Order
    expected_version: int
    escrow: Optional[EscrowRecord] = None
    dispute: Optional[Dispute] = None
    events: List[OrderEvent] = Field(default_factory=list)


class OrderStore:
    """
    Persistence interface consumed by the escrow lifecycle.

    Implementations must make commit_transition() atomic and conditional
    on the order version.
    """

    # Catalog
    async def get_item(self, item_id: str) -> Optional[Item]:
        raise NotImplementedError

    async def save_item(self, item: Item) -> Item:
        raise NotImplementedError

    async def list_items(
        self,
        designer_id: Optional[str] = None,
        available: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Item]:
        raise NotImplementedError

    async def delete_item(self, item_id: str) -> bool:
        raise NotImplementedError

    # Orders
    async def create_order(self, order: Order, events: Iterable[OrderEvent] = ()) -> Order:
        raise NotImplementedError

    async def get_order(self, order_id: str) -> Order:
        raise NotImplementedError

    async def list_orders(
        self,
        state: Optional[OrderState] = None,
        customer_id: Optional[str] = None,
        designer_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Order]:
        raise NotImplementedError

    async def commit_transition(self, commit: TransitionCommit) -> Order:
        raise NotImplementedError

    async def get_order_events(self, order_id: str) -> List[OrderEvent]:
        raise NotImplementedError

    async def order_statistics(self) -> Dict[str, Any]:
        raise NotImplementedError

    # Escrow & disputes
    async def get_escrow(self, order_id: str) -> Optional[EscrowRecord]:
        raise NotImplementedError

    async def get_dispute(self, dispute_id: str) -> Dispute:
        raise NotImplementedError

    async def get_disputes_for_order(self, order_id: str) -> List[Dispute]:
        raise NotImplementedError

    async def list_disputes(self, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        raise NotImplementedError

    # Notifications
    async def save_notification(self, notification: Notification) -> Notification:
        raise NotImplementedError

    async def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False
    ) -> List[Notification]:
        raise NotImplementedError

    async def mark_notifications_read(
        self,
        recipient_id: str,
        notification_ids: Optional[List[str]] = None
    ) -> int:
        raise NotImplementedError

    # KYC
    async def save_kyc(self, record: KycRecord) -> KycRecord:
        raise NotImplementedError

    async def get_kyc(self, party_id: str) -> Optional[KycRecord]:
        raise NotImplementedError

    async def list_kyc(self, status: Optional[KycStatus] = None) -> List[KycRecord]:
        raise NotImplementedError

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None


def summarize_orders(orders: Iterable[Order], escrows: Iterable[EscrowRecord]) -> Dict[str, Any]:
    """
    Build the reporting summary from already-loaded rows.

    Returns:
        Dictionary with order counts per state and escrow totals per currency
    """
    by_state = {state.value: 0 for state in OrderState}
    total_orders = 0
    for order in orders:
        by_state[order.state.value] += 1
        total_orders += 1

    totals: Dict[str, Dict[str, Decimal]] = defaultdict(
        lambda: {'locked': Decimal('0'), 'released': Decimal('0'), 'refunded': Decimal('0')}
    )
    for escrow in escrows:
        if escrow.status == EscrowStatus.LOCKED:
            totals[escrow.currency]['locked'] += escrow.locked_amount
        elif escrow.status == EscrowStatus.RELEASED:
            totals[escrow.currency]['released'] += escrow.settled_amount
        elif escrow.status == EscrowStatus.REFUNDED:
            totals[escrow.currency]['refunded'] += escrow.settled_amount

    return {
        'total_orders': total_orders,
        'orders_by_state': by_state,
        'escrow_totals': {currency: dict(values) for currency, values in totals.items()},
    }


class InMemoryOrderStore(OrderStore):
    """
    Process-local store.

    A single asyncio lock serializes writers, which makes each commit
    atomic. Rows are deep-copied on the way in and out so callers never
    share mutable state with the store.
    """

    def __init__(self, items: Optional[Iterable[Item]] = None):
        self._lock = asyncio.Lock()
        self._items: Dict[str, Item] = {}
        self._orders: Dict[str, Order] = {}
        self._escrows: Dict[str, EscrowRecord] = {}
        self._disputes: Dict[str, Dispute] = {}
        self._events: Dict[str, List[OrderEvent]] = defaultdict(list)
        self._notifications: Dict[str, Notification] = {}
        self._kyc: Dict[str, KycRecord] = {}

        for item in items or ():
            self._items[item.item_id] = item.model_copy(deep=True)

    # ==================== CATALOG ====================

    async def get_item(self, item_id: str) -> Optional[Item]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def save_item(self, item: Item) -> Item:
        async with self._lock:
            self._items[item.item_id] = item.model_copy(deep=True)
        return item

    async def list_items(
        self,
        designer_id: Optional[str] = None,
        available: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Item]:
        matches = [
            item for item in self._items.values()
            if (designer_id is None or item.designer_id == designer_id)
            and (available is None or item.available == available)
        ]
        matches.sort(key=lambda item: item.created_at, reverse=True)
        return [item.model_copy(deep=True) for item in matches[offset:offset + limit]]

    async def delete_item(self, item_id: str) -> bool:
        async with self._lock:
            return self._items.pop(item_id, None) is not None

    # ==================== ORDERS ====================

    async def create_order(self, order: Order, events: Iterable[OrderEvent] = ()) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise ConcurrentModification(f"Order already exists: {order.order_id}")

            stored = order.model_copy(update={'version': 1}, deep=True)
            self._orders[order.order_id] = stored
            self._events[order.order_id].extend(e.model_copy(deep=True) for e in events)

        logger.debug(f"Order stored: {order.order_id}")
        return stored.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order not found: {order_id}")
        return order.model_copy(deep=True)

    async def list_orders(
        self,
        state: Optional[OrderState] = None,
        customer_id: Optional[str] = None,
        designer_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Order]:
        orders = [
            o for o in self._orders.values()
            if (state is None or o.state == state)
            and (customer_id is None or o.customer_id == customer_id)
            and (designer_id is None or o.designer_id == designer_id)
            and (updated_before is None or o.updated_at < updated_before)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders[offset:offset + limit]]

    async def commit_transition(self, commit: TransitionCommit) -> Order:
        async with self._lock:
            current = self._orders.get(commit.order.order_id)
            if current is None:
                raise OrderNotFound(f"Order not found: {commit.order.order_id}")

            if current.version != commit.expected_version:
                raise ConcurrentModification(
                    f"Order {current.order_id} is at version {current.version}, "
                    f"expected {commit.expected_version}"
                )

            if commit.dispute and commit.dispute.status == DisputeStatus.OPEN:
                for existing in self._disputes.values():
                    if (existing.order_id == commit.dispute.order_id
                            and existing.status == DisputeStatus.OPEN
                            and existing.dispute_id != commit.dispute.dispute_id):
                        raise ConcurrentModification(
                            f"Order {current.order_id} already has an open dispute"
                        )

            stored = commit.order.model_copy(
                update={'version': commit.expected_version + 1}, deep=True
            )
            self._orders[stored.order_id] = stored

            if commit.escrow is not None:
                self._escrows[commit.escrow.order_id] = commit.escrow.model_copy(deep=True)
            if commit.dispute is not None:
                self._disputes[commit.dispute.dispute_id] = commit.dispute.model_copy(deep=True)
            self._events[stored.order_id].extend(e.model_copy(deep=True) for e in commit.events)

        return stored.model_copy(deep=True)

    async def get_order_events(self, order_id: str) -> List[OrderEvent]:
        return [e.model_copy(deep=True) for e in self._events.get(order_id, [])]

    async def order_statistics(self) -> Dict[str, Any]:
        return summarize_orders(self._orders.values(), self._escrows.values())

    # ==================== ESCROW & DISPUTES ====================

    async def get_escrow(self, order_id: str) -> Optional[EscrowRecord]:
        escrow = self._escrows.get(order_id)
        return escrow.model_copy(deep=True) if escrow else None

    async def get_dispute(self, dispute_id: str) -> Dispute:
        dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise DisputeNotFound(f"Dispute not found: {dispute_id}")
        return dispute.model_copy(deep=True)

    async def get_disputes_for_order(self, order_id: str) -> List[Dispute]:
        disputes = [d for d in self._disputes.values() if d.order_id == order_id]
        disputes.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in disputes]

    async def list_disputes(self, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        disputes = [d for d in self._disputes.values() if status is None or d.status == status]
        disputes.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in disputes]

    # ==================== NOTIFICATIONS ====================

    async def save_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            self._notifications[notification.notification_id] = notification.model_copy(deep=True)
        return notification

    async def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False
    ) -> List[Notification]:
        notifications = [
            n for n in self._notifications.values()
            if n.recipient_id == recipient_id and not (unread_only and n.is_read)
        ]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in notifications]

    async def mark_notifications_read(
        self,
        recipient_id: str,
        notification_ids: Optional[List[str]] = None
    ) -> int:
        marked = 0
        async with self._lock:
            for notification in self._notifications.values():
                if notification.recipient_id != recipient_id or notification.is_read:
                    continue
                if notification_ids is not None and notification.notification_id not in notification_ids:
                    continue
                notification.is_read = True
                marked += 1
        return marked

    # ==================== KYC ====================

    async def save_kyc(self, record: KycRecord) -> KycRecord:
        async with self._lock:
            self._kyc[record.party_id] = record.model_copy(deep=True)
        return record

    async def get_kyc(self, party_id: str) -> Optional[KycRecord]:
        record = self._kyc.get(party_id)
        return record.model_copy(deep=True) if record else None

    async def list_kyc(self, status: Optional[KycStatus] = None) -> List[KycRecord]:
        records = [r for r in self._kyc.values() if status is None or r.status == status]
        records.sort(key=lambda r: r.submitted_at)
        return [r.model_copy(deep=True) for r in records]
