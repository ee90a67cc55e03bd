"""
Escrow Service Module for the fashion marketplace.

This module is the single authority over the order lifecycle. It validates
every command against the transition graph, checks who is allowed to issue
it, and writes the resulting order, escrow, dispute and timeline rows in one
store commit. It is the only component that marks funds released or
refunded.

Lifecycle:
    created -> paid -> shipped -> delivered -> released
    shipped | delivered -> disputed -> released | refunded
    created | paid -> cancelled

Features:
    - Per-order mutual exclusion plus optimistic versioning in the store
    - Delivery confirmation releases funds atomically with the transition
    - Dispute opening and admin resolution
    - Automated sweeps: auto-release, unshipped refunds, unpaid cancellation
    - Post-commit listeners (notifications)

Dependencies:
    - order_store.py: Persistence interface
    - config.py: Configuration management
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from config import Config, get_config
from models import (
    SYSTEM_PARTY,
    DeliveryProof,
    Dispute,
    DisputeOutcome,
    DisputeReason,
    DisputeStatus,
    EscrowRecord,
    EscrowStatus,
    KycStatus,
    NotificationType,
    Order,
    OrderEvent,
    OrderState,
    Party,
    PaymentProof,
    Review,
    Role,
    TransitionNotice,
)
from order_store import OrderStore, StoreError, TransitionCommit
from utils import generate_reference, mask_sensitive_data, parse_amount, sanitize_input

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    OrderState.CREATED: frozenset({OrderState.PAID, OrderState.CANCELLED}),
    OrderState.PAID: frozenset({OrderState.SHIPPED, OrderState.CANCELLED}),
    OrderState.SHIPPED: frozenset({OrderState.DELIVERED, OrderState.DISPUTED}),
    OrderState.DELIVERED: frozenset({OrderState.RELEASED, OrderState.DISPUTED}),
    OrderState.DISPUTED: frozenset({OrderState.RELEASED, OrderState.REFUNDED}),
    OrderState.RELEASED: frozenset(),
    OrderState.REFUNDED: frozenset(),
    OrderState.CANCELLED: frozenset(),
}


def is_valid_transition(from_state: OrderState, to_state: OrderState) -> bool:
    """Check whether a single edge exists in the lifecycle graph."""
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def is_valid_path(states: Sequence[OrderState]) -> bool:
    """
    Check whether a sequence of states is a walk through the lifecycle graph.

    The path must start at 'created'.

    Example:
        >>> is_valid_path([OrderState.CREATED, OrderState.PAID, OrderState.SHIPPED])
        True
        >>> is_valid_path([OrderState.CREATED, OrderState.SHIPPED])
        False
    """
    if not states or states[0] != OrderState.CREATED:
        return False
    return all(is_valid_transition(a, b) for a, b in zip(states, states[1:]))


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    pass


class ValidationError(EscrowError):
    """Raised when command input fails validation."""
    pass


class InvalidTransition(EscrowError):
    """Raised when the order's current state does not allow the command."""
    pass


class Unauthorized(EscrowError):
    """Raised when the acting party may not issue the command."""
    pass


class DuplicateDispute(EscrowError):
    """Raised when an order already has an open dispute."""
    pass


class AlreadyResolved(EscrowError):
    """Raised when a dispute has already been resolved."""
    pass


Listener = Callable[[TransitionNotice], Any]


class _OrderLocks:
    """
    Registry of per-order asyncio locks.

    Entries are created on first use and removed once no holder or waiter
    remains, so the registry only grows with the number of orders being
    worked on concurrently.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks[order_id] = asyncio.Lock()
            self._users[order_id] = 0
        self._users[order_id] += 1

        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if self._users[order_id] == 0:
                del self._users[order_id]
                del self._locks[order_id]

    def __len__(self) -> int:
        return len(self._locks)


class EscrowService:
    """
    Core escrow business logic service.

    Every command follows the same order of checks: the order exists, the
    caller is authorized, the input is valid, the current state allows the
    transition. Commands on one order are serialized; the store rejects a
    stale write with ConcurrentModification, which callers may retry.

    Attributes:
        store: Order store used for persistence
        config: Configuration instance
    """

    SWEEP_BATCH_SIZE = 500        # Orders examined per sweep run

    def __init__(self, store: OrderStore, config: Optional[Config] = None):
        """
        Initialize the escrow service.

        Args:
            store: Order store for data persistence
            config: Configuration instance (optional, will load if not provided)
        """
        self.store = store
        self.config = config or get_config()
        self._locks = _OrderLocks()
        self._listeners: List[Listener] = []
        logger.info("EscrowService initialized successfully")

    def add_listener(self, listener: Listener) -> None:
        """
        Register a callback invoked after each committed transition.

        The callback is synchronous and must not block; it receives a
        TransitionNotice.
        """
        self._listeners.append(listener)

    # ==================== ORDER PLACEMENT & PAYMENT ====================

    async def place_order(
        self,
        actor: Party,
        item_id: str,
        customer_id: str,
        designer_id: str,
        amount: Any,
        currency: str,
        delivery_address: Optional[str] = None,
        special_instructions: Optional[str] = None,
        quantity: int = 1
    ) -> Order:
        """
        Create a new order in the 'created' state.

        The amount is what the customer saw at checkout; it must equal the
        item price times quantity, in the item's currency.

        Args:
            actor: Party placing the order (must be the customer)
            item_id: Catalog item being ordered
            customer_id: Buyer
            designer_id: Seller, must own the item
            amount: Order amount
            currency: Currency code
            delivery_address: Shipping address (optional)
            special_instructions: Notes for the designer (optional)
            quantity: Units ordered (default 1)

        Returns:
            The stored order

        Raises:
            Unauthorized: If the actor is not the customer
            ValidationError: If any input is invalid
        """
        if actor.party_id != customer_id or actor.role == Role.SYSTEM:
            self._reject(f"{actor.party_id} tried to place an order for {customer_id}")
            raise Unauthorized("Orders can only be placed by the customer")

        is_valid, value, error = parse_amount(amount)
        if not is_valid:
            raise ValidationError(error)

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Quantity must be a positive whole number, got {quantity!r}")

        if value <= 0:
            raise ValidationError("Amount must be positive")

        if value > self.config.max_order_amount:
            raise ValidationError(
                f"Amount exceeds maximum limit of {self.config.max_order_amount}"
            )

        currency = (currency or '').strip().upper()
        if currency not in self.config.supported_currencies:
            raise ValidationError(
                f"Unsupported currency '{currency}'. "
                f"Supported: {', '.join(self.config.supported_currencies)}"
            )

        if customer_id == designer_id:
            raise ValidationError("Customer and designer cannot be the same user")

        item = await self.store.get_item(item_id)
        if item is None:
            raise ValidationError(f"Item not found: {item_id}")

        if not item.available:
            raise ValidationError(f"Item {item_id} is not available")

        if item.designer_id != designer_id:
            raise ValidationError(f"Item {item_id} does not belong to designer {designer_id}")

        if currency != item.currency:
            raise ValidationError(
                f"Item {item_id} is priced in {item.currency}, not {currency}"
            )

        expected = item.price * quantity
        if value != expected:
            self._reject(f"{actor.party_id} offered {value} {currency} for item {item_id} priced {expected}")
            raise ValidationError(
                f"Amount {value} does not match {quantity} x {item.price} {item.currency} "
                f"for item {item_id}"
            )

        if self.config.require_designer_kyc:
            kyc = await self.store.get_kyc(designer_id)
            if kyc is None or kyc.status != KycStatus.APPROVED:
                raise ValidationError(f"Designer {designer_id} has not completed KYC verification")

        now = datetime.now()
        order = Order(
            order_id=generate_reference('ORD'),
            item_id=item_id,
            customer_id=customer_id,
            designer_id=designer_id,
            quantity=quantity,
            amount=value,
            currency=currency,
            delivery_address=sanitize_input(delivery_address or '') or None,
            special_instructions=sanitize_input(special_instructions or '') or None,
            created_at=now,
            updated_at=now,
        )
        event = OrderEvent(
            order_id=order.order_id,
            from_state=None,
            to_state=OrderState.CREATED,
            actor_id=actor.party_id,
            actor_role=Role.CUSTOMER,
            occurred_at=now,
        )

        stored = await self.store.create_order(order, [event])
        logger.info(
            f"Order placed: {stored.order_id}, customer={customer_id}, "
            f"designer={designer_id}, quantity={quantity}, amount={value} {currency}"
        )

        self._emit(NotificationType.ORDER_PLACED, stored, actor)
        return stored

    async def record_payment(
        self,
        order_id: str,
        payment_proof: PaymentProof,
        actor: Party
    ) -> Order:
        """
        Move an order from 'created' to 'paid' and lock the funds in escrow.

        Args:
            order_id: Order identifier
            payment_proof: Transaction reference and wallets from the payment rail
            actor: Customer on the order, an admin or the system

        Returns:
            The updated order

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor may not record payment
            ValidationError: If less than the order amount was received
            InvalidTransition: If the order is not awaiting payment
        """
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(order, actor, (Role.CUSTOMER, Role.ADMIN, Role.SYSTEM), 'record payment for')

            if payment_proof.amount_received is not None:
                shortfall = order.amount - payment_proof.amount_received
                if shortfall > self.config.payment_tolerance:
                    raise ValidationError(
                        f"Payment of {payment_proof.amount_received} is less than "
                        f"order amount {order.amount}"
                    )

            self._check_transition(order, OrderState.PAID)

            now = datetime.now()
            escrow = EscrowRecord(
                escrow_id=generate_reference('ESC'),
                order_id=order.order_id,
                customer_wallet=payment_proof.customer_wallet,
                designer_wallet=payment_proof.designer_wallet,
                currency=order.currency,
                locked_amount=order.amount,
                status=EscrowStatus.LOCKED,
                lock_reference=payment_proof.transaction_reference,
                created_at=now,
                updated_at=now,
            )
            updated = order.model_copy(update={'paid_at': now})

            stored = await self._commit(
                order, updated, actor, role, [OrderState.PAID],
                escrow=escrow, note=f"Payment {payment_proof.transaction_reference}"
            )

        logger.info(
            f"Escrow locked for {order_id}: {order.amount} {order.currency}, "
            f"customer_wallet={mask_sensitive_data(payment_proof.customer_wallet)}, "
            f"designer_wallet={mask_sensitive_data(payment_proof.designer_wallet)}"
        )
        self._emit(
            NotificationType.ORDER_PAID, stored, actor,
            transaction_reference=payment_proof.transaction_reference
        )
        return stored

    # ==================== SHIPPING & DELIVERY ====================

    async def mark_shipped(
        self,
        order_id: str,
        actor: Party,
        tracking_reference: Optional[str] = None,
        carrier: Optional[str] = None,
        photo_references: Optional[List[str]] = None,
        notes: Optional[str] = None
    ) -> Order:
        """
        Mark a paid order as shipped.

        Args:
            order_id: Order identifier
            actor: Designer on the order
            tracking_reference: Courier tracking number (optional)
            carrier: Courier name (optional)
            photo_references: References to shipping photos (optional)
            notes: Free-form notes (optional)

        Returns:
            The updated order

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor is not the designer
            InvalidTransition: If the order is not paid
        """
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(order, actor, (Role.DESIGNER,), 'ship')

            proof = DeliveryProof(
                tracking_reference=sanitize_input(tracking_reference or '', 255) or None,
                carrier=sanitize_input(carrier or '', 255) or None,
                photo_references=[ref for ref in (photo_references or []) if ref],
                notes=sanitize_input(notes or '') or None,
            )

            self._check_transition(order, OrderState.SHIPPED)

            updated = order.model_copy(update={
                'delivery_proof': proof,
                'shipped_at': datetime.now(),
            })
            stored = await self._commit(order, updated, actor, role, [OrderState.SHIPPED])

        self._emit(
            NotificationType.ORDER_SHIPPED, stored, actor,
            tracking_reference=proof.tracking_reference, carrier=proof.carrier
        )
        return stored

    async def confirm_delivery(
        self,
        order_id: str,
        actor: Party,
        rating: Optional[int] = None,
        review: Optional[str] = None
    ) -> Order:
        """
        Confirm receipt of a shipped order and release the funds.

        The order moves shipped -> delivered -> released and the escrow
        record moves locked -> released in a single commit. A rating and
        review, when given, are stored in that same commit.

        Args:
            order_id: Order identifier
            actor: Customer on the order
            rating: Rating from 1 to 5 (optional)
            review: Review comment (optional)

        Returns:
            The released order

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor is not the customer
            ValidationError: If the rating is out of range
            InvalidTransition: If the order is not shipped
        """
        return await self._deliver_and_release(
            order_id, actor, (Role.CUSTOMER,), rating=rating, comment=review
        )

    async def _deliver_and_release(
        self,
        order_id: str,
        actor: Party,
        allowed: Iterable[Role],
        rating: Optional[int] = None,
        comment: Optional[str] = None,
        automatic: bool = False
    ) -> Order:
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(order, actor, allowed, 'confirm delivery of')

            order_review = None
            if rating is not None or comment:
                if rating is None:
                    raise ValidationError("A rating is required with a review")
                try:
                    order_review = Review(rating=rating, comment=sanitize_input(comment or '') or None)
                except PydanticValidationError:
                    raise ValidationError(f"Rating must be between 1 and 5, got {rating}")

            self._check_transition(order, OrderState.DELIVERED)

            escrow = self._settle(
                await self.store.get_escrow(order_id), EscrowStatus.RELEASED, 'REL'
            )
            now = datetime.now()
            updated = order.model_copy(update={
                'review': order_review,
                'delivered_at': now,
                'closed_at': now,
            })
            note = (
                f"Auto-released after {self.config.auto_release_days} days"
                if automatic else "Delivery confirmed"
            )
            stored = await self._commit(
                order, updated, actor, role,
                [OrderState.DELIVERED, OrderState.RELEASED],
                escrow=escrow, note=note
            )

        logger.info(
            f"Funds released for {order_id}: {escrow.settled_amount} {escrow.currency} "
            f"({escrow.settlement_reference})"
        )
        self._emit(
            NotificationType.ORDER_DELIVERED, stored, actor,
            settlement_reference=escrow.settlement_reference,
            rating=order_review.rating if order_review else None,
            automatic=automatic
        )
        return stored

    # ==================== DISPUTES ====================

    async def open_dispute(
        self,
        order_id: str,
        actor: Party,
        reason: Any,
        description: str
    ) -> Dispute:
        """
        Open a dispute on a shipped or delivered order, freezing the funds.

        Args:
            order_id: Order identifier
            actor: Customer or designer on the order
            reason: DisputeReason (or its string value)
            description: What went wrong

        Returns:
            The open dispute

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor is not a party to the order
            ValidationError: If the reason or description is invalid
            DuplicateDispute: If a dispute is already open on the order
            InvalidTransition: If the order is not shipped or delivered
        """
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(order, actor, (Role.CUSTOMER, Role.DESIGNER), 'dispute')

            try:
                reason = DisputeReason(reason)
            except ValueError:
                raise ValidationError(f"Invalid dispute reason: {reason}")

            description = sanitize_input(description or '')
            if not description:
                raise ValidationError("Description is required")

            existing = await self.store.get_disputes_for_order(order_id)
            if any(d.status == DisputeStatus.OPEN for d in existing):
                self._reject(f"Duplicate dispute on {order_id} by {actor.party_id}")
                raise DuplicateDispute(f"Order {order_id} already has an open dispute")

            self._check_transition(order, OrderState.DISPUTED)

            now = datetime.now()
            dispute = Dispute(
                dispute_id=generate_reference('DSP'),
                order_id=order_id,
                opened_by=actor.party_id,
                reason=reason,
                description=description,
                created_at=now,
            )
            stored = await self._commit(
                order, order.model_copy(), actor, role, [OrderState.DISPUTED],
                dispute=dispute, note=f"Dispute {dispute.dispute_id}: {reason.value}"
            )

        logger.warning(f"Dispute opened: {dispute.dispute_id} on {order_id} by {actor.party_id}")
        self._emit(
            NotificationType.DISPUTE_OPENED, stored, actor,
            dispute_id=dispute.dispute_id,
            opened_by=actor.party_id,
            reason=reason,
            description=description
        )
        return dispute

    async def resolve_dispute(
        self,
        order_id: str,
        outcome: Any,
        actor: Party,
        notes: Optional[str] = None
    ) -> Order:
        """
        Resolve the open dispute on an order (admin function).

        'release' favors the designer and releases the funds; 'refund'
        favors the customer and refunds them. The dispute is closed in the
        same commit as the order transition.

        Args:
            order_id: Order identifier
            outcome: DisputeOutcome (or its string value)
            actor: Admin resolving the dispute
            notes: Resolution notes (optional)

        Returns:
            The settled order

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor is not an admin
            ValidationError: If the outcome is invalid
            AlreadyResolved: If the order's dispute has already been resolved
            InvalidTransition: If the order is not disputed
        """
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(order, actor, (Role.ADMIN,), 'resolve a dispute on')

            try:
                outcome = DisputeOutcome(outcome)
            except ValueError:
                raise ValidationError(f"Invalid dispute outcome: {outcome}")
            notes = sanitize_input(notes or '') or None

            disputes = await self.store.get_disputes_for_order(order_id)
            open_dispute = next((d for d in disputes if d.status == DisputeStatus.OPEN), None)

            if order.state != OrderState.DISPUTED or open_dispute is None:
                if any(d.status == DisputeStatus.RESOLVED for d in disputes):
                    self._reject(f"Dispute on {order_id} already resolved")
                    raise AlreadyResolved(f"Dispute on order {order_id} has already been resolved")
                raise InvalidTransition(
                    f"Order {order_id} has no open dispute (state: {order.state.value})"
                )

            if outcome == DisputeOutcome.RELEASE:
                target, escrow_status, prefix = OrderState.RELEASED, EscrowStatus.RELEASED, 'REL'
            else:
                target, escrow_status, prefix = OrderState.REFUNDED, EscrowStatus.REFUNDED, 'RFD'

            self._check_transition(order, target)
            escrow = self._settle(await self.store.get_escrow(order_id), escrow_status, prefix)

            now = datetime.now()
            resolved = open_dispute.model_copy(update={
                'status': DisputeStatus.RESOLVED,
                'outcome': outcome,
                'resolution_notes': notes,
                'resolved_by': actor.party_id,
                'resolved_at': now,
            })
            updated = order.model_copy(update={'closed_at': now})
            stored = await self._commit(
                order, updated, actor, role, [target],
                escrow=escrow, dispute=resolved,
                note=f"Dispute {resolved.dispute_id} resolved: {outcome.value}"
            )

        logger.info(
            f"Dispute {resolved.dispute_id} resolved by {actor.party_id}: {outcome.value}, "
            f"{escrow.settled_amount} {escrow.currency} {escrow_status.value}"
        )
        self._emit(
            NotificationType.DISPUTE_RESOLVED, stored, actor,
            dispute_id=resolved.dispute_id,
            outcome=outcome,
            resolution_notes=notes
        )
        return stored

    # ==================== CANCELLATION ====================

    async def cancel_order(
        self,
        order_id: str,
        actor: Party,
        reason: Optional[str] = None
    ) -> Order:
        """
        Cancel an order that has not shipped yet.

        A paid order has its escrow refunded in the same commit.

        Args:
            order_id: Order identifier
            actor: Either party, an admin or the system
            reason: Cancellation reason (optional)

        Returns:
            The cancelled order

        Raises:
            OrderNotFound: If the order does not exist
            Unauthorized: If the actor may not cancel the order
            InvalidTransition: If the order has already shipped or closed
        """
        async with self._locks.hold(order_id):
            order = await self.store.get_order(order_id)
            role = self._authorize(
                order, actor,
                (Role.CUSTOMER, Role.DESIGNER, Role.ADMIN, Role.SYSTEM),
                'cancel'
            )
            reason = sanitize_input(reason or '') or None

            self._check_transition(order, OrderState.CANCELLED)

            escrow = None
            if order.state == OrderState.PAID:
                escrow = self._settle(
                    await self.store.get_escrow(order_id), EscrowStatus.REFUNDED, 'RFD'
                )

            updated = order.model_copy(update={
                'cancellation_reason': reason,
                'closed_at': datetime.now(),
            })
            stored = await self._commit(
                order, updated, actor, role, [OrderState.CANCELLED],
                escrow=escrow, note=reason
            )

        if escrow:
            logger.info(f"Escrow refunded for {order_id}: {escrow.settled_amount} {escrow.currency}")
        self._emit(
            NotificationType.ORDER_CANCELLED, stored, actor,
            cancelled_by=actor.party_id,
            refunded=escrow is not None,
            reason=reason
        )
        return stored

    # ==================== READS ====================

    async def get_order(self, order_id: str, actor: Party) -> Order:
        """Get an order visible to the actor."""
        order = await self.store.get_order(order_id)
        self._authorize(order, actor, (Role.CUSTOMER, Role.DESIGNER, Role.ADMIN, Role.SYSTEM), 'view')
        return order

    async def get_escrow(self, order_id: str, actor: Party) -> Optional[EscrowRecord]:
        """Get the escrow record of an order visible to the actor, if paid."""
        await self.get_order(order_id, actor)
        return await self.store.get_escrow(order_id)

    async def get_order_history(self, order_id: str, actor: Party) -> List[OrderEvent]:
        """Get the timeline of an order, oldest first."""
        await self.get_order(order_id, actor)
        return await self.store.get_order_events(order_id)

    async def list_orders_for(
        self,
        actor: Party,
        state: Optional[OrderState] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Order]:
        """
        List the actor's orders, newest first.

        Customers see what they bought, designers what they sold, admins
        everything.
        """
        if actor.role in (Role.ADMIN, Role.SYSTEM):
            return await self.store.list_orders(state=state, limit=limit, offset=offset)
        if actor.role == Role.DESIGNER:
            return await self.store.list_orders(
                state=state, designer_id=actor.party_id, limit=limit, offset=offset
            )
        return await self.store.list_orders(
            state=state, customer_id=actor.party_id, limit=limit, offset=offset
        )

    # ==================== AUTOMATED SWEEPS ====================

    async def release_overdue_deliveries(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Auto-release orders shipped more than AUTO_RELEASE_DAYS ago.

        Disputed orders are left alone. Per-order failures are logged and
        skipped.

        Returns:
            Orders that were released
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.config.auto_release_days)
        candidates = await self.store.list_orders(
            state=OrderState.SHIPPED, updated_before=cutoff, limit=self.SWEEP_BATCH_SIZE
        )

        released = []
        for order in candidates:
            if order.shipped_at and order.shipped_at > cutoff:
                continue
            try:
                released.append(await self._deliver_and_release(
                    order.order_id, SYSTEM_PARTY, (Role.SYSTEM,), automatic=True
                ))
            except (EscrowError, StoreError) as e:
                logger.error(f"Auto-release failed for {order.order_id}: {e}")

        if released:
            logger.info(f"Auto-released {len(released)} orders")
        return released

    async def cancel_unshipped_orders(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Cancel and refund paid orders not shipped within SHIP_DEADLINE_DAYS.

        Returns:
            Orders that were cancelled
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.config.ship_deadline_days)
        return await self._cancel_stale(
            OrderState.PAID, cutoff, lambda o: o.paid_at or o.updated_at,
            f"Not shipped within {self.config.ship_deadline_days} days"
        )

    async def cancel_unpaid_orders(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Cancel orders left unpaid for more than PAYMENT_TIMEOUT_HOURS.

        Returns:
            Orders that were cancelled
        """
        cutoff = (now or datetime.now()) - timedelta(hours=self.config.payment_timeout_hours)
        return await self._cancel_stale(
            OrderState.CREATED, cutoff, lambda o: o.created_at,
            f"Not paid within {self.config.payment_timeout_hours} hours"
        )

    async def _cancel_stale(
        self,
        state: OrderState,
        cutoff: datetime,
        since: Callable[[Order], datetime],
        reason: str
    ) -> List[Order]:
        candidates = await self.store.list_orders(
            state=state, updated_before=cutoff, limit=self.SWEEP_BATCH_SIZE
        )

        cancelled = []
        for order in candidates:
            if since(order) > cutoff:
                continue
            try:
                cancelled.append(await self.cancel_order(order.order_id, SYSTEM_PARTY, reason))
            except (EscrowError, StoreError) as e:
                logger.error(f"Automatic cancellation failed for {order.order_id}: {e}")

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} {state.value} orders: {reason}")
        return cancelled

    # ==================== INTERNALS ====================

    def _authorize(
        self,
        order: Order,
        actor: Party,
        allowed: Iterable[Role],
        action: str
    ) -> Role:
        """
        Resolve the role the actor plays on the order and check it is allowed.

        Raises:
            Unauthorized: If the role is not allowed
        """
        if actor.role in (Role.ADMIN, Role.SYSTEM):
            role = actor.role
        else:
            role = order.party_role(actor.party_id)

        if role not in tuple(allowed):
            self._reject(f"{actor.party_id} ({actor.role.value}) may not {action} {order.order_id}")
            raise Unauthorized(f"Not allowed to {action} order {order.order_id}")
        return role

    def _check_transition(self, order: Order, to_state: OrderState) -> None:
        if not is_valid_transition(order.state, to_state):
            self._reject(
                f"Invalid transition for {order.order_id}: "
                f"{order.state.value} -> {to_state.value}"
            )
            raise InvalidTransition(
                f"Cannot move order {order.order_id} from {order.state.value} to {to_state.value}"
            )

    def _settle(
        self,
        escrow: Optional[EscrowRecord],
        status: EscrowStatus,
        reference_prefix: str
    ) -> EscrowRecord:
        """Release or refund locked funds; settlement happens at most once."""
        if escrow is None or escrow.status != EscrowStatus.LOCKED:
            current = escrow.status.value if escrow else 'missing'
            raise InvalidTransition(f"Escrow cannot be {status.value}: status is {current}")

        now = datetime.now()
        return escrow.model_copy(update={
            'status': status,
            'settled_amount': escrow.locked_amount,
            'settlement_reference': generate_reference(reference_prefix),
            'settled_at': now,
            'updated_at': now,
        })

    async def _commit(
        self,
        before: Order,
        after: Order,
        actor: Party,
        role: Role,
        path: List[OrderState],
        escrow: Optional[EscrowRecord] = None,
        dispute: Optional[Dispute] = None,
        note: Optional[str] = None
    ) -> Order:
        now = datetime.now()
        events = []
        previous = before.state
        for state in path:
            if not is_valid_transition(previous, state):
                raise InvalidTransition(f"Cannot move from {previous.value} to {state.value}")
            events.append(OrderEvent(
                order_id=before.order_id,
                from_state=previous,
                to_state=state,
                actor_id=actor.party_id,
                actor_role=role,
                note=note,
                occurred_at=now,
            ))
            previous = state

        after = after.model_copy(update={'state': previous, 'updated_at': now})
        stored = await self.store.commit_transition(TransitionCommit(
            order=after,
            expected_version=before.version,
            escrow=escrow,
            dispute=dispute,
            events=events,
        ))

        logger.info(
            f"Order {before.order_id}: {before.state.value} -> {stored.state.value} "
            f"by {role.value}:{actor.party_id}"
        )
        return stored

    def _reject(self, message: str) -> None:
        logger.warning(f"Rejected: {message}")

    def _emit(
        self,
        event_type: NotificationType,
        order: Order,
        actor: Party,
        **details: Any
    ) -> None:
        notice = TransitionNotice(event_type=event_type, order=order, actor=actor, details=details)
        for listener in self._listeners:
            try:
                listener(notice)
            except Exception as e:
                logger.error(f"Transition listener failed for {order.order_id}: {e}")
