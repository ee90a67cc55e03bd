"""
Domain models for the fashion marketplace escrow lifecycle.

Orders are the aggregate root. Escrow records, disputes and timeline
events belong to exactly one order and are only ever written together
with it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class OrderState(str, Enum):
    """Lifecycle states of an order."""
    CREATED = "created"              # Order placed, waiting for payment
    PAID = "paid"                    # Funds locked in escrow
    SHIPPED = "shipped"              # Designer shipped the item
    DELIVERED = "delivered"          # Customer confirmed receipt
    DISPUTED = "disputed"            # Dispute open, funds frozen
    RELEASED = "released"            # Funds paid out to designer
    REFUNDED = "refunded"            # Funds returned to customer
    CANCELLED = "cancelled"          # Cancelled before shipping


TERMINAL_STATES = frozenset({OrderState.RELEASED, OrderState.REFUNDED, OrderState.CANCELLED})


class EscrowStatus(str, Enum):
    """Status of the funds held for an order."""
    PENDING = "pending"
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


class DisputeReason(str, Enum):
    """Reasons a customer or designer can give when opening a dispute."""
    DELIVERY_ISSUE = "delivery_issue"
    WRONG_ITEM = "wrong_item"
    DAMAGED_ITEM = "damaged_item"
    QUALITY_ISSUE = "quality_issue"
    SIZE_ISSUE = "size_issue"
    DESIGNER_UNRESPONSIVE = "designer_unresponsive"
    OTHER = "other"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeOutcome(str, Enum):
    """How an admin settles a dispute."""
    RELEASE = "release"              # Favor designer, release funds
    REFUND = "refund"                # Favor customer, refund funds


class Role(str, Enum):
    CUSTOMER = "customer"
    DESIGNER = "designer"
    ADMIN = "admin"
    SYSTEM = "system"                # Scheduled sweeps


class NotificationType(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_PAID = "order_paid"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"


class KycStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Party(BaseModel):
    """An authenticated actor as supplied by the identity provider."""
    party_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


SYSTEM_PARTY = Party(party_id="system", role=Role.SYSTEM)


class Item(BaseModel):
    """Catalog entry a customer can order."""
    item_id: str
    designer_id: str
    name: str
    price: Decimal
    currency: str
    available: bool = True
    created_at: datetime = Field(default_factory=datetime.now)


class DeliveryProof(BaseModel):
    tracking_reference: Optional[str] = None
    carrier: Optional[str] = None
    photo_references: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class Review(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class Order(BaseModel):
    """A purchase of one catalog item, in some quantity, by one customer from one designer."""
    order_id: str
    item_id: str
    customer_id: str
    designer_id: str
    quantity: int = Field(default=1, ge=1)
    amount: Decimal = Field(gt=0)
    currency: str
    state: OrderState = OrderState.CREATED
    version: int = 0
    delivery_address: Optional[str] = None
    special_instructions: Optional[str] = None
    delivery_proof: Optional[DeliveryProof] = None
    review: Optional[Review] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def party_role(self, party_id: str) -> Optional[Role]:
        """Return the role party_id plays on this order, if any."""
        if party_id == self.customer_id:
            return Role.CUSTOMER
        if party_id == self.designer_id:
            return Role.DESIGNER
        return None


class PaymentProof(BaseModel):
    """Evidence that the customer's funds reached the custodial wallet."""
    transaction_reference: str = Field(min_length=1)
    customer_wallet: str = Field(min_length=1)
    designer_wallet: str = Field(min_length=1)
    amount_received: Optional[Decimal] = None


class EscrowRecord(BaseModel):
    """Funds-custody ledger entry, one per paid order."""
    escrow_id: str
    order_id: str
    customer_wallet: str
    designer_wallet: str
    currency: str
    locked_amount: Decimal = Field(ge=0)
    settled_amount: Decimal = Decimal('0')
    status: EscrowStatus = EscrowStatus.PENDING
    lock_reference: Optional[str] = None
    settlement_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    settled_at: Optional[datetime] = None

    @model_validator(mode='after')
    def _settled_within_locked(self) -> 'EscrowRecord':
        if self.settled_amount < 0 or self.settled_amount > self.locked_amount:
            raise ValueError(
                f"settled amount {self.settled_amount} outside locked amount {self.locked_amount}"
            )
        return self

    @property
    def is_settled(self) -> bool:
        return self.status in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)


class Dispute(BaseModel):
    dispute_id: str
    order_id: str
    opened_by: str
    reason: DisputeReason
    description: str = Field(min_length=1)
    status: DisputeStatus = DisputeStatus.OPEN
    outcome: Optional[DisputeOutcome] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None


class OrderEvent(BaseModel):
    """One applied transition in an order's timeline."""
    order_id: str
    from_state: Optional[OrderState] = None
    to_state: OrderState
    actor_id: str
    actor_role: Role
    note: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.now)


class KycRecord(BaseModel):
    party_id: str
    full_name: str = Field(min_length=1)
    document_references: List[str] = Field(default_factory=list)
    status: KycStatus = KycStatus.PENDING
    notes: Optional[str] = None
    submitted_at: datetime = Field(default_factory=datetime.now)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None


# ==================== NOTIFICATION PAYLOADS ====================

class _OrderPayload(BaseModel):
    order_id: str
    item_id: str
    amount: Decimal
    currency: str


class OrderPlacedPayload(_OrderPayload):
    event_type: Literal["order_placed"] = "order_placed"
    customer_id: str
    delivery_address: Optional[str] = None
    special_instructions: Optional[str] = None


class OrderPaidPayload(_OrderPayload):
    event_type: Literal["order_paid"] = "order_paid"
    transaction_reference: str


class OrderShippedPayload(_OrderPayload):
    event_type: Literal["order_shipped"] = "order_shipped"
    tracking_reference: Optional[str] = None
    carrier: Optional[str] = None


class OrderDeliveredPayload(_OrderPayload):
    event_type: Literal["order_delivered"] = "order_delivered"
    settlement_reference: Optional[str] = None
    rating: Optional[int] = None
    automatic: bool = False


class OrderCancelledPayload(_OrderPayload):
    event_type: Literal["order_cancelled"] = "order_cancelled"
    cancelled_by: str
    refunded: bool = False
    reason: Optional[str] = None


class DisputeOpenedPayload(_OrderPayload):
    event_type: Literal["dispute_opened"] = "dispute_opened"
    dispute_id: str
    opened_by: str
    reason: DisputeReason
    description: str


class DisputeResolvedPayload(_OrderPayload):
    event_type: Literal["dispute_resolved"] = "dispute_resolved"
    dispute_id: str
    outcome: DisputeOutcome
    resolution_notes: Optional[str] = None


NotificationPayload = Annotated[
    Union[
        OrderPlacedPayload,
        OrderPaidPayload,
        OrderShippedPayload,
        OrderDeliveredPayload,
        OrderCancelledPayload,
        DisputeOpenedPayload,
        DisputeResolvedPayload,
    ],
    Field(discriminator="event_type"),
]

PAYLOAD_MODELS = {
    NotificationType.ORDER_PLACED: OrderPlacedPayload,
    NotificationType.ORDER_PAID: OrderPaidPayload,
    NotificationType.ORDER_SHIPPED: OrderShippedPayload,
    NotificationType.ORDER_DELIVERED: OrderDeliveredPayload,
    NotificationType.ORDER_CANCELLED: OrderCancelledPayload,
    NotificationType.DISPUTE_OPENED: DisputeOpenedPayload,
    NotificationType.DISPUTE_RESOLVED: DisputeResolvedPayload,
}


class Notification(BaseModel):
    notification_id: str
    recipient_id: str
    event_type: NotificationType
    payload: NotificationPayload
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator('payload')
    @classmethod
    def _payload_matches_type(cls, payload: Any, info) -> Any:
        event_type = info.data.get('event_type')
        if event_type is not None and payload.event_type != NotificationType(event_type).value:
            raise ValueError(f"payload {payload.event_type} does not match {event_type}")
        return payload


class TransitionNotice(BaseModel):
    """Handed to listeners after a transition has been committed."""
    event_type: NotificationType
    order: Order
    actor: Party
    details: Dict[str, Any] = Field(default_factory=dict)
