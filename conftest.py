"""Shared fixtures for the escrow service tests."""

from decimal import Decimal
from typing import Any, List, Tuple

import pytest
import pytest_asyncio

from config import Config
from dispute_manager import DisputeManager
from escrow_service import EscrowService
from kyc_service import KycService
from models import Item, Party, PaymentProof, Role
from notification_service import NotificationChannel, NotificationEmitter
from order_store import InMemoryOrderStore

CUSTOMER = Party(party_id="customer-1", role=Role.CUSTOMER)
DESIGNER = Party(party_id="designer-1", role=Role.DESIGNER)
ADMIN = Party(party_id="admin-1", role=Role.ADMIN)
STRANGER = Party(party_id="customer-2", role=Role.CUSTOMER)

ITEM = Item(
    item_id="item-1",
    designer_id=DESIGNER.party_id,
    name="Linen Wrap Dress",
    price=Decimal("120.00"),
    currency="USD",
)

SCARF = Item(
    item_id="item-2",
    designer_id=DESIGNER.party_id,
    name="Silk Scarf",
    price=Decimal("10.00"),
    currency="USD",
)

PROOF = PaymentProof(
    transaction_reference="tx-5f1c",
    customer_wallet="CustWa11et1111111111111111111111111111111111",
    designer_wallet="DesWa11et22222222222222222222222222222222222",
)


class RecordingChannel(NotificationChannel):
    """Channel that remembers what it was asked to send."""

    name = 'recording'

    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, Any, Any]] = []
        self.fail = fail

    async def send(self, recipient_id, event_type, payload):
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append((recipient_id, event_type, payload))


@pytest.fixture
def config(monkeypatch) -> Config:
    for key in ('DATABASE_URL', 'REQUIRE_DESIGNER_KYC', 'APP_ENV', 'SUPPORTED_CURRENCIES',
                'MAX_ORDER_AMOUNT', 'PAYMENT_TOLERANCE', 'JWT_SECRET', 'JWT_AUDIENCE'):
        monkeypatch.delenv(key, raising=False)
    return Config(env_file='/nonexistent/.env')


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore(items=[ITEM, SCARF])


@pytest.fixture
def service(store, config) -> EscrowService:
    return EscrowService(store, config)


@pytest.fixture
def disputes(store, service) -> DisputeManager:
    return DisputeManager(store, service)


@pytest.fixture
def kyc(store) -> KycService:
    return KycService(store)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def emitter(service, channel) -> NotificationEmitter:
    emitter = NotificationEmitter([channel])
    service.add_listener(emitter.on_transition)
    return emitter


async def place(service: EscrowService, item: Item = ITEM, quantity: int = 1, **kwargs):
    """Place an order at the item's own price unless amount or currency is given."""
    return await service.place_order(
        CUSTOMER,
        item_id=item.item_id,
        customer_id=CUSTOMER.party_id,
        designer_id=item.designer_id,
        amount=Decimal(str(kwargs.pop('amount', item.price * quantity))),
        currency=kwargs.pop('currency', item.currency),
        quantity=quantity,
        **kwargs
    )


@pytest_asyncio.fixture
async def paid_order(service):
    order = await place(service)
    return await service.record_payment(order.order_id, PROOF, CUSTOMER)


@pytest_asyncio.fixture
async def shipped_order(service, paid_order):
    return await service.mark_shipped(
        paid_order.order_id, DESIGNER, tracking_reference="1Z999", carrier="UPS"
    )
