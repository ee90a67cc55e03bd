"""Tests for designer catalog listings."""

from decimal import Decimal

import pytest

from catalog_service import CatalogService
from conftest import ADMIN, CUSTOMER, DESIGNER, ITEM, PROOF, place
from escrow_service import Unauthorized, ValidationError
from models import OrderState, Party, Role
from order_store import ItemNotFound

RIVAL = Party(party_id="designer-2", role=Role.DESIGNER)


@pytest.fixture
def catalog(store, config) -> CatalogService:
    return CatalogService(store, config)


@pytest.mark.asyncio
async def test_designer_lists_item(catalog):
    item = await catalog.create_item(DESIGNER, "  Wool Coat ", "250", " usd ")

    assert item.item_id.startswith("ITM_")
    assert item.designer_id == DESIGNER.party_id
    assert item.name == "Wool Coat"
    assert item.price == Decimal("250")
    assert item.currency == "USD"
    assert await catalog.get_item(item.item_id) == item


@pytest.mark.asyncio
@pytest.mark.parametrize("actor", [CUSTOMER, ADMIN])
async def test_only_designers_list_items(catalog, actor):
    with pytest.raises(Unauthorized):
        await catalog.create_item(actor, "Coat", "10", "USD")


@pytest.mark.asyncio
@pytest.mark.parametrize("name, price, currency", [
    ("", "10", "USD"),
    ("<>", "10", "USD"),
    ("Coat", "0", "USD"),
    ("Coat", "-3", "USD"),
    ("Coat", "cheap", "USD"),
    ("Coat", "100000.01", "USD"),
    ("Coat", "10", "GBP"),
])
async def test_create_item_validation(catalog, name, price, currency):
    with pytest.raises(ValidationError):
        await catalog.create_item(DESIGNER, name, price, currency)


@pytest.mark.asyncio
async def test_missing_item(catalog):
    with pytest.raises(ItemNotFound):
        await catalog.get_item("ITM_missing")
    with pytest.raises(ItemNotFound):
        await catalog.update_item(DESIGNER, "ITM_missing", available=False)
    with pytest.raises(ItemNotFound):
        await catalog.delete_item(DESIGNER, "ITM_missing")


@pytest.mark.asyncio
async def test_withdrawn_item_cannot_be_ordered(catalog, service):
    updated = await catalog.update_item(DESIGNER, ITEM.item_id, available=False)
    assert updated.available is False

    with pytest.raises(ValidationError):
        await place(service)

    await catalog.update_item(DESIGNER, ITEM.item_id, available=True)
    assert (await place(service)).state == OrderState.CREATED


@pytest.mark.asyncio
async def test_price_change_applies_to_new_orders_only(catalog, service):
    earlier = await place(service)
    await service.record_payment(earlier.order_id, PROOF, CUSTOMER)

    await catalog.update_item(DESIGNER, ITEM.item_id, price="150.00")

    with pytest.raises(ValidationError):
        await place(service, amount="120.00")
    later = await place(service, amount="150.00")

    assert later.amount == Decimal("150.00")
    assert (await service.get_escrow(earlier.order_id, CUSTOMER)).locked_amount == Decimal("120.00")


@pytest.mark.asyncio
async def test_update_without_changes_returns_item(catalog):
    assert await catalog.update_item(DESIGNER, ITEM.item_id) == await catalog.get_item(ITEM.item_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("actor", [RIVAL, CUSTOMER, ADMIN])
async def test_only_owner_changes_item(catalog, actor):
    with pytest.raises(Unauthorized):
        await catalog.update_item(actor, ITEM.item_id, price="1.00")
    with pytest.raises(Unauthorized):
        await catalog.delete_item(actor, ITEM.item_id)

    item = await catalog.get_item(ITEM.item_id)
    assert item.price == ITEM.price


@pytest.mark.asyncio
async def test_delete_item(catalog, service):
    await catalog.delete_item(DESIGNER, ITEM.item_id)

    with pytest.raises(ItemNotFound):
        await catalog.get_item(ITEM.item_id)
    with pytest.raises(ValidationError):
        await place(service)


@pytest.mark.asyncio
async def test_list_items_filters(catalog):
    rival_item = await catalog.create_item(RIVAL, "Denim Jacket", "80", "USD")
    await catalog.update_item(DESIGNER, ITEM.item_id, available=False)

    mine = await catalog.list_items(designer_id=DESIGNER.party_id)
    assert ITEM.item_id in {i.item_id for i in mine}
    assert rival_item.item_id not in {i.item_id for i in mine}

    on_sale = {i.item_id for i in await catalog.list_items(available=True)}
    assert rival_item.item_id in on_sale
    assert ITEM.item_id not in on_sale

    assert len(await catalog.list_items(limit=1)) == 1
