"""
Catalog Service for designer listings.

Designers list, edit and withdraw the items customers order. Only the
designer who listed an item may change it. Existing orders keep the amount
and currency they were placed with, so edits and deletions never touch
the escrow lifecycle.
"""

import logging
from decimal import Decimal
from typing import Any, List, Optional

from config import Config, get_config
from escrow_service import Unauthorized, ValidationError
from models import Item, Party, Role
from order_store import ItemNotFound, OrderStore
from utils import generate_reference, parse_amount, sanitize_input

logger = logging.getLogger(__name__)


class CatalogService:
    """
    Designer item listings.

    Attributes:
        store: Order store holding catalog items
        config: Configuration instance (currencies and amount limit)
    """

    def __init__(self, store: OrderStore, config: Optional[Config] = None):
        self.store = store
        self.config = config or get_config()

    async def create_item(
        self,
        actor: Party,
        name: str,
        price: Any,
        currency: str,
        available: bool = True
    ) -> Item:
        """
        List a new item under the acting designer.

        Raises:
            Unauthorized: If the actor is not a designer
            ValidationError: If name, price or currency is invalid
        """
        if actor.role != Role.DESIGNER:
            raise Unauthorized("Only designers can list items")

        item = Item(
            item_id=generate_reference('ITM'),
            designer_id=actor.party_id,
            name=self._clean_name(name),
            price=self._clean_price(price),
            currency=self._clean_currency(currency),
            available=available,
        )
        await self.store.save_item(item)
        logger.info(f"Item listed: {item.item_id} by {actor.party_id} at {item.price} {item.currency}")
        return item

    async def get_item(self, item_id: str) -> Item:
        item = await self.store.get_item(item_id)
        if item is None:
            raise ItemNotFound(f"Item not found: {item_id}")
        return item

    async def list_items(
        self,
        designer_id: Optional[str] = None,
        available: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Item]:
        return await self.store.list_items(
            designer_id=designer_id, available=available, limit=limit, offset=offset
        )

    async def update_item(
        self,
        actor: Party,
        item_id: str,
        name: Optional[str] = None,
        price: Optional[Any] = None,
        currency: Optional[str] = None,
        available: Optional[bool] = None
    ) -> Item:
        """
        Change the fields given; None leaves a field as it is.

        Raises:
            ItemNotFound: If the item does not exist
            Unauthorized: If the actor did not list the item
            ValidationError: If a new value is invalid
        """
        item = await self._owned_item(actor, item_id)

        changes = {}
        if name is not None:
            changes['name'] = self._clean_name(name)
        if price is not None:
            changes['price'] = self._clean_price(price)
        if currency is not None:
            changes['currency'] = self._clean_currency(currency)
        if available is not None:
            changes['available'] = available

        if not changes:
            return item

        updated = item.model_copy(update=changes)
        await self.store.save_item(updated)
        logger.info(f"Item {item_id} updated by {actor.party_id}: {', '.join(sorted(changes))}")
        return updated

    async def delete_item(self, actor: Party, item_id: str) -> None:
        """
        Withdraw an item from the catalog.

        Raises:
            ItemNotFound: If the item does not exist
            Unauthorized: If the actor did not list the item
        """
        await self._owned_item(actor, item_id)

        if not await self.store.delete_item(item_id):
            raise ItemNotFound(f"Item not found: {item_id}")
        logger.info(f"Item {item_id} deleted by {actor.party_id}")

    async def _owned_item(self, actor: Party, item_id: str) -> Item:
        item = await self.get_item(item_id)
        if item.designer_id != actor.party_id:
            logger.warning(f"Rejected: {actor.party_id} tried to modify item {item_id}")
            raise Unauthorized("Only the designer who listed an item can change it")
        return item

    def _clean_name(self, name: str) -> str:
        cleaned = sanitize_input(name or '', 255)
        if not cleaned:
            raise ValidationError("Item name is required")
        return cleaned

    def _clean_price(self, price: Any) -> Decimal:
        is_valid, value, error = parse_amount(price)
        if not is_valid:
            raise ValidationError(error)
        if value <= 0:
            raise ValidationError("Price must be positive")
        if value > self.config.max_order_amount:
            raise ValidationError(f"Price exceeds maximum limit of {self.config.max_order_amount}")
        return value

    def _clean_currency(self, currency: str) -> str:
        code = (currency or '').strip().upper()
        if code not in self.config.supported_currencies:
            raise ValidationError(
                f"Unsupported currency '{code}'. "
                f"Supported: {', '.join(self.config.supported_currencies)}"
            )
        return code
