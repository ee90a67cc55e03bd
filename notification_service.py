"""
Notification Service Module for the fashion marketplace escrow lifecycle.

Observes committed transitions and tells the right parties about them.
Delivery is best-effort and never blocks or undoes a transition: the
emitter's listener only enqueues, and a background worker fans each
notification out to every configured channel.

Channels:
    - InAppNotificationChannel: stores Notification rows (notification bell)
    - TelegramNotificationChannel: HTML messages through a Telegram bot
    - WebhookNotificationChannel: JSON POST to an HTTP endpoint

Dependencies:
    - python-telegram-bot: Telegram delivery
    - httpx: Webhook delivery
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx
from telegram import Bot
from telegram.constants import ParseMode

from models import (
    PAYLOAD_MODELS,
    Notification,
    NotificationType,
    Order,
    Party,
    TransitionNotice,
)
from order_store import OrderStore
from utils import format_currency, generate_reference

logger = logging.getLogger(__name__)


# ==================== RECIPIENTS & PAYLOADS ====================

def _designer(order: Order, actor: Party) -> List[str]:
    return [order.designer_id]


def _customer(order: Order, actor: Party) -> List[str]:
    return [order.customer_id]


def _both(order: Order, actor: Party) -> List[str]:
    return [order.customer_id, order.designer_id]


def _counterparty(order: Order, actor: Party) -> List[str]:
    if actor.party_id == order.designer_id:
        return [order.customer_id]
    return [order.designer_id]


RECIPIENTS: Dict[NotificationType, Callable[[Order, Party], List[str]]] = {
    NotificationType.ORDER_PLACED: _designer,
    NotificationType.ORDER_PAID: _designer,
    NotificationType.ORDER_SHIPPED: _customer,
    NotificationType.ORDER_DELIVERED: _designer,
    NotificationType.ORDER_CANCELLED: _both,
    NotificationType.DISPUTE_OPENED: _counterparty,
    NotificationType.DISPUTE_RESOLVED: _both,
}


def recipients_for(notice: TransitionNotice) -> List[str]:
    """Return the party ids that should hear about a transition."""
    return RECIPIENTS[notice.event_type](notice.order, notice.actor)


def build_payload(notice: TransitionNotice) -> Any:
    """
    Build the typed payload for a transition.

    Args:
        notice: Committed transition

    Returns:
        The payload model matching notice.event_type

    Raises:
        pydantic.ValidationError: If the notice details do not fit the schema
    """
    order = notice.order
    fields: Dict[str, Any] = {
        'order_id': order.order_id,
        'item_id': order.item_id,
        'amount': order.amount,
        'currency': order.currency,
    }
    if notice.event_type == NotificationType.ORDER_PLACED:
        fields.update(
            customer_id=order.customer_id,
            delivery_address=order.delivery_address,
            special_instructions=order.special_instructions,
        )
    fields.update(notice.details)
    return PAYLOAD_MODELS[notice.event_type](**fields)


# ==================== CHANNELS ====================

class NotificationChannel:
    """Destination for notifications."""

    name = 'channel'

    async def send(self, recipient_id: str, event_type: NotificationType, payload: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InAppNotificationChannel(NotificationChannel):
    """Persists notifications so clients can list and mark them read."""

    name = 'in_app'

    def __init__(self, store: OrderStore):
        self.store = store

    async def send(self, recipient_id: str, event_type: NotificationType, payload: Any) -> None:
        await self.store.save_notification(Notification(
            notification_id=generate_reference('NTF'),
            recipient_id=recipient_id,
            event_type=event_type,
            payload=payload,
        ))


MESSAGE_TITLES = {
    NotificationType.ORDER_PLACED: "🛍️ <b>New Order</b>",
    NotificationType.ORDER_PAID: "💰 <b>Payment Secured in Escrow</b>",
    NotificationType.ORDER_SHIPPED: "📦 <b>Your Order Has Shipped</b>",
    NotificationType.ORDER_DELIVERED: "✅ <b>Delivery Confirmed - Funds Released</b>",
    NotificationType.ORDER_CANCELLED: "❌ <b>Order Cancelled</b>",
    NotificationType.DISPUTE_OPENED: "⚠️ <b>Dispute Opened</b>",
    NotificationType.DISPUTE_RESOLVED: "⚖️ <b>Dispute Resolved</b>",
}


def format_message(event_type: NotificationType, payload: Any) -> str:
    """
    Render a notification as a Telegram HTML message.

    Example:
        >>> print(format_message(NotificationType.ORDER_SHIPPED, payload))
        📦 <b>Your Order Has Shipped</b>
        ...
    """
    lines = [
        MESSAGE_TITLES[event_type],
        "",
        f"<b>Order ID:</b> <code>{payload.order_id}</code>",
        f"<b>Amount:</b> {format_currency(payload.amount, payload.currency)}",
    ]

    if event_type == NotificationType.ORDER_PLACED:
        if payload.delivery_address:
            lines.append(f"<b>Deliver to:</b> {payload.delivery_address}")
        lines += ["", "Wait for the customer's payment before preparing the item."]
    elif event_type == NotificationType.ORDER_PAID:
        lines.append(f"<b>Payment Ref:</b> <code>{payload.transaction_reference}</code>")
        lines += ["", "Funds are locked in escrow. Please ship the item."]
    elif event_type == NotificationType.ORDER_SHIPPED:
        if payload.carrier:
            lines.append(f"<b>Carrier:</b> {payload.carrier}")
        if payload.tracking_reference:
            lines.append(f"<b>Tracking:</b> <code>{payload.tracking_reference}</code>")
        lines += ["", "Confirm delivery once it arrives, or open a dispute if something is wrong."]
    elif event_type == NotificationType.ORDER_DELIVERED:
        if payload.rating:
            lines.append(f"<b>Rating:</b> {'⭐' * payload.rating}")
        if payload.automatic:
            lines += ["", "The dispute window has passed and funds were released automatically."]
        else:
            lines += ["", "The customer confirmed delivery. Funds have been released to you."]
    elif event_type == NotificationType.ORDER_CANCELLED:
        if payload.reason:
            lines.append(f"<b>Reason:</b> {payload.reason}")
        if payload.refunded:
            lines += ["", "The escrowed funds have been refunded to the customer."]
    elif event_type == NotificationType.DISPUTE_OPENED:
        lines.append(f"<b>Dispute ID:</b> <code>{payload.dispute_id}</code>")
        lines.append(f"<b>Reason:</b> {payload.reason.value.replace('_', ' ').title()}")
        lines.append(f"<b>Details:</b> {payload.description}")
        lines += ["", "Funds are frozen until an admin resolves the dispute."]
    elif event_type == NotificationType.DISPUTE_RESOLVED:
        lines.append(f"<b>Dispute ID:</b> <code>{payload.dispute_id}</code>")
        if payload.outcome.value == 'release':
            lines.append("<b>Decision:</b> Funds released to the designer")
        else:
            lines.append("<b>Decision:</b> Funds refunded to the customer")
        if payload.resolution_notes:
            lines.append(f"<b>Notes:</b> {payload.resolution_notes}")

    return "\n".join(lines)


ChatId = Union[int, str]


class TelegramNotificationChannel(NotificationChannel):
    """
    Sends notifications as Telegram messages.

    Party ids are mapped to chat ids through chat_id_for; parties without a
    chat are skipped. Dispute openings are copied to the admin chat.
    """

    name = 'telegram'

    def __init__(
        self,
        bot: Bot,
        admin_chat_id: Optional[ChatId] = None,
        chat_id_for: Optional[Callable[[str], Optional[ChatId]]] = None
    ):
        self.bot = bot
        self.admin_chat_id = admin_chat_id
        self.chat_id_for = chat_id_for or (lambda party_id: None)

    async def send(self, recipient_id: str, event_type: NotificationType, payload: Any) -> None:
        message = format_message(event_type, payload)

        chat_id = self.chat_id_for(recipient_id)
        if chat_id is not None:
            await self.bot.send_message(chat_id=chat_id, text=message, parse_mode=ParseMode.HTML)
            logger.info(f"Telegram {event_type.value} sent to {recipient_id}")
        else:
            logger.debug(f"No Telegram chat for {recipient_id}, skipping")

        if event_type == NotificationType.DISPUTE_OPENED and self.admin_chat_id:
            await self.bot.send_message(
                chat_id=self.admin_chat_id,
                text=f"🚨 <b>Admin Review Needed</b>\n\n{message}",
                parse_mode=ParseMode.HTML
            )


class WebhookNotificationChannel(NotificationChannel):
    """POSTs each notification as JSON to a webhook URL."""

    name = 'webhook'

    def __init__(self, url: str, timeout: float = 10, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, recipient_id: str, event_type: NotificationType, payload: Any) -> None:
        response = await self.client.post(self.url, json={
            'recipient_id': recipient_id,
            'event_type': event_type.value,
            'payload': payload.model_dump(mode='json'),
        })
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# ==================== EMITTER ====================

QueueItem = Tuple[str, NotificationType, Any]


class NotificationEmitter:
    """
    Turns committed transitions into notifications.

    on_transition() is registered as an EscrowService listener. It builds
    the payload, works out the recipients and enqueues one item per
    recipient without awaiting anything. A worker task delivers queued
    items to every channel; a failing channel is logged and the others
    still run.

    Attributes:
        channels: Channels every notification is delivered to
        stats: Counters of queued, delivered, failed and dropped notifications
    """

    def __init__(self, channels: Sequence[NotificationChannel], max_queue: int = 1000):
        self.channels = list(channels)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._worker: Optional[asyncio.Task] = None
        self.stats = {'queued': 0, 'delivered': 0, 'failed': 0, 'dropped': 0}

    def on_transition(self, notice: TransitionNotice) -> None:
        """Enqueue notifications for a committed transition."""
        payload = build_payload(notice)

        for recipient_id in recipients_for(notice):
            try:
                self._queue.put_nowait((recipient_id, notice.event_type, payload))
                self.stats['queued'] += 1
            except asyncio.QueueFull:
                self.stats['dropped'] += 1
                logger.warning(
                    f"Notification queue full, dropped {notice.event_type.value} "
                    f"for {recipient_id} on {notice.order.order_id}"
                )

    async def start(self) -> None:
        """Start the delivery worker."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
            logger.info(f"Notification worker started with {len(self.channels)} channels")

    async def stop(self) -> None:
        """Deliver what is queued, stop the worker and close the channels."""
        if self._worker is not None:
            await self.drain()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        for channel in self.channels:
            await channel.close()
        logger.info("Notification worker stopped")

    async def drain(self) -> None:
        """Wait until every queued notification has been handed to the channels."""
        if self._worker is None:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                try:
                    await self._deliver(item)
                finally:
                    self._queue.task_done()
        else:
            await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(item)
            finally:
                self._queue.task_done()

    async def _deliver(self, item: QueueItem) -> None:
        recipient_id, event_type, payload = item

        for channel in self.channels:
            try:
                await channel.send(recipient_id, event_type, payload)
                self.stats['delivered'] += 1
            except Exception as e:
                self.stats['failed'] += 1
                logger.error(
                    f"{channel.name} channel failed to deliver {event_type.value} "
                    f"to {recipient_id} for {payload.order_id}: {e}"
                )
