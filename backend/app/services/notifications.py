# backend/app/services/notifications.py
"""
Reservation notifications: store owner alerts (Telegram, Discord) and the
customer "request received" e-mail.

``NotificationDispatcher.dispatch`` is fire-and-forget: every channel is
scheduled as its own background task after the reservation is committed.
"""
import asyncio
import smtplib
from email.message import EmailMessage
from typing import Any, Optional

import httpx

from backend.app.core.logging import get_logger
from backend.app.core.settings import Settings, get_settings
from backend.app.services.side_effects import run_in_background

logger = get_logger(__name__)

TELEGRAM_API = "https://api.telegram.org"

EVENT_RESERVATION_CREATED = "reservation.created"
EVENT_REQUEST_RECEIVED = "reservation.request_received"


def format_reservation_summary(payload: dict[str, Any]) -> str:
    lines = [
        f"New reservation {payload.get('reservation_number')}",
        f"Customer: {payload.get('customer_name')} <{payload.get('customer_email')}>",
        f"Period: {payload.get('start_date')} → {payload.get('end_date')}",
    ]
    for item in payload.get("items") or []:
        lines.append(f"  • {item.get('name')} × {item.get('quantity')}")
    lines.append(f"Total: {payload.get('total_amount')} {payload.get('currency', '')}".rstrip())
    if payload.get("delivery_option") == "delivery":
        lines.append(f"Delivery: {payload.get('delivery_address') or '-'}")
    return "\n".join(lines)


class TelegramChannel:
    name = "telegram"
    events = (EVENT_RESERVATION_CREATED,)

    def __init__(self, bot_token: Optional[str]):
        self.bot_token = bot_token

    async def send(self, event_type: str, payload: dict[str, Any]) -> bool:
        return await self._send_message(payload.get("store_chat_id"), format_reservation_summary(payload))

    async def _send_message(self, chat_id, text: str) -> bool:
        """Send a Telegram message. Returns True if sent successfully."""
        if not chat_id:
            logger.debug("Store has no Telegram chat, skip notification")
            return False
        if not self.bot_token:
            logger.warning("BOT_TOKEN not set, skip Telegram notification")
            return False
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.post(url, json={"chat_id": chat_id, "text": text})
        if r.is_success:
            return True
        logger.warning(
            "Telegram sendMessage failed",
            chat_id=chat_id,
            status=r.status_code,
            body=r.text[:500],
        )
        return False


class DiscordChannel:
    name = "discord"
    events = (EVENT_RESERVATION_CREATED,)

    async def send(self, event_type: str, payload: dict[str, Any]) -> bool:
        webhook_url = payload.get("store_discord_webhook_url")
        if not webhook_url:
            return False
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.post(webhook_url, json={"content": format_reservation_summary(payload)[:2000]})
            r.raise_for_status()
        return True


class EmailChannel:
    name = "email"
    events = (EVENT_REQUEST_RECEIVED,)

    def __init__(self, settings: Settings):
        self.settings = settings

    def _build_message(self, payload: dict[str, Any]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.SMTP_FROM
        msg["To"] = payload["customer_email"]
        msg["Subject"] = f"{payload.get('store_name')}: reservation {payload.get('reservation_number')} received"
        msg.set_content(
            f"Hello {payload.get('customer_name')},\n\n"
            f"We received your reservation request {payload.get('reservation_number')}.\n"
            f"The store will confirm it shortly.\n\n"
            + format_reservation_summary(payload)
        )
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=10) as server:
            if self.settings.SMTP_USE_TLS:
                server.starttls()
            if self.settings.SMTP_USERNAME and self.settings.SMTP_PASSWORD:
                server.login(self.settings.SMTP_USERNAME, self.settings.SMTP_PASSWORD)
            server.send_message(msg)

    async def send(self, event_type: str, payload: dict[str, Any]) -> bool:
        if not payload.get("customer_email"):
            return False
        await asyncio.to_thread(self._send_sync, self._build_message(payload))
        return True


class NotificationDispatcher:
    def __init__(self, channels: Optional[list] = None):
        if channels is None:
            settings = get_settings()
            channels = [TelegramChannel(settings.BOT_TOKEN), DiscordChannel()]
            if settings.SMTP_HOST:
                channels.append(EmailChannel(settings))
        self.channels = channels

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> list[asyncio.Task]:
        """Schedule every channel subscribed to ``event_type``; never raises on channel failure."""
        tasks = []
        for channel in self.channels:
            if event_type not in channel.events:
                continue
            tasks.append(run_in_background(channel.send(event_type, payload), channel.name))
        logger.debug("Notifications scheduled", event_type=event_type, channels=len(tasks))
        return tasks
