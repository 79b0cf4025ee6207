"""Lockout notifications.

Each notifier exposes ``notify(address, subject, body)`` and raises
``NotifyFailure`` when delivery fails. Callers run it detached and swallow
the error, so a broken mail relay never turns a login into a hung request.
"""
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional, Protocol

import aiosmtplib
import httpx

from loginshield.core.config import ShieldSettings
from loginshield.core.errors import NotifyFailure

logger = logging.getLogger(__name__)

_TELEGRAM_API = "https://api.telegram.org"


class Notifier(Protocol):
    async def notify(self, address: str, subject: str, body: str) -> None: ...


class NullNotifier:
    """Drops notifications (notify channel "none")."""

    async def notify(self, address: str, subject: str, body: str) -> None:
        logger.debug("Notification dropped (no channel): %s", subject)


class EmailNotifier:
    """Sends plain-text mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: str = "loginshield@localhost",
        timeout: float = 15,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def build_message(self, address: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = address
        msg.set_content(body)
        return msg

    async def notify(self, address: str, subject: str, body: str) -> None:
        msg = self.build_message(address, subject, body)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise NotifyFailure(f"SMTP send to {address} failed: {e}") from e
        except OSError as e:
            raise NotifyFailure(f"SMTP relay {self.host}:{self.port} unreachable: {e}") from e
        logger.info("Lockout email sent to %s", address)


class TelegramNotifier:
    """Sends messages via the Telegram Bot API; ``address`` is the chat id."""

    def __init__(self, bot_token: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.timeout = timeout

    async def notify(self, address: str, subject: str, body: str) -> None:
        url = f"{_TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": address,
            "text": f"<b>{_esc(subject)}</b>\n\n{_esc(body)}",
            "parse_mode": "HTML",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise NotifyFailure(f"Telegram request failed: {e}") from e
        if resp.status_code != 200:
            raise NotifyFailure(f"Telegram API error {resp.status_code}: {resp.text[:200]}")
        logger.debug("Telegram notification sent successfully")


def _esc(text: str) -> str:
    """Escape HTML special characters for Telegram."""
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def _now_str() -> str:
    """Get current UTC time as a formatted string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def lockout_message(site_name: str, attempts: int, lockout_minutes: int) -> tuple[str, str]:
    """Subject and body for the lockout notification. Never includes the address."""
    subject = f"[{site_name}] Login Shield: IP Locked Out"
    body = (
        f"An IP address has been locked out after {attempts} failed login attempts. "
        f"Lockout duration: {lockout_minutes} minutes.\n"
        f"Time: {_now_str()}"
    )
    return subject, body


def build_notifier(settings: ShieldSettings) -> Notifier:
    """Pick the notifier for the configured channel."""
    if settings.notify_channel == "email":
        if settings.smtp_host:
            return EmailNotifier(
                host=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                sender=settings.smtp_from,
            )
        logger.warning("SMTP_HOST not set, lockout emails disabled")
    elif settings.notify_channel == "telegram":
        if settings.telegram_bot_token:
            return TelegramNotifier(settings.telegram_bot_token)
        logger.warning("BOT_TOKEN not set, Telegram lockout notifications disabled")
    return NullNotifier()
