"""Messaging gateway: sender interface, phone normalization, and factory."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import ReceiptsConfig

logger = logging.getLogger(__name__)


def normalize_phone(phone: str | None) -> str:
    """Normalize a phone number to E.164, defaulting to Peru (+51).

    ``"987 654 321"`` → ``"+51987654321"``; ``"51987654321"`` →
    ``"+51987654321"``; numbers already starting with ``+`` are kept.
    """
    if not phone:
        return ""
    normalized = re.sub(r"[\s\-().]", "", phone)
    if normalized.startswith("+"):
        return normalized
    if normalized.startswith("51"):
        return "+" + normalized
    if normalized.startswith("9") and len(normalized) == 9:
        return "+51" + normalized
    return "+" + normalized


class MessageSender(ABC):
    """Abstract base for delivering text messages to customers."""

    @abstractmethod
    async def send_message(self, recipient: str, body: str) -> dict:
        """Send a text message. Returns the gateway acknowledgement."""
        ...

    async def download_media(self, media_id: str) -> bytes:
        raise NotImplementedError(f"{type(self).__name__} no descarga archivos multimedia")

    async def aclose(self) -> None:
        return None


class LogSender(MessageSender):
    """Write messages to the log instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_message(self, recipient: str, body: str) -> dict:
        recipient = normalize_phone(recipient)
        self.sent.append((recipient, body))
        logger.info("Mensaje para %s:\n%s", recipient, body)
        return {"logged": True, "to": recipient}


def create_sender(config: ReceiptsConfig) -> MessageSender:
    """Create the WhatsApp client, or a log-only sender when disabled."""
    if not config.whatsapp.enabled:
        return LogSender()

    from .client import WhatsAppClient

    return WhatsAppClient(
        api_token=config.whatsapp.api_token,
        phone_number_id=config.whatsapp.phone_number_id,
        api_version=config.whatsapp.api_version,
        base_url=config.whatsapp.base_url,
        timeout=config.whatsapp.timeout,
    )


__all__ = ["LogSender", "MessageSender", "create_sender", "normalize_phone"]
