"""WhatsApp Cloud API client."""

from __future__ import annotations

import logging

import httpx

from ..errors import CollaboratorError
from . import MessageSender, normalize_phone

logger = logging.getLogger(__name__)


class WhatsAppClient(MessageSender):
    """Send text messages and download media through the Graph API."""

    def __init__(
        self,
        api_token: str = "",
        phone_number_id: str = "",
        api_version: str = "v18.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = api_token
        self._phone_number_id = phone_number_id
        self._api_url = f"{base_url.rstrip('/')}/{api_version}"
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise ValueError(
                "No se configuró el token de WhatsApp. "
                "Revisa el archivo de configuración o la variable WHATSAPP_API_TOKEN."
            )
        return {"Authorization": f"Bearer {self._token}"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_message(self, recipient: str, body: str) -> dict:
        """Send a text message.

        Args:
            recipient: Phone number; normalized to E.164 before sending.
            body: Message text.

        Returns:
            The API response JSON.

        Raises:
            ValueError: Missing recipient, body, token or phone number id.
            CollaboratorError: The API rejected the request or was unreachable.
        """
        if not recipient:
            raise ValueError("Se requiere el número del destinatario")
        if not body:
            raise ValueError("Se requiere el texto del mensaje")
        if not self._phone_number_id:
            raise ValueError(
                "No se configuró el ID de número de WhatsApp (WHATSAPP_PHONE_NUMBER_ID)."
            )

        to = normalize_phone(recipient)
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": True, "body": body},
        }
        url = f"{self._api_url}/{self._phone_number_id}/messages"
        try:
            resp = await self._get_client().post(url, headers=self._headers(), json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CollaboratorError(
                f"WhatsApp respondió {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"WhatsApp no disponible: {exc}") from exc

        logger.info("Mensaje enviado a %s", to)
        return resp.json()

    async def download_media(self, media_id: str) -> bytes:
        """Resolve a media id to its URL and download the bytes."""
        client = self._get_client()
        headers = self._headers()
        try:
            meta = await client.get(f"{self._api_url}/{media_id}", headers=headers)
            meta.raise_for_status()
            media_url = meta.json().get("url")
            if not media_url:
                raise CollaboratorError(f"Archivo multimedia sin URL: {media_id}")
            resp = await client.get(media_url, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"No se pudo descargar {media_id}: {exc}") from exc
        return resp.content
