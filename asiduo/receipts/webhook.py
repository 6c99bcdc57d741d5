"""HTTP intake: WhatsApp Cloud API webhook and a direct receipt endpoint.

Image handlers only validate and enqueue; processing happens on the queue sweep.
Text messages get an immediate reply: a points summary or a help text.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import sqlite3
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .messages import HELP, POINTS_UNAVAILABLE, RECEIVED, format_points_summary, is_points_request
from .whatsapp import normalize_phone

logger = logging.getLogger(__name__)


def verify_signature(app_secret: str, payload: bytes, signature: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header (``sha256=<hex>``)."""
    if not signature:
        return False
    _, _, sig = signature.partition("=") if "=" in signature else ("", "", signature)
    expected = hmac.new(app_secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(sig, expected)


def image_messages(body: dict[str, Any]) -> list[dict[str, str]]:
    """Flatten a webhook body into ``{customer_ref, customer_name, image_ref}`` dicts.

    Non-image messages are skipped.
    """
    found: list[dict[str, str]] = []
    for entry in body.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            names = {
                c.get("wa_id"): c.get("profile", {}).get("name", "")
                for c in value.get("contacts", [])
            }
            for message in value.get("messages", []):
                if message.get("type") != "image" or "id" not in message.get("image", {}):
                    logger.debug("Mensaje ignorado de tipo %s", message.get("type"))
                    continue
                sender = message.get("from", "")
                found.append({
                    "customer_ref": sender,
                    "customer_name": names.get(sender) or "Cliente",
                    "image_ref": f"whatsapp:{message['image']['id']}",
                })
    return found


def text_messages(body: dict[str, Any]) -> list[dict[str, str]]:
    """Flatten a webhook body into ``{customer_ref, text}`` dicts for text messages."""
    found: list[dict[str, str]] = []
    for entry in body.get("entry", []):
        for change in entry.get("changes", []):
            for message in change.get("value", {}).get("messages", []):
                if message.get("type") != "text":
                    continue
                found.append({
                    "customer_ref": message.get("from", ""),
                    "text": message.get("text", {}).get("body", ""),
                })
    return found


def points_reply(stores, customer_ref: str, card_template: str) -> str:
    """Summarize a customer's purchases and program standing per merchant."""
    customer_id = normalize_phone(customer_ref)
    try:
        customer = stores.customers.get_customer(customer_id)
        merchant_names: dict[str, str] = {}
        progress = {}
        program_names: dict[str, str] = {}
        for slug in customer.summaries if customer else {}:
            merchant = stores.merchants.get_merchant(slug)
            merchant_names[slug] = merchant.name if merchant else slug
            progress[slug] = stores.loyalty.list_progress(customer_id, slug)
            program_names.update(
                {p.id: p.name for p in stores.loyalty.list_programs(slug) if p.name}
            )
    except sqlite3.Error:
        logger.exception("No se pudo leer los puntos de %s", customer_id)
        return POINTS_UNAVAILABLE
    return format_points_summary(
        customer, merchant_names, progress, program_names, card_template
    )


class ReceiptSubmission(BaseModel):
    customer_ref: str
    customer_name: Optional[str] = None
    image_ref: Optional[str] = None
    image_b64: Optional[str] = None


def create_app(config, coordinator, stores=None) -> FastAPI:
    """Build the intake app around a DeliveryCoordinator.

    ``stores`` backs the ``puntos`` text command; without it that command
    answers that the information is unavailable.
    """
    app = FastAPI(title="Asiduo Receipts", version="0.1.0")
    wa = config.whatsapp

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/webhook", response_class=PlainTextResponse)
    async def verify_webhook(
        mode: Optional[str] = Query(None, alias="hub.mode"),
        token: Optional[str] = Query(None, alias="hub.verify_token"),
        challenge: str = Query("", alias="hub.challenge"),
    ) -> str:
        if mode == "subscribe" and wa.verify_token and token == wa.verify_token:
            logger.info("Webhook verificado")
            return challenge
        raise HTTPException(status_code=403, detail="Verificación fallida")

    @app.post("/webhook")
    async def receive_webhook(
        request: Request,
        x_hub_signature_256: Optional[str] = Header(None),
    ) -> dict:
        payload = await request.body()
        if wa.app_secret and not verify_signature(wa.app_secret, payload, x_hub_signature_256):
            logger.warning("Firma de webhook inválida")
            raise HTTPException(status_code=401, detail="Firma inválida")

        body = await request.json()
        queued = []
        for submission in image_messages(body):
            try:
                item = coordinator.enqueue(submission)
            except ValueError as exc:
                logger.warning("Mensaje de imagen descartado: %s", exc)
                continue
            queued.append(item.id)
            if config.webhook.acknowledge:
                await coordinator.pipeline.notify(submission["customer_ref"], RECEIVED)

        for message in text_messages(body):
            if not message["customer_ref"]:
                logger.warning("Mensaje de texto sin remitente descartado")
                continue
            if not is_points_request(message["text"]):
                reply = HELP
            elif stores is None:
                reply = POINTS_UNAVAILABLE
            else:
                reply = points_reply(stores, message["customer_ref"], config.card.url_template)
            await coordinator.pipeline.notify(message["customer_ref"], reply)
        return {"status": "received", "queued": queued}

    @app.post("/receipts", status_code=202)
    async def submit_receipt(submission: ReceiptSubmission) -> dict:
        try:
            item = coordinator.enqueue(submission.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return {"status": "queued", "id": item.id}

    return app
