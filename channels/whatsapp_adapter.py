"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge)
- Inbound: every message in a webhook batch → IngestRequest
  (text, interactive replies, image, audio, video, document, location,
  sticker, quoted-message context)
- Media resolution: media id → download URL, for messages ingested before
  their media is available
- Outbound: text / image / video / audio / document payloads via the
  Graph API, with transient failures retried by tenacity
- Phone number normalization
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryClient, PermanentDeliveryError, TransientDeliveryError
from models.schemas import (
    ConversationRef, DeliveryReceipt, IngestRequest, MessageKind, MessagePayload,
    OutboundPayload, QuotedMessage,
)
from utils.clock import Clock, system_clock

logger = structlog.get_logger()

GRAPH_URL = "https://graph.facebook.com"

_MEDIA_KINDS = {
    "image": MessageKind.IMAGE,
    "audio": MessageKind.AUDIO,
    "video": MessageKind.VIDEO,
    "document": MessageKind.DOCUMENT,
    "sticker": MessageKind.IMAGE,
}

_OUTBOUND_TYPE = {
    MessageKind.IMAGE: "image",
    MessageKind.AUDIO: "audio",
    MessageKind.VIDEO: "video",
    MessageKind.DOCUMENT: "document",
}


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


# ══════════════════════════════════════════════════════════════
#  INBOUND PARSING
# ══════════════════════════════════════════════════════════════

def _parse_message(msg: dict[str, Any]) -> MessagePayload:
    msg_type = msg.get("type", "text")
    payload = MessagePayload()

    if msg_type == "text":
        payload.text = msg.get("text", {}).get("body", "")

    elif msg_type == "interactive":
        interactive = msg.get("interactive", {})
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        payload.text = reply.get("title", "")

    elif msg_type == "button":
        payload.text = msg.get("button", {}).get("text", "")

    elif msg_type in _MEDIA_KINDS:
        media = msg.get(msg_type, {})
        payload.kind = _MEDIA_KINDS[msg_type]
        payload.text = media.get("caption", "") or media.get("filename", "")
        link = media.get("link") or media.get("url")
        payload.media_url = link
        payload.media_ready = bool(link)

    elif msg_type == "location":
        loc = msg.get("location", {})
        payload.text = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"

    else:
        payload.kind = MessageKind.OTHER
        payload.text = f"[{msg_type}]"

    context = msg.get("context") or {}
    if context.get("id"):
        payload.quoted = QuotedMessage(message_id=context["id"])
    return payload


def media_id_of(msg: dict[str, Any]) -> Optional[str]:
    msg_type = msg.get("type", "")
    if msg_type in _MEDIA_KINDS:
        return msg.get(msg_type, {}).get("id")
    return None


def parse_webhook(raw_payload: dict[str, Any], tenant_id: str) -> list[tuple[IngestRequest, Optional[str]]]:
    """
    Flatten a Cloud API webhook into (IngestRequest, media_id) pairs.
    Status-only callbacks (sent / delivered / read) yield nothing.
    """
    parsed = []
    for entry in raw_payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value", {}) or {}
            phone_number_id = value.get("metadata", {}).get("phone_number_id", "")
            for msg in value.get("messages", []) or []:
                sender = normalize_phone(msg.get("from", ""))
                if not sender or not msg.get("id"):
                    continue
                sent_at = None
                if msg.get("timestamp"):
                    sent_at = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)
                request = IngestRequest(
                    tenant_id=tenant_id,
                    conversation_id=f"{phone_number_id}:{sender}" if phone_number_id else sender,
                    customer_id=sender,
                    provider_message_id=msg["id"],
                    sender_address=sender,
                    payload=_parse_message(msg),
                    sent_at=sent_at,
                )
                parsed.append((request, media_id_of(msg)))
    return parsed


# ══════════════════════════════════════════════════════════════
#  CLOUD API CLIENT
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudClient(DeliveryClient):
    """
    WhatsApp Business Cloud API client.

    Payloads of one send go out in order with a short pause between them
    so the customer's phone shows them in that order.
    """

    channel = "whatsapp"

    def __init__(self, credentials: dict[str, Any], clock: Clock = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.phone_number_id: str = credentials.get("phone_number_id", "")
        self.access_token: str = credentials.get("access_token", "")
        self.verify_token: str = credentials.get("verify_token", "")
        self.api_version: str = credentials.get("api_version", "v18.0")
        self.tenant_id: str = credentials.get("tenant_id", "default")
        self.item_pause_seconds: float = float(credentials.get("item_pause_seconds", 0.5))
        self.timeout: float = float(credentials.get("timeout", 30.0))
        self.clock = clock or system_clock()
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{GRAPH_URL}/{self.api_version}",
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            return challenge
        return None

    # ── HTTP ──────────────────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(TransientDeliveryError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"whatsapp transport error: {e}", self.channel) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"whatsapp {response.status_code}: {response.text[:200]}", self.channel
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"whatsapp {response.status_code}: {response.text[:200]}", self.channel
            )
        return response.json()

    def _body(self, to: str, payload: OutboundPayload) -> dict[str, Any]:
        body: dict[str, Any] = {"messaging_product": "whatsapp", "to": to}
        if payload.kind == MessageKind.TEXT:
            body["type"] = "text"
            body["text"] = {"body": payload.text}
            return body

        wa_type = _OUTBOUND_TYPE.get(payload.kind)
        if wa_type is None or not payload.media_url:
            raise PermanentDeliveryError(
                f"cannot send {payload.kind.value} payload without media", self.channel
            )
        media: dict[str, Any] = {"link": payload.media_url}
        if payload.caption and wa_type != "audio":
            media["caption"] = payload.caption
        body["type"] = wa_type
        body[wa_type] = media
        return body

    # ── Send ──────────────────────────────────────────────────

    async def send(self, conversation: ConversationRef, payloads: list[OutboundPayload],
                   idempotency_key: str) -> DeliveryReceipt:
        to = normalize_phone(conversation.address or conversation.customer_id)
        if not to:
            raise PermanentDeliveryError("no WhatsApp number for conversation", self.channel)

        ids = []
        for index, payload in enumerate(payloads):
            if index and self.item_pause_seconds:
                await self.clock.sleep(self.item_pause_seconds)
            result = await self._request(
                "POST", f"/{self.phone_number_id}/messages", json=self._body(to, payload),
            )
            msg_id = (result.get("messages") or [{}])[0].get("id", "")
            ids.append(msg_id)
            logger.info("whatsapp_message_sent", to=to, kind=payload.kind.value,
                        msg_id=msg_id, idempotency_key=idempotency_key)

        return DeliveryReceipt(
            idempotency_key=idempotency_key,
            conversation_id=conversation.conversation_id,
            provider_message_ids=ids,
            delivered_at=self.clock.now(),
        )

    async def resolve_media_url(self, media_id: str) -> Optional[str]:
        """Look up the download URL for an inbound media id."""
        result = await self._request("GET", f"/{media_id}")
        return result.get("url")

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
