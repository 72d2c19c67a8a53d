"""
Responder — hands a grouped turn to the automated agent.

The agent itself is external. WebhookResponder POSTs the turn to the
configured agent webhook and, when the agent answers synchronously with
text, relays that text to the customer through the delivery client.
MockResponder only logs, for development without an agent.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryClient
from config.settings import ResponderConfig, get_settings
from context.tracker import ActivityTracker
from ingestion.turns import Turn
from models.schemas import ConversationRef, OutboundPayload
from utils.clock import Clock, system_clock

logger = structlog.get_logger()

# Acknowledgements some agent platforms return instead of a reply
_PLACEHOLDER_REPLIES = {"ok", "okay", "received", "success", "accepted", "workflow was started"}
_REPLY_KEYS = ("reply", "output", "text", "message", "response", "content")


class ResponderError(Exception):
    """The agent could not take the turn; the group will be retried."""


class ResponderResult(BaseModel):
    group_id: str
    replied: bool = False
    reply_text: str = ""
    skipped: str = ""


def extract_reply(body: Any) -> str:
    """Pull the agent's text out of the shapes agent webhooks commonly return."""
    if isinstance(body, str):
        text = body.strip()
    elif isinstance(body, list):
        return extract_reply(body[0]) if body else ""
    elif isinstance(body, dict):
        text = ""
        for key in _REPLY_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                text = value.strip()
                break
            if isinstance(value, (dict, list)):
                text = extract_reply(value)
                if text:
                    break
    else:
        return ""
    if text.lower().strip(".! ") in _PLACEHOLDER_REPLIES:
        return ""
    return text


class Responder(abc.ABC):

    @abc.abstractmethod
    async def respond(self, turn: Turn) -> ResponderResult:
        """Deliver one turn to the agent. Raises ResponderError on failure."""

    async def close(self) -> None:
        pass


class WebhookResponder(Responder):

    def __init__(self, delivery: DeliveryClient, activity: ActivityTracker,
                 config: ResponderConfig = None, clock: Clock = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().responder
        self.delivery = delivery
        self.activity = activity
        self.clock = clock or system_clock()
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                headers=headers, timeout=self.config.timeout, transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.post(self.config.webhook_url, json=payload)
        response.raise_for_status()
        if not response.content:
            return ""
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    def _turn_payload(self, turn: Turn) -> dict[str, Any]:
        return {
            "group_id": turn.group_id,
            "tenant_id": turn.tenant_id,
            "conversation_id": turn.conversation_id,
            "customer_id": turn.customer_id,
            "message": turn.agent_text,
            "chat_text": turn.chat_text,
            "message_type": turn.kind.value,
            "image_url": turn.image_url,
            "audio_url": turn.audio_url,
            "quoted": turn.quoted.model_dump(mode="json") if turn.quoted else None,
            "message_ids": [m.provider_message_id for m in turn.messages],
        }

    async def respond(self, turn: Turn) -> ResponderResult:
        try:
            body = await self._post(self._turn_payload(turn))
        except httpx.HTTPError as e:
            raise ResponderError(f"agent webhook failed: {e}") from e

        reply = extract_reply(body)
        if not reply:
            logger.info("responder_no_inline_reply", group_id=turn.group_id)
            return ResponderResult(group_id=turn.group_id)

        activity = await self.activity.get(turn.tenant_id, turn.customer_id)
        await self.delivery.send(
            ConversationRef(
                tenant_id=turn.tenant_id, conversation_id=turn.conversation_id,
                customer_id=turn.customer_id, address=activity.address if activity else "",
            ),
            [OutboundPayload(text=reply)],
            idempotency_key=f"turn:{turn.group_id}",
        )
        await self.activity.record_outbound(turn.tenant_id, turn.customer_id, self.clock.now())
        logger.info("responder_replied", group_id=turn.group_id, reply_len=len(reply))
        return ResponderResult(group_id=turn.group_id, replied=True, reply_text=reply)

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class MockResponder(Responder):
    """Logs turns instead of calling an agent."""

    def __init__(self):
        self.turns: list[Turn] = []

    async def respond(self, turn: Turn) -> ResponderResult:
        self.turns.append(turn)
        logger.info("mock_responder_turn", group_id=turn.group_id,
                    conversation_id=turn.conversation_id, messages=len(turn.messages))
        return ResponderResult(group_id=turn.group_id)


def create_responder(delivery: DeliveryClient, activity: ActivityTracker,
                     config: ResponderConfig = None, clock: Clock = None) -> Responder:
    """Factory function to create the appropriate responder."""
    config = config or get_settings().responder
    if config.webhook_url:
        return WebhookResponder(delivery, activity, config, clock)
    logger.warning("using_mock_responder", reason="no agent webhook_url configured")
    return MockResponder()
