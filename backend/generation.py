"""
Generation — the capability behind ai_function flow steps.

The executor hands over the step's instruction, its opaque config and the
recent conversation; the generator answers with zero or more outbound
payloads, which the executor delivers under the step's idempotency key.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import PermanentDeliveryError, TransientDeliveryError
from config.settings import ResponderConfig, get_settings
from ingestion.turns import message_content
from models.schemas import InboundMessage, MessageKind, OutboundPayload

logger = structlog.get_logger()


class GenerationRequest(BaseModel):
    execution_id: str
    step_index: int
    tenant_id: str
    customer_id: str
    conversation_id: str
    instruction: str
    config: dict[str, Any] = {}
    history: list[InboundMessage] = []


class GenerationClient(abc.ABC):

    @abc.abstractmethod
    async def generate(self, request: GenerationRequest) -> list[OutboundPayload]:
        ...

    async def close(self) -> None:
        pass


def _payloads_from(body: Any) -> list[OutboundPayload]:
    if isinstance(body, str):
        return [OutboundPayload(text=body.strip())] if body.strip() else []
    if not isinstance(body, dict):
        return []
    if isinstance(body.get("messages"), list):
        payloads = []
        for item in body["messages"]:
            if isinstance(item, str):
                payloads.extend(_payloads_from(item))
                continue
            kind = MessageKind(item.get("type", "text"))
            payloads.append(OutboundPayload(
                kind=kind, text=item.get("text", ""),
                media_url=item.get("media_url"), caption=item.get("caption", ""),
            ))
        return payloads
    for key in ("text", "output", "reply"):
        if isinstance(body.get(key), str):
            return _payloads_from(body[key])
    return []


class WebhookGenerationClient(GenerationClient):

    def __init__(self, config: ResponderConfig = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().responder
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
        retry=retry_if_exception_type(TransientDeliveryError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(self.config.generation_url, json=payload)
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"generation transport error: {e}", "generation") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"generation {response.status_code}", "generation")
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"generation {response.status_code}: {response.text[:200]}", "generation"
            )
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    async def generate(self, request: GenerationRequest) -> list[OutboundPayload]:
        body = await self._post({
            "execution_id": request.execution_id,
            "step_index": request.step_index,
            "tenant_id": request.tenant_id,
            "customer_id": request.customer_id,
            "conversation_id": request.conversation_id,
            "ai_prompt": request.instruction,
            "ai_config": request.config,
            "conversation_history": [
                {"sequence": m.sequence, "content": message_content(m),
                 "received_at": m.received_at.isoformat()}
                for m in request.history
            ],
        })
        payloads = _payloads_from(body)
        logger.info("generation_completed", execution_id=request.execution_id,
                    step_index=request.step_index, messages=len(payloads))
        return payloads

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class MockGenerationClient(GenerationClient):
    """Emits nothing; logs the instruction."""

    def __init__(self):
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> list[OutboundPayload]:
        self.requests.append(request)
        logger.info("mock_generation", execution_id=request.execution_id,
                    step_index=request.step_index, instruction=request.instruction[:80])
        return []


def create_generation_client(config: ResponderConfig = None) -> GenerationClient:
    config = config or get_settings().responder
    if config.generation_url:
        return WebhookGenerationClient(config)
    logger.warning("using_mock_generation", reason="no generation_url configured")
    return MockGenerationClient()
