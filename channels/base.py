"""
Delivery — the outbound seam shared by the responder path and flow executor.

Provides:
- ChannelError: structured error hierarchy (retryable vs permanent)
- DeliveryClient: abstract "send these payloads to this conversation"
- IdempotentDelivery: store-backed ledger so a retried or resumed send
  with the same idempotency key is never delivered twice
- LoggingDeliveryClient: mock client used when no channel is configured
"""
from __future__ import annotations

import abc
import uuid
import structlog

from database.store_base import BasePipelineStore
from models.schemas import ConversationRef, DeliveryReceipt, OutboundPayload
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransientDeliveryError(ChannelError):
    """Provider unavailable, rate limited or timed out. Safe to retry."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


class PermanentDeliveryError(ChannelError):
    """Rejected payload, invalid recipient, revoked credentials."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  DELIVERY CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryClient(abc.ABC):
    """Sends one logical message (one or more payloads) to a conversation."""

    channel: str = ""

    @abc.abstractmethod
    async def send(self, conversation: ConversationRef, payloads: list[OutboundPayload],
                   idempotency_key: str) -> DeliveryReceipt:
        """Deliver payloads in order. Raises ChannelError subclasses on failure."""

    async def close(self) -> None:
        pass


class IdempotentDelivery(DeliveryClient):
    """
    Wraps a client with the delivery ledger. A key that is already in the
    ledger returns the stored receipt (replayed=True) without sending.

    A crash between the provider accepting a message and the ledger write
    can still resend that one message on retry.
    """

    def __init__(self, inner: DeliveryClient, store: BasePipelineStore):
        self.inner = inner
        self.store = store
        self.channel = inner.channel

    async def send(self, conversation: ConversationRef, payloads: list[OutboundPayload],
                   idempotency_key: str) -> DeliveryReceipt:
        existing = await self.store.get_delivery(idempotency_key)
        if existing:
            logger.info("delivery_replayed", idempotency_key=idempotency_key,
                        conversation_id=conversation.conversation_id)
            return existing.model_copy(update={"replayed": True})

        receipt = await self.inner.send(conversation, payloads, idempotency_key)
        await self.store.record_delivery(receipt)
        return receipt

    async def close(self) -> None:
        await self.inner.close()


class LoggingDeliveryClient(DeliveryClient):
    """Mock client: logs every payload and returns fake provider ids."""

    channel = "log"

    def __init__(self, clock: Clock = None):
        self.clock = clock or system_clock()
        self.sent: list[tuple[str, OutboundPayload]] = []

    async def send(self, conversation: ConversationRef, payloads: list[OutboundPayload],
                   idempotency_key: str) -> DeliveryReceipt:
        ids = []
        for payload in payloads:
            msg_id = f"mock.{uuid.uuid4().hex[:20]}"
            self.sent.append((conversation.conversation_id, payload))
            ids.append(msg_id)
            logger.info("mock_delivery_sent", conversation_id=conversation.conversation_id,
                        kind=payload.kind.value, idempotency_key=idempotency_key, msg_id=msg_id)
        return DeliveryReceipt(
            idempotency_key=idempotency_key,
            conversation_id=conversation.conversation_id,
            provider_message_ids=ids,
            delivered_at=self.clock.now(),
        )


def describe_error(error: BaseException) -> str:
    """Short error text for persistence; never empty."""
    text = str(error).strip()
    return text or type(error).__name__
