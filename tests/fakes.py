"""Fakes and request builders shared by the test modules."""
import itertools
from datetime import datetime
from typing import Optional

from backend.responder import Responder, ResponderResult
from channels.base import DeliveryClient
from ingestion.turns import Turn
from models.schemas import (
    ConversationRef, DeliveryReceipt, IngestRequest, MessageKind, MessagePayload,
    OutboundPayload,
)
from utils.clock import ManualClock

TENANT = "shop-1"

_ids = itertools.count(1)

def make_request(conversation_id: str = "conv-1", customer_id: str = "5215550001",
                 text: str = "hola", provider_message_id: str = None,
                 tenant_id: str = TENANT, **payload) -> IngestRequest:
    return IngestRequest(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        customer_id=customer_id,
        provider_message_id=provider_message_id or f"wamid.{next(_ids)}",
        sender_address=customer_id,
        payload=MessagePayload(text=text, **payload),
    )


class SentMessage:
    def __init__(self, key: str, conversation: ConversationRef,
                 payload: OutboundPayload, at: datetime):
        self.key = key
        self.conversation = conversation
        self.payload = payload
        self.at = at

    def __repr__(self):
        return f"SentMessage({self.key!r}, {self.payload.kind.value}, {self.payload.text or self.payload.media_url!r})"

class RecordingDelivery(DeliveryClient):
    """Records every payload with the fake clock's time; failures are scripted."""

    channel = "test"

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.sent: list[SentMessage] = []
        self.calls = 0
        self.failures: list[BaseException] = []   # raised, in order, before sending

    async def send(self, conversation, payloads, idempotency_key) -> DeliveryReceipt:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        now = self.clock.now()
        for payload in payloads:
            self.sent.append(SentMessage(idempotency_key, conversation, payload, now))
        return DeliveryReceipt(
            idempotency_key=idempotency_key,
            conversation_id=conversation.conversation_id,
            provider_message_ids=[f"out.{len(self.sent) + i}" for i in range(len(payloads))],
            delivered_at=now,
        )

    @property
    def texts(self) -> list[str]:
        return [s.payload.text or s.payload.media_url for s in self.sent]

class RecordingResponder(Responder):

    def __init__(self):
        self.turns: list[Turn] = []
        self.failures: list[BaseException] = []

    async def respond(self, turn: Turn) -> ResponderResult:
        if self.failures:
            raise self.failures.pop(0)
        self.turns.append(turn)
        return ResponderResult(group_id=turn.group_id)


class SimulatedCrash(BaseException):
    """Stands in for the process dying; nothing in the pipeline catches it."""

def image_request(conversation_id: str = "conv-1", media_url: Optional[str] = None,
                  **kwargs) -> IngestRequest:
    return make_request(conversation_id, text="", kind=MessageKind.IMAGE,
                        media_url=media_url, media_ready=media_url is not None, **kwargs)
