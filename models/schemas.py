"""
Core data models for the conversation pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# Repeating inactivity / no-response flows never fire more often than this,
# whatever threshold the flow author configured.
REPEAT_COOLDOWN_FLOOR = timedelta(hours=24)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"


class GroupState(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class TriggerType(str, Enum):
    FIRST_MESSAGE = "first_message"
    INACTIVITY = "inactivity"
    NO_RESPONSE = "no_response"
    MANUAL = "manual"


# ──────────────────────────────────────────────────────────────
#  Tenant — per-tenant knobs re-read on every sweep
# ──────────────────────────────────────────────────────────────

class TenantSettings(BaseModel):
    tenant_id: str
    buffer_seconds: Optional[int] = Field(default=None, ge=0)   # None → config default
    disable_agent_on_manual_reply: bool = False
    responder_enabled: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Inbound messages and groups
# ──────────────────────────────────────────────────────────────

class QuotedMessage(BaseModel):
    """Reference to the message a customer replied to."""
    message_id: str
    kind: MessageKind = MessageKind.TEXT
    content: str = ""


class MessagePayload(BaseModel):
    kind: MessageKind = MessageKind.TEXT
    text: str = ""                              # body or media caption
    media_url: Optional[str] = None
    media_ready: bool = True                    # False while the media URL is still resolving
    quoted: Optional[QuotedMessage] = None


class IngestRequest(BaseModel):
    """What a channel webhook hands to the grouping buffer."""
    tenant_id: str
    conversation_id: str
    customer_id: str
    provider_message_id: str                    # dedupe key within a conversation
    sender_address: str = ""                    # phone number to reply to
    payload: MessagePayload = Field(default_factory=MessagePayload)
    sent_at: Optional[datetime] = None          # provider timestamp, informational


class InboundMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    conversation_id: str
    customer_id: str
    provider_message_id: str
    sequence: int
    received_at: datetime
    sent_at: Optional[datetime] = None
    payload: MessagePayload
    grouped: bool = False
    group_id: Optional[str] = None
    dispatched: bool = False


class GroupAssignment(BaseModel):
    """Outcome of one ingest call."""
    message_id: Optional[str] = None
    group_id: Optional[str] = None
    sequence: Optional[int] = None
    created_group: bool = False
    duplicate: bool = False


class MessageGroup(BaseModel):
    """
    A turn under construction. Members share the conversation and arrived
    within the tenant's idle window of each other.

    Lifecycle: open → claimed → dispatched, claimed → open on lease expiry
    (still sealed), claimed → failed once attempts are exhausted.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    conversation_id: str
    customer_id: str
    state: GroupState = GroupState.OPEN
    sealed: bool = False
    first_sequence: int                          # creation order within the conversation
    member_count: int = 0
    pending_media: int = 0
    created_at: datetime
    last_member_received_at: datetime
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    attempts: int = 0
    last_error: str = ""
    dispatched_at: Optional[datetime] = None

    def is_quiet(self, now: datetime, buffer_seconds: int) -> bool:
        return now - self.last_member_received_at >= timedelta(seconds=buffer_seconds)


class ClaimedGroup(BaseModel):
    group: MessageGroup
    messages: list[InboundMessage] = []
    claim_token: str


# ──────────────────────────────────────────────────────────────
#  Flow definitions — closed variants, validated at the catalog
# ──────────────────────────────────────────────────────────────

class TextStep(BaseModel):
    type: Literal["text"] = "text"
    text: str = Field(min_length=1)


class ImageStep(BaseModel):
    type: Literal["image"] = "image"
    urls: list[str] = Field(min_length=1)
    caption: str = ""


class VideoStep(BaseModel):
    type: Literal["video"] = "video"
    urls: list[str] = Field(min_length=1)
    caption: str = ""


class AudioStep(BaseModel):
    type: Literal["audio"] = "audio"
    urls: list[str] = Field(min_length=1)


class FileStep(BaseModel):
    type: Literal["file"] = "file"
    urls: list[str] = Field(min_length=1)
    caption: str = ""


class DelayStep(BaseModel):
    type: Literal["delay"] = "delay"
    seconds: int = Field(ge=0)


class AiFunctionStep(BaseModel):
    type: Literal["ai_function"] = "ai_function"
    instruction: str = Field(min_length=1)
    config: dict[str, Any] = {}


FlowStep = Annotated[
    Union[TextStep, ImageStep, VideoStep, AudioStep, FileStep, DelayStep, AiFunctionStep],
    Field(discriminator="type"),
]


class ThresholdTrigger(BaseModel):
    """Fires after a quiet period; repeat=False means once per customer ever."""
    enabled: bool = True
    threshold_hours: float = Field(ge=0)
    repeat: bool = True

    @property
    def threshold(self) -> timedelta:
        return timedelta(hours=self.threshold_hours)

    @property
    def cooldown(self) -> timedelta:
        return max(self.threshold, REPEAT_COOLDOWN_FLOOR)


class TriggerSpec(BaseModel):
    on_first_message: bool = False
    on_inactivity: Optional[ThresholdTrigger] = None     # measured from last inbound message
    on_no_response: Optional[ThresholdTrigger] = None    # measured from last message either way


class FlowDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    active: bool = True
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    steps: list[FlowStep] = []
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Executions
# ──────────────────────────────────────────────────────────────

class FlowExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    flow_id: str
    tenant_id: str
    customer_id: str
    conversation_id: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL
    status: ExecutionStatus = ExecutionStatus.QUEUED
    steps: Optional[list[FlowStep]] = None       # snapshot taken when the run starts
    current_step: int = 0
    failed_step: Optional[int] = None
    error: str = ""
    halted_reason: str = ""
    active_key: Optional[str] = None             # unique while queued/running
    once_key: Optional[str] = None               # unique forever for one-shot triggers
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None         # end of an in-progress delay step
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Activity
# ──────────────────────────────────────────────────────────────

class CustomerActivity(BaseModel):
    tenant_id: str
    customer_id: str
    conversation_id: str = ""
    address: str = ""
    inbound_count: int = 0
    first_inbound_at: Optional[datetime] = None
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    automation_enabled: bool = True


class FlowActivity(BaseModel):
    tenant_id: str
    customer_id: str
    flow_id: str
    last_enqueued_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None

    @property
    def last_dispatch_at(self) -> Optional[datetime]:
        stamps = [s for s in (self.last_enqueued_at, self.last_completed_at) if s]
        return max(stamps) if stamps else None


# ──────────────────────────────────────────────────────────────
#  Outbound
# ──────────────────────────────────────────────────────────────

class ConversationRef(BaseModel):
    tenant_id: str
    conversation_id: str
    customer_id: str
    address: str = ""


class OutboundPayload(BaseModel):
    kind: MessageKind = MessageKind.TEXT
    text: str = ""
    media_url: Optional[str] = None
    caption: str = ""


class DeliveryReceipt(BaseModel):
    idempotency_key: str
    conversation_id: str
    provider_message_ids: list[str] = []
    delivered_at: datetime = Field(default_factory=utcnow)
    replayed: bool = False
