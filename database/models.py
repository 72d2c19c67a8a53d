"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — payloads and step
    snapshots serialize to TEXT on SQLite.
  - Timestamps stored as naive UTC and handed back timezone-aware, so
    comparisons behave the same on every dialect.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Uniqueness does the coordination work: (conversation, provider id)
    for duplicate ingestion, execution active/once keys for idempotent
    enqueue, idempotency key for the delivery ledger.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text,
    TypeDecorator, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import new_id, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


class UTCDateTime(TypeDecorator):
    """Naive UTC in the database, aware UTC in Python."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ──────────────────────────────────────────────────────────────
#  Tenants
# ──────────────────────────────────────────────────────────────

class TenantSettingsRow(Base):
    __tablename__ = "tenant_settings"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    buffer_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    disable_agent_on_manual_reply: Mapped[bool] = mapped_column(Boolean, default=False)
    responder_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations, inbound messages, groups
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    """Per-conversation counters and the open-group pointer."""
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    last_sequence: Mapped[int] = mapped_column(Integer, default=0)
    open_group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class InboundMessageRow(Base):
    __tablename__ = "inbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(256), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    grouped: Mapped[bool] = mapped_column(Boolean, default=False)
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dispatched: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "provider_message_id", name="uq_inbound_provider_id"),
        UniqueConstraint("conversation_id", "sequence", name="uq_inbound_sequence"),
        Index("ix_inbound_group", "group_id"),
    )


class MessageGroupRow(Base):
    __tablename__ = "message_groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="open")
    sealed: Mapped[bool] = mapped_column(Boolean, default=False)
    first_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    pending_media: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_member_received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_groups_state", "state", "last_member_received_at"),
        Index("ix_groups_conversation", "conversation_id", "first_sequence"),
    )


# ──────────────────────────────────────────────────────────────
#  Flows and executions
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger: Mapped[Any] = mapped_column(JSON, default=dict)
    steps: Mapped[Any] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class FlowExecutionRow(Base):
    __tablename__ = "flow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), default="")
    trigger_type: Mapped[str] = mapped_column(String(32), default="manual")
    status: Mapped[str] = mapped_column(String(16), default="queued")
    steps: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    failed_step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[str] = mapped_column(Text, default="")
    halted_reason: Mapped[str] = mapped_column(String(64), default="")
    active_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, unique=True)
    once_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, unique=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resume_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_executions_status", "status", "created_at"),
        Index("ix_executions_customer_flow", "customer_id", "flow_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Activity
# ──────────────────────────────────────────────────────────────

class CustomerActivityRow(Base):
    __tablename__ = "customer_activity"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(64), default="")
    address: Mapped[str] = mapped_column(String(64), default="")
    inbound_count: Mapped[int] = mapped_column(Integer, default=0)
    first_inbound_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_inbound_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_outbound_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    automation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_activity_last_inbound", "tenant_id", "last_inbound_at"),
    )


class FlowActivityRow(Base):
    __tablename__ = "flow_activity"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    flow_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_enqueued_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


# ──────────────────────────────────────────────────────────────
#  Delivery ledger
# ──────────────────────────────────────────────────────────────

class DeliveryRow(Base):
    __tablename__ = "deliveries"

    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_message_ids: Mapped[Any] = mapped_column(JSON, default=list)
    delivered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
