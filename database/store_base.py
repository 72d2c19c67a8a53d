"""
Abstract Pipeline Store — Interface for all storage backends.

Implementations:
  - SqlPipelineStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryPipelineStore (dict-based, single-process, no persistence)

Every state change that more than one worker can race on is expressed as a
conditional update: the method either applies the transition and returns
the new record, or returns None / False when the precondition no longer
holds. Callers treat a lost race as a normal outcome, never as an error.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    ClaimedGroup, CustomerActivity, DeliveryReceipt, ExecutionStatus, FlowActivity,
    FlowDefinition, FlowExecution, GroupAssignment, IngestRequest,
    InboundMessage, MessageGroup, TenantSettings,
)


class PipelineError(Exception):
    """Base for store and catalog errors raised by the pipeline."""


class StoreConflictError(PipelineError):
    """A conditional update kept losing races and gave up."""


def execution_is_claimable(execution: FlowExecution, lease_cutoff: datetime) -> bool:
    """Queued, or running without a live lease (crashed or parked worker)."""
    if execution.status == ExecutionStatus.QUEUED:
        return True
    if execution.status != ExecutionStatus.RUNNING:
        return False
    return execution.claimed_at is None or execution.claimed_at < lease_cutoff


class BasePipelineStore(ABC):
    """Interface that all pipeline store backends must implement."""

    # ── Tenants ───────────────────────────────────────────────

    @abstractmethod
    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        """Return stored settings, or defaults for an unknown tenant."""

    @abstractmethod
    async def upsert_tenant_settings(self, settings: TenantSettings) -> TenantSettings:
        ...

    # ── Ingestion & groups ────────────────────────────────────

    @abstractmethod
    async def append_inbound(self, request: IngestRequest, received_at: datetime) -> GroupAssignment:
        """
        Record one inbound message and place it in a group, atomically:
        dedupe on provider id, assign the next sequence number, then append
        to the conversation's open unsealed group or open a new one.
        """

    @abstractmethod
    async def attach_media(self, message_id: str, media_url: str) -> Optional[InboundMessage]:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        ...

    @abstractmethod
    async def get_recent_messages(self, conversation_id: str, limit: int = 30) -> list[InboundMessage]:
        """Latest messages of a conversation, oldest first."""

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[MessageGroup]:
        ...

    @abstractmethod
    async def get_group_messages(self, group_id: str) -> list[InboundMessage]:
        """Members of a group in sequence order."""

    @abstractmethod
    async def list_open_groups(self, limit: int = 100) -> list[MessageGroup]:
        """Open groups, oldest activity first."""

    @abstractmethod
    async def get_head_group(self, conversation_id: str) -> Optional[MessageGroup]:
        """Oldest group of a conversation that is neither dispatched nor failed."""

    @abstractmethod
    async def claim_group(self, group_id: str, claim_token: str, now: datetime) -> Optional[ClaimedGroup]:
        """open → claimed; seals the group and counts an attempt."""

    @abstractmethod
    async def mark_group_dispatched(self, group_id: str, claim_token: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def renew_group_lease(self, group_id: str, claim_token: str, now: datetime) -> bool:
        """Restart the lease clock; False when the claim is no longer ours."""

    @abstractmethod
    async def record_group_failure(self, group_id: str, claim_token: str, error: str,
                                   max_attempts: int) -> Optional[MessageGroup]:
        """Keep the lease (retry after expiry) or fail the group when attempts are spent."""

    @abstractmethod
    async def release_expired_groups(self, cutoff: datetime, max_attempts: int) -> int:
        """claimed → open for leases taken before cutoff; → failed when attempts are spent."""

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def upsert_flow(self, flow: FlowDefinition) -> FlowDefinition:
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        ...

    @abstractmethod
    async def list_flows(self, tenant_id: str = None, active_only: bool = False) -> list[FlowDefinition]:
        ...

    # ── Activity ──────────────────────────────────────────────

    @abstractmethod
    async def touch_inbound(self, tenant_id: str, customer_id: str, conversation_id: str,
                            at: datetime, address: str = "") -> CustomerActivity:
        ...

    @abstractmethod
    async def touch_outbound(self, tenant_id: str, customer_id: str, at: datetime) -> CustomerActivity:
        ...

    @abstractmethod
    async def set_automation(self, tenant_id: str, customer_id: str, enabled: bool) -> CustomerActivity:
        ...

    @abstractmethod
    async def get_customer_activity(self, tenant_id: str, customer_id: str) -> Optional[CustomerActivity]:
        ...

    @abstractmethod
    async def list_customer_activity(self, tenant_id: str, *, inbound_count: int = None,
                                     last_inbound_before: datetime = None,
                                     last_message_before: datetime = None,
                                     after_customer_id: str = None,
                                     limit: int = 1000) -> list[CustomerActivity]:
        """Matching customers ordered by customer_id, starting after after_customer_id."""

    @abstractmethod
    async def get_flow_activity(self, tenant_id: str, customer_id: str, flow_id: str) -> Optional[FlowActivity]:
        ...

    @abstractmethod
    async def stamp_flow_enqueued(self, tenant_id: str, customer_id: str, flow_id: str,
                                  at: datetime) -> FlowActivity:
        ...

    # ── Executions ────────────────────────────────────────────

    @abstractmethod
    async def enqueue_execution(self, execution: FlowExecution) -> Optional[FlowExecution]:
        """Insert; None when an active_key or once_key already exists."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def list_executions(self, flow_id: str = None, customer_id: str = None,
                              status: str = None, limit: int = 100) -> list[FlowExecution]:
        ...

    @abstractmethod
    async def list_runnable_executions(self, lease_cutoff: datetime, limit: int = 100) -> list[FlowExecution]:
        """Queued, or running with no lease or one taken before lease_cutoff."""

    @abstractmethod
    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime,
                              lease_cutoff: datetime) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def update_execution(self, execution_id: str, claim_token: str, **fields: Any) -> bool:
        """Apply fields only while claim_token still holds the lease."""

    @abstractmethod
    async def release_execution(self, execution_id: str, claim_token: str) -> bool:
        """Drop the lease but keep progress, so any worker can resume the run."""

    @abstractmethod
    async def complete_execution(self, execution_id: str, claim_token: str, now: datetime,
                                 halted_reason: str = "") -> bool:
        """Terminal success; stamps flow activity before releasing the active key."""

    @abstractmethod
    async def fail_execution(self, execution_id: str, claim_token: str, now: datetime,
                             step_index: int, error: str) -> bool:
        ...

    # ── Delivery ledger ───────────────────────────────────────

    @abstractmethod
    async def get_delivery(self, idempotency_key: str) -> Optional[DeliveryReceipt]:
        ...

    @abstractmethod
    async def record_delivery(self, receipt: DeliveryReceipt) -> bool:
        ...
