"""
InMemoryPipelineStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlPipelineStore
  - Conditional updates are atomic because no method awaits mid-transition
    (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from database.store_base import BasePipelineStore, execution_is_claimable
from models.schemas import (
    ClaimedGroup, CustomerActivity, DeliveryReceipt, ExecutionStatus,
    FlowActivity, FlowDefinition, FlowExecution, GroupAssignment, GroupState,
    IngestRequest, InboundMessage, MessageGroup, TenantSettings,
)

logger = structlog.get_logger()


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryPipelineStore(BasePipelineStore):
    """
    Full-featured in-memory store with the same interface as SqlPipelineStore.
    Holds pydantic models internally and hands out deep copies.
    """

    def __init__(self):
        self._tenants: dict[str, TenantSettings] = {}
        self._conversations: dict[str, dict[str, Any]] = {}       # id → counters + open group pointer
        self._messages: dict[str, InboundMessage] = {}
        self._conversation_messages: dict[str, list[str]] = defaultdict(list)  # conv_id → [msg ids]
        self._groups: dict[str, MessageGroup] = {}
        self._group_members: dict[str, list[str]] = defaultdict(list)          # group_id → [msg ids]
        self._flows: dict[str, FlowDefinition] = {}
        self._executions: dict[str, FlowExecution] = {}
        self._customers: dict[tuple[str, str], CustomerActivity] = {}
        self._flow_activity: dict[tuple[str, str, str], FlowActivity] = {}
        self._deliveries: dict[str, DeliveryReceipt] = {}

        # Indexes
        self._provider_index: dict[tuple[str, str], str] = {}   # (conv_id, provider id) → msg id
        self._active_keys: dict[str, str] = {}                  # active_key → execution id
        self._once_keys: dict[str, str] = {}                    # once_key → execution id
        logger.info("inmemory_store_initialized")

    # ── Tenants ───────────────────────────────────────────

    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        return _copy(self._tenants.get(tenant_id)) or TenantSettings(tenant_id=tenant_id)

    async def upsert_tenant_settings(self, settings: TenantSettings) -> TenantSettings:
        self._tenants[settings.tenant_id] = _copy(settings)
        return _copy(settings)

    # ── Ingestion & groups ────────────────────────────────

    async def append_inbound(self, request: IngestRequest, received_at: datetime) -> GroupAssignment:
        conv_id = request.conversation_id
        existing_id = self._provider_index.get((conv_id, request.provider_message_id))
        if existing_id:
            existing = self._messages[existing_id]
            return GroupAssignment(
                message_id=existing.id, group_id=existing.group_id,
                sequence=existing.sequence, duplicate=True,
            )

        conv = self._conversations.setdefault(conv_id, {
            "tenant_id": request.tenant_id, "customer_id": request.customer_id,
            "last_sequence": 0, "open_group_id": None,
        })
        sequence = conv["last_sequence"] + 1
        conv["last_sequence"] = sequence

        group = self._groups.get(conv["open_group_id"]) if conv["open_group_id"] else None
        created = False
        if group is None or group.state != GroupState.OPEN or group.sealed:
            group = MessageGroup(
                tenant_id=request.tenant_id, conversation_id=conv_id,
                customer_id=request.customer_id, first_sequence=sequence,
                created_at=received_at, last_member_received_at=received_at,
            )
            self._groups[group.id] = group
            conv["open_group_id"] = group.id
            created = True

        payload = request.payload.model_copy(deep=True)
        group.member_count += 1
        if not payload.media_ready:
            group.pending_media += 1
        group.last_member_received_at = max(group.last_member_received_at, received_at)

        message = InboundMessage(
            tenant_id=request.tenant_id, conversation_id=conv_id,
            customer_id=request.customer_id,
            provider_message_id=request.provider_message_id,
            sequence=sequence, received_at=received_at, sent_at=request.sent_at,
            payload=payload, grouped=True, group_id=group.id,
        )
        self._messages[message.id] = message
        self._provider_index[(conv_id, request.provider_message_id)] = message.id
        self._conversation_messages[conv_id].append(message.id)
        self._group_members[group.id].append(message.id)

        return GroupAssignment(
            message_id=message.id, group_id=group.id,
            sequence=sequence, created_group=created,
        )

    async def attach_media(self, message_id: str, media_url: str) -> Optional[InboundMessage]:
        message = self._messages.get(message_id)
        if not message:
            return None
        was_pending = not message.payload.media_ready
        message.payload.media_url = media_url
        message.payload.media_ready = True
        group = self._groups.get(message.group_id) if message.group_id else None
        if was_pending and group and group.pending_media > 0:
            group.pending_media -= 1
        return _copy(message)

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        return _copy(self._messages.get(message_id))

    async def get_recent_messages(self, conversation_id: str, limit: int = 30) -> list[InboundMessage]:
        ids = self._conversation_messages.get(conversation_id, [])[-limit:]
        return [_copy(self._messages[mid]) for mid in ids]

    async def get_group(self, group_id: str) -> Optional[MessageGroup]:
        return _copy(self._groups.get(group_id))

    async def get_group_messages(self, group_id: str) -> list[InboundMessage]:
        members = [self._messages[mid] for mid in self._group_members.get(group_id, [])]
        return [_copy(m) for m in sorted(members, key=lambda m: m.sequence)]

    async def list_open_groups(self, limit: int = 100) -> list[MessageGroup]:
        open_groups = [g for g in self._groups.values() if g.state == GroupState.OPEN]
        open_groups.sort(key=lambda g: g.last_member_received_at)
        return [_copy(g) for g in open_groups[:limit]]

    async def get_head_group(self, conversation_id: str) -> Optional[MessageGroup]:
        pending = [
            g for g in self._groups.values()
            if g.conversation_id == conversation_id
            and g.state in (GroupState.OPEN, GroupState.CLAIMED)
        ]
        if not pending:
            return None
        return _copy(min(pending, key=lambda g: g.first_sequence))

    async def claim_group(self, group_id: str, claim_token: str, now: datetime) -> Optional[ClaimedGroup]:
        group = self._groups.get(group_id)
        if not group or group.state != GroupState.OPEN:
            return None
        group.state = GroupState.CLAIMED
        group.sealed = True
        group.claimed_at = now
        group.claim_token = claim_token
        group.attempts += 1

        conv = self._conversations.get(group.conversation_id)
        if conv and conv["open_group_id"] == group_id:
            conv["open_group_id"] = None

        return ClaimedGroup(
            group=_copy(group),
            messages=await self.get_group_messages(group_id),
            claim_token=claim_token,
        )

    async def mark_group_dispatched(self, group_id: str, claim_token: str, now: datetime) -> bool:
        group = self._groups.get(group_id)
        if not group or group.state != GroupState.CLAIMED or group.claim_token != claim_token:
            return False
        group.state = GroupState.DISPATCHED
        group.dispatched_at = now
        group.last_error = ""
        for mid in self._group_members.get(group_id, []):
            self._messages[mid].dispatched = True
        return True

    async def renew_group_lease(self, group_id: str, claim_token: str, now: datetime) -> bool:
        group = self._groups.get(group_id)
        if not group or group.state != GroupState.CLAIMED or group.claim_token != claim_token:
            return False
        group.claimed_at = now
        return True

    async def record_group_failure(self, group_id: str, claim_token: str, error: str,
                                   max_attempts: int) -> Optional[MessageGroup]:
        group = self._groups.get(group_id)
        if not group or group.state != GroupState.CLAIMED or group.claim_token != claim_token:
            return None
        group.last_error = error
        if group.attempts >= max_attempts:
            group.state = GroupState.FAILED
            group.claimed_at = None
            group.claim_token = None
        return _copy(group)

    async def release_expired_groups(self, cutoff: datetime, max_attempts: int) -> int:
        released = 0
        for group in self._groups.values():
            if group.state != GroupState.CLAIMED or group.claimed_at is None:
                continue
            if group.claimed_at >= cutoff:
                continue
            group.state = GroupState.FAILED if group.attempts >= max_attempts else GroupState.OPEN
            group.claimed_at = None
            group.claim_token = None
            released += 1
        return released

    # ── Flows ─────────────────────────────────────────────

    async def upsert_flow(self, flow: FlowDefinition) -> FlowDefinition:
        self._flows[flow.id] = _copy(flow)
        return _copy(flow)

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return _copy(self._flows.get(flow_id))

    async def list_flows(self, tenant_id: str = None, active_only: bool = False) -> list[FlowDefinition]:
        flows = list(self._flows.values())
        if tenant_id:
            flows = [f for f in flows if f.tenant_id == tenant_id]
        if active_only:
            flows = [f for f in flows if f.active]
        return [_copy(f) for f in flows]

    # ── Activity ──────────────────────────────────────────

    def _customer(self, tenant_id: str, customer_id: str) -> CustomerActivity:
        key = (tenant_id, customer_id)
        if key not in self._customers:
            self._customers[key] = CustomerActivity(tenant_id=tenant_id, customer_id=customer_id)
        return self._customers[key]

    async def touch_inbound(self, tenant_id: str, customer_id: str, conversation_id: str,
                            at: datetime, address: str = "") -> CustomerActivity:
        rec = self._customer(tenant_id, customer_id)
        rec.inbound_count += 1
        rec.conversation_id = conversation_id
        rec.first_inbound_at = rec.first_inbound_at or at
        rec.last_inbound_at = at
        rec.last_message_at = at
        if address:
            rec.address = address
        return _copy(rec)

    async def touch_outbound(self, tenant_id: str, customer_id: str, at: datetime) -> CustomerActivity:
        rec = self._customer(tenant_id, customer_id)
        rec.last_outbound_at = at
        rec.last_message_at = at
        return _copy(rec)

    async def set_automation(self, tenant_id: str, customer_id: str, enabled: bool) -> CustomerActivity:
        rec = self._customer(tenant_id, customer_id)
        rec.automation_enabled = enabled
        return _copy(rec)

    async def get_customer_activity(self, tenant_id: str, customer_id: str) -> Optional[CustomerActivity]:
        return _copy(self._customers.get((tenant_id, customer_id)))

    async def list_customer_activity(self, tenant_id: str, *, inbound_count: int = None,
                                     last_inbound_before: datetime = None,
                                     last_message_before: datetime = None,
                                     after_customer_id: str = None,
                                     limit: int = 1000) -> list[CustomerActivity]:
        results = []
        for rec in sorted(self._customers.values(), key=lambda r: r.customer_id):
            if rec.tenant_id != tenant_id:
                continue
            if after_customer_id is not None and rec.customer_id <= after_customer_id:
                continue
            if inbound_count is not None and rec.inbound_count != inbound_count:
                continue
            if last_inbound_before is not None and (
                rec.last_inbound_at is None or rec.last_inbound_at > last_inbound_before
            ):
                continue
            if last_message_before is not None and (
                rec.last_message_at is None or rec.last_message_at > last_message_before
            ):
                continue
            results.append(_copy(rec))
            if len(results) >= limit:
                break
        return results

    async def get_flow_activity(self, tenant_id: str, customer_id: str, flow_id: str) -> Optional[FlowActivity]:
        return _copy(self._flow_activity.get((tenant_id, customer_id, flow_id)))

    def _flow_record(self, tenant_id: str, customer_id: str, flow_id: str) -> FlowActivity:
        key = (tenant_id, customer_id, flow_id)
        if key not in self._flow_activity:
            self._flow_activity[key] = FlowActivity(
                tenant_id=tenant_id, customer_id=customer_id, flow_id=flow_id,
            )
        return self._flow_activity[key]

    async def stamp_flow_enqueued(self, tenant_id: str, customer_id: str, flow_id: str,
                                  at: datetime) -> FlowActivity:
        rec = self._flow_record(tenant_id, customer_id, flow_id)
        rec.last_enqueued_at = at
        return _copy(rec)

    # ── Executions ────────────────────────────────────────

    async def enqueue_execution(self, execution: FlowExecution) -> Optional[FlowExecution]:
        if execution.active_key and execution.active_key in self._active_keys:
            return None
        if execution.once_key and execution.once_key in self._once_keys:
            return None
        stored = _copy(execution)
        self._executions[stored.id] = stored
        if stored.active_key:
            self._active_keys[stored.active_key] = stored.id
        if stored.once_key:
            self._once_keys[stored.once_key] = stored.id
        return _copy(stored)

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        return _copy(self._executions.get(execution_id))

    async def list_executions(self, flow_id: str = None, customer_id: str = None,
                              status: str = None, limit: int = 100) -> list[FlowExecution]:
        results = list(self._executions.values())
        if flow_id:
            results = [e for e in results if e.flow_id == flow_id]
        if customer_id:
            results = [e for e in results if e.customer_id == customer_id]
        if status:
            results = [e for e in results if e.status.value == status]
        results.sort(key=lambda e: e.created_at)
        return [_copy(e) for e in results[:limit]]

    async def list_runnable_executions(self, lease_cutoff: datetime, limit: int = 100) -> list[FlowExecution]:
        runnable = [e for e in self._executions.values() if execution_is_claimable(e, lease_cutoff)]
        runnable.sort(key=lambda e: e.created_at)
        return [_copy(e) for e in runnable[:limit]]

    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime,
                              lease_cutoff: datetime) -> Optional[FlowExecution]:
        execution = self._executions.get(execution_id)
        if not execution or not execution_is_claimable(execution, lease_cutoff):
            return None
        execution.status = ExecutionStatus.RUNNING
        execution.claim_token = claim_token
        execution.claimed_at = now
        execution.started_at = execution.started_at or now
        return _copy(execution)

    def _leased(self, execution_id: str, claim_token: str) -> Optional[FlowExecution]:
        execution = self._executions.get(execution_id)
        if not execution or execution.status != ExecutionStatus.RUNNING:
            return None
        if execution.claim_token != claim_token:
            return None
        return execution

    async def update_execution(self, execution_id: str, claim_token: str, **fields: Any) -> bool:
        execution = self._leased(execution_id, claim_token)
        if not execution:
            return False
        for name, value in fields.items():
            setattr(execution, name, value)
        return True

    async def release_execution(self, execution_id: str, claim_token: str) -> bool:
        execution = self._leased(execution_id, claim_token)
        if not execution:
            return False
        execution.claim_token = None
        execution.claimed_at = None
        return True

    def _release_keys(self, execution: FlowExecution) -> None:
        if execution.active_key:
            self._active_keys.pop(execution.active_key, None)
            execution.active_key = None
        execution.claim_token = None
        execution.claimed_at = None
        execution.resume_at = None

    async def complete_execution(self, execution_id: str, claim_token: str, now: datetime,
                                 halted_reason: str = "") -> bool:
        execution = self._leased(execution_id, claim_token)
        if not execution:
            return False
        rec = self._flow_record(execution.tenant_id, execution.customer_id, execution.flow_id)
        rec.last_completed_at = now
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = now
        execution.halted_reason = halted_reason
        self._release_keys(execution)
        return True

    async def fail_execution(self, execution_id: str, claim_token: str, now: datetime,
                             step_index: int, error: str) -> bool:
        execution = self._leased(execution_id, claim_token)
        if not execution:
            return False
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = now
        execution.failed_step = step_index
        execution.error = error
        self._release_keys(execution)
        return True

    # ── Delivery ledger ───────────────────────────────────

    async def get_delivery(self, idempotency_key: str) -> Optional[DeliveryReceipt]:
        return _copy(self._deliveries.get(idempotency_key))

    async def record_delivery(self, receipt: DeliveryReceipt) -> bool:
        if receipt.idempotency_key in self._deliveries:
            return False
        self._deliveries[receipt.idempotency_key] = _copy(receipt)
        return True
