"""
SqlPipelineStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every contended transition is a conditional UPDATE whose WHERE clause
carries the expected state (and claim token); a rowcount of 0 means another
worker got there first. No row locks, no advisory locks, no SELECT ... FOR
UPDATE, so the same code runs on all three databases.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from pydantic import TypeAdapter
from sqlalchemy import and_, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ConversationRow, CustomerActivityRow, DeliveryRow, FlowActivityRow,
    FlowExecutionRow, FlowRow, InboundMessageRow, MessageGroupRow,
    TenantSettingsRow, UTCDateTime,
)
from database.session import session_scope
from database.store_base import BasePipelineStore, StoreConflictError, execution_is_claimable
from models.schemas import (
    ClaimedGroup, CustomerActivity, DeliveryReceipt, ExecutionStatus,
    FlowActivity, FlowDefinition, FlowExecution, FlowStep, GroupAssignment,
    GroupState, IngestRequest, InboundMessage, MessageGroup, MessagePayload,
    TenantSettings, TriggerSpec, TriggerType, new_id,
)

logger = structlog.get_logger()

_CAS_RETRIES = 5
_STEPS = TypeAdapter(list[FlowStep])
_NO_SYNC = {"synchronize_session": False}


class _LostRace(Exception):
    """Raised inside a transaction to roll it back and retry."""


class SqlPipelineStore(BasePipelineStore):
    """
    Persistent pipeline store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Tenant operations ──────────────────────────────────

    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        async with self._session() as db:
            row = await db.get(TenantSettingsRow, tenant_id)
            if not row:
                return TenantSettings(tenant_id=tenant_id)
            return TenantSettings(
                tenant_id=row.tenant_id,
                buffer_seconds=row.buffer_seconds,
                disable_agent_on_manual_reply=row.disable_agent_on_manual_reply,
                responder_enabled=row.responder_enabled,
                updated_at=row.updated_at,
            )

    async def upsert_tenant_settings(self, settings: TenantSettings) -> TenantSettings:
        async with self._session() as db:
            await db.merge(TenantSettingsRow(
                tenant_id=settings.tenant_id,
                buffer_seconds=settings.buffer_seconds,
                disable_agent_on_manual_reply=settings.disable_agent_on_manual_reply,
                responder_enabled=settings.responder_enabled,
                updated_at=settings.updated_at,
            ))
        return settings

    # ── Ingestion & group operations ───────────────────────

    async def append_inbound(self, request: IngestRequest, received_at: datetime) -> GroupAssignment:
        for attempt in range(_CAS_RETRIES):
            try:
                return await self._append_inbound_once(request, received_at)
            except (_LostRace, IntegrityError) as e:
                # A duplicate provider id surfaces as IntegrityError; the next
                # pass finds the stored row and reports the duplicate.
                logger.debug("ingest_retry",
                             conversation_id=request.conversation_id,
                             attempt=attempt + 1, reason=type(e).__name__)
        raise StoreConflictError(
            f"ingest kept conflicting for conversation {request.conversation_id}"
        )

    async def _append_inbound_once(self, request: IngestRequest, received_at: datetime) -> GroupAssignment:
        conv_id = request.conversation_id
        async with self._session() as db:
            existing = (await db.execute(
                select(InboundMessageRow).where(
                    InboundMessageRow.conversation_id == conv_id,
                    InboundMessageRow.provider_message_id == request.provider_message_id,
                )
            )).scalar_one_or_none()
            if existing:
                return GroupAssignment(
                    message_id=existing.id, group_id=existing.group_id,
                    sequence=existing.sequence, duplicate=True,
                )

            conv = await db.get(ConversationRow, conv_id)
            if conv is None:
                conv = ConversationRow(
                    id=conv_id, tenant_id=request.tenant_id,
                    customer_id=request.customer_id, last_sequence=0,
                    open_group_id=None, created_at=received_at,
                )
                db.add(conv)
                await db.flush()

            previous = conv.last_sequence
            open_group_id = conv.open_group_id
            sequence = previous + 1

            result = await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conv_id, ConversationRow.last_sequence == previous)
                .values(last_sequence=sequence)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise _LostRace()

            pending = 0 if request.payload.media_ready else 1
            group_id = None
            created = False

            if open_group_id:
                result = await db.execute(
                    update(MessageGroupRow)
                    .where(
                        MessageGroupRow.id == open_group_id,
                        MessageGroupRow.state == GroupState.OPEN.value,
                        MessageGroupRow.sealed.is_(False),
                    )
                    .values(
                        member_count=MessageGroupRow.member_count + 1,
                        pending_media=MessageGroupRow.pending_media + pending,
                        last_member_received_at=received_at,
                    )
                    .execution_options(**_NO_SYNC)
                )
                if result.rowcount == 1:
                    group_id = open_group_id
                else:
                    # Pointer outlived its group (claimed in between)
                    result = await db.execute(
                        update(ConversationRow)
                        .where(ConversationRow.id == conv_id,
                               ConversationRow.open_group_id == open_group_id)
                        .values(open_group_id=None)
                        .execution_options(**_NO_SYNC)
                    )
                    if result.rowcount != 1:
                        raise _LostRace()

            if group_id is None:
                group = MessageGroupRow(
                    id=new_id(), tenant_id=request.tenant_id,
                    conversation_id=conv_id, customer_id=request.customer_id,
                    state=GroupState.OPEN.value, sealed=False,
                    first_sequence=sequence, member_count=1, pending_media=pending,
                    created_at=received_at, last_member_received_at=received_at,
                    attempts=0, last_error="",
                )
                db.add(group)
                await db.flush()
                result = await db.execute(
                    update(ConversationRow)
                    .where(ConversationRow.id == conv_id, ConversationRow.open_group_id.is_(None))
                    .values(open_group_id=group.id)
                    .execution_options(**_NO_SYNC)
                )
                if result.rowcount != 1:
                    raise _LostRace()
                group_id = group.id
                created = True

            message = InboundMessageRow(
                id=new_id(), tenant_id=request.tenant_id, conversation_id=conv_id,
                customer_id=request.customer_id,
                provider_message_id=request.provider_message_id,
                sequence=sequence, received_at=received_at, sent_at=request.sent_at,
                payload=request.payload.model_dump(mode="json"),
                grouped=True, group_id=group_id, dispatched=False,
            )
            db.add(message)
            await db.flush()

            return GroupAssignment(
                message_id=message.id, group_id=group_id,
                sequence=sequence, created_group=created,
            )

    async def attach_media(self, message_id: str, media_url: str) -> Optional[InboundMessage]:
        async with self._session() as db:
            row = await db.get(InboundMessageRow, message_id)
            if not row:
                return None
            payload = dict(row.payload or {})
            was_pending = not payload.get("media_ready", True)
            payload["media_url"] = media_url
            payload["media_ready"] = True
            row.payload = payload
            if was_pending and row.group_id:
                await db.execute(
                    update(MessageGroupRow)
                    .where(MessageGroupRow.id == row.group_id, MessageGroupRow.pending_media > 0)
                    .values(pending_media=MessageGroupRow.pending_media - 1)
                    .execution_options(**_NO_SYNC)
                )
            return self._row_to_message(row)

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        async with self._session() as db:
            row = await db.get(InboundMessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_recent_messages(self, conversation_id: str, limit: int = 30) -> list[InboundMessage]:
        async with self._session() as db:
            result = await db.execute(
                select(InboundMessageRow)
                .where(InboundMessageRow.conversation_id == conversation_id)
                .order_by(InboundMessageRow.sequence.desc())
                .limit(limit)
            )
            return [self._row_to_message(r) for r in reversed(result.scalars().all())]

    async def get_group(self, group_id: str) -> Optional[MessageGroup]:
        async with self._session() as db:
            row = await db.get(MessageGroupRow, group_id)
            return self._row_to_group(row) if row else None

    async def get_group_messages(self, group_id: str) -> list[InboundMessage]:
        async with self._session() as db:
            return await self._group_messages(db, group_id)

    async def _group_messages(self, db: AsyncSession, group_id: str) -> list[InboundMessage]:
        result = await db.execute(
            select(InboundMessageRow)
            .where(InboundMessageRow.group_id == group_id)
            .order_by(InboundMessageRow.sequence)
        )
        return [self._row_to_message(r) for r in result.scalars()]

    async def list_open_groups(self, limit: int = 100) -> list[MessageGroup]:
        async with self._session() as db:
            result = await db.execute(
                select(MessageGroupRow)
                .where(MessageGroupRow.state == GroupState.OPEN.value)
                .order_by(MessageGroupRow.last_member_received_at)
                .limit(limit)
            )
            return [self._row_to_group(r) for r in result.scalars()]

    async def get_head_group(self, conversation_id: str) -> Optional[MessageGroup]:
        async with self._session() as db:
            result = await db.execute(
                select(MessageGroupRow)
                .where(
                    MessageGroupRow.conversation_id == conversation_id,
                    MessageGroupRow.state.in_([GroupState.OPEN.value, GroupState.CLAIMED.value]),
                )
                .order_by(MessageGroupRow.first_sequence)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._row_to_group(row) if row else None

    async def claim_group(self, group_id: str, claim_token: str, now: datetime) -> Optional[ClaimedGroup]:
        async with self._session() as db:
            result = await db.execute(
                update(MessageGroupRow)
                .where(MessageGroupRow.id == group_id,
                       MessageGroupRow.state == GroupState.OPEN.value)
                .values(
                    state=GroupState.CLAIMED.value, sealed=True,
                    claimed_at=now, claim_token=claim_token,
                    attempts=MessageGroupRow.attempts + 1,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return None

            row = await db.get(MessageGroupRow, group_id)
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == row.conversation_id,
                       ConversationRow.open_group_id == group_id)
                .values(open_group_id=None)
                .execution_options(**_NO_SYNC)
            )
            return ClaimedGroup(
                group=self._row_to_group(row),
                messages=await self._group_messages(db, group_id),
                claim_token=claim_token,
            )

    async def mark_group_dispatched(self, group_id: str, claim_token: str, now: datetime) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(MessageGroupRow)
                .where(
                    MessageGroupRow.id == group_id,
                    MessageGroupRow.state == GroupState.CLAIMED.value,
                    MessageGroupRow.claim_token == claim_token,
                )
                .values(state=GroupState.DISPATCHED.value, dispatched_at=now, last_error="")
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return False
            await db.execute(
                update(InboundMessageRow)
                .where(InboundMessageRow.group_id == group_id)
                .values(dispatched=True)
                .execution_options(**_NO_SYNC)
            )
            return True

    async def renew_group_lease(self, group_id: str, claim_token: str, now: datetime) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(MessageGroupRow)
                .where(
                    MessageGroupRow.id == group_id,
                    MessageGroupRow.state == GroupState.CLAIMED.value,
                    MessageGroupRow.claim_token == claim_token,
                )
                .values(claimed_at=now)
                .execution_options(**_NO_SYNC)
            )
            return result.rowcount == 1

    async def record_group_failure(self, group_id: str, claim_token: str, error: str,
                                   max_attempts: int) -> Optional[MessageGroup]:
        async with self._session() as db:
            row = await db.get(MessageGroupRow, group_id)
            if not row or row.state != GroupState.CLAIMED.value or row.claim_token != claim_token:
                return None
            group = self._row_to_group(row)
            values: dict[str, Any] = {"last_error": error}
            if group.attempts >= max_attempts:
                values.update(state=GroupState.FAILED.value, claimed_at=None, claim_token=None)
            result = await db.execute(
                update(MessageGroupRow)
                .where(
                    MessageGroupRow.id == group_id,
                    MessageGroupRow.state == GroupState.CLAIMED.value,
                    MessageGroupRow.claim_token == claim_token,
                )
                .values(**values)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return None
            return group.model_copy(update={
                "last_error": error,
                "state": GroupState(values.get("state", group.state.value)),
                "claimed_at": values.get("claimed_at", group.claimed_at),
                "claim_token": values.get("claim_token", group.claim_token),
            })

    async def release_expired_groups(self, cutoff: datetime, max_attempts: int) -> int:
        released = 0
        async with self._session() as db:
            result = await db.execute(
                select(MessageGroupRow.id, MessageGroupRow.claim_token, MessageGroupRow.attempts)
                .where(
                    MessageGroupRow.state == GroupState.CLAIMED.value,
                    MessageGroupRow.claimed_at < cutoff,
                )
            )
            for group_id, token, attempts in result.all():
                state = GroupState.FAILED if attempts >= max_attempts else GroupState.OPEN
                outcome = await db.execute(
                    update(MessageGroupRow)
                    .where(
                        MessageGroupRow.id == group_id,
                        MessageGroupRow.state == GroupState.CLAIMED.value,
                        MessageGroupRow.claim_token == token,
                        MessageGroupRow.claimed_at < cutoff,
                    )
                    .values(state=state.value, claimed_at=None, claim_token=None)
                    .execution_options(**_NO_SYNC)
                )
                released += outcome.rowcount
        return released

    # ── Flow operations ────────────────────────────────────

    async def upsert_flow(self, flow: FlowDefinition) -> FlowDefinition:
        async with self._session() as db:
            await db.merge(FlowRow(
                id=flow.id, tenant_id=flow.tenant_id, name=flow.name,
                active=flow.active,
                trigger=flow.trigger.model_dump(mode="json"),
                steps=_STEPS.dump_python(flow.steps, mode="json"),
                updated_at=flow.updated_at,
            ))
        return flow

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        async with self._session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def list_flows(self, tenant_id: str = None, active_only: bool = False) -> list[FlowDefinition]:
        async with self._session() as db:
            stmt = select(FlowRow)
            if tenant_id:
                stmt = stmt.where(FlowRow.tenant_id == tenant_id)
            if active_only:
                stmt = stmt.where(FlowRow.active.is_(True))
            result = await db.execute(stmt.order_by(FlowRow.id))
            return [self._row_to_flow(r) for r in result.scalars()]

    # ── Activity operations ────────────────────────────────

    async def _upsert_customer(self, tenant_id: str, customer_id: str,
                               changes: dict[str, Any], initial: dict[str, Any]) -> CustomerActivity:
        """UPDATE with column expressions, INSERT when the row is missing."""
        where = (CustomerActivityRow.tenant_id == tenant_id,
                 CustomerActivityRow.customer_id == customer_id)
        for _ in range(_CAS_RETRIES):
            try:
                async with self._session() as db:
                    result = await db.execute(
                        update(CustomerActivityRow).where(*where).values(**changes)
                        .execution_options(**_NO_SYNC)
                    )
                    if result.rowcount == 0:
                        db.add(CustomerActivityRow(
                            tenant_id=tenant_id, customer_id=customer_id,
                            **{"conversation_id": "", "address": "", "inbound_count": 0,
                               "automation_enabled": True, **initial},
                        ))
                        await db.flush()
                    row = (await db.execute(
                        select(CustomerActivityRow).where(*where)
                        .execution_options(populate_existing=True)
                    )).scalar_one()
                    return self._row_to_customer(row)
            except IntegrityError:
                continue
        raise StoreConflictError(f"activity upsert kept conflicting for {tenant_id}/{customer_id}")

    async def touch_inbound(self, tenant_id: str, customer_id: str, conversation_id: str,
                            at: datetime, address: str = "") -> CustomerActivity:
        changes: dict[str, Any] = {
            "inbound_count": CustomerActivityRow.inbound_count + 1,
            "conversation_id": conversation_id,
            "first_inbound_at": func.coalesce(
                CustomerActivityRow.first_inbound_at, literal(at, UTCDateTime())
            ),
            "last_inbound_at": at,
            "last_message_at": at,
        }
        initial: dict[str, Any] = {
            "conversation_id": conversation_id, "inbound_count": 1,
            "first_inbound_at": at, "last_inbound_at": at, "last_message_at": at,
        }
        if address:
            changes["address"] = address
            initial["address"] = address
        return await self._upsert_customer(tenant_id, customer_id, changes, initial)

    async def touch_outbound(self, tenant_id: str, customer_id: str, at: datetime) -> CustomerActivity:
        values = {"last_outbound_at": at, "last_message_at": at}
        return await self._upsert_customer(tenant_id, customer_id, values, values)

    async def set_automation(self, tenant_id: str, customer_id: str, enabled: bool) -> CustomerActivity:
        values = {"automation_enabled": enabled}
        return await self._upsert_customer(tenant_id, customer_id, values, values)

    async def get_customer_activity(self, tenant_id: str, customer_id: str) -> Optional[CustomerActivity]:
        async with self._session() as db:
            row = await db.get(CustomerActivityRow, (tenant_id, customer_id))
            return self._row_to_customer(row) if row else None

    async def list_customer_activity(self, tenant_id: str, *, inbound_count: int = None,
                                     last_inbound_before: datetime = None,
                                     last_message_before: datetime = None,
                                     after_customer_id: str = None,
                                     limit: int = 1000) -> list[CustomerActivity]:
        async with self._session() as db:
            stmt = select(CustomerActivityRow).where(CustomerActivityRow.tenant_id == tenant_id)
            if inbound_count is not None:
                stmt = stmt.where(CustomerActivityRow.inbound_count == inbound_count)
            if last_inbound_before is not None:
                stmt = stmt.where(CustomerActivityRow.last_inbound_at <= last_inbound_before)
            if last_message_before is not None:
                stmt = stmt.where(CustomerActivityRow.last_message_at <= last_message_before)
            if after_customer_id is not None:
                stmt = stmt.where(CustomerActivityRow.customer_id > after_customer_id)
            result = await db.execute(stmt.order_by(CustomerActivityRow.customer_id).limit(limit))
            return [self._row_to_customer(r) for r in result.scalars()]

    async def get_flow_activity(self, tenant_id: str, customer_id: str, flow_id: str) -> Optional[FlowActivity]:
        async with self._session() as db:
            row = await db.get(FlowActivityRow, (customer_id, flow_id))
            return self._row_to_flow_activity(row) if row else None

    async def _stamp_flow(self, db: AsyncSession, tenant_id: str, customer_id: str,
                          flow_id: str, **stamps: datetime) -> FlowActivityRow:
        row = await db.get(FlowActivityRow, (customer_id, flow_id))
        if row is None:
            row = FlowActivityRow(tenant_id=tenant_id, customer_id=customer_id, flow_id=flow_id)
            db.add(row)
        for name, value in stamps.items():
            setattr(row, name, value)
        await db.flush()
        return row

    async def stamp_flow_enqueued(self, tenant_id: str, customer_id: str, flow_id: str,
                                  at: datetime) -> FlowActivity:
        async with self._session() as db:
            row = await self._stamp_flow(db, tenant_id, customer_id, flow_id, last_enqueued_at=at)
            return self._row_to_flow_activity(row)

    # ── Execution operations ───────────────────────────────

    async def enqueue_execution(self, execution: FlowExecution) -> Optional[FlowExecution]:
        try:
            async with self._session() as db:
                db.add(FlowExecutionRow(**self._execution_values(execution.model_dump())))
        except IntegrityError:
            logger.debug("execution_enqueue_deduplicated",
                         flow_id=execution.flow_id, customer_id=execution.customer_id,
                         active_key=execution.active_key, once_key=execution.once_key)
            return None
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        async with self._session() as db:
            row = await db.get(FlowExecutionRow, execution_id)
            return self._row_to_execution(row) if row else None

    async def list_executions(self, flow_id: str = None, customer_id: str = None,
                              status: str = None, limit: int = 100) -> list[FlowExecution]:
        async with self._session() as db:
            stmt = select(FlowExecutionRow)
            if flow_id:
                stmt = stmt.where(FlowExecutionRow.flow_id == flow_id)
            if customer_id:
                stmt = stmt.where(FlowExecutionRow.customer_id == customer_id)
            if status:
                stmt = stmt.where(FlowExecutionRow.status == status)
            result = await db.execute(stmt.order_by(FlowExecutionRow.created_at).limit(limit))
            return [self._row_to_execution(r) for r in result.scalars()]

    async def list_runnable_executions(self, lease_cutoff: datetime, limit: int = 100) -> list[FlowExecution]:
        async with self._session() as db:
            result = await db.execute(
                select(FlowExecutionRow)
                .where(or_(
                    FlowExecutionRow.status == ExecutionStatus.QUEUED.value,
                    and_(
                        FlowExecutionRow.status == ExecutionStatus.RUNNING.value,
                        or_(FlowExecutionRow.claimed_at.is_(None),
                            FlowExecutionRow.claimed_at < lease_cutoff),
                    ),
                ))
                .order_by(FlowExecutionRow.created_at)
                .limit(limit)
            )
            return [self._row_to_execution(r) for r in result.scalars()]

    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime,
                              lease_cutoff: datetime) -> Optional[FlowExecution]:
        async with self._session() as db:
            row = await db.get(FlowExecutionRow, execution_id)
            if row is None:
                return None
            execution = self._row_to_execution(row)
            if not execution_is_claimable(execution, lease_cutoff):
                return None

            conditions = [
                FlowExecutionRow.id == execution_id,
                FlowExecutionRow.status == row.status,
            ]
            if row.claim_token is None:
                conditions.append(FlowExecutionRow.claim_token.is_(None))
            else:
                conditions.append(FlowExecutionRow.claim_token == row.claim_token)

            started_at = execution.started_at or now
            result = await db.execute(
                update(FlowExecutionRow)
                .where(*conditions)
                .values(status=ExecutionStatus.RUNNING.value, claim_token=claim_token,
                        claimed_at=now, started_at=started_at)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return None
            return execution.model_copy(update={
                "status": ExecutionStatus.RUNNING, "claim_token": claim_token,
                "claimed_at": now, "started_at": started_at,
            })

    async def _leased_update(self, db: AsyncSession, execution_id: str, claim_token: str,
                             values: dict[str, Any]) -> bool:
        result = await db.execute(
            update(FlowExecutionRow)
            .where(
                FlowExecutionRow.id == execution_id,
                FlowExecutionRow.status == ExecutionStatus.RUNNING.value,
                FlowExecutionRow.claim_token == claim_token,
            )
            .values(**values)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    async def update_execution(self, execution_id: str, claim_token: str, **fields: Any) -> bool:
        async with self._session() as db:
            return await self._leased_update(db, execution_id, claim_token,
                                             self._execution_values(fields))

    async def release_execution(self, execution_id: str, claim_token: str) -> bool:
        async with self._session() as db:
            return await self._leased_update(db, execution_id, claim_token,
                                             {"claim_token": None, "claimed_at": None})

    async def complete_execution(self, execution_id: str, claim_token: str, now: datetime,
                                 halted_reason: str = "") -> bool:
        async with self._session() as db:
            row = await db.get(FlowExecutionRow, execution_id)
            if row is None:
                return False
            # Same transaction: the cooldown stamp lands before the active key frees up
            completed = await self._leased_update(db, execution_id, claim_token, {
                "status": ExecutionStatus.COMPLETED.value, "completed_at": now,
                "halted_reason": halted_reason, "active_key": None,
                "claim_token": None, "claimed_at": None, "resume_at": None,
            })
            if not completed:
                return False
            await self._stamp_flow(db, row.tenant_id, row.customer_id, row.flow_id,
                                   last_completed_at=now)
            return True

    async def fail_execution(self, execution_id: str, claim_token: str, now: datetime,
                             step_index: int, error: str) -> bool:
        async with self._session() as db:
            return await self._leased_update(db, execution_id, claim_token, {
                "status": ExecutionStatus.FAILED.value, "completed_at": now,
                "failed_step": step_index, "error": error, "active_key": None,
                "claim_token": None, "claimed_at": None, "resume_at": None,
            })

    # ── Delivery ledger ────────────────────────────────────

    async def get_delivery(self, idempotency_key: str) -> Optional[DeliveryReceipt]:
        async with self._session() as db:
            row = await db.get(DeliveryRow, idempotency_key)
            if not row:
                return None
            return DeliveryReceipt(
                idempotency_key=row.idempotency_key,
                conversation_id=row.conversation_id,
                provider_message_ids=row.provider_message_ids or [],
                delivered_at=row.delivered_at,
            )

    async def record_delivery(self, receipt: DeliveryReceipt) -> bool:
        try:
            async with self._session() as db:
                db.add(DeliveryRow(
                    idempotency_key=receipt.idempotency_key,
                    conversation_id=receipt.conversation_id,
                    provider_message_ids=list(receipt.provider_message_ids),
                    delivered_at=receipt.delivered_at,
                ))
        except IntegrityError:
            return False
        return True

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _execution_values(fields: dict[str, Any]) -> dict[str, Any]:
        """Model field values → column values."""
        values = {}
        for name, value in fields.items():
            if name == "steps" and value is not None:
                value = _STEPS.dump_python(_STEPS.validate_python(value), mode="json")
            elif isinstance(value, (ExecutionStatus, TriggerType)):
                value = value.value
            values[name] = value
        return values

    @staticmethod
    def _row_to_message(row: InboundMessageRow) -> InboundMessage:
        return InboundMessage(
            id=row.id, tenant_id=row.tenant_id, conversation_id=row.conversation_id,
            customer_id=row.customer_id, provider_message_id=row.provider_message_id,
            sequence=row.sequence, received_at=row.received_at, sent_at=row.sent_at,
            payload=MessagePayload.model_validate(row.payload or {}),
            grouped=row.grouped, group_id=row.group_id, dispatched=row.dispatched,
        )

    @staticmethod
    def _row_to_group(row: MessageGroupRow) -> MessageGroup:
        return MessageGroup(
            id=row.id, tenant_id=row.tenant_id, conversation_id=row.conversation_id,
            customer_id=row.customer_id, state=GroupState(row.state), sealed=row.sealed,
            first_sequence=row.first_sequence, member_count=row.member_count,
            pending_media=row.pending_media, created_at=row.created_at,
            last_member_received_at=row.last_member_received_at,
            claimed_at=row.claimed_at, claim_token=row.claim_token,
            attempts=row.attempts, last_error=row.last_error or "",
            dispatched_at=row.dispatched_at,
        )

    @staticmethod
    def _row_to_flow(row: FlowRow) -> FlowDefinition:
        return FlowDefinition(
            id=row.id, tenant_id=row.tenant_id, name=row.name, active=row.active,
            trigger=TriggerSpec.model_validate(row.trigger or {}),
            steps=_STEPS.validate_python(row.steps or []),
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_execution(row: FlowExecutionRow) -> FlowExecution:
        return FlowExecution(
            id=row.id, flow_id=row.flow_id, tenant_id=row.tenant_id,
            customer_id=row.customer_id, conversation_id=row.conversation_id or "",
            trigger_type=TriggerType(row.trigger_type), status=ExecutionStatus(row.status),
            steps=_STEPS.validate_python(row.steps) if row.steps is not None else None,
            current_step=row.current_step, failed_step=row.failed_step,
            error=row.error or "", halted_reason=row.halted_reason or "",
            active_key=row.active_key, once_key=row.once_key,
            claim_token=row.claim_token, claimed_at=row.claimed_at,
            resume_at=row.resume_at, created_at=row.created_at,
            started_at=row.started_at, completed_at=row.completed_at,
        )

    @staticmethod
    def _row_to_customer(row: CustomerActivityRow) -> CustomerActivity:
        return CustomerActivity(
            tenant_id=row.tenant_id, customer_id=row.customer_id,
            conversation_id=row.conversation_id or "", address=row.address or "",
            inbound_count=row.inbound_count,
            first_inbound_at=row.first_inbound_at, last_inbound_at=row.last_inbound_at,
            last_outbound_at=row.last_outbound_at, last_message_at=row.last_message_at,
            automation_enabled=row.automation_enabled,
        )

    @staticmethod
    def _row_to_flow_activity(row: FlowActivityRow) -> FlowActivity:
        return FlowActivity(
            tenant_id=row.tenant_id, customer_id=row.customer_id, flow_id=row.flow_id,
            last_enqueued_at=row.last_enqueued_at, last_completed_at=row.last_completed_at,
        )


