"""
Dispatcher — Claims ready turns and hands each to the responder exactly once.

There is no broker: the store's group rows are the queue. Workers poll for
ready groups and race to claim them with a conditional update; the loser
simply skips. A claimed group carries a lease (claimed_at + claim token).

Lifecycle:
  ┌──────┐  claim (CAS, seals)  ┌─────────┐  responder ok   ┌────────────┐
  │ open │─────────────────────▶│ claimed │────────────────▶│ dispatched │
  └──────┘                      └────┬────┘                 └────────────┘
     ▲         lease expiry          │
     └───────────────────────────────┤ attempts exhausted   ┌────────┐
                                     └─────────────────────▶│ failed │
                                                            └────────┘

The lease is renewed right before the responder call and the call is
bounded by responder_timeout (shorter than the lease), so no other worker
can reclaim a group while its turn is in flight. A failed responder call
leaves the group claimed; the lease timeout is the retry backoff. Only the
oldest undelivered group of a conversation is ever offered, so turns reach
the responder in creation order.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timedelta
from typing import Any

from backend.responder import Responder
from channels.base import describe_error
from context.tracker import ActivityTracker
from database.store_base import BasePipelineStore
from ingestion.buffer import GroupingBuffer
from ingestion.turns import compose_turn
from models.schemas import ClaimedGroup, GroupState
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


class DispatchOutcome:
    DISPATCHED = "dispatched"
    SKIPPED = "skipped"                       # acked without calling the responder
    ALREADY_DISPATCHED = "already_dispatched"
    LOST_LEASE = "lost_lease"
    RETRY = "retry"
    FAILED = "failed"


class Dispatcher:

    def __init__(
        self,
        store: BasePipelineStore,
        buffer: GroupingBuffer,
        responder: Responder,
        activity: ActivityTracker,
        clock: Clock = None,
        lease_seconds: int = 60,
        max_attempts: int = 5,
        responder_timeout: float = 30.0,
        batch_size: int = 50,
        concurrency: int = 10,
    ):
        if responder_timeout >= lease_seconds:
            raise ValueError(
                f"responder_timeout ({responder_timeout}s) must be shorter than "
                f"lease_seconds ({lease_seconds}s)"
            )
        self.store = store
        self.buffer = buffer
        self.responder = responder
        self.activity = activity
        self.clock = clock or system_clock()
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.responder_timeout = responder_timeout
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)

    async def release_expired(self, now: datetime = None) -> int:
        now = now or self.clock.now()
        cutoff = now - timedelta(seconds=self.lease_seconds)
        released = await self.store.release_expired_groups(cutoff, self.max_attempts)
        if released:
            logger.info("group_leases_expired", count=released)
        return released

    async def poll_ready_groups(self, now: datetime = None) -> list[ClaimedGroup]:
        """Claim every group that is ready at `now`. Lost races are skipped."""
        now = now or self.clock.now()
        claimed = []
        for group in await self.buffer.find_ready(now, limit=self.batch_size):
            token = uuid.uuid4().hex
            result = await self.store.claim_group(group.id, token, now)
            if result is None:
                logger.debug("group_claim_lost", group_id=group.id)
                continue
            logger.info("group_claimed", group_id=group.id,
                        conversation_id=group.conversation_id,
                        members=len(result.messages), attempt=result.group.attempts)
            claimed.append(result)
        return claimed

    async def deliver_and_ack(self, claimed: ClaimedGroup) -> str:
        group = claimed.group
        current = await self.store.get_group(group.id)
        if current is None:
            return DispatchOutcome.LOST_LEASE
        if current.state == GroupState.DISPATCHED:
            return DispatchOutcome.ALREADY_DISPATCHED
        if current.state != GroupState.CLAIMED or current.claim_token != claimed.claim_token:
            return DispatchOutcome.LOST_LEASE

        tenant = await self.store.get_tenant_settings(group.tenant_id)
        automation = await self.activity.automation_enabled(group.tenant_id, group.customer_id)
        if not tenant.responder_enabled or not automation:
            await self.store.mark_group_dispatched(group.id, claimed.claim_token, self.clock.now())
            logger.info("group_acked_without_responder", group_id=group.id,
                        responder_enabled=tenant.responder_enabled, automation=automation)
            return DispatchOutcome.SKIPPED

        # Claimed groups can wait behind the semaphore; the responder gets a full lease
        if not await self.store.renew_group_lease(group.id, claimed.claim_token, self.clock.now()):
            logger.warning("group_lease_lost_before_delivery", group_id=group.id)
            return DispatchOutcome.LOST_LEASE

        turn = compose_turn(claimed)
        try:
            await asyncio.wait_for(self.responder.respond(turn), timeout=self.responder_timeout)
        except Exception as e:
            error = describe_error(e)
            updated = await self.store.record_group_failure(
                group.id, claimed.claim_token, error, self.max_attempts,
            )
            if updated is not None and updated.state == GroupState.FAILED:
                logger.error("group_dispatch_failed_permanently", group_id=group.id,
                             attempts=updated.attempts, error=error)
                return DispatchOutcome.FAILED
            logger.warning("group_dispatch_failed", group_id=group.id,
                           attempt=group.attempts, error=error)
            return DispatchOutcome.RETRY

        if not await self.store.mark_group_dispatched(group.id, claimed.claim_token, self.clock.now()):
            # Lease expired mid-call and someone else owns the group now
            logger.warning("group_ack_lost_lease", group_id=group.id)
            return DispatchOutcome.LOST_LEASE

        logger.info("group_dispatched", group_id=group.id,
                    conversation_id=group.conversation_id, members=len(claimed.messages))
        return DispatchOutcome.DISPATCHED

    async def _deliver_bounded(self, claimed: ClaimedGroup) -> str:
        async with self._semaphore:
            return await self.deliver_and_ack(claimed)

    async def sweep(self) -> dict[str, Any]:
        """One dispatch cycle: reopen expired leases, claim, deliver."""
        now = self.clock.now()
        released = await self.release_expired(now)
        claimed = await self.poll_ready_groups(now)
        outcomes = await asyncio.gather(*(self._deliver_bounded(c) for c in claimed))

        stats: dict[str, Any] = {"released": released, "claimed": len(claimed)}
        for outcome in outcomes:
            stats[outcome] = stats.get(outcome, 0) + 1
        return stats
