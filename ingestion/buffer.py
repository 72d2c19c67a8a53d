"""
Grouping Buffer — Coalesces rapid-fire inbound messages into turns.

Customers rarely say everything in one message. The buffer holds a
conversation's messages in one open group until the customer has been
quiet for the tenant's buffer window, then offers the group to the
dispatcher.

Write side (ingest):
  dedupe on provider message id → next sequence number → append to the
  open group, or open a new one. The store performs all three as one
  conditional-update unit, so concurrent webhooks for the same
  conversation never split or reorder a group.

Read side (find_ready):
  a separate sweep that re-reads tenant windows every call. A group is
  ready when it is quiet long enough, its media has resolved (or the
  media grace period has passed), and no older group of the same
  conversation is still waiting.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from context.tracker import ActivityTracker
from database.store_base import BasePipelineStore
from models.schemas import GroupAssignment, IngestRequest, InboundMessage, MessageGroup
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


class GroupingBuffer:

    def __init__(
        self,
        store: BasePipelineStore,
        activity: ActivityTracker,
        clock: Clock = None,
        default_buffer_seconds: int = 10,
        media_wait_seconds: int = 15,
    ):
        self.store = store
        self.activity = activity
        self.clock = clock or system_clock()
        self.default_buffer_seconds = default_buffer_seconds
        self.media_wait_seconds = media_wait_seconds

    async def ingest(self, request: IngestRequest) -> GroupAssignment:
        """Record one inbound message and assign it to a group."""
        received_at = self.clock.now()
        assignment = await self.store.append_inbound(request, received_at)

        if assignment.duplicate:
            logger.info("inbound_duplicate_discarded",
                        conversation_id=request.conversation_id,
                        provider_message_id=request.provider_message_id)
            return assignment

        await self.activity.record_inbound(
            request.tenant_id, request.customer_id, request.conversation_id,
            received_at, address=request.sender_address,
        )
        logger.info("inbound_grouped",
                    conversation_id=request.conversation_id,
                    group_id=assignment.group_id,
                    sequence=assignment.sequence,
                    new_group=assignment.created_group)
        return assignment

    async def attach_media(self, message_id: str, media_url: str) -> Optional[InboundMessage]:
        """Complete a message whose media URL resolved after ingestion."""
        message = await self.store.attach_media(message_id, media_url)
        if message is None:
            logger.warning("media_attach_unknown_message", message_id=message_id)
        return message

    async def buffer_seconds_for(self, tenant_id: str) -> int:
        tenant = await self.store.get_tenant_settings(tenant_id)
        if tenant.buffer_seconds is None:
            return self.default_buffer_seconds
        return tenant.buffer_seconds

    async def find_ready(self, now: datetime = None, limit: int = 100) -> list[MessageGroup]:
        """Open groups eligible for claim at `now`."""
        now = now or self.clock.now()
        windows: dict[str, int] = {}
        ready = []

        for group in await self.store.list_open_groups(limit):
            if group.tenant_id not in windows:
                windows[group.tenant_id] = await self.buffer_seconds_for(group.tenant_id)
            window = windows[group.tenant_id]

            if group.pending_media > 0:
                if not group.is_quiet(now, window + self.media_wait_seconds):
                    continue
                logger.warning("group_media_wait_expired",
                               group_id=group.id, pending_media=group.pending_media)
            elif not group.is_quiet(now, window):
                continue

            head = await self.store.get_head_group(group.conversation_id)
            if head is not None and head.id != group.id:
                logger.debug("group_waiting_on_older_turn",
                             group_id=group.id, head_group_id=head.id)
                continue

            ready.append(group)

        return ready
