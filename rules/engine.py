"""
Trigger Scheduler — Periodic sweep of active flows × customer activity.

Each sweep re-reads the catalog and every flow's thresholds, asks the
trigger policy which customers are due, and enqueues a FlowExecution for
each. Enqueue is idempotent through the store's unique keys, so any number
of schedulers may sweep at once: the losers get None back and move on.

One flow or customer blowing up is logged and counted; the sweep goes on.
"""
from __future__ import annotations

import structlog
from collections import Counter
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from context.tracker import ActivityTracker
from database.store_base import BasePipelineStore
from models.schemas import (
    CustomerActivity, FlowDefinition, FlowExecution, ThresholdTrigger, TriggerType,
)
from rules import triggers
from rules.catalog import FlowCatalog
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


class TriggerScheduler:
    """
    Usage:
        scheduler = TriggerScheduler(store, catalog, activity)
        stats = await scheduler.sweep()
    """

    def __init__(
        self,
        store: BasePipelineStore,
        catalog: FlowCatalog,
        activity: ActivityTracker,
        clock: Clock = None,
        candidate_limit: int = 1000,
    ):
        self.store = store
        self.catalog = catalog
        self.activity = activity
        self.clock = clock or system_clock()
        self.candidate_limit = candidate_limit

    # ── Sweep ─────────────────────────────────────────────────

    async def sweep(self, now: datetime = None) -> dict[str, Any]:
        now = now or self.clock.now()
        stats: Counter = Counter()
        for flow in await self.catalog.list_active():
            stats["flows"] += 1
            try:
                await self._sweep_flow(flow, now, stats)
            except Exception as e:
                stats["errors"] += 1
                logger.error("trigger_sweep_flow_error", flow_id=flow.id, error=str(e))
        if stats["enqueued"]:
            logger.info("trigger_sweep_completed", **stats)
        return dict(stats)

    async def _sweep_flow(self, flow: FlowDefinition, now: datetime, stats: Counter) -> None:
        trigger = flow.trigger

        if trigger.on_first_message:
            async for activity in self._candidates(flow.tenant_id, inbound_count=1):
                if triggers.first_message_due(activity):
                    await self._consider(flow, activity, TriggerType.FIRST_MESSAGE, None, now, stats)

        if trigger.on_inactivity and trigger.on_inactivity.enabled:
            async for activity in self._candidates(
                flow.tenant_id, last_inbound_before=now - trigger.on_inactivity.threshold,
            ):
                await self._consider(flow, activity, TriggerType.INACTIVITY,
                                     trigger.on_inactivity, now, stats)

        if trigger.on_no_response and trigger.on_no_response.enabled:
            async for activity in self._candidates(
                flow.tenant_id, last_message_before=now - trigger.on_no_response.threshold,
            ):
                await self._consider(flow, activity, TriggerType.NO_RESPONSE,
                                     trigger.on_no_response, now, stats)

    async def _candidates(self, tenant_id: str, **filters: Any) -> AsyncIterator[CustomerActivity]:
        """Every matching customer, fetched candidate_limit at a time in customer_id order."""
        after = None
        while True:
            page = await self.store.list_customer_activity(
                tenant_id, after_customer_id=after, limit=self.candidate_limit, **filters,
            )
            for activity in page:
                yield activity
            if len(page) < self.candidate_limit:
                return
            after = page[-1].customer_id

    async def _consider(self, flow: FlowDefinition, activity: CustomerActivity,
                        trigger_type: TriggerType, trigger: Optional[ThresholdTrigger],
                        now: datetime, stats: Counter) -> None:
        try:
            if not activity.automation_enabled:
                stats["skipped_automation_off"] += 1
                return
            if trigger is not None:
                flow_activity = await self.activity.get_flow_activity(
                    flow.tenant_id, activity.customer_id, flow.id,
                )
                if not triggers.threshold_trigger_due(trigger, trigger_type, activity,
                                                      flow_activity, now):
                    stats["cooling_down"] += 1
                    return
            execution = await self.enqueue(flow, activity, trigger_type, trigger, now)
            stats["enqueued" if execution else "deduped"] += 1
        except Exception as e:
            stats["errors"] += 1
            logger.error("trigger_enqueue_error", flow_id=flow.id,
                         customer_id=activity.customer_id, trigger=trigger_type.value,
                         error=str(e))

    # ── Enqueue ───────────────────────────────────────────────

    async def enqueue(self, flow: FlowDefinition, activity: CustomerActivity,
                      trigger_type: TriggerType, trigger: Optional[ThresholdTrigger] = None,
                      now: datetime = None) -> Optional[FlowExecution]:
        """Enqueue one execution; None when an equivalent one already exists."""
        now = now or self.clock.now()
        execution = FlowExecution(
            flow_id=flow.id,
            tenant_id=flow.tenant_id,
            customer_id=activity.customer_id,
            conversation_id=activity.conversation_id,
            trigger_type=trigger_type,
            active_key=triggers.active_key(flow.id, activity.customer_id),
            once_key=(
                triggers.once_key(flow.id, activity.customer_id, trigger_type)
                if triggers.is_single_lifetime(trigger_type, trigger) else None
            ),
            created_at=now,
        )
        created = await self.store.enqueue_execution(execution)
        if created is None:
            logger.debug("execution_deduped", flow_id=flow.id,
                         customer_id=activity.customer_id, trigger=trigger_type.value)
            return None
        await self.activity.record_flow_enqueued(flow.tenant_id, activity.customer_id, flow.id, now)
        logger.info("execution_enqueued", execution_id=created.id, flow_id=flow.id,
                    customer_id=activity.customer_id, trigger=trigger_type.value)
        return created

    async def trigger_manual(self, flow_id: str, customer_id: str) -> Optional[FlowExecution]:
        """Operator-initiated run; still subject to the one-active-run key."""
        flow = await self.catalog.get(flow_id)
        activity = await self.activity.get(flow.tenant_id, customer_id)
        if activity is None:
            activity = CustomerActivity(tenant_id=flow.tenant_id, customer_id=customer_id)
        return await self.enqueue(flow, activity, TriggerType.MANUAL)
