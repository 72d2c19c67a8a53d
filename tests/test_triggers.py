"""
Tests for trigger policy and the trigger scheduler.

Covers:
  - first_message / inactivity / no_response selection
  - 24 h repeat floor for short thresholds
  - Single lifetime send under concurrent sweeps
  - Automation-off customers skipped
  - One failing flow never stops the sweep
  - Candidate paging and the shared repeat cooldown
"""
import asyncio
import pytest
from datetime import timedelta

from models.schemas import (
    CustomerActivity, ExecutionStatus, FlowActivity, FlowDefinition,
    REPEAT_COOLDOWN_FLOOR, TextStep, ThresholdTrigger, TriggerSpec, TriggerType,
)
from rules import triggers
from rules.engine import TriggerScheduler
from tests.fakes import TENANT, make_request


def _flow(flow_id: str = "f1", **trigger) -> FlowDefinition:
    return FlowDefinition(
        id=flow_id, tenant_id=TENANT, name=flow_id,
        trigger=TriggerSpec(**trigger), steps=[TextStep(text="hi")],
    )


async def _finish_all(store, clock):
    """Complete every pending execution the way the executor would."""
    for execution in await store.list_executions():
        if execution.status.is_terminal:
            continue
        now = clock.now()
        claimed = await store.claim_execution(execution.id, "tok", now, now)
        await store.complete_execution(claimed.id, "tok", now)


# ──────────────────────────────────────────────────────────────
#  Pure policy
# ──────────────────────────────────────────────────────────────

class TestPolicy:

    def test_cooldown_has_24h_floor(self):
        assert ThresholdTrigger(threshold_hours=1).cooldown == REPEAT_COOLDOWN_FLOOR
        assert ThresholdTrigger(threshold_hours=72).cooldown == timedelta(hours=72)

    def test_keys(self):
        assert triggers.active_key("f1", "c1") == "f1:c1"
        assert triggers.once_key("f1", "c1", TriggerType.FIRST_MESSAGE) == "f1:c1:first_message"
        assert triggers.once_key("f1", "c1", TriggerType.INACTIVITY) == "f1:c1:inactivity"

    def test_single_lifetime(self):
        assert triggers.is_single_lifetime(TriggerType.FIRST_MESSAGE)
        assert not triggers.is_single_lifetime(TriggerType.MANUAL)
        assert triggers.is_single_lifetime(TriggerType.INACTIVITY, ThresholdTrigger(threshold_hours=1, repeat=False))
        assert not triggers.is_single_lifetime(TriggerType.INACTIVITY, ThresholdTrigger(threshold_hours=1))

    def test_threshold_trigger_due(self, clock):
        now = clock.now()
        trigger = ThresholdTrigger(threshold_hours=1)
        activity = CustomerActivity(tenant_id=TENANT, customer_id="c1",
                                    last_inbound_at=now - timedelta(hours=2),
                                    last_message_at=now - timedelta(minutes=5))
        assert triggers.threshold_trigger_due(trigger, TriggerType.INACTIVITY, activity, None, now)
        assert not triggers.threshold_trigger_due(trigger, TriggerType.NO_RESPONSE, activity, None, now)

        recent = FlowActivity(tenant_id=TENANT, customer_id="c1", flow_id="f1",
                              last_completed_at=now - timedelta(hours=3))
        assert not triggers.threshold_trigger_due(trigger, TriggerType.INACTIVITY, activity, recent, now)

    def test_disabled_trigger_never_due(self, clock):
        trigger = ThresholdTrigger(threshold_hours=0, enabled=False)
        assert not triggers.threshold_due(trigger, clock.now() - timedelta(days=9), clock.now())

    def test_last_dispatch_uses_latest_stamp(self, clock):
        now = clock.now()
        record = FlowActivity(tenant_id=TENANT, customer_id="c1", flow_id="f1",
                              last_enqueued_at=now, last_completed_at=now - timedelta(hours=1))
        assert record.last_dispatch_at == now


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class TestFirstMessage:

    @pytest.mark.asyncio
    async def test_enqueues_once_for_new_customer(self, scheduler, catalog, buffer, store):
        await catalog.save(_flow(on_first_message=True))
        await buffer.ingest(make_request())

        stats = await scheduler.sweep()
        assert stats["enqueued"] == 1
        [execution] = await store.list_executions()
        assert execution.trigger_type == TriggerType.FIRST_MESSAGE
        assert execution.once_key == "f1:5215550001:first_message"
        assert execution.conversation_id == "conv-1"

        assert (await scheduler.sweep()).get("enqueued", 0) == 0

    @pytest.mark.asyncio
    async def test_returning_customer_not_matched(self, scheduler, catalog, buffer, store):
        await catalog.save(_flow(on_first_message=True))
        await buffer.ingest(make_request())
        await buffer.ingest(make_request())
        await scheduler.sweep()
        assert await store.list_executions() == []

    @pytest.mark.asyncio
    async def test_no_second_run_after_completion(self, scheduler, catalog, buffer, store, clock):
        await catalog.save(_flow(on_first_message=True))
        await buffer.ingest(make_request())
        await scheduler.sweep()
        await _finish_all(store, clock)
        clock.advance(hours=48)
        await scheduler.sweep()
        assert len(await store.list_executions()) == 1


class TestInactivity:

    @pytest.mark.asyncio
    async def test_fires_after_threshold(self, scheduler, catalog, buffer, store, clock):
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=2)))
        await buffer.ingest(make_request())

        clock.advance(hours=1)
        await scheduler.sweep()
        assert await store.list_executions() == []

        clock.advance(hours=1)
        await scheduler.sweep()
        [execution] = await store.list_executions()
        assert execution.trigger_type == TriggerType.INACTIVITY
        assert execution.once_key is None

    @pytest.mark.asyncio
    async def test_repeat_respects_24h_floor(self, scheduler, catalog, buffer, store, clock):
        """Threshold 1 h with repeat: at most one execution per 24 h."""
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1, repeat=True)))
        await buffer.ingest(make_request())

        for _ in range(47):
            clock.advance(hours=1)
            await scheduler.sweep()
            await _finish_all(store, clock)

        executions = await store.list_executions()
        assert len(executions) == 2
        gap = executions[1].created_at - executions[0].created_at
        assert gap >= timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_pending_execution_blocks_duplicate(self, scheduler, catalog, buffer, store, clock):
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1)))
        await buffer.ingest(make_request())
        clock.advance(hours=2)
        flow = await catalog.get("f1")
        activity = await store.get_customer_activity(TENANT, "5215550001")

        first = await scheduler.enqueue(flow, activity, TriggerType.INACTIVITY)
        second = await scheduler.enqueue(flow, activity, TriggerType.INACTIVITY)
        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_no_repeat_fires_once_ever(self, scheduler, catalog, buffer, store, clock):
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1, repeat=False)))
        await buffer.ingest(make_request())
        for _ in range(5):
            clock.advance(hours=30)
            await scheduler.sweep()
            await _finish_all(store, clock)
        assert len(await store.list_executions()) == 1

    @pytest.mark.asyncio
    async def test_single_lifetime_under_concurrent_sweeps(self, store, catalog, activity,
                                                           buffer, clock):
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1, repeat=False)))
        await buffer.ingest(make_request())
        clock.advance(hours=2)

        schedulers = [TriggerScheduler(store, catalog, activity, clock) for _ in range(8)]
        for _ in range(3):
            await asyncio.gather(*(s.sweep() for s in schedulers))
            await _finish_all(store, clock)
            clock.advance(hours=25)

        assert len(await store.list_executions()) == 1

    @pytest.mark.asyncio
    async def test_first_message_and_inactivity_are_independent(self, scheduler, catalog,
                                                                buffer, store, clock):
        await catalog.save(_flow(on_first_message=True,
                                 on_inactivity=ThresholdTrigger(threshold_hours=1, repeat=False)))
        await buffer.ingest(make_request())
        await scheduler.sweep()
        await _finish_all(store, clock)

        clock.advance(hours=2)
        await scheduler.sweep()
        kinds = sorted(e.trigger_type.value for e in await store.list_executions())
        assert kinds == ["first_message", "inactivity"]

    @pytest.mark.asyncio
    async def test_sweep_pages_past_candidate_limit(self, store, catalog, activity, buffer, clock):
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1, repeat=False)))
        for i in range(5):
            await buffer.ingest(make_request(conversation_id=f"conv-{i}", customer_id=f"c{i}"))
        clock.advance(hours=2)

        scheduler = TriggerScheduler(store, catalog, activity, clock, candidate_limit=2)
        stats = await scheduler.sweep()

        assert stats["enqueued"] == 5
        customers = sorted(e.customer_id for e in await store.list_executions())
        assert customers == ["c0", "c1", "c2", "c3", "c4"]


class TestNoResponse:

    @pytest.mark.asyncio
    async def test_outbound_resets_the_clock(self, scheduler, catalog, buffer, activity,
                                             store, clock):
        await catalog.save(_flow(on_no_response=ThresholdTrigger(threshold_hours=4)))
        await buffer.ingest(make_request())
        clock.advance(hours=3)
        await activity.record_outbound(TENANT, "5215550001", clock.now())

        clock.advance(hours=2)
        await scheduler.sweep()
        assert await store.list_executions() == []

        clock.advance(hours=2)
        await scheduler.sweep()
        [execution] = await store.list_executions()
        assert execution.trigger_type == TriggerType.NO_RESPONSE

    @pytest.mark.asyncio
    async def test_shares_cooldown_with_inactivity(self, scheduler, catalog, buffer, store, clock):
        """One repeat cooldown per flow and customer, whichever trigger fired."""
        await catalog.save(_flow(on_inactivity=ThresholdTrigger(threshold_hours=1),
                                 on_no_response=ThresholdTrigger(threshold_hours=1)))
        await buffer.ingest(make_request())

        clock.advance(hours=2)
        await scheduler.sweep()
        await _finish_all(store, clock)
        clock.advance(hours=2)
        await scheduler.sweep()
        [execution] = await store.list_executions()
        assert execution.trigger_type == TriggerType.INACTIVITY

        clock.advance(hours=23)
        await scheduler.sweep()
        assert len(await store.list_executions()) == 2


class TestSweepRobustness:

    @pytest.mark.asyncio
    async def test_automation_off_is_skipped(self, scheduler, catalog, buffer, activity, store):
        await catalog.save(_flow(on_first_message=True))
        await buffer.ingest(make_request())
        await activity.set_automation(TENANT, "5215550001", False)
        stats = await scheduler.sweep()
        assert stats["skipped_automation_off"] == 1
        assert await store.list_executions() == []

    @pytest.mark.asyncio
    async def test_inactive_flow_ignored(self, scheduler, catalog, buffer, store):
        flow = _flow(on_first_message=True)
        flow.active = False
        await catalog.save(flow)
        await buffer.ingest(make_request())
        await scheduler.sweep()
        assert await store.list_executions() == []

    @pytest.mark.asyncio
    async def test_error_in_one_flow_does_not_stop_sweep(self, scheduler, catalog, buffer,
                                                         store, monkeypatch):
        await catalog.save(_flow("broken", on_first_message=True))
        await catalog.save(_flow("healthy", on_first_message=True))
        await buffer.ingest(make_request())

        original = store.enqueue_execution

        async def flaky_enqueue(execution):
            if execution.flow_id == "broken":
                raise RuntimeError("db hiccup")
            return await original(execution)

        monkeypatch.setattr(store, "enqueue_execution", flaky_enqueue)
        stats = await scheduler.sweep()
        assert stats["errors"] == 1
        assert stats["enqueued"] == 1
        [execution] = await store.list_executions()
        assert execution.flow_id == "healthy"

    @pytest.mark.asyncio
    async def test_manual_trigger(self, scheduler, catalog, store):
        await catalog.save(_flow())
        execution = await scheduler.trigger_manual("f1", "c9")
        assert execution.trigger_type == TriggerType.MANUAL
        assert execution.status == ExecutionStatus.QUEUED
        assert await scheduler.trigger_manual("f1", "c9") is None
