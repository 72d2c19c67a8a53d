"""
Tests for the flow executor and execution runner.

Covers:
  - Scenario [text "Hola", delay 2 s, image ["u1.png"]]
  - Resume after a crash mid-flow (no resend, no skipped step)
  - Transient retry, permanent failure with step index
  - Halting when automation or the flow is switched off
  - Step snapshot wins over later edits
  - ai_function steps through the generation client
  - Runner concurrency and parking on stop
  - Lease renewed across slow delivery retries
"""
import asyncio
import pytest
from datetime import timedelta

from backend.generation import GenerationClient
from channels.base import PermanentDeliveryError, TransientDeliveryError
from core.executor import FlowExecutor, step_payloads
from core.runner import ExecutionRunner
from models.schemas import (
    AiFunctionStep, DelayStep, ExecutionStatus, FileStep, FlowDefinition, FlowExecution,
    ImageStep, MessageKind, OutboundPayload, TextStep, TriggerType,
)
from tests.fakes import TENANT, SimulatedCrash, make_request


async def _setup(store, buffer, steps, flow_id="f1") -> FlowExecution:
    await buffer.ingest(make_request())
    await store.upsert_flow(FlowDefinition(id=flow_id, tenant_id=TENANT, name="t", steps=steps))
    return await store.enqueue_execution(FlowExecution(
        flow_id=flow_id, tenant_id=TENANT, customer_id="5215550001",
        conversation_id="conv-1", trigger_type=TriggerType.FIRST_MESSAGE,
        active_key=f"{flow_id}:5215550001",
    ))


class TestStepPayloads:

    def test_caption_only_on_first_media(self):
        payloads = step_payloads(ImageStep(urls=["a.png", "b.png"], caption="new in"))
        assert [p.caption for p in payloads] == ["new in", ""]
        assert all(p.kind == MessageKind.IMAGE for p in payloads)

    def test_file_maps_to_document(self):
        [payload] = step_payloads(FileStep(urls=["c.pdf"]))
        assert payload.kind == MessageKind.DOCUMENT


class TestScenario:

    @pytest.mark.asyncio
    async def test_hola_delay_image(self, executor, store, buffer, channel, clock):
        execution = await _setup(store, buffer, [
            TextStep(text="Hola"), DelayStep(seconds=2), ImageStep(urls=["u1.png"]),
        ])
        result = await executor.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert channel.texts == ["Hola", "u1.png"]
        assert channel.sent[1].payload.kind == MessageKind.IMAGE
        assert channel.sent[1].at - channel.sent[0].at >= timedelta(seconds=2)
        assert [s.key for s in channel.sent] == [f"{execution.id}:0", f"{execution.id}:2"]

        flow_activity = await store.get_flow_activity(TENANT, "5215550001", "f1")
        assert flow_activity.last_completed_at == result.completed_at
        assert result.active_key is None

    @pytest.mark.asyncio
    async def test_outbound_activity_recorded(self, executor, store, buffer, activity, clock):
        execution = await _setup(store, buffer, [TextStep(text="Hola")])
        clock.advance(60)
        await executor.run(execution.id)
        record = await activity.get(TENANT, "5215550001")
        assert record.last_outbound_at == clock.now()


class TestResume:

    @pytest.mark.asyncio
    async def test_crash_after_step_two_resumes_at_three(self, executor, store, buffer,
                                                         channel, clock):
        execution = await _setup(store, buffer, [TextStep(text=f"s{i}") for i in range(1, 6)])
        original_send = channel.send
        crashed = []

        async def crash_on_third(conversation, payloads, key):
            if key.endswith(":2") and not crashed:
                crashed.append(key)
                raise SimulatedCrash()
            return await original_send(conversation, payloads, key)

        channel.send = crash_on_third
        with pytest.raises(SimulatedCrash):
            await executor.run(execution.id)

        stored = await store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.RUNNING
        assert stored.current_step == 2
        assert channel.texts == ["s1", "s2"]

        # Lease still held: another worker cannot take over yet
        assert await executor.run(execution.id) is None

        clock.advance(61)
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert channel.texts == ["s1", "s2", "s3", "s4", "s5"]

    @pytest.mark.asyncio
    async def test_replayed_step_is_not_resent(self, executor, store, buffer, channel, delivery):
        execution = await _setup(store, buffer, [TextStep(text="a"), TextStep(text="b")])
        # Provider accepted step 0 before the process died
        conversation = await executor._conversation(execution)
        await delivery.send(conversation, [OutboundPayload(text="a")], f"{execution.id}:0")
        await executor.run(execution.id)
        assert channel.texts == ["a", "b"]

    @pytest.mark.asyncio
    async def test_delay_resumes_from_checkpoint(self, executor, store, buffer, channel, clock):
        execution = await _setup(store, buffer, [DelayStep(seconds=3600), TextStep(text="later")])
        task = asyncio.create_task(executor.run(execution.id))

        # Let the run persist resume_at, then stop it mid-delay
        while (await store.get_execution(execution.id)).resume_at is None:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        parked = await store.get_execution(execution.id)
        assert parked.claim_token is None
        assert parked.current_step == 0
        resume_at = parked.resume_at
        assert resume_at is not None

        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert channel.sent[0].at >= resume_at
        assert channel.texts == ["later"]


class TestFailures:

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, executor, store, buffer, channel):
        execution = await _setup(store, buffer, [TextStep(text="Hola")])
        channel.failures.extend([TransientDeliveryError("429"), TransientDeliveryError("503")])
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert channel.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_step(self, executor, store, buffer, channel):
        execution = await _setup(store, buffer, [TextStep(text="a"), TextStep(text="b")])
        original_send = channel.send
        attempts = []

        async def fail_second(conversation, payloads, key):
            if key.endswith(":1"):
                attempts.append(key)
                raise TransientDeliveryError("provider unavailable")
            return await original_send(conversation, payloads, key)

        channel.send = fail_second
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.FAILED
        assert result.failed_step == 1
        assert result.error == "Failed at step 2: provider unavailable"
        assert len(attempts) == 3
        assert result.active_key is None

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, executor, store, buffer, channel):
        execution = await _setup(store, buffer, [ImageStep(urls=["u1.png"])])
        channel.failures.append(PermanentDeliveryError("invalid recipient"))
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.FAILED
        assert result.failed_step == 0
        assert channel.calls == 1

    @pytest.mark.asyncio
    async def test_missing_flow_fails(self, executor, store):
        execution = await store.enqueue_execution(FlowExecution(
            flow_id="ghost", tenant_id=TENANT, customer_id="c1",
        ))
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.FAILED
        assert "ghost" in result.error


class TestLeaseDuringRetries:

    @pytest.mark.asyncio
    async def test_slow_retries_keep_the_lease(self, executor, store, buffer, channel, clock):
        execution = await _setup(store, buffer, [TextStep(text="Hola")])
        original_send = channel.send
        attempts = []
        rival_claims = []

        async def slow_gateway(conversation, payloads, key):
            attempts.append(key)
            if len(attempts) < 3:
                clock.advance(30)
                raise TransientDeliveryError("504 gateway timeout")
            # 60+ seconds after the first claim, another worker tries to take over
            now = clock.now()
            rival_claims.append(await store.claim_execution(
                execution.id, "rival", now, now - timedelta(seconds=60),
            ))
            return await original_send(conversation, payloads, key)

        channel.send = slow_gateway
        result = await executor.run(execution.id)

        assert len(attempts) == 3
        assert rival_claims == [None]
        assert result.status == ExecutionStatus.COMPLETED
        assert channel.texts == ["Hola"]

    @pytest.mark.asyncio
    async def test_lost_lease_stops_before_next_attempt(self, executor, store, buffer,
                                                        channel, clock):
        execution = await _setup(store, buffer, [TextStep(text="Hola")])
        attempts = []

        async def stalled(conversation, payloads, key):
            attempts.append(key)
            clock.advance(61)
            now = clock.now()
            await store.claim_execution(execution.id, "rival", now, now - timedelta(seconds=60))
            raise TransientDeliveryError("504 gateway timeout")

        channel.send = stalled
        result = await executor.run(execution.id)

        assert len(attempts) == 1
        assert result.status == ExecutionStatus.RUNNING
        assert result.claim_token == "rival"
        assert channel.sent == []

    def test_attempt_budget_must_fit_the_lease(self, store, delivery, generator, activity, clock):
        with pytest.raises(ValueError):
            FlowExecutor(store, delivery, generator, activity, clock,
                         lease_seconds=30, delivery_timeout=30)


class TestHalting:

    @pytest.mark.asyncio
    async def test_automation_off_halts_remaining_steps(self, executor, store, buffer,
                                                        channel, activity):
        execution = await _setup(store, buffer, [TextStep(text="a"), DelayStep(seconds=5),
                                                 TextStep(text="b")])
        original_send = channel.send

        async def disable_after_first(conversation, payloads, key):
            receipt = await original_send(conversation, payloads, key)
            await activity.set_automation(TENANT, "5215550001", False)
            return receipt

        channel.send = disable_after_first
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert result.halted_reason == "automation_disabled"
        assert channel.texts == ["a"]

    @pytest.mark.asyncio
    async def test_deactivated_flow_halts(self, executor, store, buffer, channel):
        execution = await _setup(store, buffer, [TextStep(text="a")])
        flow = await store.get_flow("f1")
        flow.active = False
        await store.upsert_flow(flow)
        result = await executor.run(execution.id)
        assert result.halted_reason == "flow_inactive"
        assert channel.texts == []

    @pytest.mark.asyncio
    async def test_snapshot_wins_over_edits(self, executor, store, buffer, channel):
        execution = await _setup(store, buffer, [TextStep(text="v1"), DelayStep(seconds=1),
                                                 TextStep(text="v1 end")])
        original_send = channel.send

        async def edit_after_first(conversation, payloads, key):
            receipt = await original_send(conversation, payloads, key)
            flow = await store.get_flow("f1")
            flow.steps = [TextStep(text="v2")]
            await store.upsert_flow(flow)
            return receipt

        channel.send = edit_after_first
        result = await executor.run(execution.id)
        assert channel.texts == ["v1", "v1 end"]
        assert len(result.steps) == 3


class TestAiFunction:

    @pytest.mark.asyncio
    async def test_generation_output_is_delivered(self, store, buffer, delivery, channel,
                                                  activity, clock):
        class CannedGenerator(GenerationClient):
            def __init__(self):
                self.requests = []

            async def generate(self, request):
                self.requests.append(request)
                return [OutboundPayload(text="Te recomiendo el azul")]

        generator = CannedGenerator()
        executor = FlowExecutor(store, delivery, generator, activity, clock, step_pause_seconds=0)
        execution = await _setup(store, buffer, [AiFunctionStep(instruction="Recommend a product")])
        result = await executor.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert channel.texts == ["Te recomiendo el azul"]
        [request] = generator.requests
        assert request.instruction == "Recommend a product"
        assert [m.payload.text for m in request.history] == ["hola"]

    @pytest.mark.asyncio
    async def test_empty_generation_completes(self, executor, store, buffer, channel, generator):
        execution = await _setup(store, buffer, [AiFunctionStep(instruction="maybe")])
        result = await executor.run(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert channel.texts == []
        assert len(generator.requests) == 1


class TestStepPause:

    @pytest.mark.asyncio
    async def test_pause_between_content_steps(self, store, buffer, delivery, generator,
                                               activity, clock):
        executor = FlowExecutor(store, delivery, generator, activity, clock, step_pause_seconds=1.0)
        execution = await _setup(store, buffer, [TextStep(text="a"), TextStep(text="b"),
                                                 DelayStep(seconds=2), TextStep(text="c")])
        await executor.run(execution.id)
        assert clock.sleeps.count(1.0) == 1


class TestRunner:

    @pytest.mark.asyncio
    async def test_runs_each_execution_once(self, store, buffer, executor, channel, clock):
        execution = await _setup(store, buffer, [TextStep(text="Hola")])
        runner = ExecutionRunner(store, executor, clock)
        stats = await runner.sweep()
        assert stats["started"] == 1
        assert (await runner.sweep())["started"] == 0
        await runner.drain()

        assert (await store.get_execution(execution.id)).status == ExecutionStatus.COMPLETED
        assert channel.texts == ["Hola"]
        assert (await runner.sweep())["runnable"] == 0

    @pytest.mark.asyncio
    async def test_stop_parks_delayed_execution(self, store, buffer, executor, channel, clock):
        execution = await _setup(store, buffer, [DelayStep(seconds=3600), TextStep(text="x")])
        runner = ExecutionRunner(store, executor, clock)
        await runner.sweep()
        while (await store.get_execution(execution.id)).resume_at is None:
            await asyncio.sleep(0)
        await runner.stop()

        parked = await store.get_execution(execution.id)
        assert parked.status == ExecutionStatus.RUNNING
        assert parked.claim_token is None
        assert runner.in_flight == 0
        # Parked executions are immediately runnable again
        assert (await runner.sweep())["started"] == 1
        await runner.drain()
        assert channel.texts == ["x"]
