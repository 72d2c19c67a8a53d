"""Tests for the periodic worker loop and runtime start/stop."""
import asyncio
import pytest

from backend.generation import MockGenerationClient
from config.settings import Settings
from core.runtime import PipelineRuntime
from database.store_memory import InMemoryPipelineStore
from job_queue.worker import PeriodicWorker
from models.schemas import ExecutionStatus
from tests.fakes import TENANT, RecordingDelivery, RecordingResponder, make_request
from utils.clock import ManualClock


class TestPeriodicWorker:

    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self):
        calls = []

        async def tick():
            calls.append(1)
            return {"claimed": len(calls)}

        worker = PeriodicWorker("test", tick, interval_s=0.001)
        await worker.start()
        while len(calls) < 3:
            await asyncio.sleep(0.001)
        assert worker.running
        await worker.stop()
        assert not worker.running
        assert worker.ticks >= 3

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_stop_the_loop(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")

        worker = PeriodicWorker("flaky", flaky, interval_s=0.001)
        await worker.start()
        while len(calls) < 3:
            await asyncio.sleep(0.001)
        await worker.stop()
        assert worker.errors == 1

    @pytest.mark.asyncio
    async def test_run_once(self):
        async def tick():
            return "done"

        worker = PeriodicWorker("once", tick)
        assert await worker.run_once() == "done"
        assert worker.ticks == 1


class TestRuntimeWorkers:

    @pytest.mark.asyncio
    async def test_pipeline_end_to_end(self):
        """Inbound message → grouped turn to the agent, and a first-message flow delivered."""
        clock = ManualClock()
        settings = Settings()
        settings.buffer.sweep_interval = 0.001
        settings.scheduler.interval = 0.001
        settings.executor.poll_interval = 0.001
        settings.executor.step_pause_seconds = 0

        channel = RecordingDelivery(clock)
        responder = RecordingResponder()
        runtime = PipelineRuntime(settings, InMemoryPipelineStore(),
                                  channel, responder=responder,
                                  generator=MockGenerationClient(), clock=clock)
        await runtime.catalog.save({
            "id": "welcome", "tenant_id": TENANT, "name": "Welcome",
            "trigger": {"on_first_message": True},
            "steps": [{"type": "text", "text": "Hola"}, {"type": "delay", "seconds": 2},
                      {"type": "image", "urls": ["u1.png"]}],
        })
        await runtime.buffer.ingest(make_request(text="hola"))
        clock.advance(11)

        await runtime.start()
        for _ in range(2000):
            executions = await runtime.store.list_executions()
            if responder.turns and executions and executions[0].status.is_terminal:
                break
            await asyncio.sleep(0.001)
        await runtime.stop()

        assert [t.chat_text for t in responder.turns] == ["hola"]
        [execution] = await runtime.store.list_executions()
        assert execution.status == ExecutionStatus.COMPLETED
        assert channel.texts == ["Hola", "u1.png"]
        assert all(not w.running for w in runtime.workers)
