"""
Execution Runner — picks up runnable executions and runs each in its own task.

Runnable means queued, or running with no lease or a lapsed one (its worker
crashed or was stopped mid-delay). Concurrency is bounded by a semaphore;
an execution already in flight in this process is never started twice.
Across processes the executor's lease claim decides who runs.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from typing import Any

from core.executor import FlowExecutor
from database.store_base import BasePipelineStore
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


class ExecutionRunner:

    def __init__(
        self,
        store: BasePipelineStore,
        executor: FlowExecutor,
        clock: Clock = None,
        lease_seconds: int = 60,
        concurrency: int = 20,
        batch_size: int = 100,
    ):
        self.store = store
        self.executor = executor
        self.clock = clock or system_clock()
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def sweep(self) -> dict[str, Any]:
        cutoff = self.clock.now() - timedelta(seconds=self.lease_seconds)
        runnable = await self.store.list_runnable_executions(cutoff, limit=self.batch_size)
        started = 0
        for execution in runnable:
            if execution.id in self._in_flight:
                continue
            task = asyncio.create_task(self._run_bounded(execution.id),
                                       name=f"execution_{execution.id}")
            self._in_flight[execution.id] = task
            task.add_done_callback(lambda _t, eid=execution.id: self._in_flight.pop(eid, None))
            started += 1
        if started:
            logger.info("executions_started", count=started, in_flight=self.in_flight)
        return {"runnable": len(runnable), "started": started, "in_flight": self.in_flight}

    async def _run_bounded(self, execution_id: str) -> None:
        async with self._semaphore:
            try:
                await self.executor.run(execution_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("execution_run_error", execution_id=execution_id, error=str(e))

    async def drain(self) -> None:
        """Wait for every in-flight execution to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel in-flight executions; each parks itself with its step index persisted."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("execution_runner_stopped", cancelled=len(tasks))
