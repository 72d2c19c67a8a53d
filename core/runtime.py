"""
Pipeline Runtime — wires every component from Settings and owns the workers.

Usage:
    runtime = await PipelineRuntime.from_settings(get_settings())
    await runtime.start()       # dispatch, trigger and execution workers
    ...
    await runtime.stop()

Tests build the same graph with explicit collaborators (fake clock,
recording delivery) through the constructor.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from backend.generation import GenerationClient, create_generation_client
from backend.responder import Responder, create_responder
from channels.base import DeliveryClient, IdempotentDelivery, LoggingDeliveryClient
from channels.whatsapp_adapter import WhatsAppCloudClient
from config.settings import Settings
from context.tracker import ActivityTracker
from core.executor import FlowExecutor
from core.runner import ExecutionRunner
from database.store_base import BasePipelineStore
from ingestion.buffer import GroupingBuffer
from job_queue.dispatcher import Dispatcher
from job_queue.worker import PeriodicWorker
from models.schemas import TenantSettings
from rules.catalog import FlowCatalog
from rules.engine import TriggerScheduler
from utils.clock import Clock, system_clock

logger = structlog.get_logger()


def create_delivery_client(settings: Settings, clock: Clock = None) -> DeliveryClient:
    """Factory: WhatsApp Cloud when configured, logging mock otherwise."""
    whatsapp = settings.channels.get("whatsapp")
    if whatsapp and whatsapp.enabled and whatsapp.credentials.get("access_token"):
        return WhatsAppCloudClient(whatsapp.credentials, clock)
    logger.warning("using_mock_delivery", reason="whatsapp channel not configured")
    return LoggingDeliveryClient(clock)


class PipelineRuntime:

    def __init__(
        self,
        settings: Settings,
        store: BasePipelineStore,
        delivery: DeliveryClient,
        responder: Responder = None,
        generator: GenerationClient = None,
        clock: Clock = None,
    ):
        self.settings = settings
        self.store = store
        self.clock = clock or system_clock()
        self.channel = delivery
        self.delivery = IdempotentDelivery(delivery, store)

        self.activity = ActivityTracker(store)
        self.catalog = FlowCatalog(store)
        self.buffer = GroupingBuffer(
            store, self.activity, self.clock,
            default_buffer_seconds=settings.buffer.default_buffer_seconds,
            media_wait_seconds=settings.buffer.media_wait_seconds,
        )
        self.responder = responder or create_responder(
            self.delivery, self.activity, settings.responder, self.clock,
        )
        self.generator = generator or create_generation_client(settings.responder)

        self.dispatcher = Dispatcher(
            store, self.buffer, self.responder, self.activity, self.clock,
            lease_seconds=settings.buffer.lease_seconds,
            max_attempts=settings.buffer.max_attempts,
            responder_timeout=settings.buffer.responder_timeout,
            batch_size=settings.buffer.batch_size,
        )
        self.scheduler = TriggerScheduler(store, self.catalog, self.activity, self.clock)
        self.executor = FlowExecutor(
            store, self.delivery, self.generator, self.activity, self.clock,
            lease_seconds=settings.executor.lease_seconds,
            step_max_attempts=settings.executor.step_max_attempts,
            retry_backoff_max=settings.executor.retry_backoff_max,
            step_pause_seconds=settings.executor.step_pause_seconds,
            delivery_timeout=settings.executor.delivery_timeout,
            history_limit=settings.responder.history_limit,
        )
        self.runner = ExecutionRunner(
            store, self.executor, self.clock,
            lease_seconds=settings.executor.lease_seconds,
            concurrency=settings.executor.concurrency,
        )
        self.workers = [
            PeriodicWorker("dispatch", self.dispatcher.sweep, settings.buffer.sweep_interval),
            PeriodicWorker("triggers", self.scheduler.sweep, settings.scheduler.interval),
            PeriodicWorker("executions", self.runner.sweep, settings.executor.poll_interval),
        ]

    @classmethod
    async def from_settings(cls, settings: Settings, store: BasePipelineStore = None,
                            clock: Clock = None) -> "PipelineRuntime":
        if store is None:
            from database.store_factory import create_store
            store = create_store(settings.database)
            if settings.database.store_backend == "sql":
                from database.session import init_db
                await init_db()
        runtime = cls(settings, store, create_delivery_client(settings, clock), clock=clock)
        await runtime.seed(settings.tenants, settings.flows)
        return runtime

    async def seed(self, tenants: list[dict[str, Any]], flows: list[dict[str, Any]]) -> None:
        """Apply tenant settings and flows declared in settings.yaml."""
        for raw in tenants:
            await self.store.upsert_tenant_settings(TenantSettings(**raw))
        if flows:
            await self.catalog.load_from_config(flows)
        logger.info("runtime_seeded", tenants=len(tenants), flows=len(flows))

    @property
    def whatsapp(self) -> Optional[WhatsAppCloudClient]:
        return self.channel if isinstance(self.channel, WhatsAppCloudClient) else None

    async def start(self) -> None:
        for worker in self.workers:
            await worker.start()
        logger.info("pipeline_started", workers=[w.name for w in self.workers])

    async def stop(self) -> None:
        for worker in self.workers:
            await worker.stop()
        await self.runner.stop()
        await self.responder.close()
        await self.generator.close()
        await self.delivery.close()
        logger.info("pipeline_stopped")
