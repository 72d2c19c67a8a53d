"""Shared test fixtures for the conversation pipeline."""
import pytest

from backend.generation import MockGenerationClient
from channels.base import IdempotentDelivery
from context.tracker import ActivityTracker
from core.executor import FlowExecutor
from database.store_memory import InMemoryPipelineStore
from ingestion.buffer import GroupingBuffer
from job_queue.dispatcher import Dispatcher
from rules.catalog import FlowCatalog
from rules.engine import TriggerScheduler
from tests.fakes import RecordingDelivery, RecordingResponder
from utils.clock import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def activity(store) -> ActivityTracker:
    return ActivityTracker(store)


@pytest.fixture
def buffer(store, activity, clock) -> GroupingBuffer:
    return GroupingBuffer(store, activity, clock, default_buffer_seconds=5, media_wait_seconds=15)


@pytest.fixture
def responder() -> RecordingResponder:
    return RecordingResponder()


@pytest.fixture
def dispatcher(store, buffer, responder, activity, clock) -> Dispatcher:
    return Dispatcher(store, buffer, responder, activity, clock,
                      lease_seconds=30, max_attempts=3, responder_timeout=5)


@pytest.fixture
def channel(clock) -> RecordingDelivery:
    return RecordingDelivery(clock)


@pytest.fixture
def delivery(channel, store) -> IdempotentDelivery:
    return IdempotentDelivery(channel, store)


@pytest.fixture
def generator() -> MockGenerationClient:
    return MockGenerationClient()


@pytest.fixture
def catalog(store) -> FlowCatalog:
    return FlowCatalog(store)


@pytest.fixture
def scheduler(store, catalog, activity, clock) -> TriggerScheduler:
    return TriggerScheduler(store, catalog, activity, clock)


@pytest.fixture
def executor(store, delivery, generator, activity, clock) -> FlowExecutor:
    return FlowExecutor(store, delivery, generator, activity, clock,
                        lease_seconds=60, step_max_attempts=3, step_pause_seconds=0)
