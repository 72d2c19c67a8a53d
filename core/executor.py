"""
Flow Executor — Runs one FlowExecution to completion.

A run holds a lease on the execution (claim token + claimed_at). Progress is
persisted after every step, so a run that dies anywhere can be picked up by
any worker once the lease lapses and continues from the first unfinished
step:

  claim ─▶ snapshot steps (first start only) ─▶ for each remaining step:
             ├─ automation off / flow inactive? ─▶ completed (halted_reason)
             ├─ delay      persist resume_at, sleep, heartbeat the lease
             ├─ content    send under key "<execution_id>:<step_index>"
             └─ ai_function generate, then send under the same key scheme
           ─▶ completed (flow cooldown stamped)  |  failed (step index, error)

The step snapshot is what runs: editing a flow never changes an execution
that has already started.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timedelta
from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from backend.generation import GenerationClient, GenerationRequest
from channels.base import DeliveryClient, TransientDeliveryError, describe_error
from context.tracker import ActivityTracker
from database.store_base import BasePipelineStore, PipelineError
from models.schemas import (
    AiFunctionStep, AudioStep, ConversationRef, DelayStep, DeliveryReceipt,
    FileStep, FlowExecution, FlowStep, ImageStep, MessageKind, OutboundPayload,
    TextStep, VideoStep,
)
from utils.clock import Clock, system_clock

logger = structlog.get_logger()

_MEDIA_KINDS = {
    "image": MessageKind.IMAGE,
    "video": MessageKind.VIDEO,
    "file": MessageKind.DOCUMENT,
    "audio": MessageKind.AUDIO,
}


class LeaseLostError(PipelineError):
    """Another worker took over the execution; this run must stop touching it."""


def step_payloads(step: FlowStep) -> list[OutboundPayload]:
    """Outbound messages for a content step. Only the first media item carries the caption."""
    if isinstance(step, TextStep):
        return [OutboundPayload(text=step.text)]
    if isinstance(step, (ImageStep, VideoStep, FileStep)):
        return [
            OutboundPayload(kind=_MEDIA_KINDS[step.type], media_url=url,
                            caption=step.caption if i == 0 else "")
            for i, url in enumerate(step.urls)
        ]
    if isinstance(step, AudioStep):
        return [OutboundPayload(kind=MessageKind.AUDIO, media_url=url) for url in step.urls]
    return []


class FlowExecutor:

    def __init__(
        self,
        store: BasePipelineStore,
        delivery: DeliveryClient,
        generator: GenerationClient,
        activity: ActivityTracker,
        clock: Clock = None,
        lease_seconds: int = 60,
        step_max_attempts: int = 3,
        retry_backoff_max: float = 10.0,
        step_pause_seconds: float = 1.0,
        delivery_timeout: float = 30.0,
        history_limit: int = 30,
    ):
        if delivery_timeout + retry_backoff_max >= lease_seconds:
            raise ValueError(
                f"delivery_timeout + retry_backoff_max ({delivery_timeout + retry_backoff_max}s) "
                f"must be shorter than lease_seconds ({lease_seconds}s)"
            )
        self.store = store
        self.delivery = delivery
        self.generator = generator
        self.activity = activity
        self.clock = clock or system_clock()
        self.lease_seconds = lease_seconds
        self.step_max_attempts = step_max_attempts
        self.retry_backoff_max = retry_backoff_max
        self.step_pause_seconds = step_pause_seconds
        self.delivery_timeout = delivery_timeout
        self.history_limit = history_limit

    @property
    def heartbeat_seconds(self) -> float:
        return max(self.lease_seconds / 3, 1.0)

    # ── Entry point ───────────────────────────────────────────

    async def run(self, execution_id: str) -> Optional[FlowExecution]:
        """
        Claim and run an execution. Returns the execution as stored afterwards,
        or None when someone else holds it.
        """
        now = self.clock.now()
        token = uuid.uuid4().hex
        execution = await self.store.claim_execution(
            execution_id, token, now, now - timedelta(seconds=self.lease_seconds),
        )
        if execution is None:
            logger.debug("execution_claim_lost", execution_id=execution_id)
            return None

        logger.info("execution_started", execution_id=execution.id, flow_id=execution.flow_id,
                    customer_id=execution.customer_id, from_step=execution.current_step)
        try:
            await self._run_claimed(execution, token)
        except LeaseLostError:
            logger.warning("execution_lease_lost", execution_id=execution.id)
        except asyncio.CancelledError:
            # Hand the execution back with its step index so it resumes elsewhere
            released = await self.store.release_execution(execution.id, token)
            logger.info("execution_parked", execution_id=execution.id, released=released)
            raise
        return await self.store.get_execution(execution.id)

    async def _run_claimed(self, execution: FlowExecution, token: str) -> None:
        steps = execution.steps
        if steps is None:
            flow = await self.store.get_flow(execution.flow_id)
            if flow is None:
                await self.store.fail_execution(execution.id, token, self.clock.now(), 0,
                                                f"Flow {execution.flow_id} not found")
                logger.error("execution_flow_missing", execution_id=execution.id,
                             flow_id=execution.flow_id)
                return
            steps = list(flow.steps)
            await self._update(execution.id, token, steps=steps)

        conversation = await self._conversation(execution)
        index = execution.current_step

        while index < len(steps):
            halted = await self._halt_reason(execution)
            if halted:
                await self._finish(execution, token, halted_reason=halted)
                logger.info("execution_halted", execution_id=execution.id,
                            step_index=index, reason=halted)
                return

            step = steps[index]
            try:
                if isinstance(step, DelayStep):
                    await self._delay(execution, token, step, index)
                else:
                    await self._content_step(execution, token, conversation, step, index)
            except (LeaseLostError, asyncio.CancelledError):
                raise
            except Exception as e:
                error = f"Failed at step {index + 1}: {describe_error(e)}"
                await self.store.fail_execution(execution.id, token, self.clock.now(), index, error)
                logger.error("execution_failed", execution_id=execution.id,
                             step_index=index, step_type=step.type, error=error)
                return

            index += 1
            await self._update(execution.id, token, current_step=index, resume_at=None,
                               claimed_at=self.clock.now())

            if (self.step_pause_seconds and not isinstance(step, DelayStep)
                    and index < len(steps) and not isinstance(steps[index], DelayStep)):
                await self.clock.sleep(self.step_pause_seconds)

        await self._finish(execution, token)
        logger.info("execution_completed", execution_id=execution.id,
                    flow_id=execution.flow_id, steps=len(steps))

    # ── Steps ─────────────────────────────────────────────────

    async def _delay(self, execution: FlowExecution, token: str,
                     step: DelayStep, index: int) -> None:
        if execution.resume_at is not None and execution.current_step == index:
            resume_at = execution.resume_at
        else:
            resume_at = self.clock.now() + timedelta(seconds=step.seconds)
            await self._update(execution.id, token, resume_at=resume_at)

        while True:
            remaining = (resume_at - self.clock.now()).total_seconds()
            if remaining <= 0:
                break
            await self.clock.sleep(min(remaining, self.heartbeat_seconds))
            await self._update(execution.id, token, claimed_at=self.clock.now())

    async def _content_step(self, execution: FlowExecution, token: str,
                            conversation: ConversationRef, step: FlowStep, index: int) -> None:
        if isinstance(step, AiFunctionStep):
            history = await self.store.get_recent_messages(
                execution.conversation_id, limit=self.history_limit,
            ) if execution.conversation_id else []
            payloads = await self.generator.generate(GenerationRequest(
                execution_id=execution.id, step_index=index,
                tenant_id=execution.tenant_id, customer_id=execution.customer_id,
                conversation_id=execution.conversation_id,
                instruction=step.instruction, config=step.config, history=history,
            ))
        else:
            payloads = step_payloads(step)

        if not payloads:
            logger.info("execution_step_empty", execution_id=execution.id, step_index=index)
            return

        receipt = await self._send(execution.id, token, conversation, payloads,
                                   f"{execution.id}:{index}")
        if not receipt.replayed:
            await self.activity.record_outbound(execution.tenant_id, execution.customer_id,
                                                self.clock.now())
        logger.info("execution_step_sent", execution_id=execution.id, step_index=index,
                    step_type=step.type, messages=len(payloads), replayed=receipt.replayed)

    async def _send(self, execution_id: str, token: str, conversation: ConversationRef,
                    payloads: list[OutboundPayload], idempotency_key: str) -> DeliveryReceipt:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(self.step_max_attempts),
            wait=wait_exponential(multiplier=1, max=self.retry_backoff_max),
            sleep=self.clock.sleep,
            reraise=True,
        ):
            with attempt:
                # Renew the lease before every attempt; a worker that lost it must not send
                await self._update(execution_id, token, claimed_at=self.clock.now())
                try:
                    return await asyncio.wait_for(
                        self.delivery.send(conversation, payloads, idempotency_key),
                        timeout=self.delivery_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise TransientDeliveryError(
                        f"delivery timed out after {self.delivery_timeout}s",
                        self.delivery.channel,
                    ) from e

    # ── Helpers ───────────────────────────────────────────────

    async def _halt_reason(self, execution: FlowExecution) -> str:
        if not await self.activity.automation_enabled(execution.tenant_id, execution.customer_id):
            return "automation_disabled"
        flow = await self.store.get_flow(execution.flow_id)
        if flow is None or not flow.active:
            return "flow_inactive"
        return ""

    async def _conversation(self, execution: FlowExecution) -> ConversationRef:
        activity = await self.activity.get(execution.tenant_id, execution.customer_id)
        return ConversationRef(
            tenant_id=execution.tenant_id,
            conversation_id=execution.conversation_id or (activity.conversation_id if activity else ""),
            customer_id=execution.customer_id,
            address=activity.address if activity else execution.customer_id,
        )

    async def _update(self, execution_id: str, token: str, **fields) -> None:
        if not await self.store.update_execution(execution_id, token, **fields):
            raise LeaseLostError(f"Lease on execution {execution_id} lost")

    async def _finish(self, execution: FlowExecution, token: str, halted_reason: str = "") -> None:
        now: datetime = self.clock.now()
        if not await self.store.complete_execution(execution.id, token, now, halted_reason):
            raise LeaseLostError(f"Lease on execution {execution.id} lost")
