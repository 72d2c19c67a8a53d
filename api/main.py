"""
FastAPI Application — Webhooks, ingestion API and read-only status.

Provides:
- WhatsApp Cloud webhook (subscription verification + inbound messages)
- Generic ingestion endpoint for other message sources
- Flow and tenant-settings management used by the console
- Manual-reply and automation toggles per customer
- Read-only views of groups and flow executions
- Lifespan that starts and stops the pipeline workers
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.base import ChannelError
from channels.whatsapp_adapter import parse_webhook
from config.settings import get_settings
from core.runtime import PipelineRuntime
from models.schemas import IngestRequest, TenantSettings, utcnow
from rules.catalog import FlowNotFoundError, FlowValidationError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class AttachMediaRequest(BaseModel):
    media_url: str


class AutomationRequest(BaseModel):
    enabled: bool


class TenantSettingsRequest(BaseModel):
    buffer_seconds: Optional[int] = None
    disable_agent_on_manual_reply: bool = False
    responder_enabled: bool = True


class ManualTriggerRequest(BaseModel):
    customer_id: str


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(runtime: PipelineRuntime = None, start_workers: bool = True) -> FastAPI:
    """
    Build the API around a runtime. Without one, the lifespan builds it from
    settings.yaml; tests pass their own and usually leave the workers off.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = await PipelineRuntime.from_settings(get_settings())
        if start_workers:
            await app.state.runtime.start()
        logger.info("pipeline_api_started", workers=start_workers)
        yield
        if start_workers:
            await app.state.runtime.stop()
        logger.info("pipeline_api_stopped")

    app = FastAPI(
        title="Conversation Pipeline API",
        description="Message grouping and trigger-driven flow automation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def rt(request: Request) -> PipelineRuntime:
        return request.app.state.runtime

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        runtime = rt(request)
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "store": type(runtime.store).__name__,
            "channel": runtime.channel.channel,
            "workers": {w.name: w.running for w in runtime.workers},
            "executions_in_flight": runtime.runner.in_flight,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        whatsapp = rt(request).whatsapp
        challenge = whatsapp.verify_webhook(dict(request.query_params)) if whatsapp else None
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks):
        runtime = rt(request)
        body = await request.json()
        whatsapp = runtime.whatsapp
        tenant_id = whatsapp.tenant_id if whatsapp else "default"

        ingested = duplicates = 0
        for ingest_request, media_id in parse_webhook(body, tenant_id):
            assignment = await runtime.buffer.ingest(ingest_request)
            if assignment.duplicate:
                duplicates += 1
                continue
            ingested += 1
            if media_id and not ingest_request.payload.media_ready and whatsapp:
                background_tasks.add_task(_resolve_media, runtime, assignment.message_id, media_id)
        return {"status": "ok", "ingested": ingested, "duplicates": duplicates}

    # ══════════════════════════════════════════════════════════
    #  INGESTION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages")
    async def ingest_message(req: IngestRequest, request: Request):
        assignment = await rt(request).buffer.ingest(req)
        return assignment.model_dump()

    @app.post("/api/v1/messages/{message_id}/media")
    async def attach_media(message_id: str, req: AttachMediaRequest, request: Request):
        message = await rt(request).buffer.attach_media(message_id, req.media_url)
        if not message:
            raise HTTPException(404, "Message not found")
        return message.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  CUSTOMERS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/tenants/{tenant_id}/customers/{customer_id}/manual-reply")
    async def manual_reply(tenant_id: str, customer_id: str, request: Request):
        runtime = rt(request)
        activity = await runtime.activity.record_manual_reply(
            tenant_id, customer_id, runtime.clock.now(),
        )
        return activity.model_dump(mode="json")

    @app.put("/api/v1/tenants/{tenant_id}/customers/{customer_id}/automation")
    async def set_automation(tenant_id: str, customer_id: str,
                             req: AutomationRequest, request: Request):
        activity = await rt(request).activity.set_automation(tenant_id, customer_id, req.enabled)
        return activity.model_dump(mode="json")

    @app.get("/api/v1/tenants/{tenant_id}/customers/{customer_id}")
    async def get_customer_activity(tenant_id: str, customer_id: str, request: Request):
        activity = await rt(request).activity.get(tenant_id, customer_id)
        if not activity:
            raise HTTPException(404, "Customer not found")
        return activity.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  TENANTS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/tenants/{tenant_id}/settings")
    async def get_tenant_settings(tenant_id: str, request: Request):
        tenant = await rt(request).store.get_tenant_settings(tenant_id)
        return tenant.model_dump(mode="json")

    @app.put("/api/v1/tenants/{tenant_id}/settings")
    async def put_tenant_settings(tenant_id: str, req: TenantSettingsRequest, request: Request):
        if req.buffer_seconds is not None and req.buffer_seconds < 0:
            raise HTTPException(422, "buffer_seconds must be >= 0")
        tenant = await rt(request).store.upsert_tenant_settings(
            TenantSettings(tenant_id=tenant_id, **req.model_dump()),
        )
        logger.info("tenant_settings_updated", tenant_id=tenant_id)
        return tenant.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.put("/api/v1/flows")
    async def save_flow(body: dict[str, Any], request: Request):
        catalog = rt(request).catalog
        try:
            flow = await (catalog.save(catalog.from_legacy(body))
                          if "trigger_conditions" in body else catalog.save(body))
        except FlowValidationError as e:
            raise HTTPException(422, {"message": str(e), "errors": e.errors})
        return flow.model_dump(mode="json")

    @app.get("/api/v1/flows")
    async def list_flows(request: Request, tenant_id: str = None):
        flows = await rt(request).catalog.list_flows(tenant_id)
        return [f.model_dump(mode="json") for f in flows]

    @app.get("/api/v1/flows/{flow_id}")
    async def get_flow(flow_id: str, request: Request):
        try:
            flow = await rt(request).catalog.get(flow_id)
        except FlowNotFoundError:
            raise HTTPException(404, "Flow not found")
        return flow.model_dump(mode="json")

    @app.post("/api/v1/flows/{flow_id}/executions")
    async def trigger_flow(flow_id: str, req: ManualTriggerRequest, request: Request):
        try:
            execution = await rt(request).scheduler.trigger_manual(flow_id, req.customer_id)
        except FlowNotFoundError:
            raise HTTPException(404, "Flow not found")
        if execution is None:
            raise HTTPException(409, "An execution of this flow is already pending for the customer")
        return {"status": "enqueued", "execution_id": execution.id}

    # ══════════════════════════════════════════════════════════
    #  STATUS (read-only)
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/groups/{group_id}")
    async def get_group(group_id: str, request: Request):
        store = rt(request).store
        group = await store.get_group(group_id)
        if not group:
            raise HTTPException(404, "Group not found")
        messages = await store.get_group_messages(group_id)
        return {
            **group.model_dump(mode="json", exclude={"claim_token"}),
            "messages": [m.model_dump(mode="json") for m in messages],
        }

    @app.get("/api/v1/executions/{execution_id}")
    async def get_execution(execution_id: str, request: Request):
        execution = await rt(request).store.get_execution(execution_id)
        if not execution:
            raise HTTPException(404, "Execution not found")
        return execution.model_dump(mode="json", exclude={"claim_token"})

    @app.get("/api/v1/executions")
    async def list_executions(
        request: Request,
        flow_id: str = None,
        customer_id: str = None,
        status: str = None,
        limit: int = Query(50, le=200),
    ):
        executions = await rt(request).store.list_executions(
            flow_id=flow_id, customer_id=customer_id, status=status, limit=limit,
        )
        return [e.model_dump(mode="json", exclude={"claim_token"}) for e in executions]

    return app


async def _resolve_media(runtime: PipelineRuntime, message_id: str, media_id: str) -> None:
    """Background: look up a media download URL and complete the message."""
    try:
        url = await runtime.whatsapp.resolve_media_url(media_id)
    except ChannelError as e:
        logger.warning("media_resolve_failed", message_id=message_id,
                       media_id=media_id, error=str(e))
        return
    if url:
        await runtime.buffer.attach_media(message_id, url)


app = create_app()
