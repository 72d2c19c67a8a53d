"""
Flow Catalog — Validated flow definitions, read-only to the scheduler.

Flows arrive either in the native shape (a FlowDefinition / its dict form)
or in the loose legacy shape the console used to store:

    {
      "id": "...", "user_id": "tenant", "name": "Welcome", "is_active": true,
      "trigger_conditions": {"on_first_message": true,
                             "on_inactivity": {"enabled": true, "hours": 24, "repeat": true}},
      "flow_steps": [
        {"step_order": 1, "step_type": "text", "content": "Hola"},
        {"step_order": 2, "step_type": "delay", "delay_seconds": 2},
        {"step_order": 3, "step_type": "image", "media_url": "[\"u1.png\"]", "content": "caption"},
        {"step_order": 4, "step_type": "ai_function", "ai_prompt": "...", "ai_config": {}}
      ]
    }

Either way the result is validated once, here; nothing downstream has to
cope with a half-formed step.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional, Union

from pydantic import ValidationError

from database.store_base import BasePipelineStore, PipelineError
from models.schemas import FlowDefinition, utcnow

logger = structlog.get_logger()


class FlowValidationError(PipelineError):
    """A flow definition could not be turned into a valid FlowDefinition."""

    def __init__(self, message: str, errors: list[dict[str, Any]] = None):
        super().__init__(message)
        self.errors = errors or []


class FlowNotFoundError(PipelineError):
    pass


def _media_urls(raw: Any) -> list[str]:
    """media_url held either a single URL or a JSON-encoded list of URLs."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return [str(u) for u in raw if u]
    text = str(raw).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return [text]
        if isinstance(parsed, list):
            return [str(u) for u in parsed if u]
    return [text]


def _legacy_step(raw: dict[str, Any]) -> dict[str, Any]:
    step_type = raw.get("step_type") or raw.get("type")
    content = raw.get("content") or ""
    if step_type == "text":
        return {"type": "text", "text": content}
    if step_type in ("image", "video", "file"):
        return {"type": step_type, "urls": _media_urls(raw.get("media_url")), "caption": content}
    if step_type == "audio":
        return {"type": "audio", "urls": _media_urls(raw.get("media_url"))}
    if step_type == "delay":
        return {"type": "delay", "seconds": int(raw.get("delay_seconds") or 0)}
    if step_type == "ai_function":
        return {
            "type": "ai_function",
            "instruction": raw.get("ai_prompt") or content,
            "config": raw.get("ai_config") or {},
        }
    # Unknown types are left for validation to reject with a useful message
    return {"type": step_type}


def _legacy_threshold(raw: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not raw or not raw.get("enabled"):
        return None
    return {
        "enabled": True,
        "threshold_hours": raw.get("hours", raw.get("threshold_hours", 24)),
        "repeat": raw.get("repeat", True),
    }


class FlowCatalog:
    """
    Validating front door to the store's flow table.

    Usage:
        catalog = FlowCatalog(store)
        flow = await catalog.save({"tenant_id": "t1", "name": "Welcome", ...})
        flows = await catalog.list_active("t1")
    """

    def __init__(self, store: BasePipelineStore):
        self.store = store

    @staticmethod
    def validate(raw: Union[FlowDefinition, dict[str, Any]]) -> FlowDefinition:
        if isinstance(raw, FlowDefinition):
            raw = raw.model_dump()
        try:
            return FlowDefinition.model_validate(raw)
        except ValidationError as e:
            raise FlowValidationError(
                f"Invalid flow definition: {e.error_count()} error(s)",
                errors=e.errors(include_url=False, include_context=False),
            ) from e

    @staticmethod
    def from_legacy(raw: dict[str, Any]) -> FlowDefinition:
        """Convert the console's original loose flow JSON."""
        conditions = raw.get("trigger_conditions") or {}
        steps = sorted(raw.get("flow_steps") or raw.get("steps") or [],
                       key=lambda s: s.get("step_order", 0))
        native = {
            "tenant_id": raw.get("tenant_id") or raw.get("user_id"),
            "name": raw.get("name", ""),
            "active": raw.get("is_active", raw.get("active", True)),
            "trigger": {
                "on_first_message": bool(conditions.get("on_first_message", False)),
                "on_inactivity": _legacy_threshold(conditions.get("on_inactivity")),
                "on_no_response": _legacy_threshold(conditions.get("on_no_response")),
            },
            "steps": [_legacy_step(s) for s in steps],
        }
        if raw.get("id"):
            native["id"] = raw["id"]
        return FlowCatalog.validate(native)

    async def save(self, raw: Union[FlowDefinition, dict[str, Any]]) -> FlowDefinition:
        flow = self.validate(raw)
        flow.updated_at = utcnow()
        saved = await self.store.upsert_flow(flow)
        logger.info("flow_saved", flow_id=saved.id, tenant_id=saved.tenant_id,
                    steps=len(saved.steps), active=saved.active)
        return saved

    async def set_active(self, flow_id: str, active: bool) -> FlowDefinition:
        flow = await self.get(flow_id)
        flow.active = active
        return await self.save(flow)

    async def load_from_config(self, flows_config: list[dict[str, Any]]) -> list[FlowDefinition]:
        """Seed flows from settings.yaml. Entries with `trigger_conditions` use the legacy shape."""
        loaded = []
        for raw in flows_config:
            flow = self.from_legacy(raw) if "trigger_conditions" in raw else self.validate(raw)
            loaded.append(await self.save(flow))
        logger.info("flows_loaded", count=len(loaded))
        return loaded

    async def get(self, flow_id: str) -> FlowDefinition:
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow {flow_id} not found")
        return flow

    async def list_active(self, tenant_id: str = None) -> list[FlowDefinition]:
        return await self.store.list_flows(tenant_id=tenant_id, active_only=True)

    async def list_flows(self, tenant_id: str = None) -> list[FlowDefinition]:
        return await self.store.list_flows(tenant_id=tenant_id)
