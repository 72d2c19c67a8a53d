"""
Activity Tracker — Last-seen and last-flow-dispatch bookkeeping per customer.

Both pipelines write here: ingestion stamps inbound activity, the flow
executor and manual agent replies stamp outbound activity, and flow
completion stamps the per-(customer, flow) cooldown reference. The trigger
scheduler only reads.

Manual replies are the one place that changes behaviour as well as
timestamps: a tenant can ask for automation to stop for a customer as soon
as a human agent answers them.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from database.store_base import BasePipelineStore
from models.schemas import CustomerActivity, FlowActivity

logger = structlog.get_logger()


class ActivityTracker:

    def __init__(self, store: BasePipelineStore):
        self.store = store

    # ── Writes ────────────────────────────────────────────────

    async def record_inbound(self, tenant_id: str, customer_id: str, conversation_id: str,
                             at: datetime, address: str = "") -> CustomerActivity:
        return await self.store.touch_inbound(tenant_id, customer_id, conversation_id, at, address)

    async def record_outbound(self, tenant_id: str, customer_id: str, at: datetime) -> CustomerActivity:
        return await self.store.touch_outbound(tenant_id, customer_id, at)

    async def record_manual_reply(self, tenant_id: str, customer_id: str,
                                  at: datetime) -> CustomerActivity:
        """A human answered the customer outside the automated paths."""
        activity = await self.store.touch_outbound(tenant_id, customer_id, at)
        tenant = await self.store.get_tenant_settings(tenant_id)
        if tenant.disable_agent_on_manual_reply and activity.automation_enabled:
            activity = await self.store.set_automation(tenant_id, customer_id, False)
            logger.info("automation_disabled_by_manual_reply",
                        tenant_id=tenant_id, customer_id=customer_id)
        return activity

    async def set_automation(self, tenant_id: str, customer_id: str, enabled: bool) -> CustomerActivity:
        activity = await self.store.set_automation(tenant_id, customer_id, enabled)
        logger.info("automation_toggled", tenant_id=tenant_id,
                    customer_id=customer_id, enabled=enabled)
        return activity

    async def record_flow_enqueued(self, tenant_id: str, customer_id: str, flow_id: str,
                                   at: datetime) -> FlowActivity:
        return await self.store.stamp_flow_enqueued(tenant_id, customer_id, flow_id, at)

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, tenant_id: str, customer_id: str) -> Optional[CustomerActivity]:
        return await self.store.get_customer_activity(tenant_id, customer_id)

    async def get_flow_activity(self, tenant_id: str, customer_id: str,
                                flow_id: str) -> Optional[FlowActivity]:
        return await self.store.get_flow_activity(tenant_id, customer_id, flow_id)

    async def automation_enabled(self, tenant_id: str, customer_id: str) -> bool:
        activity = await self.store.get_customer_activity(tenant_id, customer_id)
        return activity.automation_enabled if activity else True
