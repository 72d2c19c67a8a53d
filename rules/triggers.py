"""
Trigger policy — pure decisions, no I/O.

The scheduler gathers the facts (activity records, the flow's trigger settings,
the per-(customer, flow) dispatch stamps) and asks these functions whether
an execution is due and under which dedupe keys it must be enqueued.

Policy:
  first_message  inbound count is exactly 1; once per (flow, customer) ever.
  inactivity     quiet since the last inbound message for >= threshold.
                 repeat=False  once per (flow, customer) ever.
                 repeat=True   again only after max(threshold, 24h) since the
                               last dispatch of this flow to this customer.
  no_response    as inactivity, measured from the last message either way.

first_message and inactivity keep separate once-keys: a customer who got the
welcome flow can still get the same flow later as an inactivity nudge.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from models.schemas import (
    CustomerActivity, FlowActivity, ThresholdTrigger, TriggerType,
)


def active_key(flow_id: str, customer_id: str) -> str:
    """Held while an execution for (flow, customer) is queued or running."""
    return f"{flow_id}:{customer_id}"


def once_key(flow_id: str, customer_id: str, trigger_type: TriggerType) -> str:
    return f"{flow_id}:{customer_id}:{trigger_type.value}"


def is_single_lifetime(trigger_type: TriggerType, trigger: Optional[ThresholdTrigger] = None) -> bool:
    if trigger_type == TriggerType.FIRST_MESSAGE:
        return True
    if trigger_type == TriggerType.MANUAL:
        return False
    return trigger is not None and not trigger.repeat


def first_message_due(activity: CustomerActivity) -> bool:
    return activity.inbound_count == 1


def quiet_reference(activity: CustomerActivity, trigger_type: TriggerType) -> Optional[datetime]:
    if trigger_type == TriggerType.NO_RESPONSE:
        return activity.last_message_at
    return activity.last_inbound_at


def threshold_due(trigger: ThresholdTrigger, reference: Optional[datetime], now: datetime) -> bool:
    if not trigger.enabled or reference is None:
        return False
    return now - reference >= trigger.threshold


def cooldown_elapsed(trigger: ThresholdTrigger, flow_activity: Optional[FlowActivity],
                     now: datetime) -> bool:
    """Repeat gate; one-shot triggers are gated by their once-key instead."""
    if not trigger.repeat:
        return True
    # Stamped per flow and customer, so inactivity and no_response share it
    last = flow_activity.last_dispatch_at if flow_activity else None
    if last is None:
        return True
    return now - last >= trigger.cooldown


def threshold_trigger_due(trigger: ThresholdTrigger, trigger_type: TriggerType,
                          activity: CustomerActivity, flow_activity: Optional[FlowActivity],
                          now: datetime) -> bool:
    reference = quiet_reference(activity, trigger_type)
    return threshold_due(trigger, reference, now) and cooldown_elapsed(trigger, flow_activity, now)
