"""
SLA Escalation Trigger
=======================

Turns a request's countdown into breach and escalation events.

Each event fires once per request: the trigger checks and updates the
request's stored breach flag and escalation level before emitting.
"""

from datetime import datetime
from typing import List, Union

from sla.domain.entities import TimedRequest, SLABreached, SLAEscalated
from sla.domain.value_objects import SLAPolicyTable

SLAEvent = Union[SLABreached, SLAEscalated]


class EscalationTrigger:
    """
    Emits SLABreached / SLAEscalated for a request at a given instant.

    Idempotent: ticking again with the same or an earlier ``now`` emits
    nothing new.
    """

    def __init__(self, policies: SLAPolicyTable):
        self._policies = policies

    def on_tick(self, request: TimedRequest, now: datetime) -> List[SLAEvent]:
        """
        Evaluate one request and return newly fired events.

        Args:
            request: The timed request; its breach flag and escalation level
                are updated in place when an event fires
            now: Tick instant

        Returns:
            Events in firing order (breach first, then ascending levels)

        Raises:
            PolicyNotFoundError: If the request's policy is not configured
        """
        if not request.is_sla_active:
            return []

        policy = self._policies.lookup(request.request_type, request.priority)

        if not request.remaining_time(now).is_expired:
            return []

        events: List[SLAEvent] = []

        if request.mark_breached(now):
            events.append(SLABreached(
                request_id=request.id,
                breached_at=now,
                deadline=request.sla_deadline,
                request_type=request.request_type,
                priority=request.priority
            ))

        minutes_past_deadline = (now - request.sla_deadline).total_seconds() / 60

        for esc in policy.ordered_escalation_levels():
            if minutes_past_deadline < esc.minutes:
                break
            if request.escalate_to(esc.level):
                events.append(SLAEscalated(
                    request_id=request.id,
                    level=esc.level,
                    target=esc.target,
                    escalated_at=now,
                    request_type=request.request_type,
                    priority=request.priority
                ))

        return events
