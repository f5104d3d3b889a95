from datetime import timedelta

import pytest

from config import RequestStatus, SLAClock
from core import PolicyNotFoundError
from sla.domain import EscalationTrigger, SLABreached, SLAEscalated, SLAPolicyTable


@pytest.fixture
def trigger(policies):
    return EscalationTrigger(policies)


def test_nothing_fires_before_the_deadline(trigger, make_request, t0):
    request = make_request()
    assert trigger.on_tick(request, t0 + timedelta(minutes=9)) == []
    assert trigger.on_tick(request, request.sla_deadline) == []
    assert request.sla_breached is False


def test_first_expired_tick_fires_a_single_breach(trigger, make_request, t0):
    request = make_request()
    now = t0 + timedelta(minutes=10, seconds=1)

    events = trigger.on_tick(request, now)

    assert len(events) == 1
    breach = events[0]
    assert isinstance(breach, SLABreached)
    assert breach.request_id == request.id
    assert breach.breached_at == now
    assert breach.deadline == request.sla_deadline
    assert request.sla_breached is True
    assert request.sla_breach_time == now

    assert trigger.on_tick(request, now + timedelta(seconds=30)) == []


def test_breach_and_first_escalation_fire_together(trigger, make_request):
    request = make_request()
    now = request.sla_deadline + timedelta(minutes=16)

    events = trigger.on_tick(request, now)

    assert [type(e) for e in events] == [SLABreached, SLAEscalated]
    escalation = events[1]
    assert escalation.level == 1
    assert escalation.target == "flow_manager"
    assert request.escalation_level == 1

    assert trigger.on_tick(request, now + timedelta(seconds=30)) == []


def test_escalation_after_earlier_breach(trigger, make_request):
    request = make_request()
    trigger.on_tick(request, request.sla_deadline + timedelta(minutes=1))

    events = trigger.on_tick(request, request.sla_deadline + timedelta(minutes=16))

    assert len(events) == 1
    assert isinstance(events[0], SLAEscalated)
    assert events[0].level == 1


def test_late_first_tick_fires_every_crossed_level_in_order(trigger, make_request):
    request = make_request()

    events = trigger.on_tick(request, request.sla_deadline + timedelta(minutes=45))

    assert [type(e) for e in events] == [SLABreached, SLAEscalated, SLAEscalated]
    assert [e.level for e in events[1:]] == [1, 2]
    assert events[2].target == "medical_director"
    assert request.escalation_level == 2


def test_earlier_tick_after_later_one_emits_nothing(trigger, make_request):
    request = make_request()
    trigger.on_tick(request, request.sla_deadline + timedelta(minutes=31))

    assert trigger.on_tick(request, request.sla_deadline + timedelta(minutes=5)) == []
    assert request.escalation_level == 2


def test_escalation_moves_pending_request_to_escalated(trigger, make_request):
    request = make_request()
    trigger.on_tick(request, request.sla_deadline + timedelta(minutes=15))
    assert request.status == RequestStatus.ESCALATED


def test_breach_alone_keeps_status(trigger, make_request):
    request = make_request()
    trigger.on_tick(request, request.sla_deadline + timedelta(minutes=2))
    assert request.status == RequestStatus.PENDING


def test_acknowledged_request_stops_response_clock(trigger, make_request, t0):
    request = make_request()
    request.acknowledge(t0 + timedelta(minutes=3), "dr.haddad")

    assert trigger.on_tick(request, request.sla_deadline + timedelta(minutes=40)) == []
    assert request.sla_breached is False


def test_completion_clock_keeps_running_while_in_progress(trigger, make_request, t0):
    request = make_request(sla_clock=SLAClock.COMPLETION)
    request.take_ownership(t0 + timedelta(minutes=2), "dr.haddad")

    events = trigger.on_tick(request, request.sla_deadline + timedelta(minutes=1))

    assert len(events) == 1
    assert request.status == RequestStatus.IN_PROGRESS


def test_completed_request_never_breaches(trigger, make_request, t0):
    request = make_request(sla_clock=SLAClock.COMPLETION)
    request.complete(t0 + timedelta(minutes=5))
    assert trigger.on_tick(request, request.sla_deadline + timedelta(hours=3)) == []


def test_missing_policy_is_raised(make_request):
    request = make_request()
    empty = EscalationTrigger(SLAPolicyTable([]))
    with pytest.raises(PolicyNotFoundError):
        empty.on_tick(request, request.sla_deadline + timedelta(minutes=1))


def test_missing_policy_is_raised_even_before_the_deadline(make_request, t0):
    request = make_request()
    with pytest.raises(PolicyNotFoundError):
        EscalationTrigger(SLAPolicyTable([])).on_tick(request, t0)


def test_policy_without_escalation_levels_only_breaches(make_request):
    table = SLAPolicyTable.from_records([{
        "request_type": "consultation",
        "priority": "critical",
        "response_minutes": 10,
        "completion_minutes": 30,
    }])
    request = make_request()

    events = EscalationTrigger(table).on_tick(request, request.sla_deadline + timedelta(hours=2))

    assert [type(e) for e in events] == [SLABreached]
    assert request.escalation_level == 0


class TestEscalationScenario:

    def test_breached_critical_request_escalates_once(self, trigger, make_request):
        request = make_request(priority="critical")

        first = trigger.on_tick(request, request.sla_deadline + timedelta(minutes=16))
        assert any(isinstance(e, SLABreached) for e in first)
        assert [e.level for e in first if isinstance(e, SLAEscalated)] == [1]

        second = trigger.on_tick(request, request.sla_deadline + timedelta(minutes=16, seconds=30))
        assert second == []
