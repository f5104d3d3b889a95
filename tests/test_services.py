import logging
from datetime import timedelta
from uuid import uuid4

import pytest

from config import RemainingStatus, RequestStatus, SLAClock
from core import (
    InvalidStatusTransitionError, PolicyNotFoundError, ResourceNotFoundException
)
from sla.application import SLAEvaluationService, SLAService, publish_all
from sla.domain import SLABreached, SLAEscalated, SLAPolicyTable
from sla.infrastructure import (
    SLAEventBus, SQLAlchemyEventRepository, SQLAlchemyTimedRequestRepository
)


@pytest.fixture
def sla_service(session, policy_provider):
    return SLAService(SQLAlchemyTimedRequestRepository(session), policy_provider)


def _evaluation_service(session, provider):
    return SLAEvaluationService(
        SQLAlchemyTimedRequestRepository(session),
        SQLAlchemyEventRepository(session),
        provider,
    )


@pytest.fixture
def evaluation_service(session, policy_provider):
    return _evaluation_service(session, policy_provider)


async def test_create_request_fixes_deadline(sla_service, t0):
    request = await sla_service.create_request("consultation", "critical", created_at=t0)

    assert request.sla_deadline == t0 + timedelta(minutes=10)
    assert request.allowance_minutes == 10
    assert request.status == RequestStatus.PENDING
    assert request.request_number.startswith("REQ-20240115-")


async def test_create_request_on_completion_clock(sla_service, t0):
    request = await sla_service.create_request(
        "imaging", "stable", sla_clock=SLAClock.COMPLETION, created_at=t0
    )
    assert request.sla_deadline == t0 + timedelta(minutes=240)


async def test_create_request_without_policy_fails(sla_service, t0):
    with pytest.raises(PolicyNotFoundError):
        await sla_service.create_request("xray", "urgent", created_at=t0)


async def test_policy_change_does_not_move_existing_deadline(session, make_provider, policies, t0):
    provider = make_provider(policies)
    service = SLAService(SQLAlchemyTimedRequestRepository(session), provider)
    request = await service.create_request("consultation", "critical", created_at=t0)

    provider.table = SLAPolicyTable.from_records([{
        "request_type": "consultation",
        "priority": "critical",
        "response_minutes": 5,
        "completion_minutes": 30,
    }])

    status = await service.get_request_status(request.id, now=t0 + timedelta(minutes=7))
    assert status.request.sla_deadline == t0 + timedelta(minutes=10)
    assert status.remaining.is_expired is False


async def test_get_request_status(sla_service, t0):
    request = await sla_service.create_request("consultation", "critical", created_at=t0)

    status = await sla_service.get_request_status(request.id, now=t0 + timedelta(minutes=9))

    assert status.remaining.status == RemainingStatus.DANGER
    assert status.evaluated_at == t0 + timedelta(minutes=9)


async def test_missing_request_raises_not_found(sla_service):
    with pytest.raises(ResourceNotFoundException):
        await sla_service.get_request(str(uuid4()))


async def test_lifecycle_transitions_are_persisted(sla_service, t0):
    request = await sla_service.create_request("lab", "urgent", created_at=t0)

    await sla_service.acknowledge(request.id, by="dr.haddad", now=t0 + timedelta(minutes=1))
    await sla_service.take_ownership(request.id, by="dr.haddad", now=t0 + timedelta(minutes=2))
    done = await sla_service.complete(request.id, by="dr.haddad", now=t0 + timedelta(minutes=20))

    assert done.status == RequestStatus.COMPLETED
    stored = await sla_service.get_request(request.id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.owned_by == "dr.haddad"

    with pytest.raises(InvalidStatusTransitionError):
        await sla_service.cancel(request.id, now=t0 + timedelta(minutes=21))


async def test_tick_records_breach_once(sla_service, evaluation_service, t0):
    request = await sla_service.create_request("consultation", "critical", created_at=t0)

    first = await evaluation_service.evaluate_open_requests(t0 + timedelta(minutes=10, seconds=1))
    second = await evaluation_service.evaluate_open_requests(t0 + timedelta(minutes=11))

    assert first.breaches == 1
    assert first.escalations == 0
    assert second.events == []

    stored = await sla_service.get_request(request.id)
    assert stored.sla_breached is True
    assert stored.sla_breach_time == t0 + timedelta(minutes=10, seconds=1)
    assert len(await evaluation_service.recent_events()) == 1


async def test_tick_records_escalation_and_status(sla_service, evaluation_service, t0):
    request = await sla_service.create_request("consultation", "critical", created_at=t0)

    result = await evaluation_service.evaluate_open_requests(request.sla_deadline + timedelta(minutes=16))

    assert [type(e) for e in result.events] == [SLABreached, SLAEscalated]
    stored = await sla_service.get_request(request.id)
    assert stored.escalation_level == 1
    assert stored.status == RequestStatus.ESCALATED

    again = await evaluation_service.evaluate_open_requests(
        request.sla_deadline + timedelta(minutes=16, seconds=30)
    )
    assert again.events == []


class SnapshotRequestRepository(SQLAlchemyTimedRequestRepository):
    """Serves open requests loaded earlier, as a slow worker would see them."""

    def __init__(self, session, snapshot):
        super().__init__(session)
        self._snapshot = snapshot

    async def list_open(self):
        return self._snapshot


async def test_competing_workers_record_each_event_once(session_maker, policy_provider, t0):
    async with session_maker() as session:
        request = await SLAService(
            SQLAlchemyTimedRequestRepository(session), policy_provider
        ).create_request("consultation", "critical", created_at=t0)
        await session.commit()

    async with session_maker() as session:
        stale_snapshot = await SQLAlchemyTimedRequestRepository(session).list_open()

    now = request.sla_deadline + timedelta(minutes=16)

    async with session_maker() as session:
        first_result = await _evaluation_service(session, policy_provider).evaluate_open_requests(now)
        await session.commit()

    async with session_maker() as session:
        slow_worker = SLAEvaluationService(
            SnapshotRequestRepository(session, stale_snapshot),
            SQLAlchemyEventRepository(session),
            policy_provider,
        )
        second_result = await slow_worker.evaluate_open_requests(now)
        await session.commit()
        recorded = await SQLAlchemyEventRepository(session).list_recent()

    assert len(first_result.events) == 2
    assert second_result.events == []
    assert len(recorded) == 2


async def test_request_closed_after_tick_snapshot_fires_nothing(session_maker, policy_provider, t0):
    async with session_maker() as session:
        request = await SLAService(
            SQLAlchemyTimedRequestRepository(session), policy_provider
        ).create_request("consultation", "critical", created_at=t0)
        await session.commit()

    async with session_maker() as session:
        snapshot = await SQLAlchemyTimedRequestRepository(session).list_open()

    async with session_maker() as session:
        await SLAService(
            SQLAlchemyTimedRequestRepository(session), policy_provider
        ).complete(request.id, now=t0 + timedelta(minutes=5))
        await session.commit()

    async with session_maker() as session:
        tick = SLAEvaluationService(
            SnapshotRequestRepository(session, snapshot),
            SQLAlchemyEventRepository(session),
            policy_provider,
        )
        result = await tick.evaluate_open_requests(request.sla_deadline + timedelta(minutes=16))
        await session.commit()
        recorded = await SQLAlchemyEventRepository(session).list_recent()
        stored = await SQLAlchemyTimedRequestRepository(session).get_by_id(request.id)

    assert result.events == []
    assert recorded == []
    assert stored.status == RequestStatus.COMPLETED
    assert stored.sla_breached is False
    assert stored.escalation_level == 0


async def test_missing_policy_skips_only_that_request(session, sla_service, make_provider, t0, caplog):
    good = await sla_service.create_request("lab", "urgent", created_at=t0)
    orphan = await sla_service.create_request("consultation", "critical", created_at=t0)

    only_lab = SLAPolicyTable.from_records([{
        "request_type": "lab",
        "priority": "urgent",
        "response_minutes": 30,
        "completion_minutes": 90,
    }])
    service = _evaluation_service(session, make_provider(only_lab))

    with caplog.at_level(logging.ERROR, logger="sla.application.services"):
        result = await service.evaluate_open_requests(t0 + timedelta(hours=2))

    assert result.requests_evaluated == 2
    assert result.skipped == 1
    skipped_logs = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.request_id for r in skipped_logs] == [orphan.id]
    assert skipped_logs[0].priority == "critical"
    assert [e.request_id for e in result.events] == [good.id]
    stored_orphan = await sla_service.get_request(orphan.id)
    assert stored_orphan.sla_breached is False


async def test_acknowledged_request_is_not_breached(sla_service, evaluation_service, t0):
    request = await sla_service.create_request("consultation", "critical", created_at=t0)
    await sla_service.acknowledge(request.id, now=t0 + timedelta(minutes=5))

    result = await evaluation_service.evaluate_open_requests(t0 + timedelta(hours=1))

    assert result.events == []


async def test_dashboard_summary(sla_service, evaluation_service, t0):
    breached = await sla_service.create_request("consultation", "critical", created_at=t0)
    await sla_service.create_request("lab", "stable", created_at=t0)
    met = await sla_service.create_request("imaging", "urgent", created_at=t0)
    await sla_service.complete(met.id, now=t0 + timedelta(minutes=10))

    await evaluation_service.evaluate_open_requests(t0 + timedelta(minutes=11))
    await sla_service.complete(breached.id, now=t0 + timedelta(minutes=12))

    summary = await sla_service.dashboard(now=t0 + timedelta(minutes=12))

    assert summary.total_requests == 3
    assert summary.open_requests == 1
    assert summary.breached_count == 1
    assert summary.status_counts == {RequestStatus.COMPLETED: 2, RequestStatus.PENDING: 1}
    assert summary.priority_counts == {"critical": 0, "urgent": 0, "stable": 1}
    assert summary.remaining_counts[RemainingStatus.SAFE] == 1
    assert summary.sla_compliance == 50.0


async def test_committed_events_reach_every_subscriber(sla_service, evaluation_service, t0):
    await sla_service.create_request("consultation", "critical", created_at=t0)
    bus = SLAEventBus(queue_size=10)
    slack = bus.subscribe("slack")
    dashboard = bus.subscribe("dashboard")

    result = await evaluation_service.evaluate_open_requests(t0 + timedelta(minutes=26))
    publish_all(bus, result.events)

    assert slack.qsize() == dashboard.qsize() == 2
    assert isinstance(slack.get_nowait(), SLABreached)
