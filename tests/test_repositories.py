from datetime import timedelta
from uuid import uuid4

import pytest

from config import RequestStatus, SLAClock
from core import RepositoryException
from sla.domain import SLABreached, SLAEscalated
from sla.infrastructure import SQLAlchemyEventRepository, SQLAlchemyTimedRequestRepository


@pytest.fixture
def request_repo(session):
    return SQLAlchemyTimedRequestRepository(session)


@pytest.fixture
def event_repo(session):
    return SQLAlchemyEventRepository(session)


async def test_create_and_read_back(request_repo, session, make_request):
    request = make_request(case_id="ER-2024-0117", title="Chest pain", target_department="CARD")
    await request_repo.create(request)
    await session.commit()

    stored = await request_repo.get_by_id(request.id)

    assert stored.request_number == request.request_number
    assert stored.sla_deadline == request.sla_deadline
    assert stored.sla_deadline.tzinfo is not None
    assert stored.allowance_minutes == 10
    assert stored.case_id == "ER-2024-0117"
    assert stored.escalation_level == 0
    assert stored.sla_breached is False


async def test_unknown_or_malformed_id_returns_none(request_repo):
    assert await request_repo.get_by_id(str(uuid4())) is None
    assert await request_repo.get_by_id("not-a-uuid") is None


async def test_record_breach_is_compare_and_set(request_repo, session, make_request):
    request = make_request()
    await request_repo.create(request)
    await session.commit()

    first_at = request.sla_deadline + timedelta(minutes=1)
    assert await request_repo.record_breach(request.id, first_at) is True
    assert await request_repo.record_breach(request.id, first_at + timedelta(minutes=1)) is False
    await session.commit()

    stored = await request_repo.get_by_id(request.id)
    assert stored.sla_breached is True
    assert stored.sla_breach_time == first_at


async def test_record_escalation_only_raises_level(request_repo, session, make_request):
    request = make_request()
    await request_repo.create(request)
    await session.commit()

    assert await request_repo.record_escalation(request.id, 1) is True
    assert await request_repo.record_escalation(request.id, 1) is False
    assert await request_repo.record_escalation(request.id, 2) is True
    assert await request_repo.record_escalation(request.id, 1) is False
    await session.commit()

    stored = await request_repo.get_by_id(request.id)
    assert stored.escalation_level == 2
    assert stored.status == RequestStatus.ESCALATED


async def test_escalation_keeps_non_pending_status(request_repo, session, make_request, t0):
    request = make_request(sla_clock=SLAClock.COMPLETION)
    request.take_ownership(t0 + timedelta(minutes=1), "dr.haddad")
    await request_repo.create(request)
    await session.commit()

    assert await request_repo.record_escalation(request.id, 1) is True
    stored = await request_repo.get_by_id(request.id)
    assert stored.status == RequestStatus.IN_PROGRESS


@pytest.mark.parametrize("close", ["acknowledge", "complete", "cancel"])
async def test_stopped_response_clock_refuses_breach_and_escalation(
    request_repo, session, make_request, t0, close
):
    request = make_request()
    getattr(request, close)(t0 + timedelta(minutes=1))
    await request_repo.create(request)
    await session.commit()

    assert await request_repo.record_breach(request.id, request.sla_deadline) is False
    assert await request_repo.record_escalation(request.id, 1) is False

    stored = await request_repo.get_by_id(request.id)
    assert stored.sla_breached is False
    assert stored.escalation_level == 0


async def test_closed_completion_clock_refuses_breach(request_repo, session, make_request, t0):
    request = make_request(sla_clock=SLAClock.COMPLETION)
    request.complete(t0 + timedelta(minutes=5))
    await request_repo.create(request)
    await session.commit()

    assert await request_repo.record_breach(request.id, request.sla_deadline) is False


async def test_second_session_loses_the_race(session_maker, make_request):
    request = make_request()
    async with session_maker() as setup:
        await SQLAlchemyTimedRequestRepository(setup).create(request)
        await setup.commit()

    breached_at = request.sla_deadline + timedelta(minutes=1)
    async with session_maker() as first, session_maker() as second:
        won_first = await SQLAlchemyTimedRequestRepository(first).record_breach(request.id, breached_at)
        await first.commit()
        won_second = await SQLAlchemyTimedRequestRepository(second).record_breach(request.id, breached_at)
        await second.commit()

    assert (won_first, won_second) == (True, False)


async def test_cas_on_invalid_id_raises(request_repo, t0):
    with pytest.raises(RepositoryException):
        await request_repo.record_breach("nope", t0)


async def test_update_lifecycle_persists_status(request_repo, session, make_request, t0):
    request = make_request()
    await request_repo.create(request)

    request.acknowledge(t0 + timedelta(minutes=2), "dr.haddad")
    await request_repo.update_lifecycle(request)
    await session.commit()

    stored = await request_repo.get_by_id(request.id)
    assert stored.status == RequestStatus.ACKNOWLEDGED
    assert stored.acknowledged_by == "dr.haddad"
    assert stored.acknowledged_at == t0 + timedelta(minutes=2)


async def test_update_lifecycle_of_missing_request_raises(request_repo, make_request):
    with pytest.raises(RepositoryException):
        await request_repo.update_lifecycle(make_request())


async def test_list_open_excludes_closed_requests(request_repo, session, make_request, t0):
    open_request = make_request()
    done = make_request("lab", "urgent")
    done.complete(t0 + timedelta(minutes=5))
    cancelled = make_request("imaging", "stable")
    cancelled.cancel(t0 + timedelta(minutes=5))
    for request in (open_request, done, cancelled):
        await request_repo.create(request)
    await session.commit()

    open_requests = await request_repo.list_open()

    assert [r.id for r in open_requests] == [open_request.id]


async def test_list_filters(request_repo, session, make_request):
    await request_repo.create(make_request("lab", "urgent"))
    await request_repo.create(make_request("lab", "critical"))
    await request_repo.create(make_request("imaging", "urgent"))
    await session.commit()

    assert len(await request_repo.list({"request_type": "lab"})) == 2
    assert len(await request_repo.list({"priority": "urgent"})) == 2
    assert len(await request_repo.list({"status": [RequestStatus.PENDING]})) == 3
    assert len(await request_repo.list({}, limit=1)) == 1


async def test_events_round_trip(event_repo, session, make_request, t0):
    request = make_request()
    breach = SLABreached(
        request_id=request.id,
        breached_at=request.sla_deadline + timedelta(minutes=1),
        deadline=request.sla_deadline,
        request_type=request.request_type,
        priority=request.priority,
    )
    escalation = SLAEscalated(
        request_id=request.id,
        level=1,
        target="flow_manager",
        escalated_at=request.sla_deadline + timedelta(minutes=16),
        request_type=request.request_type,
        priority=request.priority,
    )
    await event_repo.create(breach)
    await event_repo.create(escalation)
    await session.commit()

    events = await event_repo.list_recent()

    assert events == [escalation, breach]
    assert await event_repo.list_recent(request_id=str(uuid4())) == []
    assert len(await event_repo.list_recent(limit=1, request_id=request.id)) == 1
