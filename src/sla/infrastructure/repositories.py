"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Breach and escalation writes are single
conditional UPDATEs so concurrent tick workers cannot record the same
event twice.
"""

from typing import List, Optional
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update, and_, or_, case
from sqlalchemy.ext.asyncio import AsyncSession

from sla.application import ITimedRequestRepository, ISLAEventRepository
from sla.domain import TimedRequest, SLABreached, SLAEscalated, SLAEvent
from sla.infrastructure.models import TimedRequestModel, SLAEventModel
from config import (
    RequestStatus, SLAClock, SLAEventType, OPEN_STATUSES, RESPONSE_ACTIVE_STATUSES
)
from core import RepositoryException


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without timezone support hand back naive UTC values."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _sla_clock_running():
    """SQL form of TimedRequest.is_sla_active."""
    return or_(
        and_(
            TimedRequestModel.sla_clock == SLAClock.RESPONSE,
            TimedRequestModel.status.in_(RESPONSE_ACTIVE_STATUSES)
        ),
        and_(
            TimedRequestModel.sla_clock == SLAClock.COMPLETION,
            TimedRequestModel.status.in_(OPEN_STATUSES)
        )
    )


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(value)
    except ValueError:
        return None


def _to_domain(model: TimedRequestModel) -> TimedRequest:
    return TimedRequest(
        id=str(model.id),
        request_number=model.request_number,
        request_type=model.request_type,
        priority=model.priority,
        status=model.status,
        created_at=_as_utc(model.created_at),
        sla_clock=model.sla_clock,
        allowance_minutes=model.allowance_minutes,
        sla_deadline=_as_utc(model.sla_deadline),
        warning_threshold_percent=model.warning_threshold_percent,
        sla_breached=model.sla_breached,
        sla_breach_time=_as_utc(model.sla_breach_time),
        escalation_level=model.escalation_level,
        case_id=model.case_id,
        title=model.title,
        target_department=model.target_department,
        acknowledged_at=_as_utc(model.acknowledged_at),
        acknowledged_by=model.acknowledged_by,
        owned_at=_as_utc(model.owned_at),
        owned_by=model.owned_by,
        completed_at=_as_utc(model.completed_at),
        completed_by=model.completed_by
    )


class SQLAlchemyTimedRequestRepository(ITimedRequestRepository):
    """
    SQLAlchemy implementation of the timed request repository.

    Handles persistence of TimedRequest entities using async SQLAlchemy.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, request_id: str) -> Optional[TimedRequestModel]:
        request_uuid = _parse_uuid(request_id)
        if request_uuid is None:
            return None

        stmt = (
            select(TimedRequestModel)
            .where(TimedRequestModel.id == request_uuid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, request_id: str) -> Optional[TimedRequest]:
        """Get request by ID."""
        model = await self._get_model(request_id)
        return _to_domain(model) if model else None

    async def create(self, request: TimedRequest) -> TimedRequest:
        """Persist a new request."""
        model = TimedRequestModel(
            id=UUID(request.id),
            request_number=request.request_number,
            request_type=request.request_type,
            priority=request.priority,
            status=request.status,
            case_id=request.case_id,
            title=request.title,
            target_department=request.target_department,
            created_at=request.created_at,
            sla_clock=request.sla_clock,
            allowance_minutes=request.allowance_minutes,
            sla_deadline=request.sla_deadline,
            warning_threshold_percent=request.warning_threshold_percent,
            sla_breached=request.sla_breached,
            sla_breach_time=request.sla_breach_time,
            escalation_level=request.escalation_level
        )

        self._session.add(model)
        await self._session.flush()

        return request

    async def update_lifecycle(self, request: TimedRequest) -> None:
        """Persist status and lifecycle timestamps."""
        model = await self._get_model(request.id)
        if not model:
            raise RepositoryException(f"Request {request.id} not found")

        model.status = request.status
        model.acknowledged_at = request.acknowledged_at
        model.acknowledged_by = request.acknowledged_by
        model.owned_at = request.owned_at
        model.owned_by = request.owned_by
        model.completed_at = request.completed_at
        model.completed_by = request.completed_by

        await self._session.flush()

    async def list_open(self) -> List[TimedRequest]:
        """List requests whose status is still open, oldest deadline first."""
        stmt = (
            select(TimedRequestModel)
            .where(TimedRequestModel.status.in_(OPEN_STATUSES))
            .order_by(TimedRequestModel.sla_deadline.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_to_domain(model) for model in result.scalars().all()]

    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[TimedRequest]:
        """List requests with filters."""
        stmt = select(TimedRequestModel)

        conditions = []
        if "status" in filters:
            status_list = filters["status"]
            if isinstance(status_list, list):
                conditions.append(TimedRequestModel.status.in_(status_list))
            else:
                conditions.append(TimedRequestModel.status == status_list)

        if "priority" in filters:
            conditions.append(TimedRequestModel.priority == filters["priority"])

        if "request_type" in filters:
            conditions.append(TimedRequestModel.request_type == filters["request_type"])

        if "case_id" in filters:
            conditions.append(TimedRequestModel.case_id == filters["case_id"])

        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(TimedRequestModel.created_at.desc())
        stmt = stmt.limit(limit).offset(offset).execution_options(populate_existing=True)

        result = await self._session.execute(stmt)
        return [_to_domain(model) for model in result.scalars().all()]

    async def record_breach(self, request_id: str, breached_at: datetime) -> bool:
        """Set the breach flag only if it is still unset and the clock is running."""
        request_uuid = _parse_uuid(request_id)
        if request_uuid is None:
            raise RepositoryException(f"Invalid request ID: {request_id}")

        stmt = (
            update(TimedRequestModel)
            .where(
                TimedRequestModel.id == request_uuid,
                TimedRequestModel.sla_breached.is_(False),
                _sla_clock_running()
            )
            .values(sla_breached=True, sla_breach_time=breached_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def record_escalation(self, request_id: str, level: int) -> bool:
        """Raise the escalation level only if it is lower and the clock is running."""
        request_uuid = _parse_uuid(request_id)
        if request_uuid is None:
            raise RepositoryException(f"Invalid request ID: {request_id}")

        stmt = (
            update(TimedRequestModel)
            .where(
                TimedRequestModel.id == request_uuid,
                TimedRequestModel.escalation_level < level,
                _sla_clock_running()
            )
            .values(
                escalation_level=level,
                status=case(
                    (TimedRequestModel.status == RequestStatus.PENDING, RequestStatus.ESCALATED),
                    else_=TimedRequestModel.status
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class SQLAlchemyEventRepository(ISLAEventRepository):
    """
    SQLAlchemy implementation of the SLA event repository.

    Stores every fired event as alert history for dashboards.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event: SLAEvent) -> None:
        """Store an emitted event."""
        if isinstance(event, SLABreached):
            model = SLAEventModel(
                request_id=UUID(event.request_id),
                request_type=event.request_type,
                priority=event.priority,
                event_type=SLAEventType.BREACHED,
                occurred_at=event.breached_at,
                deadline=event.deadline
            )
        else:
            model = SLAEventModel(
                request_id=UUID(event.request_id),
                request_type=event.request_type,
                priority=event.priority,
                event_type=SLAEventType.ESCALATED,
                occurred_at=event.escalated_at,
                escalation_level=event.level,
                target=event.target
            )

        self._session.add(model)
        await self._session.flush()

    async def list_recent(
        self,
        limit: int = 50,
        request_id: Optional[str] = None
    ) -> List[SLAEvent]:
        """Most recent events first."""
        stmt = select(SLAEventModel)

        if request_id:
            request_uuid = _parse_uuid(request_id)
            if request_uuid is None:
                return []
            stmt = stmt.where(SLAEventModel.request_id == request_uuid)

        stmt = stmt.order_by(SLAEventModel.occurred_at.desc()).limit(limit)

        result = await self._session.execute(stmt)

        events: List[SLAEvent] = []
        for model in result.scalars().all():
            if model.event_type == SLAEventType.BREACHED:
                events.append(SLABreached(
                    request_id=str(model.request_id),
                    breached_at=_as_utc(model.occurred_at),
                    deadline=_as_utc(model.deadline),
                    request_type=model.request_type,
                    priority=model.priority
                ))
            else:
                events.append(SLAEscalated(
                    request_id=str(model.request_id),
                    level=model.escalation_level,
                    target=model.target,
                    escalated_at=_as_utc(model.occurred_at),
                    request_type=model.request_type,
                    priority=model.priority
                ))

        return events
