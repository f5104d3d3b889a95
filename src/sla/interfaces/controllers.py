"""
SLA Controllers (API Routes)
=============================

FastAPI routes for ER request SLA tracking.

Controllers are thin - they delegate to application services. Domain
errors propagate to the application exception handler registered in main.
"""

from typing import List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.database import get_session
from sla.application import (
    SLAService,
    SLAEvaluationService,
    ISLAPolicyProvider,
    IEventPublisher,
    TimedRequestCreateDTO,
    LifecycleActionDTO,
    TimedRequestResponse,
    SLAPolicyResponse,
    DashboardResponse,
    SLAEventResponse,
    EvaluationResponse,
    publish_all,
)
from sla.domain import SLABreached, SLAEvent
from sla.infrastructure import (
    SQLAlchemyTimedRequestRepository,
    SQLAlchemyEventRepository,
)

from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Monitoring"])


# ========== Example payloads for Swagger ==========

REQUEST_CREATE_EXAMPLE = {
    "request_type": "consultation",
    "priority": "critical",
    "sla_clock": "response",
    "case_id": "ER-2024-0117",
    "title": "Chest pain, suspected STEMI",
    "target_department": "CARD"
}

TIMED_REQUEST_RESPONSE_EXAMPLE = {
    "id": "123e4567-e89b-12d3-a456-426614174000",
    "request_number": "REQ-20240115-0042",
    "request_type": "consultation",
    "priority": "critical",
    "status": "pending",
    "case_id": "ER-2024-0117",
    "title": "Chest pain, suspected STEMI",
    "target_department": "CARD",
    "created_at": "2024-01-15T10:00:00Z",
    "sla_clock": "response",
    "allowance_minutes": 10,
    "sla_deadline": "2024-01-15T10:10:00Z",
    "sla_breached": False,
    "sla_breach_time": None,
    "escalation_level": 0,
    "remaining": {
        "is_expired": False,
        "minutes": 4,
        "remaining_seconds": 270.0,
        "text": "04 remaining",
        "percentage": 40.0,
        "status": "warning"
    }
}

DASHBOARD_RESPONSE_EXAMPLE = {
    "total_requests": 12,
    "open_requests": 5,
    "breached_count": 2,
    "escalated_count": 1,
    "status_counts": {"pending": 3, "in_progress": 2, "completed": 7},
    "remaining_counts": {"safe": 1, "warning": 1, "danger": 0, "expired": 1},
    "priority_counts": {"critical": 2, "urgent": 3},
    "sla_compliance": 85.7
}


# ========== Dependencies ==========

def get_policy_provider(request: Request) -> ISLAPolicyProvider:
    """Policy manager created during application startup."""
    return request.app.state.policy_manager


def get_event_publisher(request: Request) -> Optional[IEventPublisher]:
    """Event bus created during application startup, if any."""
    return getattr(request.app.state, "event_bus", None)


async def get_sla_service(
    session: AsyncSession = Depends(get_session),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider)
) -> SLAService:
    """Get SLA service instance."""
    request_repo = SQLAlchemyTimedRequestRepository(session)
    return SLAService(request_repo, policy_provider)


async def get_evaluation_service(
    session: AsyncSession = Depends(get_session),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider)
) -> SLAEvaluationService:
    """Get SLA evaluation service instance."""
    request_repo = SQLAlchemyTimedRequestRepository(session)
    event_repo = SQLAlchemyEventRepository(session)
    return SLAEvaluationService(request_repo, event_repo, policy_provider)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _event_response(event: SLAEvent) -> SLAEventResponse:
    if isinstance(event, SLABreached):
        return SLAEventResponse(
            event_type=event.event_type,
            request_id=event.request_id,
            request_type=event.request_type,
            priority=event.priority,
            occurred_at=event.breached_at,
            deadline=event.deadline
        )
    return SLAEventResponse(
        event_type=event.event_type,
        request_id=event.request_id,
        request_type=event.request_type,
        priority=event.priority,
        occurred_at=event.escalated_at,
        level=event.level,
        target=event.target
    )


# ========== Route Handlers ==========

@router.post(
    "/requests",
    response_model=TimedRequestResponse,
    status_code=201,
    summary="Create a timed request",
    description="""
    Create a consultation, lab, imaging or procedure request and fix its SLA deadline.

    The deadline is computed once from the policy for `request_type` and
    `priority` and never recomputed afterwards.

    **Request Types**: `consultation`, `lab`, `imaging`, `procedure`

    **Priorities**: `critical`, `urgent`, `stable`

    **SLA Clock**: `response` (time to acknowledge) or `completion` (time to finish)

    Returns 422 when no SLA policy is configured for the pair.
    """,
    responses={
        201: {
            "description": "Request created",
            "content": {
                "application/json": {
                    "example": TIMED_REQUEST_RESPONSE_EXAMPLE
                }
            }
        },
        422: {
            "description": "No SLA policy for this request type and priority"
        }
    }
)
async def create_request(
    payload: TimedRequestCreateDTO,
    sla_service: SLAService = Depends(get_sla_service)
):
    now = datetime.now(timezone.utc)
    created_at = _as_utc(payload.created_at) or now

    request = await sla_service.create_request(
        request_type=payload.request_type,
        priority=payload.priority,
        sla_clock=payload.sla_clock,
        created_at=created_at,
        case_id=payload.case_id,
        title=payload.title,
        target_department=payload.target_department
    )

    return TimedRequestResponse.from_domain(request, request.remaining_time(max(now, created_at)))


@router.get(
    "/requests/{request_id}",
    response_model=TimedRequestResponse,
    summary="Get request SLA status",
    description="""
    Get a timed request with its countdown at the current instant.

    Countdown status is one of `safe`, `warning`, `danger`, `expired`.
    """,
    responses={
        200: {
            "description": "Request SLA information",
            "content": {
                "application/json": {
                    "example": TIMED_REQUEST_RESPONSE_EXAMPLE
                }
            }
        },
        404: {
            "description": "Request not found"
        }
    }
)
async def get_request(
    request_id: str,
    sla_service: SLAService = Depends(get_sla_service)
):
    status = await sla_service.get_request_status(request_id)
    return TimedRequestResponse.from_domain(status.request, status.remaining)


@router.post(
    "/requests/{request_id}/acknowledge",
    response_model=TimedRequestResponse,
    summary="Acknowledge a request",
    responses={404: {"description": "Request not found"}, 409: {"description": "Status does not allow this action"}}
)
async def acknowledge_request(
    request_id: str,
    action: Optional[LifecycleActionDTO] = None,
    sla_service: SLAService = Depends(get_sla_service)
):
    request = await sla_service.acknowledge(request_id, by=action.actor if action else None)
    return TimedRequestResponse.from_domain(request)


@router.post(
    "/requests/{request_id}/own",
    response_model=TimedRequestResponse,
    summary="Take ownership of a request",
    responses={404: {"description": "Request not found"}, 409: {"description": "Status does not allow this action"}}
)
async def own_request(
    request_id: str,
    action: Optional[LifecycleActionDTO] = None,
    sla_service: SLAService = Depends(get_sla_service)
):
    request = await sla_service.take_ownership(request_id, by=action.actor if action else None)
    return TimedRequestResponse.from_domain(request)


@router.post(
    "/requests/{request_id}/complete",
    response_model=TimedRequestResponse,
    summary="Complete a request",
    responses={404: {"description": "Request not found"}, 409: {"description": "Status does not allow this action"}}
)
async def complete_request(
    request_id: str,
    action: Optional[LifecycleActionDTO] = None,
    sla_service: SLAService = Depends(get_sla_service)
):
    request = await sla_service.complete(request_id, by=action.actor if action else None)
    return TimedRequestResponse.from_domain(request)


@router.post(
    "/requests/{request_id}/cancel",
    response_model=TimedRequestResponse,
    summary="Cancel a request",
    responses={404: {"description": "Request not found"}, 409: {"description": "Status does not allow this action"}}
)
async def cancel_request(
    request_id: str,
    sla_service: SLAService = Depends(get_sla_service)
):
    request = await sla_service.cancel(request_id)
    return TimedRequestResponse.from_domain(request)


@router.get(
    "/policies",
    response_model=List[SLAPolicyResponse],
    summary="Get SLA policy table",
    description="Current SLA allowances and escalation levels per request type and priority."
)
async def list_policies(
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider)
):
    return [
        SLAPolicyResponse(**record)
        for record in policy_provider.get_policies().to_records()
    ]


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Get SLA dashboard",
    description="""
    Flow-manager overview of SLA state.

    **Query Parameters:**
    - `request_type`: Filter by request type
    - `priority`: Filter by priority (critical, urgent, stable)
    - `status`: Filter by request status
    - `limit`: Max requests considered (default: 1000)

    **Response includes:**
    - Counts by request status and by priority (open requests)
    - Countdown counts (safe, warning, danger, expired) for running SLA clocks
    - Breached and escalated counts
    - SLA compliance: share of completed requests that never breached
    """,
    responses={
        200: {
            "description": "Dashboard data",
            "content": {
                "application/json": {
                    "example": DASHBOARD_RESPONSE_EXAMPLE
                }
            }
        }
    }
)
async def get_dashboard(
    request_type: Optional[str] = Query(None, description="Filter by request type"),
    priority: Optional[str] = Query(None, description="Filter by priority (critical, urgent, stable)"),
    request_status: Optional[str] = Query(None, alias="status", description="Filter by request status"),
    limit: int = Query(1000, ge=1, le=5000, description="Max requests considered"),
    sla_service: SLAService = Depends(get_sla_service)
):
    filters = {}
    if request_type:
        filters["request_type"] = request_type
    if priority:
        filters["priority"] = priority
    if request_status:
        filters["status"] = request_status

    summary = await sla_service.dashboard(filters, limit=limit)

    return DashboardResponse(
        total_requests=summary.total_requests,
        open_requests=summary.open_requests,
        breached_count=summary.breached_count,
        escalated_count=summary.escalated_count,
        status_counts=summary.status_counts,
        remaining_counts=summary.remaining_counts,
        priority_counts=summary.priority_counts,
        sla_compliance=summary.sla_compliance
    )


@router.get(
    "/events",
    response_model=List[SLAEventResponse],
    summary="Get SLA alert history",
    description="Most recent breach and escalation events, newest first."
)
async def list_events(
    request_id: Optional[str] = Query(None, description="Only events for this request"),
    limit: int = Query(50, ge=1, le=500, description="Max events returned"),
    evaluation_service: SLAEvaluationService = Depends(get_evaluation_service)
):
    events = await evaluation_service.recent_events(limit=limit, request_id=request_id)
    return [_event_response(event) for event in events]


@router.post(
    "/evaluate",
    response_model=EvaluationResponse,
    summary="Run one SLA tick",
    description="""
    Evaluate every open request now, recording breaches and escalations.

    Events are published to alerting only after they are committed.
    """
)
async def evaluate_now(
    session: AsyncSession = Depends(get_session),
    evaluation_service: SLAEvaluationService = Depends(get_evaluation_service),
    publisher: Optional[IEventPublisher] = Depends(get_event_publisher)
):
    result = await evaluation_service.evaluate_open_requests()
    await session.commit()
    publish_all(publisher, result.events)

    return EvaluationResponse(**result.to_dict())


# Export router for inclusion in main app
sla_router = router
