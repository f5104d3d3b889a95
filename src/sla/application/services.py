"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from sla.domain import (
    TimedRequest, SLABreached, SLAEscalated, SLAEvent,
    SLACalculator, SLAPolicyTable, EscalationTrigger,
    RemainingTimeResult, generate_request_number
)
from config import RequestStatus, RemainingStatus, SLAClock, OPEN_STATUSES, VALID_PRIORITIES
from core import PolicyNotFoundError, ResourceNotFoundException
from shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITimedRequestRepository(ABC):
    """Interface for timed request data access."""

    @abstractmethod
    async def get_by_id(self, request_id: str) -> Optional[TimedRequest]:
        """Get request by ID."""

    @abstractmethod
    async def create(self, request: TimedRequest) -> TimedRequest:
        """Persist a new request."""

    @abstractmethod
    async def update_lifecycle(self, request: TimedRequest) -> None:
        """Persist status and lifecycle timestamps."""

    @abstractmethod
    async def list_open(self) -> List[TimedRequest]:
        """List requests whose status is still open."""

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[TimedRequest]:
        """List requests with filters."""

    @abstractmethod
    async def record_breach(self, request_id: str, breached_at: datetime) -> bool:
        """Set the breach flag only if unset. Returns True if this call set it."""

    @abstractmethod
    async def record_escalation(self, request_id: str, level: int) -> bool:
        """Raise the escalation level only if lower. Returns True if raised."""


class ISLAEventRepository(ABC):
    """Interface for SLA event (alert history) data access."""

    @abstractmethod
    async def create(self, event: SLAEvent) -> None:
        """Store an emitted event."""

    @abstractmethod
    async def list_recent(
        self,
        limit: int = 50,
        request_id: Optional[str] = None
    ) -> List[SLAEvent]:
        """Most recent events first."""


class ISLAPolicyProvider(ABC):
    """Interface for SLA policy table access."""

    @abstractmethod
    def get_policies(self) -> SLAPolicyTable:
        """Get the current policy table."""


class IEventPublisher(ABC):
    """Interface for handing SLA events to alerting and dashboards."""

    @abstractmethod
    def publish(self, event: SLAEvent) -> None:
        """Publish one event."""


def publish_all(publisher: Optional[IEventPublisher], events: Iterable[SLAEvent]) -> None:
    """Publish committed events in order."""
    if publisher is None:
        return
    for event in events:
        publisher.publish(event)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Results ==========

@dataclass
class RequestSLAStatus:
    """A request together with its countdown at one instant."""
    request: TimedRequest
    remaining: RemainingTimeResult
    evaluated_at: datetime


@dataclass
class DashboardSummary:
    """Flow-manager overview of SLA state across requests."""
    total_requests: int = 0
    open_requests: int = 0
    breached_count: int = 0
    escalated_count: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    remaining_counts: Dict[str, int] = field(default_factory=dict)
    priority_counts: Dict[str, int] = field(default_factory=dict)
    sla_compliance: float = 100.0


@dataclass
class EvaluationResult:
    """Outcome of one SLA tick."""
    evaluated_at: datetime
    requests_evaluated: int = 0
    skipped: int = 0
    events: List[SLAEvent] = field(default_factory=list)

    @property
    def breaches(self) -> int:
        return sum(1 for event in self.events if isinstance(event, SLABreached))

    @property
    def escalations(self) -> int:
        return sum(1 for event in self.events if isinstance(event, SLAEscalated))

    def to_dict(self) -> dict:
        return {
            "evaluated_at": self.evaluated_at.isoformat(),
            "requests_evaluated": self.requests_evaluated,
            "skipped": self.skipped,
            "breaches": self.breaches,
            "escalations": self.escalations,
        }


# ========== Application Services ==========

class SLAService:
    """
    Service for creating timed requests and reading their SLA state.

    Coordinates between domain logic and data access.
    """

    def __init__(
        self,
        request_repository: ITimedRequestRepository,
        policy_provider: ISLAPolicyProvider
    ):
        self._request_repo = request_repository
        self._policy_provider = policy_provider

    async def create_request(
        self,
        request_type: str,
        priority: str,
        sla_clock: str = SLAClock.RESPONSE,
        created_at: Optional[datetime] = None,
        case_id: Optional[str] = None,
        title: Optional[str] = None,
        target_department: Optional[str] = None
    ) -> TimedRequest:
        """
        Create a request and fix its SLA deadline.

        The deadline is computed exactly once here and stored with the
        breach flag cleared and escalation level 0.

        Raises:
            PolicyNotFoundError: If no policy matches the type and priority
        """
        created_at = created_at or _utcnow()
        policies = self._policy_provider.get_policies()
        policy = policies.lookup(request_type, priority)

        deadline = SLACalculator(policies).compute_deadline(
            created_at, request_type, priority, sla_clock
        )

        request = TimedRequest(
            id=str(uuid4()),
            request_number=generate_request_number(created_at),
            request_type=request_type,
            priority=priority,
            status=RequestStatus.PENDING,
            created_at=created_at,
            sla_clock=sla_clock,
            allowance_minutes=policy.allowance_minutes(sla_clock),
            sla_deadline=deadline,
            warning_threshold_percent=policy.warning_threshold_percent,
            case_id=case_id,
            title=title,
            target_department=target_department
        )

        await self._request_repo.create(request)

        logger.info(
            "Timed request created",
            extra={
                "request_id": request.id,
                "request_number": request.request_number,
                "request_type": request_type,
                "priority": priority,
                "sla_clock": sla_clock,
                "sla_deadline": deadline.isoformat()
            }
        )
        return request

    async def get_request(self, request_id: str) -> TimedRequest:
        """
        Get a request by ID.

        Raises:
            ResourceNotFoundException: If the request does not exist
        """
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise ResourceNotFoundException("TimedRequest", request_id)
        return request

    async def get_request_status(
        self,
        request_id: str,
        now: Optional[datetime] = None
    ) -> RequestSLAStatus:
        """Get a request and its countdown at ``now``."""
        now = now or _utcnow()
        request = await self.get_request(request_id)
        return RequestSLAStatus(
            request=request,
            remaining=request.remaining_time(now),
            evaluated_at=now
        )

    async def acknowledge(
        self, request_id: str, by: Optional[str] = None, now: Optional[datetime] = None
    ) -> TimedRequest:
        request = await self.get_request(request_id)
        request.acknowledge(now or _utcnow(), by)
        return await self._save_lifecycle(request)

    async def take_ownership(
        self, request_id: str, by: Optional[str] = None, now: Optional[datetime] = None
    ) -> TimedRequest:
        request = await self.get_request(request_id)
        request.take_ownership(now or _utcnow(), by)
        return await self._save_lifecycle(request)

    async def complete(
        self, request_id: str, by: Optional[str] = None, now: Optional[datetime] = None
    ) -> TimedRequest:
        request = await self.get_request(request_id)
        request.complete(now or _utcnow(), by)
        return await self._save_lifecycle(request)

    async def cancel(self, request_id: str, now: Optional[datetime] = None) -> TimedRequest:
        request = await self.get_request(request_id)
        request.cancel(now or _utcnow())
        return await self._save_lifecycle(request)

    async def _save_lifecycle(self, request: TimedRequest) -> TimedRequest:
        await self._request_repo.update_lifecycle(request)
        logger.info(
            "Request status changed",
            extra={"request_id": request.id, "status": request.status}
        )
        return request

    async def dashboard(
        self,
        filters: Optional[dict] = None,
        now: Optional[datetime] = None,
        limit: int = 1000
    ) -> DashboardSummary:
        """
        Summarise SLA state for the flow-manager dashboard.

        Remaining-time counts cover open requests whose SLA clock is still
        running; compliance is the share of completed requests that never
        breached.
        """
        now = now or _utcnow()
        requests = await self._request_repo.list(filters or {}, limit=limit)

        remaining_counts = Counter({
            RemainingStatus.SAFE: 0,
            RemainingStatus.WARNING: 0,
            RemainingStatus.DANGER: 0,
            RemainingStatus.EXPIRED: 0,
        })
        status_counts = Counter()
        priority_counts = Counter({priority: 0 for priority in VALID_PRIORITIES})

        for request in requests:
            status_counts[request.status] += 1
            if request.status in OPEN_STATUSES:
                priority_counts[request.priority] += 1
            if request.is_sla_active:
                remaining_counts[request.remaining_time(now).status] += 1

        completed = [r for r in requests if r.status == RequestStatus.COMPLETED]
        if completed:
            met = sum(1 for r in completed if not r.sla_breached)
            compliance = round(met / len(completed) * 100, 1)
        else:
            compliance = 100.0

        return DashboardSummary(
            total_requests=len(requests),
            open_requests=sum(status_counts[s] for s in OPEN_STATUSES),
            breached_count=sum(1 for r in requests if r.sla_breached),
            escalated_count=sum(1 for r in requests if r.escalation_level > 0),
            status_counts=dict(status_counts),
            remaining_counts=dict(remaining_counts),
            priority_counts=dict(priority_counts),
            sla_compliance=compliance
        )


class SLAEvaluationService:
    """
    Service for the server-side SLA tick.

    Scans open requests, runs the escalation trigger on each and records
    every fired event through compare-and-set repository writes. A request
    whose policy is missing is logged and skipped for this tick only.
    """

    def __init__(
        self,
        request_repository: ITimedRequestRepository,
        event_repository: ISLAEventRepository,
        policy_provider: ISLAPolicyProvider
    ):
        self._request_repo = request_repository
        self._event_repo = event_repository
        self._policy_provider = policy_provider

    async def evaluate_open_requests(self, now: Optional[datetime] = None) -> EvaluationResult:
        """
        Run one tick over all open requests.

        Returns:
            EvaluationResult with the events this tick recorded. Callers
            publish them once the surrounding transaction has committed.
        """
        now = now or _utcnow()
        trigger = EscalationTrigger(self._policy_provider.get_policies())
        result = EvaluationResult(evaluated_at=now)

        open_requests = await self._request_repo.list_open()

        with log_latency(logger, "sla_tick", requests=len(open_requests)):
            for request in open_requests:
                result.requests_evaluated += 1
                try:
                    events = trigger.on_tick(request, now)
                except PolicyNotFoundError as e:
                    result.skipped += 1
                    logger.error(
                        "SLA policy missing, request skipped for this tick",
                        extra={
                            "request_id": request.id,
                            "request_type": e.request_type,
                            "priority": e.priority
                        }
                    )
                    continue

                for event in events:
                    if await self._record(event):
                        result.events.append(event)

        if result.events or result.skipped:
            logger.info("SLA tick finished", extra=result.to_dict())

        return result

    async def _record(self, event: SLAEvent) -> bool:
        """Persist an event if this worker wins the compare-and-set."""
        if isinstance(event, SLABreached):
            won = await self._request_repo.record_breach(event.request_id, event.breached_at)
        else:
            won = await self._request_repo.record_escalation(event.request_id, event.level)

        if not won:
            logger.info(
                "SLA event already recorded by another worker",
                extra={"request_id": event.request_id, "event_type": event.event_type}
            )
            return False

        await self._event_repo.create(event)
        logger.warning(
            "SLA event fired",
            extra=event.to_dict()
        )
        return True

    async def recent_events(
        self,
        limit: int = 50,
        request_id: Optional[str] = None
    ) -> List[SLAEvent]:
        return await self._event_repo.list_recent(limit=limit, request_id=request_id)
