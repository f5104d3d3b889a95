"""
SLA Domain Entities
====================

Pure Python domain entities for SLA monitoring.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from config import (
    RequestStatus, SLAClock, SLAEventType, OPEN_STATUSES,
    VALID_STATUSES, VALID_SLA_CLOCKS, RESPONSE_ACTIVE_STATUSES,
    DEFAULT_WARNING_THRESHOLD_PERCENT
)
from core.exceptions import InvalidStatusTransitionError
from sla.domain.value_objects import SLACalculator, RemainingTimeResult


def generate_request_number(now: datetime) -> str:
    """Human-facing request number, e.g. ``REQ-20240115-0042``."""
    return f"REQ-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


@dataclass
class TimedRequest:
    """
    A consultation, lab, imaging or procedure request under an SLA.

    The deadline, allowance and warning threshold are fixed when the
    request is created. The breach flag only ever goes from False to True
    and the escalation level never decreases; both are changed through
    compare-and-set methods.
    """

    # Core attributes
    id: str
    request_number: str
    request_type: str
    priority: str
    status: str

    # SLA timing, fixed at creation
    created_at: datetime
    sla_clock: str
    allowance_minutes: int
    sla_deadline: datetime
    warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT

    # Breach / escalation state
    sla_breached: bool = False
    sla_breach_time: Optional[datetime] = None
    escalation_level: int = 0

    # Context
    case_id: Optional[str] = None
    title: Optional[str] = None
    target_department: Optional[str] = None

    # Lifecycle timestamps
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    owned_at: Optional[datetime] = None
    owned_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        """Validate request on initialization."""
        if self.allowance_minutes <= 0:
            raise ValueError("allowance_minutes must be positive")

        if self.sla_deadline < self.created_at:
            raise ValueError("sla_deadline cannot be before created_at")

        if self.escalation_level < 0:
            raise ValueError("escalation_level cannot be negative")

        if self.sla_clock not in VALID_SLA_CLOCKS:
            raise ValueError(f"Unknown SLA clock '{self.sla_clock}'")

        if self.status not in VALID_STATUSES:
            raise ValueError(f"Unknown request status '{self.status}'")

    @property
    def is_open(self) -> bool:
        """Check if request still needs work."""
        return self.status in OPEN_STATUSES

    @property
    def is_sla_active(self) -> bool:
        """
        Check if the SLA clock can still breach or escalate.

        A response clock stops once someone acknowledges or owns the request;
        a completion clock runs until the request is completed or cancelled.
        """
        if self.sla_clock == SLAClock.RESPONSE:
            return self.status in RESPONSE_ACTIVE_STATUSES
        return self.is_open

    def remaining_time(self, now: datetime) -> RemainingTimeResult:
        """Countdown for this request's deadline at ``now``."""
        return SLACalculator.evaluate(
            self.sla_deadline,
            now,
            self.allowance_minutes,
            created_at=self.created_at,
            warning_threshold_percent=self.warning_threshold_percent
        )

    # ========== Compare-and-set state changes ==========

    def mark_breached(self, at: datetime) -> bool:
        """
        Set the breach flag if it is not already set.

        Returns:
            True if this call flipped the flag, False if it was already set
        """
        with self._lock:
            if self.sla_breached:
                return False
            self.sla_breached = True
            self.sla_breach_time = at
            return True

    def escalate_to(self, level: int) -> bool:
        """
        Raise the escalation level to ``level`` if it is currently lower.

        Returns:
            True if the level was raised
        """
        with self._lock:
            if self.escalation_level >= level:
                return False
            self.escalation_level = level
            if self.status == RequestStatus.PENDING:
                self.status = RequestStatus.ESCALATED
            return True

    # ========== Lifecycle ==========

    def _transition(self, target: str, allowed_from: tuple) -> None:
        if self.status not in allowed_from:
            raise InvalidStatusTransitionError(self.id, self.status, target)
        self.status = target

    def acknowledge(self, at: datetime, by: Optional[str] = None) -> None:
        """Consultant has seen the request."""
        self._transition(
            RequestStatus.ACKNOWLEDGED,
            (RequestStatus.PENDING, RequestStatus.ESCALATED)
        )
        self.acknowledged_at = at
        self.acknowledged_by = by

    def take_ownership(self, at: datetime, by: Optional[str] = None) -> None:
        """Consultant takes the request on; work is in progress."""
        self._transition(
            RequestStatus.IN_PROGRESS,
            (RequestStatus.PENDING, RequestStatus.ACKNOWLEDGED, RequestStatus.ESCALATED)
        )
        if self.acknowledged_at is None:
            self.acknowledged_at = at
            self.acknowledged_by = by
        self.owned_at = at
        self.owned_by = by

    def complete(self, at: datetime, by: Optional[str] = None) -> None:
        """Request resolved; stops every SLA clock."""
        self._transition(RequestStatus.COMPLETED, tuple(OPEN_STATUSES))
        self.completed_at = at
        self.completed_by = by

    def cancel(self, at: datetime) -> None:
        """Request withdrawn; stops every SLA clock."""
        self._transition(RequestStatus.CANCELLED, tuple(OPEN_STATUSES))
        self.completed_at = at


@dataclass(frozen=True)
class SLABreached:
    """A request's deadline was first observed as passed."""
    request_id: str
    breached_at: datetime
    deadline: datetime
    request_type: str
    priority: str

    @property
    def event_type(self) -> str:
        return SLAEventType.BREACHED

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "request_id": self.request_id,
            "breached_at": self.breached_at.isoformat(),
            "deadline": self.deadline.isoformat(),
            "request_type": self.request_type,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class SLAEscalated:
    """A request crossed an escalation level's time past its deadline."""
    request_id: str
    level: int
    target: str
    escalated_at: datetime
    request_type: str
    priority: str

    @property
    def event_type(self) -> str:
        return SLAEventType.ESCALATED

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "request_id": self.request_id,
            "level": self.level,
            "target": self.target,
            "escalated_at": self.escalated_at.isoformat(),
            "request_type": self.request_type,
            "priority": self.priority,
        }
