"""
SLA Value Objects
==================

Immutable value objects for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import math
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from config import (
    SLAClock, RemainingStatus, VALID_SLA_CLOCKS,
    DANGER_THRESHOLD_PERCENT, DEFAULT_WARNING_THRESHOLD_PERCENT,
    REMAINING_STATUS_SEVERITY
)
from core.exceptions import PolicyNotFoundError, InvalidPolicyError, ClockSkewWarning
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EscalationLevelConfig(BaseModel):
    """Configuration for a single escalation level."""
    model_config = ConfigDict(frozen=True)

    level: int = Field(description="Escalation level (1-based)")
    minutes: int = Field(description="Minutes past the deadline at which this level fires")
    target: str = Field(description="Role or person notified at this level")


class SLAPolicy(BaseModel):
    """
    SLA allowances for one (request_type, priority) pair.

    Accepts both the table column names (``response_time_minutes``) and the
    short names used in the YAML file (``response_minutes``).
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    request_type: str
    priority: str
    response_time_minutes: int = Field(
        validation_alias=AliasChoices("response_time_minutes", "response_minutes")
    )
    completion_time_minutes: int = Field(
        validation_alias=AliasChoices("completion_time_minutes", "completion_minutes")
    )
    warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT
    escalation_levels: Tuple[EscalationLevelConfig, ...] = ()
    is_active: bool = True

    @property
    def key(self) -> Tuple[str, str]:
        return (self.request_type, self.priority)

    def allowance_minutes(self, which: str) -> int:
        """Minutes allowed for the given SLA clock."""
        if which == SLAClock.RESPONSE:
            return self.response_time_minutes
        if which == SLAClock.COMPLETION:
            return self.completion_time_minutes
        raise ValueError(f"Unknown SLA clock '{which}', expected one of {VALID_SLA_CLOCKS}")

    def ordered_escalation_levels(self) -> List[EscalationLevelConfig]:
        return sorted(self.escalation_levels, key=lambda esc: esc.level)

    def ensure_valid(self) -> None:
        """
        Check allowance and threshold invariants.

        Raises:
            InvalidPolicyError: If any allowance is non-positive, the response
                allowance exceeds the completion allowance, the warning
                threshold is outside (0, 100) or escalation levels are malformed.
        """
        label = f"{self.request_type}/{self.priority}"

        if self.response_time_minutes <= 0 or self.completion_time_minutes <= 0:
            raise InvalidPolicyError(
                f"SLA policy {label} must have positive allowances",
                {"request_type": self.request_type, "priority": self.priority}
            )
        if self.response_time_minutes > self.completion_time_minutes:
            raise InvalidPolicyError(
                f"SLA policy {label} response allowance exceeds completion allowance",
                {"request_type": self.request_type, "priority": self.priority}
            )
        if not 0 < self.warning_threshold_percent < 100:
            raise InvalidPolicyError(
                f"SLA policy {label} warning threshold must be between 0 and 100",
                {"warning_threshold_percent": self.warning_threshold_percent}
            )

        seen_levels = set()
        for esc in self.escalation_levels:
            if esc.level < 1 or esc.minutes < 0:
                raise InvalidPolicyError(
                    f"SLA policy {label} has an invalid escalation level",
                    {"level": esc.level, "minutes": esc.minutes}
                )
            if esc.level in seen_levels:
                raise InvalidPolicyError(
                    f"SLA policy {label} repeats escalation level {esc.level}",
                    {"level": esc.level}
                )
            seen_levels.add(esc.level)

        ordered = self.ordered_escalation_levels()
        for lower, higher in zip(ordered, ordered[1:]):
            if higher.minutes < lower.minutes:
                raise InvalidPolicyError(
                    f"SLA policy {label} escalation level {higher.level} fires before level {lower.level}",
                    {"level": higher.level, "minutes": higher.minutes}
                )

    def to_record(self) -> Dict[str, Any]:
        """Serialize using the YAML schema field names."""
        return {
            "request_type": self.request_type,
            "priority": self.priority,
            "response_minutes": self.response_time_minutes,
            "completion_minutes": self.completion_time_minutes,
            "warning_threshold_percent": self.warning_threshold_percent,
            "escalation_levels": [
                esc.model_dump() for esc in self.ordered_escalation_levels()
            ],
            "is_active": self.is_active,
        }


class SLAPolicyTable:
    """
    Mapping from (request_type, priority) to SLA policy.

    Built once from configuration data and read-only afterwards. Every
    policy is validated on construction so a bad table never reaches
    request processing.
    """

    def __init__(self, policies: Iterable[SLAPolicy]):
        self._policies: Dict[Tuple[str, str], SLAPolicy] = {}
        for policy in policies:
            policy.ensure_valid()
            if policy.key in self._policies:
                raise InvalidPolicyError(
                    f"Duplicate SLA policy for {policy.request_type}/{policy.priority}",
                    {"request_type": policy.request_type, "priority": policy.priority}
                )
            self._policies[policy.key] = policy

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "SLAPolicyTable":
        """
        Build a table from plain dicts (YAML / JSON schema).

        Raises:
            InvalidPolicyError: If a record is malformed or violates a
                policy invariant.
        """
        policies = []
        for index, record in enumerate(records):
            try:
                policies.append(SLAPolicy.model_validate(record))
            except ValidationError as e:
                raise InvalidPolicyError(
                    f"SLA policy #{index} is malformed: {e.error_count()} validation error(s)",
                    {"index": index, "errors": e.errors(include_url=False)}
                ) from e
        return cls(policies)

    def lookup(self, request_type: str, priority: str) -> SLAPolicy:
        """
        Get the active policy for a (request_type, priority) pair.

        Raises:
            PolicyNotFoundError: If no active policy is configured.
        """
        policy = self._policies.get((request_type, priority))
        if policy is None or not policy.is_active:
            raise PolicyNotFoundError(request_type, priority)
        return policy

    def to_records(self) -> List[Dict[str, Any]]:
        return [policy.to_record() for policy in self._policies.values()]

    def __iter__(self) -> Iterator[SLAPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)


@dataclass(frozen=True)
class RemainingTimeResult:
    """
    Derived countdown for one deadline at one instant.

    Computed fresh on every evaluation and never persisted.
    """
    is_expired: bool
    minutes: int
    remaining_seconds: float
    text: str
    percentage: float
    status: str

    @property
    def severity(self) -> int:
        """Numeric severity: safe < warning < danger < expired."""
        return REMAINING_STATUS_SEVERITY[self.status]

    def to_dict(self) -> dict:
        return {
            "is_expired": self.is_expired,
            "minutes": self.minutes,
            "remaining_seconds": self.remaining_seconds,
            "text": self.text,
            "percentage": self.percentage,
            "status": self.status,
        }


class SLACalculator:
    """
    SLA deadline and remaining-time calculations.

    ``compute_deadline`` needs the policy table; ``evaluate`` is a pure
    static function usable anywhere a deadline exists.
    """

    def __init__(self, policies: SLAPolicyTable):
        self._policies = policies

    @staticmethod
    def calculate_deadline(created_at: datetime, sla_minutes: int) -> datetime:
        """Add an allowance in minutes to a creation instant."""
        return created_at + timedelta(minutes=sla_minutes)

    def compute_deadline(
        self,
        created_at: datetime,
        request_type: str,
        priority: str,
        which: str = SLAClock.RESPONSE
    ) -> datetime:
        """
        Calculate the absolute SLA deadline for a request.

        Computed once at creation time and stored; never re-derived from the
        evaluation time.

        Args:
            created_at: When the request was created
            request_type: consultation, lab, imaging or procedure
            priority: critical, urgent or stable
            which: SLA clock (response or completion)

        Returns:
            The SLA deadline

        Raises:
            PolicyNotFoundError: If the pair has no configured policy
        """
        policy = self._policies.lookup(request_type, priority)
        return self.calculate_deadline(created_at, policy.allowance_minutes(which))

    @staticmethod
    def evaluate(
        deadline: datetime,
        now: datetime,
        total_allowance_minutes: float,
        created_at: Optional[datetime] = None,
        warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT
    ) -> RemainingTimeResult:
        """
        Classify the time remaining until a deadline.

        Args:
            deadline: The stored SLA deadline
            now: Evaluation instant
            total_allowance_minutes: Allowance the deadline was computed from
            created_at: Request creation time, used only for clock-skew checks
            warning_threshold_percent: Percent remaining below which a
                countdown turns from safe to warning

        Returns:
            RemainingTimeResult for this instant

        Raises:
            InvalidPolicyError: If the allowance is zero or negative
        """
        if total_allowance_minutes <= 0:
            raise InvalidPolicyError(
                "SLA allowance must be positive",
                {"total_allowance_minutes": total_allowance_minutes}
            )

        if created_at is not None and now < created_at:
            logger.warning(
                "SLA evaluated before request creation time",
                extra={
                    "now": now.isoformat(),
                    "created_at": created_at.isoformat(),
                    "skew_seconds": (created_at - now).total_seconds()
                }
            )
            warnings.warn(
                f"evaluation time {now.isoformat()} precedes creation time {created_at.isoformat()}",
                ClockSkewWarning,
                stacklevel=2
            )

        remaining_seconds = (deadline - now).total_seconds()
        delta_minutes = math.floor(remaining_seconds / 60)
        hours, mins = divmod(abs(delta_minutes), 60)

        if delta_minutes < 0:
            text = f"Breached by {hours}h {mins}m" if hours else f"Breached by {mins}m"
            return RemainingTimeResult(
                is_expired=True,
                minutes=delta_minutes,
                remaining_seconds=remaining_seconds,
                text=text,
                percentage=0.0,
                status=RemainingStatus.EXPIRED
            )

        percentage = max(0.0, min(100.0, delta_minutes / total_allowance_minutes * 100))

        if percentage < DANGER_THRESHOLD_PERCENT:
            status = RemainingStatus.DANGER
        elif percentage < warning_threshold_percent:
            status = RemainingStatus.WARNING
        else:
            status = RemainingStatus.SAFE

        text = f"{hours:02d}:{mins:02d} remaining" if hours else f"{mins:02d} remaining"

        return RemainingTimeResult(
            is_expired=False,
            minutes=delta_minutes,
            remaining_seconds=remaining_seconds,
            text=text,
            percentage=percentage,
            status=status
        )
