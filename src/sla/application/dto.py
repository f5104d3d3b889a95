"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Literal
from datetime import datetime


# ========== Type Aliases for Literals ==========
RequestStatusStr = Literal["pending", "acknowledged", "in_progress", "completed", "escalated", "cancelled"]
SLAClockStr = Literal["response", "completion"]
RemainingStatusStr = Literal["safe", "warning", "danger", "expired"]
SLAEventTypeStr = Literal["sla_breached", "sla_escalated"]


# ========== Request DTOs ==========

class TimedRequestCreateDTO(BaseModel):
    """DTO for creating a timed request."""
    request_type: str = Field(..., min_length=1, description="consultation, lab, imaging or procedure")
    priority: str = Field(..., min_length=1, description="critical, urgent or stable")
    sla_clock: SLAClockStr = Field(default="response", description="Allowance the deadline is measured against")
    created_at: Optional[datetime] = Field(None, description="Creation time (defaults to now)")
    case_id: Optional[str] = Field(None, description="ER case the request belongs to")
    title: Optional[str] = Field(None, max_length=500, description="Short request title")
    target_department: Optional[str] = Field(None, description="Department code, e.g. CARD")


class LifecycleActionDTO(BaseModel):
    """DTO for acknowledge / own / complete actions."""
    actor: Optional[str] = Field(None, description="Staff member performing the action")


# ========== Response DTOs ==========

class RemainingTimeResponse(BaseModel):
    """Countdown for a single deadline."""
    is_expired: bool
    minutes: int = Field(..., description="Whole minutes remaining (negative once breached)")
    remaining_seconds: float
    text: str = Field(..., description="Display text, e.g. '05 remaining' or 'Breached by 1h 5m'")
    percentage: float = Field(..., description="Percentage of the allowance remaining")
    status: RemainingStatusStr


class TimedRequestResponse(BaseModel):
    """Response model for a timed request and its SLA state."""
    id: str
    request_number: str
    request_type: str
    priority: str
    status: RequestStatusStr
    case_id: Optional[str] = None
    title: Optional[str] = None
    target_department: Optional[str] = None
    created_at: datetime
    sla_clock: SLAClockStr
    allowance_minutes: int
    sla_deadline: datetime
    sla_breached: bool
    sla_breach_time: Optional[datetime] = None
    escalation_level: int
    acknowledged_at: Optional[datetime] = None
    owned_at: Optional[datetime] = None
    owned_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    remaining: Optional[RemainingTimeResponse] = None

    @classmethod
    def from_domain(cls, request, remaining=None) -> "TimedRequestResponse":
        """Create from domain entity and optional countdown."""
        return cls(
            id=request.id,
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
            sla_breached=request.sla_breached,
            sla_breach_time=request.sla_breach_time,
            escalation_level=request.escalation_level,
            acknowledged_at=request.acknowledged_at,
            owned_at=request.owned_at,
            owned_by=request.owned_by,
            completed_at=request.completed_at,
            remaining=RemainingTimeResponse(**remaining.to_dict()) if remaining else None
        )


class EscalationLevelResponse(BaseModel):
    level: int
    minutes: int
    target: str


class SLAPolicyResponse(BaseModel):
    """Response model for one SLA policy (YAML schema field names)."""
    request_type: str
    priority: str
    response_minutes: int
    completion_minutes: int
    warning_threshold_percent: float
    escalation_levels: List[EscalationLevelResponse] = Field(default_factory=list)
    is_active: bool = True


class DashboardResponse(BaseModel):
    """Response model for the flow-manager dashboard."""
    total_requests: int
    open_requests: int
    breached_count: int
    escalated_count: int
    status_counts: Dict[str, int]
    remaining_counts: Dict[str, int]
    priority_counts: Dict[str, int]
    sla_compliance: float = Field(..., description="Percentage of completed requests that never breached")


class SLAEventResponse(BaseModel):
    """Response model for an emitted SLA event."""
    event_type: SLAEventTypeStr
    request_id: str
    request_type: str
    priority: str
    occurred_at: datetime
    deadline: Optional[datetime] = None
    level: Optional[int] = None
    target: Optional[str] = None


class EvaluationResponse(BaseModel):
    """Response model for a manual SLA tick."""
    evaluated_at: datetime
    requests_evaluated: int
    skipped: int
    breaches: int
    escalations: int
