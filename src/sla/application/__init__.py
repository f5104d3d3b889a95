"""
SLA Application Layer
======================

Application layer for the ER SLA module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla.application.dto import (
    TimedRequestCreateDTO,
    LifecycleActionDTO,
    RemainingTimeResponse,
    TimedRequestResponse,
    SLAPolicyResponse,
    DashboardResponse,
    SLAEventResponse,
    EvaluationResponse,
)
from sla.application.services import (
    SLAService,
    SLAEvaluationService,
    RequestSLAStatus,
    DashboardSummary,
    EvaluationResult,
    ITimedRequestRepository,
    ISLAEventRepository,
    ISLAPolicyProvider,
    IEventPublisher,
    publish_all,
)

__all__ = [
    # DTOs
    "TimedRequestCreateDTO",
    "LifecycleActionDTO",
    "RemainingTimeResponse",
    "TimedRequestResponse",
    "SLAPolicyResponse",
    "DashboardResponse",
    "SLAEventResponse",
    "EvaluationResponse",
    # Services
    "SLAService",
    "SLAEvaluationService",
    "RequestSLAStatus",
    "DashboardSummary",
    "EvaluationResult",
    "publish_all",
    # Interfaces
    "ITimedRequestRepository",
    "ISLAEventRepository",
    "ISLAPolicyProvider",
    "IEventPublisher",
]
