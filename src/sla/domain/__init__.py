"""
SLA Domain Layer
================

Domain layer for the ER SLA module.

Contains:
- Entities: Core business objects with identity (TimedRequest) and the
  events they raise (SLABreached, SLAEscalated)
- Value Objects: Immutable objects defined by attributes (SLAPolicy,
  SLAPolicyTable, RemainingTimeResult)
- Domain Services: Stateless business logic (SLACalculator, EscalationTrigger)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla.domain.entities import (
    TimedRequest,
    SLABreached,
    SLAEscalated,
    generate_request_number,
)
from sla.domain.value_objects import (
    SLACalculator,
    SLAPolicy,
    SLAPolicyTable,
    EscalationLevelConfig,
    RemainingTimeResult,
)
from sla.domain.escalation import EscalationTrigger, SLAEvent

__all__ = [
    # Entities
    "TimedRequest",
    "SLABreached",
    "SLAEscalated",
    "SLAEvent",
    "generate_request_number",
    # Value Objects & Services
    "SLACalculator",
    "SLAPolicy",
    "SLAPolicyTable",
    "EscalationLevelConfig",
    "RemainingTimeResult",
    "EscalationTrigger",
]
