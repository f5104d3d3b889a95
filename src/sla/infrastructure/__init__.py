"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA monitoring:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer with compare-and-set breach/escalation writes
- External: Policy file watcher, event bus, Slack notifier, scheduler
"""

from sla.infrastructure.models import TimedRequestModel, SLAEventModel
from sla.infrastructure.repositories import (
    SQLAlchemyTimedRequestRepository,
    SQLAlchemyEventRepository,
)
from sla.infrastructure.external import (
    SLAPolicyManager,
    SLAEventBus,
    SlackAlertNotifier,
    SLAScheduler,
    CircuitBreaker,
)

__all__ = [
    "TimedRequestModel",
    "SLAEventModel",
    "SQLAlchemyTimedRequestRepository",
    "SQLAlchemyEventRepository",
    "SLAPolicyManager",
    "SLAEventBus",
    "SlackAlertNotifier",
    "SLAScheduler",
    "CircuitBreaker",
]
