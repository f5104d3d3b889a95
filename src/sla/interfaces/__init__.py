"""
SLA Interfaces Layer
====================

Interface adapters (controllers) for the ER SLA module.

Contains:
- Controllers: FastAPI route handlers and their dependencies

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from sla.interfaces.controllers import (
    sla_router,
    get_policy_provider,
    get_event_publisher,
)

__all__ = ["sla_router", "get_policy_provider", "get_event_publisher"]
