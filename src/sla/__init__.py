"""
SLA Monitoring Module
=====================

Bounded Context for ER request SLA timing and priority escalation.

Responsibilities:
- Resolve SLA allowances per request type and priority
- Fix a request's deadline once at creation
- Classify remaining time as safe, warning, danger or expired
- Record breaches and escalation levels exactly once per request
- Notify via Slack and expose dashboard / alert history APIs

Functional Requirements Implemented:
- FR-1: POST /requests (timed request creation)
- FR-2: Persistence with breach and escalation fields
- FR-3: Background SLA tick with compare-and-set writes
- FR-4: Event bus and Slack escalation workflow
- FR-5: Policy table hot-reload via watchdog
- FR-6: GET /requests/{id}, GET /dashboard, GET /events
"""

__version__ = "1.0.0"
