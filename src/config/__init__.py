"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="er-sla-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/sanad_er",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_policy_path: Path = Field(
        default=Path("sla_policies.yaml"),
        description="Path to SLA policy table YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=30,
        description="Seconds between server-side SLA ticks (0 disables the scheduler)",
        ge=0
    )
    event_queue_size: int = Field(
        default=1000,
        description="Max buffered SLA events per event bus subscriber",
        ge=1
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for SLA breach/escalation notifications"
    )
    slack_channel: str = Field(
        default="#er-sla-alerts",
        description="Slack channel for SLA notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(str):
    """ER priority levels (triage colour)."""
    CRITICAL = "critical"
    URGENT = "urgent"
    STABLE = "stable"


class RequestType(str):
    """Kinds of timed requests raised from an ER case."""
    CONSULTATION = "consultation"
    LAB = "lab"
    IMAGING = "imaging"
    PROCEDURE = "procedure"


class RequestStatus(str):
    """Request lifecycle statuses."""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class SLAClock(str):
    """Which allowance an SLA deadline is measured against."""
    RESPONSE = "response"
    COMPLETION = "completion"


class RemainingStatus(str):
    """Countdown colour classification, ordered by severity."""
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    EXPIRED = "expired"


class SLAEventType(str):
    """SLA event kinds handed to alerting."""
    BREACHED = "sla_breached"
    ESCALATED = "sla_escalated"


# ========== Lists for validation ==========

VALID_PRIORITIES = [Priority.CRITICAL, Priority.URGENT, Priority.STABLE]
VALID_REQUEST_TYPES = [
    RequestType.CONSULTATION, RequestType.LAB,
    RequestType.IMAGING, RequestType.PROCEDURE
]
VALID_STATUSES = [
    RequestStatus.PENDING, RequestStatus.ACKNOWLEDGED,
    RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED,
    RequestStatus.ESCALATED, RequestStatus.CANCELLED
]
OPEN_STATUSES = [
    RequestStatus.PENDING, RequestStatus.ACKNOWLEDGED,
    RequestStatus.IN_PROGRESS, RequestStatus.ESCALATED
]
# Response clock stops once someone has acknowledged or owned the request
RESPONSE_ACTIVE_STATUSES = [RequestStatus.PENDING, RequestStatus.ESCALATED]
VALID_SLA_CLOCKS = [SLAClock.RESPONSE, SLAClock.COMPLETION]
REMAINING_STATUS_SEVERITY = {
    RemainingStatus.SAFE: 0,
    RemainingStatus.WARNING: 1,
    RemainingStatus.DANGER: 2,
    RemainingStatus.EXPIRED: 3,
}

# Percent of allowance remaining below which a countdown is "danger"
DANGER_THRESHOLD_PERCENT = 20
DEFAULT_WARNING_THRESHOLD_PERCENT = 50


# ========== Reference SLA policy table (minutes) ==========

_ESCALATION_MINUTES = {
    Priority.CRITICAL: (15, 30),
    Priority.URGENT: (30, 60),
    Priority.STABLE: (60, 120),
}

_ALLOWANCES = {
    RequestType.CONSULTATION: {
        Priority.CRITICAL: (10, 30),
        Priority.URGENT: (20, 60),
        Priority.STABLE: (45, 120),
    },
    RequestType.LAB: {
        Priority.CRITICAL: (15, 45),
        Priority.URGENT: (30, 90),
        Priority.STABLE: (60, 180),
    },
    RequestType.IMAGING: {
        Priority.CRITICAL: (20, 60),
        Priority.URGENT: (40, 120),
        Priority.STABLE: (90, 240),
    },
    RequestType.PROCEDURE: {
        Priority.CRITICAL: (15, 45),
        Priority.URGENT: (30, 90),
        Priority.STABLE: (60, 180),
    },
}

DEFAULT_SLA_POLICIES = [
    {
        "request_type": request_type,
        "priority": priority,
        "response_minutes": response,
        "completion_minutes": completion,
        "warning_threshold_percent": DEFAULT_WARNING_THRESHOLD_PERCENT,
        "escalation_levels": [
            {"level": 1, "minutes": _ESCALATION_MINUTES[priority][0], "target": "flow_manager"},
            {"level": 2, "minutes": _ESCALATION_MINUTES[priority][1], "target": "medical_director"},
        ],
    }
    for request_type, by_priority in _ALLOWANCES.items()
    for priority, (response, completion) in by_priority.items()
]
