"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import String, DateTime, Boolean, Integer, Float, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from infrastructure.database import Base
from config import RequestStatus, SLAClock, DEFAULT_WARNING_THRESHOLD_PERCENT


class TimedRequestModel(Base):
    """
    Database model for TimedRequest entity.

    Maps to the 'sla_requests' table.
    """
    __tablename__ = "sla_requests"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Business identifier
    request_number: Mapped[str] = mapped_column(String(32), index=True, nullable=False)

    # SLA attributes
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default=RequestStatus.PENDING)

    # Context
    case_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    target_department: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # SLA timing, fixed at creation
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    sla_clock: Mapped[str] = mapped_column(String(20), nullable=False, default=SLAClock.RESPONSE)
    allowance_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    warning_threshold_percent: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_WARNING_THRESHOLD_PERCENT)

    # Breach / escalation tracking
    sla_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sla_breach_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    owned_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class SLAEventModel(Base):
    """
    Database model for emitted SLA events (alert history).

    Maps to the 'sla_events' table.
    """
    __tablename__ = "sla_events"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Request reference
    request_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)

    # Event details
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)  # sla_breached or sla_escalated
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Escalation
    escalation_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    target: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
