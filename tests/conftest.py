"""Shared fixtures: reference policy table, request factory, in-memory database."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import DEFAULT_SLA_POLICIES, RequestStatus, SLAClock
from infrastructure.database import Base
from sla.application import ISLAPolicyProvider
from sla.domain import SLACalculator, SLAPolicyTable, TimedRequest, generate_request_number
from sla.infrastructure import models  # noqa: F401  registers tables on Base.metadata

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class StaticPolicyProvider(ISLAPolicyProvider):
    def __init__(self, table: SLAPolicyTable):
        self.table = table

    def get_policies(self) -> SLAPolicyTable:
        return self.table


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def policies() -> SLAPolicyTable:
    return SLAPolicyTable.from_records(DEFAULT_SLA_POLICIES)


@pytest.fixture
def policy_provider(policies) -> StaticPolicyProvider:
    return StaticPolicyProvider(policies)


@pytest.fixture
def make_provider():
    return StaticPolicyProvider


@pytest.fixture
def make_request(policies):
    """Build a TimedRequest whose deadline comes from the reference table."""

    def _make(
        request_type: str = "consultation",
        priority: str = "critical",
        created_at: datetime = T0,
        sla_clock: str = SLAClock.RESPONSE,
        status: str = RequestStatus.PENDING,
        request_id: Optional[str] = None,
        **kwargs
    ) -> TimedRequest:
        policy = policies.lookup(request_type, priority)
        return TimedRequest(
            id=request_id or str(uuid4()),
            request_number=generate_request_number(created_at),
            request_type=request_type,
            priority=priority,
            status=status,
            created_at=created_at,
            sla_clock=sla_clock,
            allowance_minutes=policy.allowance_minutes(sla_clock),
            sla_deadline=SLACalculator(policies).compute_deadline(
                created_at, request_type, priority, sla_clock
            ),
            warning_threshold_percent=policy.warning_threshold_percent,
            **kwargs
        )

    return _make


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session
