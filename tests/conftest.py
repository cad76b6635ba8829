"""
tests/conftest.py
Shared fixtures: in-memory SQLite per test, fakeredis, eager Celery,
and seeded users/mentors/slots.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "test"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"
os.environ["RATE_LIMIT_UNAUTH_PER_MINUTE"] = "10000"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import config.redis_client as redis_module
from config.database import Base, get_db
from main import app
from shared.models.models import (
    ApplicationStatus,
    Mentor,
    MentorPackage,
    Profile,
    TimeSlot,
    User,
    UserRole,
)
from shared.utils.security import create_access_token, hash_password
from tasks.celery_app import celery_app

celery_app.conf.task_always_eager = True

TEST_PASSWORD = "Sup3rSecret!"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def future(days: int = 1, hour: int = 9) -> datetime:
    base = datetime.now(timezone.utc) + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    previous = redis_module.redis_client
    redis_module.redis_client = client
    yield client
    redis_module.redis_client = previous
    await client.aclose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory, redis) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def mail_outbox(monkeypatch) -> list:
    """Captures mail modes instead of handing them to Celery."""
    sent: list = []

    def capture(mode: str, payload: dict) -> None:
        sent.append((mode, payload))

    monkeypatch.setattr("services.notification.outbox.enqueue_mail", capture)
    monkeypatch.setattr("services.email.router.enqueue_mail", capture)
    return sent


# ── Accounts ──────────────────────────────────────────────────

async def make_user(
    db: AsyncSession,
    email: str,
    role: UserRole = UserRole.CLIENT,
    name: str = "Test User",
) -> User:
    user = User(email=email, password_hash=hash_password(TEST_PASSWORD), role=role)
    db.add(user)
    await db.flush()
    db.add(Profile(user_id=user.id, name=name, email=email, role=role))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    return await make_user(db, "client@example.com", name="Casey Client")


@pytest_asyncio.fixture
async def other_user(db: AsyncSession) -> User:
    return await make_user(db, "other@example.com", name="Olive Other")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "admin@example.com", role=UserRole.ADMIN, name="Ada Admin")


@pytest_asyncio.fixture
async def mentor_user(db: AsyncSession) -> User:
    return await make_user(db, "mentor@example.com", role=UserRole.MENTOR, name="Morgan Mentor")


async def make_mentor(
    db: AsyncSession,
    user: Optional[User],
    status: ApplicationStatus = ApplicationStatus.APPROVED,
    email: Optional[str] = None,
) -> Mentor:
    profile = None
    if user is not None:
        profile = await db.scalar(select(Profile).where(Profile.user_id == user.id))
    mentor = Mentor(
        user_id=user.id if user else None,
        profile_id=profile.id if profile else None,
        application_status=status,
        applicant_name=profile.name if profile else "Unclaimed Mentor",
        applicant_email=email or (user.email if user else None),
        approved_at=datetime.now(timezone.utc) if status == ApplicationStatus.APPROVED else None,
    )
    db.add(mentor)
    if profile is not None and status == ApplicationStatus.APPROVED:
        row = await db.get(Profile, profile.id)
        row.verified = True
        row.price = Decimal("1000.00")
        row.specialties = ["python", "career"]
    await db.commit()
    return mentor


@pytest_asyncio.fixture
async def mentor(db: AsyncSession, mentor_user: User) -> Mentor:
    return await make_mentor(db, mentor_user)


@pytest_asyncio.fixture
async def package(db: AsyncSession, mentor: Mentor) -> MentorPackage:
    pkg = MentorPackage(mentor_id=mentor.id, name="Deep dive", duration_min=60, price=Decimal("1500.00"))
    db.add(pkg)
    await db.commit()
    return pkg


@pytest_asyncio.fixture
async def slots(db: AsyncSession, mentor: Mentor) -> list[TimeSlot]:
    """Two slots tomorrow and one the day after, all available."""
    rows = []
    for days, hour in ((1, 9), (1, 10), (2, 9)):
        start = future(days, hour)
        rows.append(TimeSlot(mentor_id=mentor.id, start_at=start, end_at=start + timedelta(hours=1)))
    db.add_all(rows)
    await db.commit()
    return rows
