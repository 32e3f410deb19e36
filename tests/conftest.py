import itertools
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from directrent.database.core import Base
from directrent.database.models import User, UserRole, ProviderProfile
from directrent.utils.clock import utcnow

_phones = itertools.count(240000001)


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed SQLite so separate sessions share one database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'directrent.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    # Rows are built in their own session so the returned objects stay loaded
    # when a failing call rolls back the session under test
    async def _make_user(
        role=UserRole.TENANT,
        tier="FREE",
        remaining=3,
        expires_at=None,
        reset_at=None,
        is_active=True
    ) -> User:
        user = User(
            role=role.value,
            phone=f"+233{next(_phones)}",
            full_name="Test User",
            subscription_tier=tier,
            subscription_expires_at=expires_at,
            free_contacts_remaining=remaining,
            free_contacts_reset_at=reset_at or utcnow(),
            is_active=is_active
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user
    return _make_user


@pytest.fixture
def make_provider(session_factory, make_user):
    async def _make_provider(tier="FREE", service_type="plumbing", profile_active=True) -> User:
        expires_at = None if tier == "FREE" else utcnow() + timedelta(days=30)
        user = await make_user(
            role=UserRole.SERVICE_PROVIDER,
            tier=tier,
            remaining=3 if tier == "FREE" else 15,
            expires_at=expires_at
        )
        async with session_factory() as session:
            session.add(ProviderProfile(
                user_id=user.id,
                business_name=f"Provider {user.id}",
                service_type=service_type,
                is_active=profile_active
            ))
            await session.commit()
        return user
    return _make_provider
