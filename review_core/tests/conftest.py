"""Shared fixtures for review_core tests.

Every test gets a fresh in-memory SQLite database via aiosqlite, with the
full ORM schema created, so repository code runs against a real SQL engine
without PostgreSQL.
"""

from __future__ import annotations

import pytest_asyncio
from review_core.state.tables import Base, LocationTable, OrganizationTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def async_session(engine) -> AsyncSession:
    """Provide an async session bound to the in-memory database."""
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_location(async_session: AsyncSession) -> LocationTable:
    """An organization ``org-1`` with one selected location."""
    async_session.add(OrganizationTable(id="org-1", name="Joe's Pizza", has_selected_location=True))
    location = LocationTable(
        id="loc-1",
        organization_id="org-1",
        external_id="locations/123",
        name="Joe's Pizza Downtown",
    )
    async_session.add(location)
    await async_session.flush()
    return location
