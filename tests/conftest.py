import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from virion.models.database import Base, UserProfile


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker:
    db_path = tmp_path / "test.db"
    # Concurrent writers wait on the SQLite lock instead of failing fast.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}", echo=False, connect_args={"timeout": 30}
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def influencer(db_session) -> UserProfile:
    profile = UserProfile(email="creator@example.com", full_name="Casey Creator", role="influencer")
    db_session.add(profile)
    await db_session.commit()
    await db_session.refresh(profile)
    return profile
