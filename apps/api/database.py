from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from apps.api.config import settings

# Connection pool shared by every request and pipeline invocation.
# Builds hold a session for the whole sandbox run, so keep headroom.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,  # When True, prints all SQL queries
    pool_size=20,
    max_overflow=10,
)

# expire_on_commit=False keeps Build/Project objects readable after commit,
# the pipeline reads build.version and build.id long after finalizing.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session per request.

    Usage in FastAPI:
        @router.get("/projects")
        async def list_projects(db: AsyncSession = Depends(get_db)):
            ...

    The session is closed when the request finishes, even on errors.
    """
    session = async_session_factory()
    try:
        yield session
    finally:
        await session.close()
