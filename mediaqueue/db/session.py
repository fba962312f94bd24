"""SQLAlchemy async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mediaqueue.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, connect_args={"timeout": 30})
    return create_async_engine(
        url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

async_session_factory = build_session_factory(engine)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create the job tables if they do not exist yet."""
    import mediaqueue.models  # noqa: F401  registers ProcessingJob on Base.metadata
    from mediaqueue.db.base import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
