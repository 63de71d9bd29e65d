"""Database connection and session management."""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from leadrouter.config import settings


def async_database_url(database_url: str) -> str:
    """Point plain PostgreSQL / SQLite URLs at their async drivers."""
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False):
    """Create an async engine with fail-fast timeouts for the configured backend."""
    database_url = async_database_url(database_url)

    if database_url.startswith("sqlite"):
        # SQLite serialises writers; wait on the lock instead of failing immediately
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": settings.DATABASE_POOL_TIMEOUT},
        )

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        connect_args={
            "server_settings": {"statement_timeout": str(settings.DATABASE_STATEMENT_TIMEOUT_MS)},
        },
    )


# Create async engine
engine = build_engine(settings.DATABASE_URL, echo=settings.LOG_LEVEL == "DEBUG")

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def init_db(bind=None):
    """Create all tables that do not exist yet."""
    from leadrouter import models  # noqa: F401  (registers tables)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
