"""
BeanGate Backend: Database Session Management
===============================================

What:  Async SQLAlchemy engine, session factory and declarative Base.
How:   One async engine per process. Gateway services (ledger upserts,
       credential updates, analysis records) receive the `async_sessionmaker`
       and open a short session per operation.
Who:   Engine/factory built here at import; consumed by main.py's lifespan,
       services and Alembic.

Connection Pooling Strategy:
    pool_size / max_overflow / pool_pre_ping come from settings and apply to
    server databases only. SQLite (used by the test suite) gets the driver's
    default pool.
"""

from typing import Any, Dict

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from beangate.config import settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Creates an async engine, with pool options only for non-SQLite URLs."""
    options: Dict[str, Any] = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows stay readable after the per-operation commit
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# ── Engine Configuration ──────────────────────────────────────────────────
engine = build_engine(settings.database_url, echo=settings.log_level == "DEBUG")

# ── Session Factory ───────────────────────────────────────────────────────
async_session_factory = build_session_factory(engine)


def dialect_insert(session: AsyncSession):
    """
    The dialect `insert` construct for the session's database, for
    INSERT ... ON CONFLICT upserts (PostgreSQL in production, SQLite in tests).
    """
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object, which Alembic's env.py and the test suite's
    `create_all` both read.
    """
    pass


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine() -> None:
    """Closes all pooled connections. Called from the lifespan shutdown."""
    await engine.dispose()
