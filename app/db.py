from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    pass


engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def configure_engine(url: str, **kwargs) -> async_sessionmaker[AsyncSession]:
    """Create the process-wide engine and session factory for ``url``."""
    global engine, SessionLocal
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=False, future=True, **kwargs)
    else:
        engine = create_async_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_size=5,
            max_overflow=10,
            future=True,
            **kwargs,
        )
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return SessionLocal


if settings.DATABASE_URL_ASYNC:
    configure_engine(settings.DATABASE_URL_ASYNC)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL_ASYNC is not configured.")
    return SessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


async def check_db() -> bool:
    if engine is None:
        return False
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    return True


def upsert(session: AsyncSession, model, values: dict, index_elements: Iterable[str]):
    """Build an insert-or-update statement keyed by ``index_elements``.

    The natural key columns must carry a unique constraint. Every other
    column in ``values`` is overwritten on conflict.
    """
    keys = list(index_elements)
    updates = [k for k in values if k not in keys]
    dialect = session.bind.dialect.name
    if dialect == "mysql":
        from sqlalchemy.dialects.mysql import insert as mysql_insert

        stmt = mysql_insert(model).values(**values)
        return stmt.on_duplicate_key_update({k: stmt.inserted[k] for k in updates})
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as pg_insert
    else:
        raise RuntimeError(f"Upsert not supported for dialect {dialect}")
    stmt = pg_insert(model).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=keys,
        set_={k: stmt.excluded[k] for k in updates},
    )
