from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


SUPPORTED_DIALECTS = ("postgresql", "sqlite")


class Database:
    """Async database connection manager shared by every lifecycle service."""

    def __init__(self, database_url: str):
        dialect = make_url(database_url).get_backend_name()
        if dialect not in SUPPORTED_DIALECTS:
            raise ValueError(
                f"Unsupported database dialect {dialect!r}; expected one of {SUPPORTED_DIALECTS}"
            )
        self.engine = create_async_engine(database_url, echo=False, pool_pre_ping=True)
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: commits on clean exit, rolls back and re-raises otherwise."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def insert_if_absent(
    session: AsyncSession, model, values: dict, conflict_column
) -> Optional[str]:
    """Atomic insert-or-ignore keyed on a unique column.

    Returns the new row id when this call inserted it, None when a row
    with the same key already existed.
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise ValueError(f"insert_if_absent not supported on {dialect}")

    stmt = (
        stmt.values(**values)
        .on_conflict_do_nothing(index_elements=[conflict_column.key])
        .returning(model.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
