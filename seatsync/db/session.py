from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from seatsync.config import settings
from seatsync.db.base import Base


def build_engine(url: str = None, echo: bool = False) -> AsyncEngine:
    url = str(url or settings.DATABASE_URL)
    if url.startswith("sqlite") and ":memory:" in url:
        # in-memory sqlite must share one connection across the pool
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine):
    import seatsync.models  # noqa: F401  (register tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

