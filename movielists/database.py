from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from .config import DATABASE_URL

# SQLite (tests, local dev) picks its own pool; sizing only applies to server databases.
_engine_kwargs = {} if DATABASE_URL.startswith("sqlite") else {"pool_size": 5, "max_overflow": 10}

engine = create_async_engine(DATABASE_URL, **_engine_kwargs)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    async with async_session() as session:
        yield session


async def init_db():
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


async def close_db():
    await engine.dispose()
