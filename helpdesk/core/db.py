from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings
from .base import Base

engine = create_async_engine(settings.POSTGRES_DSN, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_session():
    async with SessionLocal() as session:
        yield session

def _import_models():
    # table registration on Base.metadata
    import helpdesk.modules.tickets.models  # noqa: F401
    import helpdesk.modules.audit.models  # noqa: F401
    import helpdesk.modules.knowledge.models  # noqa: F401

async def init_models():
    ## In dev-only "create_all" mode create tables directly; otherwise migrations own the schema.
    if settings.DB_MANAGE != "create_all":
        return
    _import_models()
    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.run_sync(Base.metadata.create_all)
