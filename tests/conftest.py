"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (aiosqlite) with the ticket and audit tables
- In-memory stream bus
- A connector router with a recording Telegram stand-in registered
"""
import os

# settings are read at import time; keep tests off real infrastructure
os.environ["ENV"] = "local"
os.environ["STREAM_BUS_PROVIDER"] = "memory"
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite://"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["WHATSAPP_BRIDGE_URL"] = ""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from helpdesk.core.base import Base
from helpdesk.modules.audit.models import AuditEvent
from helpdesk.modules.connectors.registry import ConnectorRouter
from helpdesk.modules.tickets.models import ChannelUser, Ticket, TicketMessage, TicketNlpResult
from helpdesk.platform.adapters.bus_memory import InMemoryStreamBus

from fakes import FakeCache, FakeConnector

TABLES = [m.__table__ for m in (ChannelUser, Ticket, TicketMessage, TicketNlpResult, AuditEvent)]


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=TABLES)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def make_ticket(session_factory):
    """Insert a ticket directly; returns it detached."""

    async def _make(**fields) -> Ticket:
        data = {
            "source": "telegram",
            "source_conversation_id": "123",
            "subject": "VPN не работает",
            "body": "VPN не работает",
            "status": "new",
        }
        data.update(fields)
        async with session_factory() as s:
            ticket = Ticket(**data)
            s.add(ticket)
            await s.commit()
        return ticket

    return _make


# =============================================================================
# Queue + connectors
# =============================================================================

@pytest.fixture
def bus():
    return InMemoryStreamBus()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def telegram():
    return FakeConnector("telegram")


@pytest.fixture
def connectors(session_factory, bus, telegram):
    router = ConnectorRouter(session_factory, bus)
    router.register("telegram", telegram)
    return router
