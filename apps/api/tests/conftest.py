import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.account_lock import clear_account_locks


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    clear_account_locks()
    yield
    rate_limit._local_counters.clear()
    clear_account_locks()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def ledger_sessions(tmp_path):
    db_path = tmp_path / "credit_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


@pytest_asyncio.fixture
async def ledger_db(ledger_sessions):
    async with ledger_sessions() as session:
        yield session
