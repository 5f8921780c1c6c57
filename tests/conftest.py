"""Test fixtures and configuration."""

import logging
import sys
from uuid import uuid4

import pytest
import pytest_asyncio
import structlog
from sqlalchemy import select

import bookkeeping.models  # noqa: F401  (register tables on Base.metadata)
from bookkeeping.database import Base, build_engine, build_session_maker
from bookkeeping.models import AccountType, LedgerAccount
from bookkeeping.persistence import SqlAlchemyLedgerStore
from tests.factories import LedgerAccountFactory

# code, name, type
STANDARD_CHART = [
    ("1000", "Cash", AccountType.ASSET),
    ("1100", "Accounts Receivable", AccountType.ASSET),
    ("2000", "Accounts Payable", AccountType.LIABILITY),
    ("2300", "Sales Tax Payable", AccountType.LIABILITY),
    ("2400", "Loans Payable", AccountType.LIABILITY),
    ("4010", "Sales Revenue", AccountType.INCOME),
    ("4050", "Other Income", AccountType.INCOME),
    ("5030", "Rent Expense", AccountType.EXPENSE),
    ("5100", "Office Supplies", AccountType.EXPENSE),
    ("5200", "Interest Expense", AccountType.EXPENSE),
    ("5999", "Miscellaneous Expense", AccountType.EXPENSE),
]


@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)
    yield
    root_logger.removeHandler(handler)


# --- Database ---
# A file database so every session in a test sees the same data; an in-memory
# SQLite database is private to one connection.
@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookkeeping.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture
async def db(session_maker):
    """Session for seeding; commit before handing control to the code under test."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def store(session_maker):
    return SqlAlchemyLedgerStore(session_maker, default_timeout=5.0)


@pytest.fixture
def business_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def allow_all():
    return lambda user_id, business_id: True


@pytest_asyncio.fixture
async def chart(db, business_id) -> dict[str, LedgerAccount]:
    """Seed the standard chart of accounts, keyed by account code."""
    accounts = {}
    for code, name, account_type in STANDARD_CHART:
        accounts[code] = await LedgerAccountFactory.create_async(
            db, business_id=business_id, code=code, name=name, type=account_type
        )
    await db.commit()
    return accounts


@pytest.fixture
def fetch_all(session_maker):
    """Read committed rows through a fresh session."""

    async def _fetch_all(model, *criteria):
        async with session_maker() as session:
            result = await session.execute(select(model).where(*criteria))
            return list(result.scalars().all())

    return _fetch_all


@pytest.fixture
def fetch_one(fetch_all):
    async def _fetch_one(model, *criteria):
        rows = await fetch_all(model, *criteria)
        return rows[0] if rows else None

    return _fetch_one
