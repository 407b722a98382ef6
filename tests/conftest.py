"""
Pytest configuration and shared fixtures.
"""
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from yamisskey_doctor.storage.db import Database

# Every environment key the configuration reads; cleared so a developer's
# shell or .env cannot leak into unit tests.
CONFIG_ENV_KEYS = (
    "STORAGE_TYPE",
    "R2_REMOTE",
    "R2_PREFIX",
    "LINODE_REMOTE",
    "LINODE_BUCKET",
    "LINODE_PREFIX",
    "TRANSFER_RETRIES",
    "TRANSFER_RETRY_DELAY",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_USER",
    "POSTGRES_DB",
    "POSTGRES_ADMIN_DB",
    "POSTGRES_PASSWORD",
    "PGPASSWORD",
    "MISSKEY_TOKEN",
    "CHECK_TIMEOUT",
    "STREAM_HANDSHAKE_TIMEOUT",
    "QUEUE_DELAYED_THRESHOLD",
    "WORK_DIR",
    "TOOL_TIMEOUT",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_FILE",
    "DRY_RUN",
    "FORCE",
)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _clean_config_env(monkeypatch):
    for key in CONFIG_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield


MISSKEY_SCHEMA = (
    'CREATE TABLE "user" (id TEXT PRIMARY KEY)',
    'CREATE TABLE note (id TEXT PRIMARY KEY, "userId" TEXT)',
    'CREATE TABLE note_reaction (id TEXT PRIMARY KEY, "noteId" TEXT)',
    'CREATE TABLE notification (id TEXT PRIMARY KEY, "notifieeId" TEXT)',
    'CREATE TABLE drive_file (id TEXT PRIMARY KEY, "userId" TEXT)',
)


@pytest.fixture
def sqlite_db():
    """
    In-memory database with the tables the repairs touch.

    ``Database`` refuses non-PostgreSQL URLs, so the engine is attached
    without running ``__init__``.
    """
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        for ddl in MISSKEY_SCHEMA:
            conn.execute(text(ddl))

    db = Database.__new__(Database)
    db.database_url = "sqlite://"
    db.engine = engine
    db.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield db
    engine.dispose()
