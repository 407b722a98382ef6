"""
Database engine and session management.

PostgreSQL only. One ``Database`` wraps one engine bound to one database;
command-line runs are short-lived, so connections are not pooled.
"""
from contextlib import contextmanager
from typing import Any, Generator, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from yamisskey_doctor.monitoring.logger import get_logger

logger = get_logger(__name__)


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: Union[str, URL]):
        """
        Initialize database connection.

        Args:
            database_url: PostgreSQL connection string or URL
        """
        url_str = database_url.render_as_string(hide_password=True) if isinstance(database_url, URL) else database_url
        if not url_str.startswith("postgresql"):
            raise ValueError(
                f"Only PostgreSQL is supported. Got: {url_str[:30]}... "
                "Configure POSTGRES_HOST/POSTGRES_PORT/POSTGRES_USER/POSTGRES_DB."
            )

        self.database_url = url_str
        self.engine = create_engine(
            database_url,
            echo=False,
            poolclass=NullPool,
            pool_pre_ping=True,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @property
    def name(self) -> str:
        return self.engine.url.database or ""

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on normal exit, rolls back and re-raises on error.

        Example:
            with db.get_session() as session:
                session.execute(text("DELETE FROM ..."))
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def scalar(self, sql: str, **params: Any) -> Any:
        """Run a read query and return the first column of the first row."""
        with self.get_session() as session:
            return session.execute(text(sql), params).scalar()

    def execute(self, sql: str, **params: Any) -> int:
        """Run a statement in a transaction; returns the affected row count."""
        with self.get_session() as session:
            result = session.execute(text(sql), params)
            return result.rowcount

    def execute_autocommit(self, sql: str, **params: Any) -> None:
        """Run a statement outside a transaction block (CREATE DATABASE, VACUUM, REINDEX ...)."""
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text(sql), params)

    def quote_identifier(self, name: str) -> str:
        """Always-quoted identifier; embedded double quotes are doubled."""
        return self.engine.dialect.identifier_preparer.quote_identifier(name)

    def dispose(self) -> None:
        self.engine.dispose()
