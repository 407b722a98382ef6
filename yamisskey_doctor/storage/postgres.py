"""
PostgreSQL administration: SQL dump restore (psql) and scratch databases.

Plain-text pg_dump files carry ``COPY ... FROM stdin`` blocks, so dumps are
fed through psql rather than through the SQLAlchemy engine. Creating and
dropping databases goes through the maintenance database.
"""
from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.config.config import PostgresConfig
from yamisskey_doctor.exceptions import OperationalError
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.storage.db import Database
from yamisskey_doctor.utils.external import PSQL, ToolRunner, run_tool, tail

logger = get_logger(__name__)

SCRATCH_PREFIX = "yamisskey_verify"


class RestoreError(OperationalError):
    """psql could not apply a dump."""
    pass


class ScratchDatabaseError(OperationalError):
    """A scratch database could not be created or dropped."""
    pass


def scratch_database_name(clock: Callable[[], float] = time.time) -> str:
    """Unique, identifier-safe name for a disposable database."""
    return f"{SCRATCH_PREFIX}_{int(clock())}_{uuid.uuid4().hex[:8]}"


class PsqlRestorer:
    """Applies SQL dump files with psql."""

    def __init__(self, postgres: PostgresConfig, runner: ToolRunner = run_tool, timeout: Optional[float] = None):
        self._pg = postgres
        self._run = runner
        self._timeout = timeout

    def restore(self, sql_path: Path, database: Optional[str] = None, *, strict: bool = False) -> None:
        """
        Apply ``sql_path`` to ``database`` (the configured target by default).

        ``strict`` stops at the first error (``ON_ERROR_STOP=1``) and fails
        only when psql reports an ``ERROR:``; otherwise a non-zero exit fails.
        """
        database = database or self._pg.database
        args = [
            PSQL,
            "-h", self._pg.host,
            "-p", str(self._pg.port),
            "-U", self._pg.user,
            "-d", database,
            "-f", str(sql_path),
        ]
        if strict:
            args += ["-v", "ON_ERROR_STOP=1"]

        logger.info("DATABASE_RESTORE_STARTED", target=self._pg.describe(database), sql=sql_path.name, strict=strict)
        completed = self._run(args, env=self._pg.psql_env(), timeout=self._timeout)

        output = (completed.stdout or "") + (completed.stderr or "")
        if strict:
            failed = completed.returncode != 0 and "ERROR:" in output
        else:
            failed = completed.returncode != 0
        if failed:
            raise RestoreError(f"restore into {database} failed: {tail(output)}")

        logger.info("DATABASE_RESTORED", target=self._pg.describe(database))


class ScratchDatabases:
    """Creates and drops disposable databases via the maintenance database."""

    def __init__(self, admin: Database):
        self._admin = admin

    def create(self, name: str) -> None:
        quoted = self._admin.quote_identifier(name)
        try:
            self._admin.execute_autocommit(f"CREATE DATABASE {quoted}")
        except SQLAlchemyError as e:
            raise ScratchDatabaseError(f"failed to create scratch database {name}: {e}") from e
        logger.info("SCRATCH_DATABASE_CREATED", database=name)

    def drop(self, name: str) -> None:
        """Terminate other sessions (best effort), then drop if present."""
        quoted = self._admin.quote_identifier(name)
        try:
            self._admin.execute_autocommit(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = :name AND pid <> pg_backend_pid()",
                name=name,
            )
        except SQLAlchemyError as e:
            logger.warning("Could not terminate scratch database sessions", database=name, error=str(e))

        try:
            self._admin.execute_autocommit(f"DROP DATABASE IF EXISTS {quoted}")
        except SQLAlchemyError as e:
            raise ScratchDatabaseError(f"failed to drop scratch database {name}: {e}") from e
        logger.info("SCRATCH_DATABASE_DROPPED", database=name)
