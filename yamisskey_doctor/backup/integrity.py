"""
Integrity audit of a restored (or live) Misskey database.

Every check is best-effort: a query that fails is recorded as a failed
check with the error as detail, and the audit carries on.

Only ``table_*`` checks gate the overall result. Row counts and the orphan
sample are informational.
"""
from __future__ import annotations

from typing import Any, Callable, List, Tuple

from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.domain.models import AuditReport, IntegrityCheck
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.storage.db import Database

logger = get_logger(__name__)

PRIMARY_SCHEMA = "public"
CRITICAL_TABLES: Tuple[str, ...] = ("user", "note", "meta", "instance")

TABLE_COUNT_SQL = "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = :schema"
TABLE_EXISTS_SQL = (
    "SELECT COUNT(*) FROM information_schema.tables "
    "WHERE table_schema = :schema AND table_name = :table"
)

# (check name, query, detail noun) for the two largest entity tables
ROW_COUNTS: Tuple[Tuple[str, str, str], ...] = (
    ("user_count", 'SELECT COUNT(*) FROM "user"', "users"),
    ("note_count", "SELECT COUNT(*) FROM note", "notes"),
)

# Sampled referential check; not part of the pass/fail decision
ORPHAN_SAMPLE_SQL = 'SELECT COUNT(*) FROM note WHERE "userId" NOT IN (SELECT id FROM "user")'


class IntegrityAuditor:
    """Runs the fixed battery of consistency checks against one database."""

    def __init__(self, db: Database):
        self._db = db

    def audit(self) -> AuditReport:
        checks: List[IntegrityCheck] = []

        table_count = 0
        try:
            table_count = self._count(TABLE_COUNT_SQL, schema=PRIMARY_SCHEMA)
            checks.append(IntegrityCheck("table_count", table_count > 0, f"{table_count} tables"))
        except SQLAlchemyError as e:
            checks.append(self._failed("table_count", e))

        for table in CRITICAL_TABLES:
            checks.append(
                self._check(
                    f"table_{table}",
                    lambda t=table: self._count(TABLE_EXISTS_SQL, schema=PRIMARY_SCHEMA, table=t),
                    lambda n, t=table: (n > 0, f"table '{t}' exists: {str(n > 0).lower()}"),
                )
            )

        for name, sql, noun in ROW_COUNTS:
            checks.append(
                self._check(
                    name,
                    lambda q=sql: self._count(q),
                    lambda n, w=noun: (True, f"{n} {w}"),
                )
            )

        checks.append(
            self._check(
                "orphan_notes",
                lambda: self._count(ORPHAN_SAMPLE_SQL),
                lambda n: (n == 0, f"{n} orphan notes"),
            )
        )

        report = AuditReport(checks=tuple(checks), table_count=table_count)
        logger.info(
            "INTEGRITY_AUDIT_COMPLETE",
            database=self._db.name,
            tables=table_count,
            integrity_ok=report.integrity_ok,
            failed=[c.name for c in checks if not c.ok],
        )
        return report

    def _count(self, sql: str, **params: Any) -> int:
        return int(self._db.scalar(sql, **params) or 0)

    def _check(
        self,
        name: str,
        query: Callable[[], int],
        judge: Callable[[int], Tuple[bool, str]],
    ) -> IntegrityCheck:
        try:
            value = query()
        except SQLAlchemyError as e:
            return self._failed(name, e)
        ok, detail = judge(value)
        return IntegrityCheck(name, ok, detail)

    @staticmethod
    def _failed(name: str, error: Exception) -> IntegrityCheck:
        logger.warning("Integrity check could not run", check=name, error=str(error))
        detail = str(error).splitlines()[0] if str(error) else type(error).__name__
        return IntegrityCheck(name, False, detail)
