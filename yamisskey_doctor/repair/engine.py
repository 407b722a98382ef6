"""
Database repairs: orphan-record cleanup plus index and statistics maintenance.

Orphan repairs are declared as data (name, detect query, fix query) and
run by one generic runner. Each repair is attempted and reported on its
own; a failing repair never stops its siblings.

With ``dry_run`` set, only detection queries are issued.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.domain.models import RepairCheck, RepairResult
from yamisskey_doctor.exceptions import MutationFailedError
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.storage.db import Database
from yamisskey_doctor.utils.prompts import Confirmer

logger = get_logger(__name__)


@dataclass(frozen=True)
class OrphanRepair:
    """One class of orphan rows: how to count them and how to delete them."""
    name: str
    description: str
    detect_sql: str
    fix_sql: str


ORPHAN_REPAIRS: Tuple[OrphanRepair, ...] = (
    OrphanRepair(
        name="orphan_notes",
        description="notes with missing users",
        detect_sql='SELECT COUNT(*) FROM note WHERE "userId" NOT IN (SELECT id FROM "user")',
        fix_sql='DELETE FROM note WHERE "userId" NOT IN (SELECT id FROM "user")',
    ),
    OrphanRepair(
        name="orphan_reactions",
        description="reactions on missing notes",
        detect_sql='SELECT COUNT(*) FROM note_reaction WHERE "noteId" NOT IN (SELECT id FROM note)',
        fix_sql='DELETE FROM note_reaction WHERE "noteId" NOT IN (SELECT id FROM note)',
    ),
    OrphanRepair(
        name="orphan_notifications",
        description="notifications for missing users",
        detect_sql='SELECT COUNT(*) FROM notification WHERE "notifieeId" NOT IN (SELECT id FROM "user")',
        fix_sql='DELETE FROM notification WHERE "notifieeId" NOT IN (SELECT id FROM "user")',
    ),
    OrphanRepair(
        name="orphan_drive_files",
        description="files owned by missing users",
        detect_sql=(
            'SELECT COUNT(*) FROM drive_file '
            'WHERE "userId" IS NOT NULL AND "userId" NOT IN (SELECT id FROM "user")'
        ),
        fix_sql=(
            'DELETE FROM drive_file '
            'WHERE "userId" IS NOT NULL AND "userId" NOT IN (SELECT id FROM "user")'
        ),
    ),
)

REINDEX = "reindex"
VACUUM_ANALYZE = "vacuum_analyze"


class RepairFilter(str, Enum):
    """Which repairs a run performs. Selections are exclusive."""
    ALL = "all"
    ORPHANS = "orphans"
    REINDEX = "reindex"
    VACUUM = "vacuum"

    @property
    def includes_orphans(self) -> bool:
        return self in (RepairFilter.ALL, RepairFilter.ORPHANS)

    @property
    def includes_reindex(self) -> bool:
        return self in (RepairFilter.ALL, RepairFilter.REINDEX)

    @property
    def includes_vacuum(self) -> bool:
        return self in (RepairFilter.ALL, RepairFilter.VACUUM)


class RepairEngine:
    """Detects and (unless dry-run) fixes database inconsistencies."""

    def __init__(self, db: Database, *, dry_run: bool, orphan_repairs: Tuple[OrphanRepair, ...] = ORPHAN_REPAIRS):
        self._db = db
        self.dry_run = dry_run
        self._orphan_repairs = orphan_repairs

    def run(
        self,
        selection: RepairFilter = RepairFilter.ALL,
        confirmer: Optional[Confirmer] = None,
    ) -> Optional[RepairResult]:
        """
        Run the selected repairs.

        Outside dry-run, ``confirmer`` is asked once before the first query;
        None is returned when it declines.
        """
        if not self.dry_run and confirmer is not None and not confirmer.confirm(
            f"This will modify database '{self._db.name}'",
            ["Use --dry-run to preview changes without modifying data."],
        ):
            logger.info("REPAIR_CANCELLED", database=self._db.name)
            return None

        logger.info("REPAIR_STARTED", database=self._db.name, selection=selection.value, dry_run=self.dry_run)

        repairs: List[RepairCheck] = []
        if selection.includes_orphans:
            repairs.extend(self.repair_orphans())
        if selection.includes_reindex:
            repairs.append(self.rebuild_indexes())
        if selection.includes_vacuum:
            repairs.append(self.refresh_statistics())

        result = RepairResult(dry_run=self.dry_run, repairs=tuple(repairs))
        logger.info(
            "REPAIR_FINISHED",
            ok=result.ok,
            found=result.total_found,
            fixed=result.total_fixed,
            errors=result.error_count,
        )
        return result

    def repair_orphans(self) -> List[RepairCheck]:
        return [self.run_orphan_repair(repair) for repair in self._orphan_repairs]

    def run_orphan_repair(self, repair: OrphanRepair) -> RepairCheck:
        try:
            found = int(self._db.scalar(repair.detect_sql) or 0)
        except SQLAlchemyError as e:
            logger.error("Orphan detection failed", repair=repair.name, error=str(e))
            return RepairCheck(repair.name, error=f"failed to count: {_first_line(e)}")

        if found == 0:
            return RepairCheck(repair.name)

        if self.dry_run:
            logger.info("Orphans found (dry run)", repair=repair.name, found=found)
            return RepairCheck(repair.name, found=found, skipped=True)

        try:
            self._delete(repair)
        except MutationFailedError as e:
            logger.error("ORPHAN_FIX_FAILED", repair=repair.name, found=found, error=str(e))
            return RepairCheck(repair.name, found=found, error=str(e))

        logger.info("ORPHANS_DELETED", repair=repair.name, count=found)
        return RepairCheck(repair.name, found=found, fixed=found)

    def rebuild_indexes(self) -> RepairCheck:
        """REINDEX the database, concurrently when the server supports it."""
        if self.dry_run:
            return RepairCheck(REINDEX, found=1, skipped=True)

        quoted = self._db.quote_identifier(self._db.name)
        try:
            self._db.execute_autocommit(f"REINDEX DATABASE CONCURRENTLY {quoted}")
        except SQLAlchemyError as e:
            # CONCURRENTLY needs PostgreSQL 12+
            logger.warning("Concurrent reindex unavailable, falling back to blocking REINDEX", error=_first_line(e))
            try:
                self._db.execute_autocommit(f"REINDEX DATABASE {quoted}")
            except SQLAlchemyError as e2:
                logger.error("REINDEX_FAILED", error=str(e2))
                return RepairCheck(REINDEX, found=1, error=f"failed: {_first_line(e2)}")

        logger.info("REINDEX_COMPLETE", database=self._db.name)
        return RepairCheck(REINDEX, found=1, fixed=1)

    def refresh_statistics(self) -> RepairCheck:
        """VACUUM ANALYZE the whole database."""
        if self.dry_run:
            return RepairCheck(VACUUM_ANALYZE, found=1, skipped=True)

        try:
            self._db.execute_autocommit("VACUUM ANALYZE")
        except SQLAlchemyError as e:
            logger.error("VACUUM_ANALYZE_FAILED", error=str(e))
            return RepairCheck(VACUUM_ANALYZE, found=1, error=f"failed: {_first_line(e)}")

        logger.info("VACUUM_ANALYZE_COMPLETE", database=self._db.name)
        return RepairCheck(VACUUM_ANALYZE, found=1, fixed=1)

    def _delete(self, repair: OrphanRepair) -> int:
        try:
            return self._db.execute(repair.fix_sql)
        except SQLAlchemyError as e:
            raise MutationFailedError(f"failed to delete: {_first_line(e)}") from e


def _first_line(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__
