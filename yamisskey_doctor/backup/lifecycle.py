"""
Backup lifecycle: download -> extract -> restore -> verify.

A pipeline session moves monotonically through ``PipelineStage``. The first
stage that fails ends the session with ``StageFailedError(stage)``; no later
stage is attempted.

Every artifact (archive file, extracted SQL file, scratch database, scratch
database connection) is registered for release on an ``ExitStack`` at the
moment it is created, so it is released exactly once however the session
ends.
"""
from __future__ import annotations

from contextlib import ExitStack, contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.backup.integrity import IntegrityAuditor
from yamisskey_doctor.config.config import DoctorConfig
from yamisskey_doctor.domain.models import (
    BackupObject,
    PipelineStage,
    RestorePlan,
    VerifyResult,
)
from yamisskey_doctor.exceptions import BackupNotFoundError, OperationalError, StageFailedError
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.storage.archive import ArchiveExtractor, extracted_name
from yamisskey_doctor.storage.catalog import StorageCatalog
from yamisskey_doctor.storage.db import Database
from yamisskey_doctor.storage.postgres import PsqlRestorer, ScratchDatabaseError, ScratchDatabases, scratch_database_name
from yamisskey_doctor.utils.external import PSQL, RCLONE, SEVEN_ZIP
from yamisskey_doctor.utils.prompts import Confirmer

logger = get_logger(__name__)

PIPELINE_TOOLS = (RCLONE, SEVEN_ZIP, PSQL)
LOCAL_VERIFY_TOOLS = (PSQL,)

_STAGE_ORDER = list(PipelineStage)

_STAGE_LABELS = {
    PipelineStage.DOWNLOADED: "Download",
    PipelineStage.EXTRACTED: "Extract",
    PipelineStage.RESTORED: "Restore",
    PipelineStage.VERIFIED: "Integrity check",
}


class RestoreOutcome(str, Enum):
    RESTORED = "restored"
    DRY_RUN = "dry_run"
    CANCELLED = "cancelled"


class PipelineSession:
    """Tracks the stage a pipeline has reached; stages only move forward."""

    def __init__(self):
        self.stage: Optional[PipelineStage] = None

    def advance(self, stage: PipelineStage) -> None:
        if self.stage is not None and _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(self.stage):
            raise RuntimeError(f"pipeline cannot move from {self.stage.value} to {stage.value}")
        self.stage = stage


def select_backup(
    backups: Sequence[BackupObject],
    *,
    file: Optional[str] = None,
    latest: bool = False,
    choose: Optional[Callable[[List[str]], Optional[str]]] = None,
) -> Optional[str]:
    """
    Resolve which backup to use: explicit name, newest, or interactive choice.

    Returns None when nothing was chosen (empty catalog or cancelled).
    """
    if file:
        return file
    if not backups:
        return None
    names = [b.name for b in backups]
    if latest:
        return names[0]
    if choose is None:
        return None
    return choose(names)


class BackupLifecycle:
    """Runs restore and verify pipelines and owns their temporary artifacts."""

    def __init__(
        self,
        config: DoctorConfig,
        catalog: StorageCatalog,
        extractor: ArchiveExtractor,
        restorer: PsqlRestorer,
        scratch: ScratchDatabases,
        open_database: Callable[[str], Database],
        progress: Callable[[str], None] = lambda message: None,
        name_factory: Callable[[], str] = scratch_database_name,
    ):
        self._config = config
        self._catalog = catalog
        self._extractor = extractor
        self._restorer = restorer
        self._scratch = scratch
        self._open_database = open_database
        self._progress = progress
        self._name_factory = name_factory

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def list_backups(self) -> List[BackupObject]:
        return self._catalog.list()

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def plan_restore(self, name: str) -> RestorePlan:
        """Stages a restore of ``name`` would execute. Touches nothing."""
        return RestorePlan(
            backup_file=name,
            sql_file=extracted_name(name),
            target=self._config.postgres.describe(),
        )

    def restore(self, name: str, confirmer: Confirmer) -> RestoreOutcome:
        """
        Restore ``name`` into the configured target database.

        Raises:
            StageFailedError: A stage failed; artifacts are already released
        """
        plan = self.plan_restore(name)
        if self._config.dry_run:
            logger.info("RESTORE_DRY_RUN", backup=name, target=plan.target, steps=list(plan.steps()))
            return RestoreOutcome.DRY_RUN

        pg = self._config.postgres
        if not confirmer.confirm(
            f"This will restore backup to database '{pg.database}'",
            [f"Backup: {name}", f"Host: {pg.host}:{pg.port}"],
        ):
            return RestoreOutcome.CANCELLED

        session = PipelineSession()
        with ExitStack() as stack:
            archive = self._download(stack, session, name)
            sql_path = self._extract(stack, session, archive)

            self._progress(f"Restoring to database {plan.target}...")
            with self._stage(PipelineStage.RESTORED):
                self._restorer.restore(sql_path)
            session.advance(PipelineStage.RESTORED)

        logger.info("RESTORE_COMPLETE", backup=name, target=plan.target)
        return RestoreOutcome.RESTORED

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, name: str) -> VerifyResult:
        """Download, extract, restore into a scratch database and audit it."""
        result = VerifyResult(backup_file=name)
        session = PipelineSession()

        with ExitStack() as stack:
            try:
                self._progress("[1/4] Downloading backup...")
                archive = self._download(stack, session, name)
                result.download_ok = True

                self._progress("[2/4] Extracting archive...")
                sql_path = self._extract(stack, session, archive)
                result.extract_ok = True

                self._restore_and_audit(stack, session, sql_path, result, steps=("[3/4]", "[4/4]"))
            except StageFailedError as e:
                self._record_failure(result, e)

        return result

    def verify_local(self, sql_path: Path) -> VerifyResult:
        """Verify a SQL dump already on disk (no download, no extraction)."""
        sql_path = Path(sql_path)
        if not sql_path.is_file():
            raise BackupNotFoundError(f"file not found: {sql_path}")

        result = VerifyResult(backup_file=str(sql_path), download_ok=True, extract_ok=True)
        session = PipelineSession()
        session.advance(PipelineStage.EXTRACTED)

        with ExitStack() as stack:
            try:
                self._restore_and_audit(stack, session, sql_path, result, steps=("[1/2]", "[2/2]"))
            except StageFailedError as e:
                self._record_failure(result, e)

        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _download(self, stack: ExitStack, session: PipelineSession, name: str) -> Path:
        with self._stage(PipelineStage.DOWNLOADED):
            if Path(name).name != name:
                raise BackupNotFoundError(f"invalid backup name: {name}")
            stack.callback(self._release_file, self._catalog.local_path(name))
            archive = self._catalog.fetch(name)
        session.advance(PipelineStage.DOWNLOADED)
        self._progress(f"      Downloaded {archive.name}")
        return archive

    def _extract(self, stack: ExitStack, session: PipelineSession, archive: Path) -> Path:
        with self._stage(PipelineStage.EXTRACTED):
            stack.callback(self._release_file, self._extractor.output_path(archive))
            sql_path = self._extractor.extract(archive)
        session.advance(PipelineStage.EXTRACTED)
        self._progress(f"      Extracted {sql_path.name}")
        return sql_path

    def _restore_and_audit(
        self,
        stack: ExitStack,
        session: PipelineSession,
        sql_path: Path,
        result: VerifyResult,
        steps: Sequence[str],
    ) -> None:
        scratch_name = self._name_factory()
        self._progress(f"{steps[0]} Creating temp database {scratch_name} and restoring...")

        # Registered before creation: DROP ... IF EXISTS covers a half-created database
        stack.callback(self._drop_scratch, scratch_name)
        with self._stage(PipelineStage.RESTORED):
            self._scratch.create(scratch_name)
            self._restorer.restore(sql_path, scratch_name, strict=True)
        session.advance(PipelineStage.RESTORED)
        result.restore_ok = True
        self._progress("      Restore OK")

        self._progress(f"{steps[1]} Running integrity checks...")
        with self._stage(PipelineStage.VERIFIED):
            db = self._open_database(scratch_name)
            stack.callback(db.dispose)
            report = IntegrityAuditor(db).audit()

        result.checks = report.checks
        result.tables = report.table_count
        result.integrity_ok = report.integrity_ok
        if not report.integrity_ok:
            failed = ", ".join(c.name for c in report.checks if c.gates_integrity and not c.ok)
            raise StageFailedError(PipelineStage.VERIFIED, f"Integrity check failed: {failed}")

        session.advance(PipelineStage.VERIFIED)
        self._progress("      Integrity checks complete")

    @contextmanager
    def _stage(self, stage: PipelineStage) -> Iterator[None]:
        """Turn collaborator failures into ``StageFailedError(stage)``."""
        try:
            yield
        except (OperationalError, SQLAlchemyError, OSError) as e:
            label = _STAGE_LABELS[stage]
            logger.error("PIPELINE_STAGE_FAILED", stage=stage.value, error=str(e))
            raise StageFailedError(stage, f"{label} failed: {e}", cause=e) from e

    @staticmethod
    def _record_failure(result: VerifyResult, error: StageFailedError) -> None:
        result.error = str(error)
        result.failed_stage = error.stage

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def _release_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("ARTIFACT_RELEASE_FAILED", path=str(path), error=str(e))
            return
        logger.debug("Released temporary file", path=str(path))

    def _drop_scratch(self, name: str) -> None:
        self._progress(f"Cleaning up temp database {name}...")
        try:
            self._scratch.drop(name)
        except ScratchDatabaseError as e:
            logger.error("ARTIFACT_RELEASE_FAILED", database=name, error=str(e))


def build_lifecycle(config: DoctorConfig, progress: Callable[[str], None] = lambda message: None) -> BackupLifecycle:
    """Wire a lifecycle to the real storage, 7z, psql and PostgreSQL collaborators."""
    timeout = config.tool_timeout_seconds
    pg = config.postgres
    return BackupLifecycle(
        config=config,
        catalog=StorageCatalog(config.storage, config.work_dir, timeout=timeout),
        extractor=ArchiveExtractor(timeout=timeout),
        restorer=PsqlRestorer(pg, timeout=timeout),
        scratch=ScratchDatabases(Database(pg.url(pg.admin_database))),
        open_database=lambda name: Database(pg.url(name)),
        progress=progress,
    )
