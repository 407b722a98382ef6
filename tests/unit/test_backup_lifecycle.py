"""
Tests for BackupLifecycle (restore / verify pipelines).

Validates:
  - stages run in order and the first failure stops the session
  - every artifact is released exactly once, on success and on failure
  - the scratch database is dropped exactly once per verify
  - dry-run and cancelled restores touch nothing
  - local verification never deletes the operator's file
"""
from pathlib import Path

import pytest
from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.backup.integrity import CRITICAL_TABLES, TABLE_COUNT_SQL, TABLE_EXISTS_SQL
from yamisskey_doctor.backup.lifecycle import BackupLifecycle, PipelineSession, RestoreOutcome, select_backup
from yamisskey_doctor.config.config import DoctorConfig, StorageConfig
from yamisskey_doctor.domain.models import BackupObject, PipelineStage
from yamisskey_doctor.exceptions import BackupNotFoundError, StageFailedError, TransferFailedError
from yamisskey_doctor.storage.archive import ExtractionError, extracted_name
from yamisskey_doctor.storage.catalog import StorageCatalog
from yamisskey_doctor.storage.postgres import RestoreError, ScratchDatabaseError
from yamisskey_doctor.utils.prompts import AlwaysYes, Confirmer

BACKUP = "mk1_2025-01-02_03-00.sql.7z"
SCRATCH = "yamisskey_verify_1700000000_cafebabe"


class Events(list):
    """Shared, ordered log of what the fakes were asked to do."""


class FakeCatalog:
    def __init__(self, work_dir: Path, events: Events, error=None):
        self.work_dir = work_dir
        self.events = events
        self.error = error

    def list(self):
        return [BackupObject(BACKUP)]

    def local_path(self, name):
        return self.work_dir / name

    def fetch(self, name):
        self.events.append(("fetch", name))
        if self.error is not None:
            raise self.error
        path = self.local_path(name)
        path.write_bytes(b"7z")
        return path


class FakeExtractor:
    def __init__(self, events: Events, error=None):
        self.events = events
        self.error = error

    @staticmethod
    def output_path(archive):
        return archive.with_name(extracted_name(archive.name))

    def extract(self, archive):
        self.events.append(("extract", archive.name))
        out = self.output_path(archive)
        if self.error is not None:
            out.write_text("partial")
            raise self.error
        out.write_text("CREATE TABLE note ();")
        return out


class FakeRestorer:
    def __init__(self, events: Events, error=None):
        self.events = events
        self.error = error

    def restore(self, sql_path, database=None, *, strict=False):
        self.events.append(("restore", database, strict))
        if self.error is not None:
            raise self.error


class FakeScratch:
    def __init__(self, events: Events, create_error=None):
        self.events = events
        self.create_error = create_error

    def create(self, name):
        self.events.append(("create", name))
        if self.create_error is not None:
            raise self.create_error

    def drop(self, name):
        self.events.append(("drop", name))


class FakeScratchDb:
    def __init__(self, name, events: Events, tables=CRITICAL_TABLES):
        self.name = name
        self.events = events
        self.tables = set(tables)

    def scalar(self, sql, **params):
        if sql == TABLE_COUNT_SQL:
            return len(self.tables) * 10
        if sql == TABLE_EXISTS_SQL:
            return 1 if params["table"] in self.tables else 0
        if "user" in sql and "user" not in self.tables:
            raise SQLAlchemyError('relation "user" does not exist')
        return 0

    def dispose(self):
        self.events.append(("dispose", self.name))


class Decline(Confirmer):
    def confirm(self, warning, details=()):
        return False


@pytest.fixture
def events():
    return Events()


@pytest.fixture
def work_dir(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


def _lifecycle(work_dir, events, *, dry_run=False, catalog_error=None, extract_error=None,
               restore_error=None, create_error=None, tables=CRITICAL_TABLES, catalog=None):
    config = DoctorConfig(work_dir=work_dir).model_copy(update={"dry_run": dry_run})
    return BackupLifecycle(
        config=config,
        catalog=catalog or FakeCatalog(work_dir, events, catalog_error),
        extractor=FakeExtractor(events, extract_error),
        restorer=FakeRestorer(events, restore_error),
        scratch=FakeScratch(events, create_error),
        open_database=lambda name: FakeScratchDb(name, events, tables),
        name_factory=lambda: SCRATCH,
    )


def _no_transfer(args, env=None, timeout=None):
    raise AssertionError(f"rclone should not run: {args}")


def _kinds(events):
    return [e[0] for e in events]


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------

class TestVerify:

    def test_success(self, work_dir, events):
        result = _lifecycle(work_dir, events).verify(BACKUP)

        assert result.ok
        assert (result.download_ok, result.extract_ok, result.restore_ok, result.integrity_ok) == (True,) * 4
        assert result.tables == 40
        assert result.failed_stage is None
        assert _kinds(events) == ["fetch", "extract", "create", "restore", "dispose", "drop"]
        assert ("restore", SCRATCH, True) in events
        assert list(work_dir.iterdir()) == []

    def test_download_failure_stops_pipeline(self, work_dir, events):
        error = TransferFailedError("rclone: connection reset")
        result = _lifecycle(work_dir, events, catalog_error=error).verify(BACKUP)

        assert not result.ok
        assert not result.download_ok
        assert result.failed_stage == PipelineStage.DOWNLOADED
        assert "Download failed" in result.error
        assert _kinds(events) == ["fetch"]
        assert list(work_dir.iterdir()) == []

    def test_extract_failure_removes_archive_and_partial_output(self, work_dir, events):
        result = _lifecycle(work_dir, events, extract_error=ExtractionError("CRC failed")).verify(BACKUP)

        assert result.download_ok
        assert not result.extract_ok
        assert result.failed_stage == PipelineStage.EXTRACTED
        assert "create" not in _kinds(events)
        assert list(work_dir.iterdir()) == []

    def test_restore_failure_drops_scratch_once(self, work_dir, events):
        error = RestoreError("psql: ERROR: syntax error")
        result = _lifecycle(work_dir, events, restore_error=error).verify(BACKUP)

        assert result.extract_ok
        assert not result.restore_ok
        assert result.failed_stage == PipelineStage.RESTORED
        assert _kinds(events).count("drop") == 1
        assert ("drop", SCRATCH) in events
        assert list(work_dir.iterdir()) == []

    def test_scratch_create_failure_still_drops(self, work_dir, events):
        error = ScratchDatabaseError("permission denied to create database")
        result = _lifecycle(work_dir, events, create_error=error).verify(BACKUP)

        assert result.failed_stage == PipelineStage.RESTORED
        assert "restore" not in _kinds(events)
        assert _kinds(events).count("drop") == 1

    def test_integrity_failure(self, work_dir, events):
        result = _lifecycle(work_dir, events, tables=("note", "meta", "instance")).verify(BACKUP)

        assert result.restore_ok
        assert not result.integrity_ok
        assert not result.ok
        assert result.failed_stage == PipelineStage.VERIFIED
        assert result.error.startswith("Integrity check failed")
        assert "table_user" in result.error
        assert any(c.name == "table_user" and not c.ok for c in result.checks)
        assert _kinds(events)[-2:] == ["dispose", "drop"]

    def test_unusable_work_dir_fails_download_stage(self, tmp_path, events):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        catalog = StorageCatalog(StorageConfig(), blocker / "sub", runner=_no_transfer)

        result = _lifecycle(blocker / "sub", events, catalog=catalog).verify(BACKUP)

        assert not result.ok
        assert not result.download_ok
        assert result.failed_stage == PipelineStage.DOWNLOADED
        assert "Download failed" in result.error
        assert events == []

    def test_to_dict(self, work_dir, events):
        result = _lifecycle(work_dir, events, catalog_error=TransferFailedError("boom")).verify(BACKUP)
        out = result.to_dict()

        assert out["backupFile"] == BACKUP
        assert out["ok"] is False
        assert out["downloadOk"] is False
        assert out["failedStage"] == "downloaded"


class TestVerifyLocal:

    def test_missing_file(self, work_dir, events):
        with pytest.raises(BackupNotFoundError):
            _lifecycle(work_dir, events).verify_local(work_dir / "nope.sql")

    def test_local_file_is_kept(self, tmp_path, work_dir, events):
        dump = tmp_path / "dump.sql"
        dump.write_text("-- dump")
        result = _lifecycle(work_dir, events).verify_local(dump)

        assert result.ok
        assert result.download_ok and result.extract_ok
        assert "fetch" not in _kinds(events)
        assert "extract" not in _kinds(events)
        assert dump.exists()
        assert _kinds(events).count("drop") == 1


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

class TestRestore:

    def test_dry_run_touches_nothing(self, work_dir, events):
        lifecycle = _lifecycle(work_dir, events, dry_run=True)
        outcome = lifecycle.restore(BACKUP, Decline())

        assert outcome == RestoreOutcome.DRY_RUN
        assert events == []
        assert lifecycle.plan_restore(BACKUP).steps() == (
            f"Download: {BACKUP}",
            "Extract: mk1_2025-01-02_03-00.sql",
            "Restore to: misskey@localhost:5432/mk1",
        )

    def test_cancelled_touches_nothing(self, work_dir, events):
        outcome = _lifecycle(work_dir, events).restore(BACKUP, Decline())
        assert outcome == RestoreOutcome.CANCELLED
        assert events == []

    def test_restore_into_target(self, work_dir, events):
        outcome = _lifecycle(work_dir, events).restore(BACKUP, AlwaysYes())

        assert outcome == RestoreOutcome.RESTORED
        assert events[-1] == ("restore", None, False)
        assert "create" not in _kinds(events)
        assert list(work_dir.iterdir()) == []

    def test_stage_failure_raises_with_stage(self, work_dir, events):
        lifecycle = _lifecycle(work_dir, events, extract_error=ExtractionError("bad archive"))
        with pytest.raises(StageFailedError) as exc_info:
            lifecycle.restore(BACKUP, AlwaysYes())

        assert exc_info.value.stage == PipelineStage.EXTRACTED
        assert "restore" not in _kinds(events)
        assert list(work_dir.iterdir()) == []

    def test_unusable_work_dir_raises_download_stage(self, tmp_path, events):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        catalog = StorageCatalog(StorageConfig(), blocker / "sub", runner=_no_transfer)

        with pytest.raises(StageFailedError) as exc_info:
            _lifecycle(blocker / "sub", events, catalog=catalog).restore(BACKUP, AlwaysYes())
        assert exc_info.value.stage == PipelineStage.DOWNLOADED

    def test_name_with_path_is_rejected(self, work_dir, events):
        with pytest.raises(StageFailedError) as exc_info:
            _lifecycle(work_dir, events).restore("../etc/passwd.sql.7z", AlwaysYes())
        assert exc_info.value.stage == PipelineStage.DOWNLOADED
        assert events == []


# ---------------------------------------------------------------------------
# Selection and session ordering
# ---------------------------------------------------------------------------

class TestSelection:

    BACKUPS = [BackupObject("b.sql.7z"), BackupObject("a.sql.7z")]

    def test_explicit_file_wins(self):
        assert select_backup(self.BACKUPS, file="x.sql.7z", latest=True) == "x.sql.7z"

    def test_latest_is_first(self):
        assert select_backup(self.BACKUPS, latest=True) == "b.sql.7z"

    def test_interactive_choice(self):
        assert select_backup(self.BACKUPS, choose=lambda names: names[1]) == "a.sql.7z"

    def test_empty_catalog(self):
        assert select_backup([], latest=True) is None


class TestPipelineSession:

    def test_stages_only_move_forward(self):
        session = PipelineSession()
        session.advance(PipelineStage.DOWNLOADED)
        session.advance(PipelineStage.RESTORED)
        with pytest.raises(RuntimeError):
            session.advance(PipelineStage.EXTRACTED)
