"""
Tests for the 7z / psql / scratch-database wrappers and tool invocation.
"""
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from yamisskey_doctor.config.config import PostgresConfig
from yamisskey_doctor.exceptions import OperationalError, ToolMissingError
from yamisskey_doctor.storage.archive import ArchiveExtractor, ExtractionError, extracted_name
from yamisskey_doctor.storage.postgres import (
    PsqlRestorer,
    RestoreError,
    ScratchDatabaseError,
    ScratchDatabases,
    scratch_database_name,
)
from yamisskey_doctor.utils.external import require_tools, run_tool, tail


def _runner(returncode=0, stdout="", stderr="", side_effect=None):
    calls = []

    def run(args, env=None, timeout=None):
        calls.append({"args": list(args), "env": env, "timeout": timeout})
        if side_effect is not None:
            side_effect(args)
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)

    run.calls = calls
    return run


# ---------------------------------------------------------------------------
# Tool invocation
# ---------------------------------------------------------------------------

class TestTools:

    def test_require_tools_reports_first_missing(self):
        which = {"rclone": "/usr/bin/rclone", "psql": "/usr/bin/psql"}.get
        with pytest.raises(ToolMissingError) as exc_info:
            require_tools(["rclone", "7z", "psql"], which=which)
        assert exc_info.value.tool == "7z"

    def test_require_tools_all_present(self):
        require_tools(["rclone"], which=lambda tool: f"/usr/bin/{tool}")

    def test_run_tool_missing_executable(self):
        with pytest.raises(ToolMissingError):
            run_tool(["yamisskey-doctor-no-such-tool-xyz"])

    def test_run_tool_unstartable_executable(self):
        denied = PermissionError(13, "Permission denied")
        with patch("yamisskey_doctor.utils.external.subprocess.run", side_effect=denied):
            with pytest.raises(OperationalError) as exc_info:
                run_tool(["rclone", "ls", "r2:"])

        assert not isinstance(exc_info.value, ToolMissingError)
        assert "could not start 'rclone'" in str(exc_info.value)

    def test_tail(self):
        assert tail("a\nb\nc\nd\ne\nf\n", lines=2) == "e\nf"
        assert tail(None) == ""


# ---------------------------------------------------------------------------
# 7z
# ---------------------------------------------------------------------------

class TestArchiveExtractor:

    def test_extracted_name(self):
        assert extracted_name("mk1_2025-01-01.sql.7z") == "mk1_2025-01-01.sql"

    def test_extract_ok(self, tmp_path):
        archive = tmp_path / "mk1.sql.7z"
        archive.write_bytes(b"7z")
        runner = _runner(side_effect=lambda args: (tmp_path / "mk1.sql").write_text("-- dump"))

        sql = ArchiveExtractor(runner=runner).extract(archive)

        assert sql == tmp_path / "mk1.sql"
        assert runner.calls[0]["args"] == ["7z", "x", "-y", f"-o{tmp_path}", str(archive)]

    def test_extract_failure(self, tmp_path):
        archive = tmp_path / "mk1.sql.7z"
        with pytest.raises(ExtractionError, match="Wrong password"):
            ArchiveExtractor(runner=_runner(returncode=2, stderr="ERROR: Wrong password")).extract(archive)

    def test_extract_without_output_file(self, tmp_path):
        with pytest.raises(ExtractionError, match="not found"):
            ArchiveExtractor(runner=_runner()).extract(tmp_path / "mk1.sql.7z")


# ---------------------------------------------------------------------------
# psql
# ---------------------------------------------------------------------------

class TestPsqlRestorer:

    PG = PostgresConfig(host="db", port=5433, user="misskey", password="s3cret", database="mk1")

    def test_restore_args_and_password_env(self):
        runner = _runner()
        PsqlRestorer(self.PG, runner=runner, timeout=60).restore(Path("/tmp/mk1.sql"))

        call = runner.calls[0]
        assert call["args"] == ["psql", "-h", "db", "-p", "5433", "-U", "misskey", "-d", "mk1", "-f", "/tmp/mk1.sql"]
        assert call["env"]["PGPASSWORD"] == "s3cret"
        assert call["timeout"] == 60

    def test_plain_restore_fails_on_nonzero_exit(self):
        with pytest.raises(RestoreError):
            PsqlRestorer(self.PG, runner=_runner(returncode=1, stderr="FATAL: no pg_hba.conf entry")).restore(
                Path("/tmp/mk1.sql")
            )

    def test_strict_restore_stops_on_error(self):
        runner = _runner(returncode=3, stderr='psql:/tmp/x.sql:10: ERROR:  relation "note" already exists')
        with pytest.raises(RestoreError, match="ERROR:"):
            PsqlRestorer(self.PG, runner=runner).restore(Path("/tmp/x.sql"), "scratch", strict=True)
        assert runner.calls[0]["args"][-2:] == ["-v", "ON_ERROR_STOP=1"]
        assert runner.calls[0]["args"][8] == "scratch"

    def test_strict_restore_tolerates_exit_without_error_lines(self):
        runner = _runner(returncode=1, stderr="WARNING: role \"postgres\" does not exist")
        PsqlRestorer(self.PG, runner=runner).restore(Path("/tmp/x.sql"), "scratch", strict=True)


# ---------------------------------------------------------------------------
# Scratch databases
# ---------------------------------------------------------------------------

class FakeAdmin:
    def __init__(self, failing=()):
        self.failing = tuple(failing)
        self.statements = []

    def quote_identifier(self, name):
        return f'"{name}"'

    def execute_autocommit(self, sql, **params):
        self.statements.append((sql, params))
        if any(sql.startswith(p) for p in self.failing):
            raise SQLAlchemyError("must be owner of database")


class TestScratchDatabases:

    def test_name_is_timestamped(self):
        name = scratch_database_name(clock=lambda: 1700000000.5)
        assert name.startswith("yamisskey_verify_1700000000_")
        assert len(name.rsplit("_", 1)[1]) == 8

    def test_names_are_unique(self):
        assert scratch_database_name(lambda: 1.0) != scratch_database_name(lambda: 1.0)

    def test_create(self):
        admin = FakeAdmin()
        ScratchDatabases(admin).create("yamisskey_verify_1")
        assert admin.statements == [('CREATE DATABASE "yamisskey_verify_1"', {})]

    def test_create_failure(self):
        with pytest.raises(ScratchDatabaseError):
            ScratchDatabases(FakeAdmin(failing=("CREATE",))).create("yamisskey_verify_1")

    def test_drop_terminates_sessions_first(self):
        admin = FakeAdmin()
        ScratchDatabases(admin).drop("yamisskey_verify_1")

        (terminate, params), (drop, _) = admin.statements
        assert "pg_terminate_backend" in terminate
        assert params == {"name": "yamisskey_verify_1"}
        assert drop == 'DROP DATABASE IF EXISTS "yamisskey_verify_1"'

    def test_drop_proceeds_when_terminate_fails(self):
        admin = FakeAdmin(failing=("SELECT pg_terminate_backend",))
        ScratchDatabases(admin).drop("yamisskey_verify_1")
        assert admin.statements[-1][0].startswith("DROP DATABASE IF EXISTS")

    def test_drop_failure(self):
        with pytest.raises(ScratchDatabaseError):
            ScratchDatabases(FakeAdmin(failing=("DROP",))).drop("yamisskey_verify_1")
