"""
Backup archive extraction (7z).

A ``<name>.sql.7z`` archive unpacks next to itself into ``<name>.sql``.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from yamisskey_doctor.exceptions import OperationalError
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.utils.external import SEVEN_ZIP, ToolRunner, run_tool, tail

logger = get_logger(__name__)

ARCHIVE_SUFFIX = ".7z"


class ExtractionError(OperationalError):
    """Archive could not be unpacked."""
    pass


def extracted_name(archive_name: str) -> str:
    """``mk1_2025-01-01.sql.7z`` -> ``mk1_2025-01-01.sql``."""
    if archive_name.endswith(ARCHIVE_SUFFIX):
        return archive_name[: -len(ARCHIVE_SUFFIX)]
    return archive_name


class ArchiveExtractor:
    """Unpacks backup archives with 7z."""

    def __init__(self, runner: ToolRunner = run_tool, timeout: Optional[float] = None):
        self._run = runner
        self._timeout = timeout

    @staticmethod
    def output_path(archive_path: Path) -> Path:
        return archive_path.with_name(extracted_name(archive_path.name))

    def extract(self, archive_path: Path) -> Path:
        """Unpack ``archive_path`` beside itself; return the SQL file path."""
        out_dir = archive_path.parent
        logger.info("BACKUP_EXTRACT_STARTED", archive=archive_path.name)
        completed = self._run(
            [SEVEN_ZIP, "x", "-y", f"-o{out_dir}", str(archive_path)],
            timeout=self._timeout,
        )
        if completed.returncode != 0:
            raise ExtractionError(f"failed to extract {archive_path.name}: {tail(completed.stderr or completed.stdout)}")

        sql_path = self.output_path(archive_path)
        if not sql_path.is_file():
            raise ExtractionError(f"extracted SQL file not found: {sql_path}")

        logger.info("BACKUP_EXTRACTED", path=str(sql_path))
        return sql_path
