"""
Backup catalog in remote object storage (via rclone).

Only ``*.sql.7z`` objects are listed. Names embed a sortable timestamp, so
reverse name order approximates newest-first.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from yamisskey_doctor.config.config import StorageConfig
from yamisskey_doctor.domain.models import BackupObject
from yamisskey_doctor.exceptions import BackupNotFoundError, TransferFailedError, UnreachableError
from yamisskey_doctor.monitoring.logger import get_logger
from yamisskey_doctor.utils.external import RCLONE, ToolRunner, run_tool, tail
from yamisskey_doctor.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

BACKUP_SUFFIX = ".sql.7z"


def parse_rclone_ls(output: str) -> List[BackupObject]:
    """Parse ``rclone ls`` lines (``<size> <path>``) into backup objects."""
    objects: List[BackupObject] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        name = parts[-1]
        if not name.endswith(BACKUP_SUFFIX):
            continue
        try:
            size = int(parts[0])
        except ValueError:
            size = 0
        objects.append(BackupObject(name=name, size_hint=size))
    return objects


class StorageCatalog:
    """Lists and fetches named backup objects."""

    def __init__(
        self,
        storage: StorageConfig,
        work_dir: Path,
        runner: ToolRunner = run_tool,
        timeout: Optional[float] = None,
    ):
        self._storage = storage
        self._work_dir = Path(work_dir)
        self._run = runner
        self._timeout = timeout

    @property
    def remote_root(self) -> str:
        return self._storage.remote_root()

    def local_path(self, name: str) -> Path:
        """Where ``fetch`` places ``name``."""
        return self._work_dir / name

    def list(self) -> List[BackupObject]:
        """All backups, newest (highest name) first."""
        completed = self._run([RCLONE, "ls", self.remote_root], timeout=self._timeout)
        if completed.returncode != 0:
            raise UnreachableError(f"failed to list backups at {self.remote_root}: {tail(completed.stderr)}")

        backups = sorted(parse_rclone_ls(completed.stdout), reverse=True)
        logger.info("BACKUP_CATALOG_LISTED", remote=self.remote_root, count=len(backups))
        return backups

    def fetch(self, name: str) -> Path:
        """
        Download ``name`` into the work directory and return its local path.

        Transient transfer failures are retried; the file must exist after
        the transfer for the fetch to count as successful.

        Raises:
            TransferFailedError: rclone kept failing
            BackupNotFoundError: Transfer finished but the file is absent
        """
        self._work_dir.mkdir(parents=True, exist_ok=True)
        fetch_once = retry_on_transient_errors(
            max_retries=self._storage.transfer_retries,
            base_delay=self._storage.transfer_retry_delay,
            transient_errors=(TransferFailedError,),
        )(self._fetch_once)
        return fetch_once(name)

    def _fetch_once(self, name: str) -> Path:
        local = self.local_path(name)
        remote = f"{self.remote_root}/{name}"

        logger.info("BACKUP_DOWNLOAD_STARTED", remote=remote, work_dir=str(self._work_dir))
        completed = self._run([RCLONE, "copy", remote, str(self._work_dir)], timeout=self._timeout)
        if completed.returncode != 0:
            local.unlink(missing_ok=True)
            raise TransferFailedError(f"failed to download {name}: {tail(completed.stderr)}")

        if not local.is_file():
            raise BackupNotFoundError(f"downloaded file not found: {local}")

        logger.info("BACKUP_DOWNLOADED", path=str(local), size=local.stat().st_size)
        return local
