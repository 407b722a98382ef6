"""
Backup pipelines.

ARCHITECTURE:
    BackupLifecycle (restore / verify sessions)
        │
        ├── StorageCatalog   (rclone list / copy)
        ├── ArchiveExtractor (7z)
        ├── PsqlRestorer     (psql -f)
        ├── ScratchDatabases (CREATE / DROP DATABASE)
        │
        └── IntegrityAuditor (post-restore checks)
"""
from yamisskey_doctor.backup.integrity import IntegrityAuditor
from yamisskey_doctor.backup.lifecycle import BackupLifecycle, RestoreOutcome, build_lifecycle, select_backup

__all__ = [
    "IntegrityAuditor",
    "BackupLifecycle",
    "RestoreOutcome",
    "build_lifecycle",
    "select_backup",
]
