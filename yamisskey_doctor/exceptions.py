"""
Custom exception hierarchy for yamisskey-doctor.

Hierarchy:

    DoctorError (base)
    ├── ConfigError            : bad configuration or flag combination
    ├── OperationalError       : transport / environment failures
    │   ├── UnreachableError   : network failure reaching target or storage
    │   ├── ProbeResponseError : peer answered, but not usably
    │   │   ├── BadStatusError
    │   │   └── MalformedResponseError
    │   ├── ToolMissingError   : required external tool absent
    │   ├── ToolTimeoutError   : external tool exceeded its timeout
    │   ├── TransferFailedError: storage transfer failed
    │   └── BackupNotFoundError: object absent after transfer
    ├── StageFailedError       : pipeline stage could not complete
    ├── MutationFailedError    : repair fix step failed
    └── SelectionError         : interactive backup choice invalid

Rules:
    - Probe errors never leave the health package; they become failed probes.
    - StageFailedError halts a pipeline; cleanup still runs.
    - MutationFailedError is collected per repair, never raised past the engine.
    - Only the CLI turns exceptions into exit codes.
"""
from __future__ import annotations

from typing import Optional


class DoctorError(Exception):
    """Base exception for all yamisskey-doctor errors."""
    pass


class ConfigError(DoctorError):
    """Invalid configuration or conflicting CLI options."""
    pass


# ============ OPERATIONAL ============

class OperationalError(DoctorError):
    """Transport or environment failure."""
    pass


class UnreachableError(OperationalError):
    """Target instance or storage backend could not be reached."""
    pass


class ProbeResponseError(OperationalError):
    """Peer responded, but the response is unusable."""
    pass


class BadStatusError(ProbeResponseError):
    """Peer responded with a non-success HTTP status."""

    def __init__(self, status: int, url: str = ""):
        self.status = status
        self.url = url
        super().__init__(f"status {status}" + (f" from {url}" if url else ""))


class MalformedResponseError(ProbeResponseError):
    """Response body could not be decoded into the expected shape."""
    pass


class ToolMissingError(OperationalError):
    """A required external tool is not available on PATH."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"required tool '{tool}' not found in PATH")


class ToolTimeoutError(OperationalError):
    """An external tool ran longer than the configured timeout."""

    def __init__(self, tool: str, timeout: float):
        self.tool = tool
        self.timeout = timeout
        super().__init__(f"'{tool}' timed out after {timeout:g}s")


class TransferFailedError(OperationalError):
    """Storage transfer did not complete."""
    pass


class BackupNotFoundError(OperationalError):
    """Requested backup object does not exist (or did not arrive)."""
    pass


# ============ PIPELINE / REPAIR ============

class StageFailedError(DoctorError):
    """A backup pipeline stage could not complete.

    ``stage`` is the stage that was being attempted when the failure
    occurred; ``cause`` is the underlying error, if any.
    """

    def __init__(self, stage, message: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        super().__init__(message)


class MutationFailedError(DoctorError):
    """A repair's fix step failed after detection succeeded."""
    pass


class SelectionError(DoctorError):
    """Interactive backup selection was not a valid choice."""
    pass
