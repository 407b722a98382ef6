"""
Domain models for yamisskey-doctor.

These are the value objects passed between the health, backup and repair
components. All of them are immutable once produced.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class HealthStatus(str, Enum):
    """Aggregated health of an instance, ordered from best to worst."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def exit_code(self) -> int:
        return self.severity

    def escalate(self, other: "HealthStatus") -> "HealthStatus":
        """Return the worse of the two statuses (never improves)."""
        return other if other.severity > self.severity else self


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


# ---------------------------------------------------------------------------
# Probe payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetaInfo:
    version: str
    name: str
    federation_enabled: bool


@dataclass(frozen=True)
class StatsInfo:
    note_count: int
    user_count: int


@dataclass(frozen=True)
class StreamInfo:
    url: str


@dataclass(frozen=True)
class QueueStats:
    """Job queue depth. ``waiting_by_lane`` keeps lane order as reported."""
    waiting_by_lane: Tuple[Tuple[str, int], ...]
    delayed_total: int

    def waiting(self, lane: str) -> int:
        return dict(self.waiting_by_lane).get(lane, 0)


@dataclass(frozen=True)
class ServerInfo:
    cpu_model: str
    cpu_cores: int
    mem_total: int
    fs_used: int
    fs_total: int

    @property
    def fs_percent(self) -> float:
        if self.fs_total <= 0:
            return 0.0
        return self.fs_used / self.fs_total * 100


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of one probe in one check run.

    ``payload`` is the decoded probe-specific value when ``ok``; ``error``
    names the failure otherwise.
    """
    name: str
    ok: bool
    latency_ms: int
    payload: Any = None
    error: Optional[str] = None


# Probe names, in the order a check runs them
PROBE_META = "meta"
PROBE_STATS = "stats"
PROBE_STREAM = "stream"
PROBE_QUEUE = "queue"
PROBE_SERVER = "server"


@dataclass(frozen=True)
class HealthVerdict:
    """
    Aggregated result of one check run.

    ``status`` is derived from the probes; callers cannot set it.
    """
    probes: Tuple[ProbeResult, ...]
    queue_delayed_threshold: int = 1000

    @property
    def status(self) -> HealthStatus:
        status = HealthStatus.HEALTHY
        meta = self.probe(PROBE_META)
        if meta is None or not meta.ok:
            return HealthStatus.UNHEALTHY

        stream = self.probe(PROBE_STREAM)
        if stream is not None and not stream.ok:
            status = status.escalate(HealthStatus.DEGRADED)

        queue = self.probe(PROBE_QUEUE)
        if queue is not None and queue.ok and queue.payload.delayed_total > self.queue_delayed_threshold:
            status = status.escalate(HealthStatus.DEGRADED)

        return status

    @property
    def api_ok(self) -> bool:
        meta = self.probe(PROBE_META)
        return meta is not None and meta.ok

    def probe(self, name: str) -> Optional[ProbeResult]:
        for p in self.probes:
            if p.name == name:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status.value}

        meta = self.probe(PROBE_META)
        if meta is not None:
            out["api"] = {"ok": meta.ok, "ms": meta.latency_ms}
            if meta.ok:
                out["meta"] = {
                    "version": meta.payload.version,
                    "name": meta.payload.name,
                    "federation": meta.payload.federation_enabled,
                }

        stream = self.probe(PROBE_STREAM)
        if stream is not None:
            out["stream"] = {"ok": stream.ok, "ms": stream.latency_ms}

        stats = self.probe(PROBE_STATS)
        if stats is not None and stats.ok:
            out["stats"] = {"notes": stats.payload.note_count, "users": stats.payload.user_count}

        queue = self.probe(PROBE_QUEUE)
        if queue is not None and queue.ok:
            q: Dict[str, Any] = {"ok": True}
            q.update({lane: waiting for lane, waiting in queue.payload.waiting_by_lane})
            q["delayed"] = queue.payload.delayed_total
            out["queue"] = q

        server = self.probe(PROBE_SERVER)
        if server is not None and server.ok:
            s = server.payload
            out["server"] = {
                "ok": True,
                "cpuModel": s.cpu_model,
                "cpuCores": s.cpu_cores,
                "memTotal": s.mem_total,
                "fsUsed": s.fs_used,
                "fsTotal": s.fs_total,
                "fsPercent": round(s.fs_percent, 2),
            }
        return out


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class BackupObject:
    """A backup archive in remote storage. Names embed a sortable timestamp."""
    name: str
    size_hint: int = field(default=0, compare=False)


class PipelineStage(str, Enum):
    """Stages a backup pipeline session passes through, in order."""
    DOWNLOADED = "downloaded"
    EXTRACTED = "extracted"
    RESTORED = "restored"
    VERIFIED = "verified"


@dataclass(frozen=True)
class IntegrityCheck:
    name: str
    ok: bool
    detail: str = ""

    @property
    def gates_integrity(self) -> bool:
        """Only ``table_*`` checks decide pass/fail of an audit."""
        return self.name.startswith("table_")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "ok": self.ok}
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass(frozen=True)
class AuditReport:
    checks: Tuple[IntegrityCheck, ...]
    table_count: int

    @property
    def integrity_ok(self) -> bool:
        return all(c.ok for c in self.checks if c.gates_integrity)


@dataclass
class VerifyResult:
    """Outcome of a verify run; filled in stage by stage."""
    backup_file: str
    download_ok: bool = False
    extract_ok: bool = False
    restore_ok: bool = False
    integrity_ok: bool = False
    tables: int = 0
    error: str = ""
    failed_stage: Optional[PipelineStage] = None
    checks: Tuple[IntegrityCheck, ...] = ()

    @property
    def ok(self) -> bool:
        return self.download_ok and self.extract_ok and self.restore_ok and self.integrity_ok

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "backupFile": self.backup_file,
            "ok": self.ok,
            "downloadOk": self.download_ok,
            "extractOk": self.extract_ok,
            "restoreOk": self.restore_ok,
            "integrityOk": self.integrity_ok,
            "tables": self.tables,
        }
        if self.error:
            out["error"] = self.error
        if self.failed_stage is not None:
            out["failedStage"] = self.failed_stage.value
        if self.checks:
            out["checks"] = [c.to_dict() for c in self.checks]
        return out


@dataclass(frozen=True)
class RestorePlan:
    """What a restore would do; produced without touching storage or the database."""
    backup_file: str
    sql_file: str
    target: str

    def steps(self) -> Tuple[str, ...]:
        return (
            f"Download: {self.backup_file}",
            f"Extract: {self.sql_file}",
            f"Restore to: {self.target}",
        )


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepairCheck:
    """
    Outcome of one repair.

    ``skipped`` means dry-run: ``found`` was counted, nothing was mutated.
    """
    name: str
    found: int = 0
    fixed: int = 0
    skipped: bool = False
    error: Optional[str] = None

    def __post_init__(self):
        if self.skipped and self.fixed > 0:
            raise ValueError(f"{self.name}: a skipped repair cannot report fixed rows")
        if self.found == 0 and (self.fixed > 0 or self.skipped):
            raise ValueError(f"{self.name}: nothing found, nothing to fix or skip")
        if self.fixed > self.found:
            raise ValueError(f"{self.name}: fixed ({self.fixed}) exceeds found ({self.found})")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "found": self.found,
            "fixed": self.fixed,
            "skipped": self.skipped,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class RepairResult:
    dry_run: bool
    repairs: Tuple[RepairCheck, ...]

    @property
    def ok(self) -> bool:
        return all(not r.error for r in self.repairs)

    @property
    def total_found(self) -> int:
        return sum(r.found for r in self.repairs)

    @property
    def total_fixed(self) -> int:
        return sum(r.fixed for r in self.repairs)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.repairs if r.error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "dryRun": self.dry_run,
            "repairs": [r.to_dict() for r in self.repairs],
        }
