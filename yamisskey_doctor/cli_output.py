"""
Shared CLI output helpers: text and JSON rendering, fatal error reporting.
"""
from __future__ import annotations

import json
import sys
import traceback
from typing import Any, Dict, Sequence

import typer

from yamisskey_doctor.domain.models import (
    PROBE_META,
    PROBE_QUEUE,
    PROBE_SERVER,
    PROBE_STATS,
    PROBE_STREAM,
    BackupObject,
    HealthVerdict,
    RepairCheck,
    RepairResult,
    RestorePlan,
    VerifyResult,
)

GIB = 1024 * 1024 * 1024


def print_critical_error(title: str, error: Exception, *, include_traceback: bool = False) -> None:
    print("=" * 80, file=sys.stderr)
    print(f"CRITICAL ERROR - {title}", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    print(f"Error: {error}", file=sys.stderr)
    print(f"Type: {type(error).__name__}", file=sys.stderr)
    if include_traceback:
        traceback.print_exc(file=sys.stderr)
    print("=" * 80, file=sys.stderr)


def echo_json(document: Dict[str, Any], indent: int | None = 2) -> None:
    typer.echo(json.dumps(document, indent=indent, ensure_ascii=False))


def _ok(flag: bool) -> str:
    return "OK" if flag else "FAIL"


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

def render_check_text(verdict: HealthVerdict, queue_delayed_threshold: int = 1000) -> None:
    meta = verdict.probe(PROBE_META)
    if meta is not None:
        typer.echo(f"API         {_ok(meta.ok):<4}  {meta.latency_ms}ms")
        if meta.ok:
            m = meta.payload
            typer.echo(f"Version     OK    {m.version}")
            typer.echo(f"Name        OK    {m.name}")
            typer.echo(f"Federation  OK    {'enabled' if m.federation_enabled else 'disabled'}")

    stream = verdict.probe(PROBE_STREAM)
    if stream is not None:
        typer.echo(f"Streaming   {_ok(stream.ok):<4}  {stream.latency_ms}ms")

    stats = verdict.probe(PROBE_STATS)
    if stats is not None and stats.ok:
        typer.echo(f"Stats       OK    notes:{stats.payload.note_count} users:{stats.payload.user_count}")

    queue = verdict.probe(PROBE_QUEUE)
    if queue is not None and queue.ok:
        q = queue.payload
        status = "WARN" if q.delayed_total > queue_delayed_threshold else "OK"
        lanes = " ".join(f"{lane}:{waiting}" for lane, waiting in q.waiting_by_lane)
        typer.echo(f"Queue       {status:<4}  {lanes} delayed:{q.delayed_total}")

    server = verdict.probe(PROBE_SERVER)
    if server is not None and server.ok:
        s = server.payload
        typer.echo(
            f"Server      OK    {s.cpu_model} ({s.cpu_cores} cores) "
            f"mem:{s.mem_total / GIB:.1f}GB disk:{s.fs_percent:.1f}%"
        )


# ---------------------------------------------------------------------------
# restore / verify
# ---------------------------------------------------------------------------

def render_backup_list(backups: Sequence[BackupObject]) -> None:
    typer.echo("\nAvailable backups:")
    for i, b in enumerate(backups, start=1):
        typer.echo(f"  [{i}] {b.name}")


def render_restore_plan(plan: RestorePlan) -> None:
    typer.echo("\n[DRY RUN] Would execute:")
    for i, step in enumerate(plan.steps(), start=1):
        typer.echo(f"  {i}. {step}")


def render_verify_text(result: VerifyResult) -> None:
    typer.echo("")
    typer.echo(f"=== Verification Result: {'PASS' if result.ok else 'FAIL'} ===")
    typer.echo(f"Backup:     {result.backup_file}")
    typer.echo(f"Download:   {_ok(result.download_ok)}")
    typer.echo(f"Extract:    {_ok(result.extract_ok)}")
    typer.echo(f"Restore:    {_ok(result.restore_ok)}")
    typer.echo(f"Integrity:  {_ok(result.integrity_ok)}")
    if result.error:
        typer.echo(f"Error:      {result.error}")

    if result.checks:
        typer.echo("\nIntegrity Checks:")
        for check in result.checks:
            typer.echo(f"  {check.name:<15} {_ok(check.ok):<4}  {check.detail}")

    typer.echo("")
    if result.ok:
        typer.echo("Backup is valid and can be restored.")
    else:
        typer.echo("Backup verification failed.")


# ---------------------------------------------------------------------------
# repair
# ---------------------------------------------------------------------------

def render_repair_check(check: RepairCheck) -> None:
    status = "ERROR" if check.error else "OK"
    if check.found == 0:
        typer.echo(f"  {check.name:<22} {status}  (none found)")
    elif check.skipped:
        typer.echo(f"  {check.name:<22} {status}  (found {check.found}, would fix)")
    else:
        typer.echo(f"  {check.name:<22} {status}  (fixed {check.fixed}/{check.found})")
    if check.error:
        typer.echo(f"      Error: {check.error}")


def render_repair_text(result: RepairResult) -> None:
    typer.echo("[DRY RUN] Checking for issues (no changes will be made)..." if result.dry_run else "Running repairs...")
    typer.echo("")
    for check in result.repairs:
        render_repair_check(check)

    typer.echo("")
    typer.echo("=== Dry Run Summary ===" if result.dry_run else "=== Repair Summary ===")
    typer.echo(f"Issues found:  {result.total_found}")
    if result.dry_run:
        typer.echo(f"Would fix:     {result.total_found}")
    else:
        typer.echo(f"Issues fixed:  {result.total_fixed}")
    if result.error_count:
        typer.echo(f"Errors:        {result.error_count}")

    typer.echo("")
    if not result.ok:
        typer.echo("Repair completed with errors.")
    elif result.dry_run:
        typer.echo("Dry run completed. Use without --dry-run to apply fixes.")
    else:
        typer.echo("Repair completed successfully.")
