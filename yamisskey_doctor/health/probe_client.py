"""
Health probes against one Misskey instance.

Each probe is independent and individually failable: errors are converted
into a failed ``ProbeResult`` and never escape the client. All probes of a
run share one overall ``Deadline``; a probe still pending when it fires
fails on its own, the rest of the process carries on.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp
import websockets
from websockets.exceptions import WebSocketException

from yamisskey_doctor.domain.models import (
    PROBE_META,
    PROBE_QUEUE,
    PROBE_SERVER,
    PROBE_STATS,
    PROBE_STREAM,
    MetaInfo,
    ProbeResult,
    QueueStats,
    ServerInfo,
    StatsInfo,
    StreamInfo,
)
from yamisskey_doctor.exceptions import (
    BadStatusError,
    MalformedResponseError,
    OperationalError,
    UnreachableError,
)
from yamisskey_doctor.monitoring.logger import get_logger

logger = get_logger(__name__)

META_ENDPOINT = "/api/meta"
STATS_ENDPOINT = "/api/stats"
QUEUE_ENDPOINT = "/api/admin/queue/stats"
SERVER_INFO_ENDPOINT = "/api/admin/server-info"
STREAMING_PATH = "/streaming"

QUEUE_LANES = ("deliver", "inbox", "db")

DEADLINE_EXCEEDED = "deadline exceeded"


class Deadline:
    """One overall time budget shared by a sequence of operations."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def normalize_target(target: str) -> str:
    """Add ``https://`` when no scheme is given; drop a trailing slash."""
    target = target.strip()
    if not target.startswith(("http://", "https://")):
        target = "https://" + target
    return target.rstrip("/")


def streaming_url(base_url: str) -> str:
    """HTTP(S) base URL -> WebSocket streaming URL on the same host."""
    parts = urlsplit(base_url)
    scheme = "ws" if parts.scheme == "http" else "wss"
    return urlunsplit((scheme, parts.netloc, STREAMING_PATH, "", ""))


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedResponseError(f"expected a number, got {type(value).__name__}")
    return int(value)


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise MalformedResponseError(f"'{key}' is not an object")
    return value


class ProbeClient:
    """Issues health probes against one target within one deadline."""

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession,
        deadline: Deadline,
        handshake_timeout: float = 5.0,
        ws_connect: Callable[..., Any] = websockets.connect,
    ):
        self.base_url = normalize_target(base_url)
        self._session = session
        self._deadline = deadline
        self._handshake_timeout = handshake_timeout
        self._ws_connect = ws_connect

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def fetch_meta(self) -> ProbeResult:
        async def _meta() -> MetaInfo:
            data = await self._post_json(META_ENDPOINT, {})
            return MetaInfo(
                version=str(data.get("version") or ""),
                name=str(data.get("name") or ""),
                federation_enabled=not bool(data.get("disableGlobalTimeline", False)),
            )

        return await self._timed(PROBE_META, _meta)

    async def fetch_stats(self) -> ProbeResult:
        async def _stats() -> StatsInfo:
            data = await self._post_json(STATS_ENDPOINT, {})
            return StatsInfo(
                note_count=_as_int(data.get("notesCount", 0)),
                user_count=_as_int(data.get("usersCount", 0)),
            )

        return await self._timed(PROBE_STATS, _stats)

    async def probe_streaming(self) -> ProbeResult:
        """WebSocket handshake, then close immediately. Never raises."""
        url = streaming_url(self.base_url)

        async def _handshake() -> StreamInfo:
            timeout = min(self._handshake_timeout, self._deadline.remaining())
            try:
                async with self._ws_connect(url, open_timeout=timeout, close_timeout=1):
                    pass
            except (OSError, WebSocketException) as e:
                raise UnreachableError(f"streaming handshake failed: {e}") from e
            return StreamInfo(url=url)

        return await self._timed(PROBE_STREAM, _handshake)

    async def fetch_queue_stats(self, credential: str) -> ProbeResult:
        async def _queue() -> QueueStats:
            data = await self._post_json(QUEUE_ENDPOINT, {"i": credential})
            waiting = []
            delayed = 0
            for lane in QUEUE_LANES:
                section = _section(data, lane)
                waiting.append((lane, _as_int(section.get("waiting", 0))))
                delayed += _as_int(section.get("delayed", 0))
            return QueueStats(waiting_by_lane=tuple(waiting), delayed_total=delayed)

        return await self._timed(PROBE_QUEUE, _queue)

    async def fetch_server_info(self, credential: str) -> ProbeResult:
        async def _server() -> ServerInfo:
            data = await self._post_json(SERVER_INFO_ENDPOINT, {"i": credential})
            cpu = _section(data, "cpu")
            mem = _section(data, "mem")
            fs = _section(data, "fs")
            return ServerInfo(
                cpu_model=str(cpu.get("model", "")),
                cpu_cores=_as_int(cpu.get("cores", 0)),
                mem_total=_as_int(mem.get("total", 0)),
                fs_used=_as_int(fs.get("used", 0)),
                fs_total=_as_int(fs.get("total", 0)),
            )

        return await self._timed(PROBE_SERVER, _server)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _timed(self, name: str, probe: Callable[[], Awaitable[Any]]) -> ProbeResult:
        """Run ``probe`` under the shared deadline and time it."""
        start = time.monotonic()
        remaining = self._deadline.remaining()
        error: Optional[str] = None
        payload: Any = None

        if remaining <= 0:
            error = DEADLINE_EXCEEDED
        else:
            try:
                payload = await asyncio.wait_for(probe(), timeout=remaining)
            except asyncio.TimeoutError:
                error = DEADLINE_EXCEEDED
            except OperationalError as e:
                error = f"{type(e).__name__}: {e}"

        latency_ms = int((time.monotonic() - start) * 1000)
        if error is None:
            logger.debug("Probe succeeded", probe=name, latency_ms=latency_ms)
            return ProbeResult(name=name, ok=True, latency_ms=latency_ms, payload=payload)

        logger.warning("PROBE_FAILED", probe=name, latency_ms=latency_ms, error=error)
        return ProbeResult(name=name, ok=False, latency_ms=latency_ms, error=error)

    async def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON body; return the decoded object on HTTP 200."""
        url = self.base_url + path
        try:
            async with self._session.post(url, json=body) as resp:
                if resp.status != 200:
                    raise BadStatusError(resp.status, path)
                try:
                    data = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError) as e:
                    raise MalformedResponseError(f"undecodable body from {path}: {e}") from e
        except aiohttp.ClientError as e:
            raise UnreachableError(f"{path}: {e}") from e

        if not isinstance(data, dict):
            raise MalformedResponseError(f"expected a JSON object from {path}")
        return data
