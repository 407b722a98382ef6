"""
Health classification.

Runs the probes in a fixed order and folds them into one ``HealthVerdict``:

1. meta      ends the run on failure: the instance is unhealthy.
2. stats     is informational.
3. streaming degrades on failure.
4. queue     runs only with a credential; delayed jobs over the threshold degrade.
   server    runs only with a credential and is informational.

Failed informational probes are logged and left out of the verdict, so a
healthy verdict only ever contains successful probes.
"""
from __future__ import annotations

from typing import List, Optional

import aiohttp

from yamisskey_doctor.config.config import CheckConfig
from yamisskey_doctor.domain.models import HealthVerdict, ProbeResult
from yamisskey_doctor.health.probe_client import Deadline, ProbeClient
from yamisskey_doctor.monitoring.logger import get_logger

logger = get_logger(__name__)


class HealthClassifier:
    """Combines probe results into one verdict."""

    def __init__(self, client: ProbeClient, queue_delayed_threshold: int = 1000):
        self._client = client
        self._threshold = queue_delayed_threshold

    async def classify(self, credential: Optional[str] = None) -> HealthVerdict:
        probes: List[ProbeResult] = []

        meta = await self._client.fetch_meta()
        probes.append(meta)
        if not meta.ok:
            return self._verdict(probes)

        self._keep_if_ok(probes, await self._client.fetch_stats())

        probes.append(await self._client.probe_streaming())

        if credential:
            self._keep_if_ok(probes, await self._client.fetch_queue_stats(credential))
            self._keep_if_ok(probes, await self._client.fetch_server_info(credential))

        return self._verdict(probes)

    def _verdict(self, probes: List[ProbeResult]) -> HealthVerdict:
        verdict = HealthVerdict(probes=tuple(probes), queue_delayed_threshold=self._threshold)
        logger.info(
            "HEALTH_VERDICT",
            target=self._client.base_url,
            status=verdict.status.value,
            probes=[p.name for p in verdict.probes],
        )
        return verdict

    @staticmethod
    def _keep_if_ok(probes: List[ProbeResult], result: ProbeResult) -> None:
        if result.ok:
            probes.append(result)
        else:
            logger.info("Informational probe dropped from verdict", probe=result.name, error=result.error)


async def run_check(target: str, check: CheckConfig) -> HealthVerdict:
    """One complete check run against ``target`` under ``check.timeout_seconds``."""
    deadline = Deadline(check.timeout_seconds)
    timeout = aiohttp.ClientTimeout(total=check.timeout_seconds)
    headers = {"Content-Type": "application/json"}
    async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
        client = ProbeClient(
            target,
            session,
            deadline,
            handshake_timeout=check.handshake_timeout_seconds,
        )
        classifier = HealthClassifier(client, queue_delayed_threshold=check.queue_delayed_threshold)
        return await classifier.classify(check.token)
