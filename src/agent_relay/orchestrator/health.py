"""Aggregated health of the agent binary and dependent HTTP services."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

import httpx

from agent_relay import __version__
from agent_relay.orchestrator.backend import ProcessSupervisor
from agent_relay.orchestrator.models import utc_now

logger = logging.getLogger(__name__)

ServiceStatus = Literal["ok", "error"]
OverallStatus = Literal["ok", "degraded", "error"]

AGENT_SERVICE = "agent"


@dataclass(slots=True)
class ServiceHealth:
    status: ServiceStatus
    message: str | None = None


@dataclass(slots=True)
class HealthReport:
    """Point-in-time health snapshot."""

    status: OverallStatus
    timestamp: datetime
    version: str
    uptime_seconds: float
    services: dict[str, ServiceHealth] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "uptime": round(self.uptime_seconds, 3),
            "services": {
                name: {"status": service.status, "message": service.message}
                for name, service in self.services.items()
            },
        }


class HealthChecker:
    """Probes the agent executable and every configured dependency."""

    def __init__(
        self,
        *,
        supervisor: ProcessSupervisor,
        agent_command: Sequence[str],
        service_urls: Mapping[str, str] | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._agent_command = tuple(agent_command)
        self._service_urls = dict(service_urls or {})
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0))
        self._transport = transport
        self._started_monotonic = time.monotonic()

    def check(self) -> HealthReport:
        services: dict[str, ServiceHealth] = {AGENT_SERVICE: self._check_agent()}
        if self._service_urls:
            with httpx.Client(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                for name, url in self._service_urls.items():
                    services[name] = _probe_url(client, name=name, url=url)

        return HealthReport(
            status=_overall_status(services),
            timestamp=utc_now(),
            version=__version__,
            uptime_seconds=time.monotonic() - self._started_monotonic,
            services=services,
        )

    def _check_agent(self) -> ServiceHealth:
        probe = self._supervisor.probe(self._agent_command)
        if probe.available:
            return ServiceHealth(status="ok", message=probe.version)
        logger.warning("Agent CLI unavailable: %s", probe.error)
        return ServiceHealth(status="error", message=probe.error)


def _probe_url(client: httpx.Client, *, name: str, url: str) -> ServiceHealth:
    try:
        response = client.get(url)
    except httpx.TimeoutException:
        logger.warning("Timeout probing %s (%s)", name, url)
        return ServiceHealth(status="error", message=f"{url}: timeout")
    except httpx.HTTPError as exc:
        logger.warning("HTTP error probing %s (%s): %s", name, url, exc)
        return ServiceHealth(status="error", message=f"{url}: {exc}")

    if response.status_code >= 500:
        return ServiceHealth(status="error", message=f"{url}: HTTP {response.status_code}")
    return ServiceHealth(status="ok", message=f"HTTP {response.status_code}")


def _overall_status(services: Mapping[str, ServiceHealth]) -> OverallStatus:
    if services[AGENT_SERVICE].status == "error":
        return "error"
    if any(service.status == "error" for service in services.values()):
        return "degraded"
    return "ok"
