"""Readiness probes.

Each probe is an ``async`` callable returning ``True`` once the resource is
usable. Probes never raise for "not ready yet"; connection errors, non-2xx
answers and non-zero exit codes all mean ``False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

import httpx

from . import settings
from .model import EndpointReference, HealthCheck, resolve_value
from .process import ProcessRunner

log = logging.getLogger(__name__)


# ── HTTP ─────────────────────────────────────────────────────────────────

async def check_http(url: str, *, timeout: float = settings.PROBE_TIMEOUT_SECONDS) -> bool:
    """``GET`` an HTTP endpoint and expect a 2xx response."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
            return resp.is_success
    except httpx.HTTPError as e:
        log.debug("probe %s: %s", url, e)
        return False


@dataclass
class HttpProbe:
    """Probe `path` on a URL or on an endpoint that is resolved lazily."""
    target: Union[str, EndpointReference]
    path: str = "/health"

    async def __call__(self) -> bool:
        base = await resolve_value(self.target)
        return await check_http(base.rstrip("/") + "/" + self.path.lstrip("/"))


def http_probe(target: Union[str, EndpointReference], path: str = "/health") -> HealthCheck:
    return HttpProbe(target, path)


# ── Command ──────────────────────────────────────────────────────────────

@dataclass
class CommandProbe:
    """Ready when ``command args...`` exits with code 0 (e.g. ``pg_isready``)."""
    command: str
    args: List[Any] = field(default_factory=list)
    runner: Optional[ProcessRunner] = None

    async def __call__(self) -> bool:
        runner = self.runner or ProcessRunner(grace_period=0)
        resolved = [await resolve_value(a) for a in self.args]
        result = await runner.run(self.command, resolved)
        return result.ok


def command_probe(
    command: str,
    args: Sequence[Any] = (),
    *,
    runner: ProcessRunner | None = None,
) -> HealthCheck:
    return CommandProbe(command, list(args), runner)
