"""Discovery of the local port that currently serves a DevTools endpoint.

The target application may come back on a different port after every restart,
so each connect attempt sweeps a short ordered list of candidates and takes the
first one whose ``/json/version`` answers with a 2xx status.
"""

from __future__ import annotations

import time
from collections.abc import Sequence

import aiohttp

from cdp_link.instrumentation import timed_async
from cdp_link.logging_abstraction import get_logger
from cdp_link.metrics import registry

__all__ = ["PortProber"]

logger = get_logger(__name__)

DEFAULT_PROBE_HOST = "127.0.0.1"
DEFAULT_PROBE_PATH = "/json/version"
DEFAULT_PROBE_TIMEOUT_SECONDS = 1.0


class PortProber:
    """Sequential liveness probe over candidate ports.

    Probing is read-only: the response body is never parsed and no websocket is
    opened. Every failure mode (refused, timed out, non-2xx, malformed HTTP)
    counts as "not here" and the sweep moves on.
    """

    def __init__(
        self,
        host: str = DEFAULT_PROBE_HOST,
        path: str = DEFAULT_PROBE_PATH,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.path = path if path.startswith("/") else f"/{path}"
        self.timeout_seconds = timeout_seconds

    def url_for(self, port: int) -> str:
        return f"http://{self.host}:{port}{self.path}"

    @timed_async("port_probe")
    async def probe(self, candidate_ports: Sequence[int]) -> int | None:
        """Return the first candidate that answers the liveness check.

        Args:
            candidate_ports: Ports in preference order

        Returns:
            The first responding port, or None when none respond (or the list is empty)
        """
        ports = list(candidate_ports)
        if ports:
            async with aiohttp.ClientSession() as session:
                for port in ports:
                    if await self._check(session, port):
                        registry.record_discovery("found")
                        logger.info(
                            "Found DevTools endpoint on port %d",
                            port,
                            extra={"port": port, "host": self.host},
                        )
                        return port

        registry.record_discovery("none")
        logger.warning(
            "No DevTools endpoint found on ports: %s",
            ", ".join(str(p) for p in ports) or "<none configured>",
            extra={"ports": ports, "host": self.host},
        )
        return None

    async def check_port(self, port: int) -> bool:
        """Probe a single port."""
        async with aiohttp.ClientSession() as session:
            return await self._check(session, port)

    async def _check(self, session: aiohttp.ClientSession, port: int) -> bool:
        url = self.url_for(port)
        start = time.perf_counter()
        try:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                allow_redirects=False,
            ) as response:
                status = response.status
        except TimeoutError:
            logger.debug("Probe timed out", extra={"port": port, "timeout": self.timeout_seconds})
            registry.record_probe(port, "timeout")
            return False
        except (aiohttp.ClientError, OSError) as e:
            logger.debug(
                "Probe failed",
                extra={"port": port, "error": str(e), "error_type": type(e).__name__},
            )
            registry.record_probe(port, "unreachable")
            return False
        finally:
            registry.record_probe_latency(time.perf_counter() - start)

        if 200 <= status < 300:  # noqa: PLR2004
            registry.record_probe(port, "ok")
            return True

        logger.debug("Probe got non-success status", extra={"port": port, "status": status})
        registry.record_probe(port, "http_error")
        return False
