from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from collections.abc import Sequence
from functools import partial
from pathlib import Path

import dotenv
import uvloop

from cdp_link.const import CDP_LINK_VERSION, HEALTH_SRV_START_TASK_NAME, WARM_CONNECT_TASK_NAME
from cdp_link.correlation import correlation_context, ensure_correlation_id
from cdp_link.health import HealthServer
from cdp_link.logging_abstraction import configure_third_party_loggers, get_logger
from cdp_link.metrics import start_metrics_server
from cdp_link.structs import LinkEnv
from cdp_link.transport.cdp_client import CdpClient
from cdp_link.transport.connection_manager import ConnectionManager
from cdp_link.transport.port_prober import PortProber
from cdp_link.transport.retry_policy import RetryPolicy

logger = get_logger(__name__)


def build_manager(env: LinkEnv) -> ConnectionManager:
    """Wire a ConnectionManager from resolved settings."""
    prober = PortProber(
        host=env.cdp_host,
        path=env.cdp_probe_path,
        timeout_seconds=env.cdp_probe_timeout,
    )
    return ConnectionManager(
        candidate_ports=env.cdp_ports,
        prober=prober,
        opener=partial(CdpClient.open, host=env.cdp_host, connect_timeout=env.cdp_connect_timeout),
        retry_policy=RetryPolicy(env.cdp_retry_base_delay, env.cdp_retry_max_delay),
        join_timeout=env.cdp_join_timeout,
    )


class CdpLinkService:
    """Owns the connection manager and the health server for one process."""

    lp: str = "CdpLinkService:"

    def __init__(
        self,
        env: LinkEnv,
        manager: ConnectionManager | None = None,
        health_server: HealthServer | None = None,
    ) -> None:
        self.env = env
        self.manager = manager or build_manager(env)
        self.health_server = health_server or HealthServer(self.manager, host=env.link_host, port=env.link_port)
        self.warm_task: asyncio.Task[None] | None = None
        self._stop_requested = asyncio.Event()
        self._stopped = False

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.add_signal_handler(signal.SIGINT, partial(self.signal_handler, signal.SIGINT))
        loop.add_signal_handler(signal.SIGTERM, partial(self.signal_handler, signal.SIGTERM))
        logger.debug("Signal handlers configured for SIGINT & SIGTERM")

    def signal_handler(self, signum: int) -> None:
        logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        self.request_stop()

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def start(self) -> None:
        """Start services, warm the connection and run until a stop is requested."""
        _ = ensure_correlation_id()

        if self.env.metrics_enabled:
            start_metrics_server(self.env.metrics_port)
            logger.info(" Metrics server listening", extra={"port": self.env.metrics_port})

        logger.info(
            " Starting cdp-link",
            extra={"ports": self.env.cdp_ports, "host": self.env.cdp_host, "health_port": self.env.link_port},
        )
        self.warm_task = asyncio.create_task(self._warm_connect(), name=WARM_CONNECT_TASK_NAME)
        self.health_server.start_task = asyncio.create_task(
            self.health_server.start(),
            name=HEALTH_SRV_START_TASK_NAME,
        )

        try:
            _ = await self._stop_requested.wait()
        finally:
            await self.stop()

    async def _warm_connect(self) -> None:
        handle = await self.manager.get_handle()
        if handle is None:
            if not self.manager.closed:
                logger.warning("No DevTools connection yet; retrying in the background")
            return
        logger.info(" DevTools connection ready", extra={"port": self.manager.current_port()})

    async def stop(self) -> None:
        """Shut down the manager and the health server (idempotent)."""
        if self._stopped:
            return
        self._stopped = True
        logger.info(" Shutting down cdp-link...")

        try:
            await self.manager.shutdown()
        except Exception:
            logger.exception("%s Error shutting down connection manager", self.lp)

        if self.warm_task is not None and not self.warm_task.done():
            _ = self.warm_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.warm_task

        await self.health_server.stop()


def parse_cli(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cdp-link: keep a DevTools connection to a local app alive")
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    args = parser.parse_args(argv)

    if args.debug:
        logger.set_level(logging.DEBUG)
        logger.info("Debug mode enabled via CLI argument")

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error("Environment file not found", extra={"path": str(env_path)})
        else:
            try:
                loaded_any = dotenv.load_dotenv(env_path, override=True)
            except Exception as e:
                logger.exception(
                    "Failed to load environment file",
                    extra={"path": str(env_path), "error": str(e)},
                )
            else:
                if loaded_any:
                    logger.info(" Environment variables loaded", extra={"source": str(env_path)})
                else:
                    logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return args


async def run_service(service: CdpLinkService) -> None:
    service.install_signal_handlers(asyncio.get_running_loop())
    await service.start()


def main(argv: Sequence[str] | None = None) -> None:
    """Console entry point for ``cdp-link``."""
    with correlation_context():
        logger.info("Starting cdp-link", extra={"version": CDP_LINK_VERSION})
        args = parse_cli(argv)
        configure_third_party_loggers()

        env = LinkEnv.from_environ()
        if args.debug:
            env.debug = True
        if env.debug:
            logger.info("Debug logging enabled via configuration")
            logger.set_level(logging.DEBUG)

        service = CdpLinkService(env)
        try:
            uvloop.run(run_service(service))
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(" Fatal error in main loop", extra={"error": str(e)})
        else:
            logger.info(" cdp-link stopped gracefully")
        finally:
            logger.info("cdp-link shutdown complete")


if __name__ == "__main__":
    main()
