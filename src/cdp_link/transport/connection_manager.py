"""Connection lifecycle for a DevTools endpoint whose port is not fixed.

The :class:`ConnectionManager` owns at most one live handle. Callers ask for it
with :meth:`ConnectionManager.get_handle`; if nothing is connected a single
connect sequence (probe, open, back off, repeat) runs in a background task and
every concurrent caller joins it through one shared future. Losing the handle
schedules a fresh sequence after the retry delay in effect at that moment.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import time
from collections.abc import Awaitable, Callable, Sequence

from cdp_link.const import DEFAULT_CDP_PORTS
from cdp_link.correlation import correlation_context
from cdp_link.logging_abstraction import get_logger
from cdp_link.metrics import registry
from cdp_link.transport.cdp_client import CdpClient
from cdp_link.transport.port_prober import PortProber
from cdp_link.transport.retry_policy import RetryPolicy
from cdp_link.transport.types import ConnectionState, ConnectionStatus, DebugHandle, DisconnectEvent

__all__ = ["ConnectionManager"]

logger = get_logger(__name__)

DEFAULT_JOIN_TIMEOUT_SECONDS = 30.0

CONNECT_TASK_NAME = "ConnectionManager_CONNECT"
RECONNECT_TASK_NAME = "ConnectionManager_RECONNECT"

Opener = Callable[[int], Awaitable[DebugHandle]]


class ConnectionManager:
    """Discovers, opens and keeps open one debugging connection.

    **Single flight**: at most one connect sequence exists at a time
    (``_connect_task``). Callers that arrive while it runs wait on the same
    ``_handle_ready`` future, which the sequence resolves once.

    **Stop signal**: ``shutdown()`` sets ``_stop``. The retry loop, the backoff
    sleep and any scheduled reconnect all observe it, so the otherwise unbounded
    retry loop ends deterministically.

    State only changes between awaits, so the synchronous accessors always see a
    consistent snapshot.
    """

    def __init__(
        self,
        candidate_ports: Sequence[int] = DEFAULT_CDP_PORTS,
        prober: PortProber | None = None,
        opener: Opener | None = None,
        retry_policy: RetryPolicy | None = None,
        join_timeout: float | None = DEFAULT_JOIN_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize connection manager.

        Args:
            candidate_ports: Ports to probe, in preference order
            prober: Liveness prober (defaults to PortProber() on 127.0.0.1)
            opener: Coroutine factory opening a handle on a port (defaults to CdpClient.open)
            retry_policy: Backoff policy (defaults to RetryPolicy())
            join_timeout: Ceiling on how long get_handle() waits when joining a running sequence, None for no ceiling
            clock: Wall clock returning Unix seconds, used for last_sync_time()

        """
        self.candidate_ports: tuple[int, ...] = tuple(candidate_ports)
        self.prober: PortProber = prober or PortProber()
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.join_timeout: float | None = join_timeout
        self._opener: Opener = opener or functools.partial(CdpClient.open, host=self.prober.host)
        self._clock: Callable[[], float] = clock

        self._state: ConnectionState = ConnectionState.DISCONNECTED
        self._handle: DebugHandle | None = None
        self._port: int | None = None
        self._last_sync: float = 0.0
        self._connect_attempts: int = 0
        self.last_disconnect: DisconnectEvent | None = None

        self._connect_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._handle_ready: asyncio.Future[DebugHandle | None] | None = None
        self._stop: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # Synchronous accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_delay(self) -> float:
        """Backoff delay currently in effect, in seconds."""
        return self.retry_policy.current_delay_seconds

    @property
    def connect_attempts(self) -> int:
        """Number of probe+open attempts made since construction."""
        return self._connect_attempts

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    @property
    def handle(self) -> DebugHandle | None:
        """The live handle, without triggering a connect."""
        return self._handle

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._handle is not None

    def current_port(self) -> int | None:
        return self._port if self.is_connected() else None

    def last_sync_time(self) -> float:
        """Unix time of the most recent successful connect, 0.0 if there was none."""
        return self._last_sync

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(state=self._state, port=self.current_port(), last_sync=self._last_sync)

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def get_handle(self) -> DebugHandle | None:
        """Return the live handle, connecting first if needed.

        The caller that starts a connect sequence waits until it yields a handle.
        Callers that join a sequence already in flight wait at most
        ``join_timeout``.

        Returns:
            The handle, or None if a joiner's ceiling elapsed or the manager was shut down.
            Connect failures never raise here; they are retried in the background.
        """
        if self._stop.is_set():
            return None
        if self.is_connected():
            return self._handle

        joining = self._connect_task is not None and not self._connect_task.done()
        ready = self._ensure_connect_sequence()
        try:
            if not joining or self.join_timeout is None:
                handle = await asyncio.shield(ready)
            else:
                handle = await asyncio.wait_for(asyncio.shield(ready), timeout=self.join_timeout)
        except TimeoutError:
            registry.record_join_wait("timeout")
            logger.warning(
                "Timed out after %.1fs waiting for a DevTools connection; still retrying",
                self.join_timeout,
                extra={"attempts": self._connect_attempts, "retry_delay": self.retry_delay},
            )
            return None

        registry.record_join_wait("handle" if handle is not None else "shutdown")
        return handle

    async def shutdown(self) -> None:
        """Stop retrying, release waiters with None and close the handle (idempotent)."""
        if self._stop.is_set():
            return
        self._stop.set()
        logger.info("→ Shutting down connection manager", extra={"port": self._port})

        tasks = [t for t in (self._reconnect_task, self._connect_task) if t is not None and not t.done()]
        for task in tasks:
            _ = task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        self._connect_task = None

        if self._handle_ready is not None and not self._handle_ready.done():
            self._handle_ready.set_result(None)

        handle = self._handle
        self._handle = None
        self._port = None
        self._set_state(ConnectionState.DISCONNECTED)

        if handle is not None:
            await self._close_quietly(handle)
        logger.info("✓ Connection manager stopped")

    # ------------------------------------------------------------------
    # Connect sequence
    # ------------------------------------------------------------------

    def _ensure_connect_sequence(self) -> asyncio.Future[DebugHandle | None]:
        """Start the connect task unless one is already running; return the shared future."""
        if self._handle_ready is None or self._handle_ready.done():
            self._handle_ready = asyncio.get_running_loop().create_future()
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._connect_sequence(), name=CONNECT_TASK_NAME)
        return self._handle_ready

    async def _connect_sequence(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            while not self._stop.is_set():
                if await self._attempt_connect() is not None:
                    return

                delay = self.retry_policy.current_delay_seconds
                logger.info(
                    "→ Retrying DevTools connect in %.1fs",
                    delay,
                    extra={"attempt": self._connect_attempts, "delay": delay},
                )
                if await self._wait_for_stop(delay):
                    break
                registry.record_retry_delay(self.retry_policy.escalate())
        except Exception:
            logger.exception("Connect sequence failed", extra={"attempts": self._connect_attempts})
        finally:
            if self._connect_task is asyncio.current_task():
                self._connect_task = None
            # release waiters when the sequence ends without a handle
            if self._handle_ready is not None and not self._handle_ready.done():
                self._handle_ready.set_result(None)
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)

    async def _attempt_connect(self) -> DebugHandle | None:
        """One probe+open attempt. Every failure is logged and reported as None."""
        self._connect_attempts += 1
        attempt = self._connect_attempts

        with correlation_context():
            try:
                port = await self.prober.probe(self.candidate_ports)
            except Exception:
                logger.exception("Port probe raised", extra={"attempt": attempt})
                port = None

            if port is None:
                registry.record_connect_attempt("no_target")
                logger.warning(
                    "✗ Connect attempt %d: no DevTools endpoint on %s",
                    attempt,
                    list(self.candidate_ports),
                    extra={"attempt": attempt},
                )
                return None

            try:
                handle = await self._opener(port)
            except Exception as e:
                registry.record_connect_attempt("open_failed")
                logger.warning(
                    "✗ Connect attempt %d: could not open port %d",
                    attempt,
                    port,
                    extra={"attempt": attempt, "port": port, "error": str(e), "error_type": type(e).__name__},
                )
                return None

            if self._stop.is_set():
                await self._close_quietly(handle)
                return None

            try:
                handle.add_disconnect_listener(functools.partial(self._on_handle_lost, handle))
            except Exception:
                registry.record_connect_attempt("open_failed")
                logger.exception(
                    "✗ Connect attempt %d: could not watch port %d",
                    attempt,
                    port,
                    extra={"attempt": attempt, "port": port},
                )
                await self._close_quietly(handle)
                return None

            self._install(handle, port, attempt)
            return handle

    def _install(self, handle: DebugHandle, port: int, attempt: int) -> None:
        self._handle = handle
        self._port = port
        self._last_sync = max(self._last_sync, self._clock())
        self.retry_policy.reset()
        self._set_state(ConnectionState.CONNECTED)

        registry.record_connect_attempt("success")
        registry.record_last_sync(self._last_sync)
        registry.record_retry_delay(self.retry_policy.current_delay_seconds)

        if self._handle_ready is not None and not self._handle_ready.done():
            self._handle_ready.set_result(handle)

        logger.info(
            "✓ Connected to DevTools on port %d",
            port,
            extra={"port": port, "attempt": attempt, "last_sync": self._last_sync},
        )

    # ------------------------------------------------------------------
    # Disconnect handling
    # ------------------------------------------------------------------

    def _on_handle_lost(self, handle: DebugHandle, reason: str) -> None:
        if self._stop.is_set():
            return
        if handle is not self._handle:
            logger.debug("Ignoring disconnect from a replaced handle", extra={"reason": reason})
            return

        event = DisconnectEvent(port=self._port, reason=reason, occurred_at=self._clock())
        self.last_disconnect = event
        self._handle = None
        self._port = None
        self._set_state(ConnectionState.DISCONNECTED)
        registry.record_disconnect(reason)

        logger.warning(
            "✗ Lost DevTools connection on port %s (%s)",
            event.port,
            reason,
            extra={"port": event.port, "reason": reason, "last_sync": self._last_sync},
        )
        self._schedule_reconnect(event)

    def _schedule_reconnect(self, event: DisconnectEvent) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        delay = self.retry_policy.current_delay_seconds
        logger.info("→ Reconnect scheduled in %.1fs", delay, extra={"port": event.port, "delay": delay})
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name=RECONNECT_TASK_NAME)

    async def _reconnect_after(self, delay: float) -> None:
        try:
            if await self._wait_for_stop(delay):
                return
            # get_handle() may already have reconnected, or be mid-sequence
            if self.is_connected() or (self._connect_task is not None and not self._connect_task.done()):
                return
            _ = self._ensure_connect_sequence()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _close_quietly(self, handle: DebugHandle) -> None:
        try:
            await handle.close()
        except Exception:
            logger.exception("Error closing DevTools handle", extra={"port": self._port})

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; return True early if the stop signal is set."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("Connection state %s → %s", self._state.value, state.value)
        self._state = state
        registry.record_connection_state(state.value, self._port if state is ConnectionState.CONNECTED else None)
