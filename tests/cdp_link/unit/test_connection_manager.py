"""Unit tests for connection manager."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from cdp_link.transport.connection_manager import ConnectionManager
from cdp_link.transport.retry_policy import RetryPolicy
from cdp_link.transport.types import ConnectionState, DisconnectEvent
from tests.helpers.fakes import (
    FakeHandle,
    InstantBackoffManager,
    RecordingOpener,
    ScriptedProber,
    wait_until,
)

PORTS = (9000, 9001, 9002, 9003)


class UnwatchableHandle(FakeHandle):
    """A handle that cannot report its own disconnect."""

    def add_disconnect_listener(self, callback) -> None:
        raise RuntimeError("listener registry broken")


def make_manager(
    prober: ScriptedProber,
    opener: RecordingOpener,
    *,
    policy: RetryPolicy | None = None,
    join_timeout: float | None = 1.0,
    clock=None,
    instant: bool = True,
) -> ConnectionManager:
    cls = InstantBackoffManager if instant else ConnectionManager
    kwargs = {"clock": clock} if clock is not None else {}
    return cls(
        candidate_ports=PORTS,
        prober=prober,  # type: ignore[arg-type]
        opener=opener,
        retry_policy=policy or RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=8.0),
        join_timeout=join_timeout,
        **kwargs,
    )


class TestInitialState:
    """Accessors before any connect."""

    def test_never_connected(self, opener):
        """Nothing is connected and last sync is zero."""
        mgr = make_manager(ScriptedProber(), opener)

        assert mgr.is_connected() is False
        assert mgr.current_port() is None
        assert mgr.last_sync_time() == 0
        assert mgr.state is ConnectionState.DISCONNECTED
        assert mgr.connect_attempts == 0
        assert mgr.closed is False

    def test_status_snapshot(self, opener):
        """status() mirrors the accessors."""
        mgr = make_manager(ScriptedProber(), opener)

        status = mgr.status()

        assert status.connected is False
        assert status.port is None
        assert status.last_sync == 0.0

    def test_retry_delay_starts_at_base(self, opener):
        mgr = make_manager(ScriptedProber(), opener)
        assert mgr.retry_delay == 1.0


class TestGetHandle:
    """Tests for get_handle connect behavior."""

    @pytest.mark.asyncio
    async def test_connects_on_discovered_port(self, opener, fake_clock):
        """A successful connect exposes the handle, port and sync time."""
        prober = ScriptedProber(default=9001)
        mgr = make_manager(prober, opener, clock=fake_clock)
        before = fake_clock()

        handle = await mgr.get_handle()

        assert handle is opener.handles[0]
        assert opener.calls == [9001]
        assert mgr.is_connected() is True
        assert mgr.current_port() == 9001
        assert mgr.last_sync_time() >= before
        assert mgr.state is ConnectionState.CONNECTED
        assert mgr.connect_attempts == 1
        assert prober.seen_ports == [PORTS]
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_returns_existing_handle_without_probing(self, opener):
        """Once connected, get_handle never touches the network."""
        prober = ScriptedProber(default=9000)
        mgr = make_manager(prober, opener)

        first = await mgr.get_handle()
        second = await mgr.get_handle()

        assert first is second
        assert prober.calls == 1
        assert len(opener.calls) == 1
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_probe_miss_is_retried(self, opener):
        """A None probe result counts as a failed attempt, not an error."""
        prober = ScriptedProber([None, None], default=9002)
        mgr = make_manager(prober, opener)

        handle = await mgr.get_handle()

        assert handle is not None
        assert mgr.connect_attempts == 3
        assert mgr.current_port() == 9002
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_open_failure_is_retried(self, prober_factory):
        """An opener exception is absorbed and retried."""
        opener = RecordingOpener(failures=2)
        mgr = make_manager(prober_factory(default=9000), opener)

        handle = await mgr.get_handle()

        assert handle is opener.handles[0]
        assert opener.calls == [9000, 9000, 9000]
        assert mgr.connect_attempts == 3
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_probe_exception_is_retried(self, opener):
        """Unexpected prober errors never reach the caller."""
        prober = ScriptedProber([RuntimeError("boom")], default=9000)
        mgr = make_manager(prober, opener)

        handle = await mgr.get_handle()

        assert handle is not None
        assert mgr.connect_attempts == 2
        await mgr.shutdown()


class TestSingleFlight:
    """Concurrent callers share one connect sequence."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_same_handle(self, opener):
        prober = ScriptedProber(default=9000, delay=0.05)
        mgr = make_manager(prober, opener)

        handles = await asyncio.gather(*(mgr.get_handle() for _ in range(5)))

        assert all(h is handles[0] for h in handles)
        assert handles[0] is not None
        assert mgr.connect_attempts == 1
        assert prober.calls == 1
        assert len(opener.calls) == 1
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_late_joiner_during_retries(self, opener):
        """A caller arriving mid-sequence joins it instead of starting another."""
        prober = ScriptedProber([None, None, None], default=9000, delay=0.01)
        mgr = make_manager(prober, opener)

        first = asyncio.create_task(mgr.get_handle())
        await wait_until(lambda: prober.calls >= 2)
        second = await mgr.get_handle()

        assert await first is second
        assert mgr.connect_attempts == 4
        assert len(opener.handles) == 1
        await mgr.shutdown()


class TestBackoff:
    """Tests for the retry delay progression."""

    @pytest.mark.asyncio
    async def test_delay_doubles_and_caps(self, opener):
        """Delay starts at base, doubles per failure and stops at the cap."""
        prober = ScriptedProber([None] * 5, default=9000)
        mgr = make_manager(prober, opener)

        _ = await mgr.get_handle()

        assert mgr.sleeps == [1.0, 2.0, 4.0, 8.0, 8.0]  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_delay_resets_after_success(self, opener):
        prober = ScriptedProber([None, None, None], default=9000)
        mgr = make_manager(prober, opener)

        _ = await mgr.get_handle()

        assert mgr.retry_delay == 1.0
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_real_sleep_respects_policy(self, opener, fast_policy):
        """Without the instant harness the manager really waits between attempts."""
        prober = ScriptedProber([None, None], default=9000)
        mgr = make_manager(prober, opener, policy=fast_policy, instant=False)
        loop = asyncio.get_running_loop()
        start = loop.time()

        handle = await mgr.get_handle()

        assert handle is not None
        assert loop.time() - start >= 0.03 - 0.005  # 0.01 + 0.02
        await mgr.shutdown()


class TestDisconnect:
    """Tests for disconnect handling and reconnect scheduling."""

    @pytest.mark.asyncio
    async def test_disconnect_clears_connection_keeps_last_sync(self, opener, fake_clock):
        prober = ScriptedProber(default=9000)
        mgr = make_manager(prober, opener, clock=fake_clock, policy=RetryPolicy(60.0, 60.0), instant=False)
        handle = await mgr.get_handle()
        synced = mgr.last_sync_time()
        fake_clock.advance(5)

        opener.handles[0].drop("remote_closed")

        assert handle is not None
        assert mgr.is_connected() is False
        assert mgr.current_port() is None
        assert mgr.state is ConnectionState.DISCONNECTED
        assert mgr.last_sync_time() == synced
        assert mgr.last_disconnect == DisconnectEvent(port=9000, reason="remote_closed", occurred_at=fake_clock())
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_last_sync_never_moves_backwards(self, opener, fake_clock):
        """A clock that steps back between connects leaves last_sync where it was."""
        mgr = make_manager(ScriptedProber(default=9000), opener, clock=fake_clock)
        _ = await mgr.get_handle()
        synced = mgr.last_sync_time()

        fake_clock.advance(-50)
        opener.handles[0].drop()
        await wait_until(lambda: len(opener.handles) == 2 and mgr.is_connected())

        assert mgr.last_sync_time() == synced

        fake_clock.advance(100)
        opener.handles[1].drop()
        await wait_until(lambda: len(opener.handles) == 3 and mgr.is_connected())

        assert mgr.last_sync_time() == synced + 50
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_uses_delay_in_effect(self, opener):
        """The first reconnect after a clean run waits the base delay."""
        prober = ScriptedProber([None, None], default=9000)
        mgr = make_manager(prober, opener)
        _ = await mgr.get_handle()
        mgr.sleeps.clear()  # type: ignore[attr-defined]

        opener.handles[0].drop()
        await wait_until(lambda: len(opener.handles) == 2)

        assert mgr.sleeps[0] == 1.0  # type: ignore[attr-defined]
        assert mgr.is_connected() is True
        assert mgr.connect_attempts == 4
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_stale_disconnect_is_ignored(self, opener):
        """A notification from a replaced handle leaves the new connection alone."""
        mgr = make_manager(ScriptedProber(default=9000), opener)
        _ = await mgr.get_handle()
        old = opener.handles[0]
        old.drop()
        await wait_until(lambda: len(opener.handles) == 2 and mgr.is_connected())

        old.drop()

        assert mgr.is_connected() is True
        assert mgr.current_port() == 9000
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_get_handle_during_pending_reconnect(self, opener):
        """A caller does not wait out the reconnect delay."""
        mgr = make_manager(
            ScriptedProber(default=9000),
            opener,
            policy=RetryPolicy(60.0, 60.0),
            instant=False,
        )
        _ = await mgr.get_handle()
        opener.handles[0].drop()

        handle = await asyncio.wait_for(mgr.get_handle(), timeout=1.0)

        assert handle is opener.handles[1]
        await mgr.shutdown()


class TestJoinTimeout:
    """Tests for the bounded wait in get_handle."""

    @pytest.mark.asyncio
    async def test_joiner_gets_none_and_sequence_keeps_retrying(self, opener, fast_policy):
        prober = ScriptedProber(default=None)
        mgr = make_manager(prober, opener, policy=fast_policy, join_timeout=0.05, instant=False)
        initiator = asyncio.create_task(mgr.get_handle())
        await wait_until(lambda: mgr.connect_attempts >= 1)

        handle = await mgr.get_handle()

        assert handle is None
        assert initiator.done() is False
        assert mgr.state is ConnectionState.CONNECTING
        attempts = mgr.connect_attempts
        await wait_until(lambda: mgr.connect_attempts > attempts)
        await mgr.shutdown()
        assert await asyncio.wait_for(initiator, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_initiator_waits_past_the_ceiling(self, opener, fast_policy):
        """The caller that starts the sequence is not cut off by the join ceiling."""
        prober = ScriptedProber([None] * 3, default=9000)
        mgr = make_manager(prober, opener, policy=fast_policy, join_timeout=0.02, instant=False)

        handle = await asyncio.wait_for(mgr.get_handle(), timeout=2.0)

        assert handle is opener.handles[0]
        assert mgr.connect_attempts == 4
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_caller_after_timeout_still_gets_handle(self, opener, fast_policy):
        prober = ScriptedProber([None] * 10, default=9003)
        mgr = make_manager(prober, opener, policy=fast_policy, join_timeout=0.02, instant=False)
        initiator = asyncio.create_task(mgr.get_handle())
        await wait_until(lambda: mgr.connect_attempts >= 1)

        assert await mgr.get_handle() is None
        await wait_until(mgr.is_connected)

        assert await mgr.get_handle() is opener.handles[0]
        assert await initiator is opener.handles[0]
        await mgr.shutdown()


class TestConnectFailures:
    """Failures inside the connect task never strand waiters."""

    @pytest.mark.asyncio
    async def test_unwatchable_handle_is_closed_and_retried(self):
        broken = UnwatchableHandle(9000)
        good = FakeHandle(9000)
        queue = [broken, good]

        async def open_port(_port: int) -> FakeHandle:
            return queue.pop(0)

        mgr = make_manager(ScriptedProber(default=9000), open_port)  # type: ignore[arg-type]

        handle = await mgr.get_handle()

        assert handle is good
        assert broken.closed is True
        assert mgr.connect_attempts == 2
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_crashed_sequence_releases_waiters(self, opener, caplog):
        mgr = make_manager(ScriptedProber(default=9000), opener, join_timeout=None)

        with (
            patch.object(mgr, "_attempt_connect", AsyncMock(side_effect=RuntimeError("bug"))),
            caplog.at_level(logging.ERROR, logger="cdp_link.transport.connection_manager"),
        ):
            handle = await asyncio.wait_for(mgr.get_handle(), timeout=1.0)

        assert handle is None
        assert mgr.state is ConnectionState.DISCONNECTED
        assert any("Connect sequence failed" in r.getMessage() for r in caplog.records)
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_failing_close_during_shutdown_is_logged(self, opener, caplog):
        mgr = make_manager(ScriptedProber(default=9000), opener)
        _ = await mgr.get_handle()
        opener.handles[0].close = AsyncMock(side_effect=OSError("gone"))  # type: ignore[method-assign]

        with caplog.at_level(logging.ERROR, logger="cdp_link.transport.connection_manager"):
            await mgr.shutdown()

        assert mgr.closed is True
        assert mgr.is_connected() is False
        assert any("Error closing DevTools handle" in r.getMessage() for r in caplog.records)


class TestShutdown:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_handle(self, opener):
        mgr = make_manager(ScriptedProber(default=9000), opener)
        _ = await mgr.get_handle()

        await mgr.shutdown()

        assert opener.handles[0].closed is True
        assert mgr.is_connected() is False
        assert mgr.closed is True

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, opener):
        mgr = make_manager(ScriptedProber(default=9000), opener)
        _ = await mgr.get_handle()

        await mgr.shutdown()
        await mgr.shutdown()

        assert opener.handles[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_shutdown_stops_unbounded_retry_and_releases_waiters(self, opener, fast_policy):
        prober = ScriptedProber(default=None)
        mgr = make_manager(prober, opener, policy=fast_policy, join_timeout=None, instant=False)
        waiter = asyncio.create_task(mgr.get_handle())
        await wait_until(lambda: mgr.connect_attempts >= 2)

        await mgr.shutdown()
        attempts = mgr.connect_attempts
        await asyncio.sleep(0.05)

        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert mgr.connect_attempts == attempts
        assert mgr.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_get_handle_after_shutdown(self, opener):
        prober = ScriptedProber(default=9000)
        mgr = make_manager(prober, opener)
        await mgr.shutdown()

        assert await mgr.get_handle() is None
        assert prober.calls == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reconnect(self, opener):
        mgr = make_manager(
            ScriptedProber(default=9000),
            opener,
            policy=RetryPolicy(60.0, 60.0),
            instant=False,
        )
        _ = await mgr.get_handle()
        opener.handles[0].drop()

        await mgr.shutdown()
        await asyncio.sleep(0.02)

        assert len(opener.calls) == 1

    @pytest.mark.asyncio
    async def test_disconnect_after_shutdown_is_ignored(self, opener):
        mgr = make_manager(ScriptedProber(default=9000), opener)
        _ = await mgr.get_handle()
        await mgr.shutdown()

        opener.handles[0].drop()
        await asyncio.sleep(0.01)

        assert len(opener.calls) == 1
        assert mgr.last_disconnect is None
