"""Minimal Chrome DevTools Protocol client over an aiohttp websocket.

The client knows only how to correlate command replies with their requests
and how to fan out events. It does not interpret any protocol domain.
Disconnect listeners fire exactly once, however the socket ends.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections import defaultdict
from collections.abc import Callable
from typing import Any, cast

import aiohttp

from cdp_link.instrumentation import timed_async
from cdp_link.logging_abstraction import get_logger
from cdp_link.transport.exceptions import CdpCommandError, CdpConnectionError

__all__ = ["CdpClient"]

logger = get_logger(__name__)

JSONDict = dict[str, Any]
EventCallback = Callable[[JSONDict], None]
DisconnectCallback = Callable[[str], None]

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_COMMAND_TIMEOUT_SECONDS = 10.0
READER_DRAIN_TIMEOUT_SECONDS = 1.0


class CdpClient:
    """One websocket session to a DevTools endpoint.

    Use :meth:`open` to create instances; the constructor expects an already
    connected websocket.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        websocket: aiohttp.ClientWebSocketResponse,
        port: int,
        host: str = "127.0.0.1",
        version_info: JSONDict | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.version_info: JSONDict = version_info or {}
        self.command_timeout = command_timeout
        self._session = session
        self._ws = websocket
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[JSONDict]]] = {}
        self._event_listeners: defaultdict[str, list[EventCallback]] = defaultdict(list)
        self._disconnect_listeners: list[DisconnectCallback] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reason: str | None = None

    @classmethod
    @timed_async("cdp_open")
    async def open(
        cls,
        port: int,
        host: str = "127.0.0.1",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> CdpClient:
        """Resolve the browser websocket URL for ``port`` and connect to it.

        Raises:
            CdpConnectionError: On any failure; the HTTP session is released first
        """
        session = aiohttp.ClientSession()
        opened = False
        try:
            version_info = await cls._fetch_version_info(session, host, port, connect_timeout)
            ws_url = version_info.get("webSocketDebuggerUrl")
            if not isinstance(ws_url, str) or not ws_url:
                msg = "/json/version has no webSocketDebuggerUrl"
                raise CdpConnectionError(msg, port=port)

            websocket = await asyncio.wait_for(
                session.ws_connect(ws_url, max_msg_size=0, autoping=True),
                timeout=connect_timeout,
            )
            opened = True
        except (aiohttp.ClientError, TimeoutError, OSError, ValueError) as e:
            reason = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            raise CdpConnectionError(reason, port=port) from e
        finally:
            if not opened:
                await session.close()

        client = cls(
            session,
            websocket,
            port,
            host=host,
            version_info=version_info,
            command_timeout=command_timeout,
        )
        client._reader_task = asyncio.create_task(client._read_loop(), name=f"cdp-reader-{port}")
        logger.info(
            "CDP websocket open",
            extra={"port": port, "browser": version_info.get("Browser", "unknown")},
        )
        return client

    @staticmethod
    async def _fetch_version_info(
        session: aiohttp.ClientSession,
        host: str,
        port: int,
        timeout: float,
    ) -> JSONDict:
        url = f"http://{host}:{port}/json/version"
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            response.raise_for_status()
            body = await response.json(content_type=None)
        if not isinstance(body, dict):
            msg = f"expected a JSON object from {url}"
            raise ValueError(msg)
        return cast("JSONDict", body)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def on(self, event_method: str, callback: EventCallback) -> None:
        """Subscribe to a protocol event such as ``Page.loadEventFired``."""
        self._event_listeners[event_method].append(callback)

    def add_disconnect_listener(self, callback: DisconnectCallback) -> None:
        """Call ``callback(reason)`` once when the socket ends.

        Registering on an already closed client schedules the call on the loop.
        """
        if self._closed:
            asyncio.get_running_loop().call_soon(callback, self._close_reason or "closed")
            return
        self._disconnect_listeners.append(callback)

    async def send(
        self,
        method: str,
        params: JSONDict | None = None,
        timeout: float | None = None,
    ) -> JSONDict:
        """Send a command and wait for its result.

        Raises:
            CdpConnectionError: If the handle is closed or the socket drops mid-command
            CdpCommandError: If the target returns a protocol error
            TimeoutError: If no reply arrives in time
        """
        if self._closed or self._ws.closed:
            msg = f"cannot send {method}: handle is closed"
            raise CdpConnectionError(msg, port=self.port)

        msg_id = next(self._ids)
        future: asyncio.Future[JSONDict] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (method, future)
        payload: JSONDict = {"id": msg_id, "method": method}
        if params:
            payload["params"] = params

        try:
            await self._ws.send_str(json.dumps(payload))
            return await asyncio.wait_for(future, timeout or self.command_timeout)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            msg = f"send {method} failed: {e}"
            raise CdpConnectionError(msg, port=self.port) from e
        finally:
            _ = self._pending.pop(msg_id, None)

    async def close(self) -> None:
        """Close the websocket and release the HTTP session (idempotent)."""
        if self._closed:
            return
        self._close_reason = self._close_reason or "closed"
        with contextlib.suppress(aiohttp.ClientError, OSError):
            _ = await self._ws.close()
        if self._reader_task is not None and not self._reader_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=READER_DRAIN_TIMEOUT_SECONDS)
            except TimeoutError:
                _ = self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
        await self._finalize(self._close_reason)

    async def _read_loop(self) -> None:
        reason = "remote_closed"
        try:
            async for message in self._ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._dispatch(message.data)
                    except Exception:
                        logger.exception("Failed to handle CDP frame", extra={"port": self.port})
                elif message.type == aiohttp.WSMsgType.ERROR:
                    reason = "transport_error"
                    logger.warning(
                        "CDP websocket error",
                        extra={"port": self.port, "error": str(self._ws.exception())},
                    )
                    break
        finally:
            await self._finalize(self._close_reason or reason)

    def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Dropping malformed CDP frame", extra={"port": self.port, "size": len(raw)})
            return
        if not isinstance(message, dict):
            return
        message = cast("JSONDict", message)

        msg_id = message.get("id")
        if isinstance(msg_id, int):
            self._resolve_reply(msg_id, message)
            return

        method = message.get("method")
        if isinstance(method, str):
            params = message.get("params")
            event_params = cast("JSONDict", params) if isinstance(params, dict) else {}
            for callback in list(self._event_listeners.get(method, ())):
                try:
                    callback(event_params)
                except Exception:
                    logger.exception("CDP event listener failed", extra={"event": method})

    def _resolve_reply(self, msg_id: int, message: JSONDict) -> None:
        pending = self._pending.get(msg_id)
        if pending is None:
            logger.debug("Reply for unknown command id", extra={"id": msg_id})
            return
        method, future = pending
        if future.done():
            return
        error = message.get("error")
        if isinstance(error, dict):
            error_obj = cast("JSONDict", error)
            code = error_obj.get("code")
            future.set_exception(
                CdpCommandError(
                    method,
                    code if isinstance(code, int) and not isinstance(code, bool) else 0,
                    str(error_obj.get("message", "")),
                ),
            )
        else:
            result = message.get("result")
            future.set_result(cast("JSONDict", result) if isinstance(result, dict) else {})

    async def _finalize(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        for method, future in self._pending.values():
            if not future.done():
                future.set_exception(CdpConnectionError(f"connection lost during {method}", port=self.port))
        self._pending.clear()

        with contextlib.suppress(aiohttp.ClientError, OSError):
            await self._session.close()

        logger.info("CDP websocket closed", extra={"port": self.port, "reason": reason})
        listeners, self._disconnect_listeners = self._disconnect_listeners, []
        for callback in listeners:
            try:
                callback(reason)
            except Exception:
                logger.exception("Disconnect listener failed", extra={"port": self.port})
