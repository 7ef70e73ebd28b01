"""Exception hierarchy for the CDP transport layer.

Nothing here crosses the :class:`~cdp_link.transport.connection_manager.ConnectionManager`
boundary: the manager logs these and retries. They reach callers only when a
caller uses a handle directly (``CdpClient.send``).
"""

from __future__ import annotations


class CdpError(Exception):
    """Base class for every error raised by cdp_link.transport."""


class CdpConnectionError(CdpError):
    """The websocket could not be opened, or is no longer open.

    Raised when:
    - ``/json/version`` is unreachable or lacks ``webSocketDebuggerUrl``
    - The websocket handshake fails or times out
    - A command is sent on, or pending on, a closed handle

    Note: Named CdpConnectionError to avoid shadowing Python's built-in ConnectionError.

    Attributes:
        reason: Specific failure reason
        port: Target port, when known

    """

    def __init__(self, reason: str, port: int | None = None) -> None:
        self.reason: str = reason
        self.port: int | None = port
        where = f" (port: {port})" if port is not None else ""
        super().__init__(f"CDP connection error: {reason}{where}")


class CdpCommandError(CdpError):
    """The target answered a command with a protocol error object.

    Attributes:
        method: CDP method that failed (e.g. ``Runtime.evaluate``)
        code: Protocol error code
        error_message: Protocol error message

    """

    def __init__(self, method: str, code: int, error_message: str) -> None:
        self.method: str = method
        self.code: int = code
        self.error_message: str = error_message
        super().__init__(f"CDP command {method} failed: {error_message} (code: {code})")
