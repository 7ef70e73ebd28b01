"""Value types shared by the prober, the connection manager and the health route."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class ConnectionState(Enum):
    """Connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@runtime_checkable
class DebugHandle(Protocol):
    """What the manager needs from an open transport.

    ``CdpClient`` is the production implementation; tests substitute fakes.
    """

    def add_disconnect_listener(self, callback: Callable[[str], None]) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ConnectionStatus:
    """Point-in-time view of the manager, safe to hand to any caller.

    Attributes:
        state: Connection state at snapshot time
        port: Port of the live connection, None unless CONNECTED
        last_sync: Unix time of the most recent successful connect (0.0 if never)
    """

    state: ConnectionState
    port: int | None
    last_sync: float

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


@dataclass(frozen=True)
class DisconnectEvent:
    """Emitted when an established connection reports loss.

    Attributes:
        port: Port the lost connection was on
        reason: Why the transport ended (e.g. "remote_closed", "closed")
        occurred_at: Unix time the manager observed the loss
    """

    port: int | None
    reason: str
    occurred_at: float
