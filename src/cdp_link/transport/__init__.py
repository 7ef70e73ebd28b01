"""Discovery, connection and lifecycle of the DevTools link."""

from cdp_link.transport.cdp_client import CdpClient
from cdp_link.transport.connection_manager import ConnectionManager
from cdp_link.transport.exceptions import CdpCommandError, CdpConnectionError, CdpError
from cdp_link.transport.port_prober import PortProber
from cdp_link.transport.retry_policy import RetryPolicy
from cdp_link.transport.types import ConnectionState, ConnectionStatus, DebugHandle, DisconnectEvent

__all__ = [
    "CdpClient",
    "CdpCommandError",
    "CdpConnectionError",
    "CdpError",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "DebugHandle",
    "DisconnectEvent",
    "PortProber",
    "RetryPolicy",
]
