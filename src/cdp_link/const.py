import os
from collections.abc import Mapping

from cdp_link import __version__

__all__ = [
    "CDP_LINK_DEBUG",
    "CDP_LINK_HOST",
    "CDP_LINK_LOG_FORMAT",
    "CDP_LINK_LOG_HUMAN_OUTPUT",
    "CDP_LINK_LOG_JSON_FILE",
    "CDP_LINK_PERF_THRESHOLD_MS",
    "CDP_LINK_PERF_TRACKING",
    "CDP_LINK_PORT",
    "CDP_LINK_VERSION",
    "DEFAULT_CDP_PORTS",
    "HEALTH_SRV_START_TASK_NAME",
    "WARM_CONNECT_TASK_NAME",
    "YES_ANSWER",
    "env_bool",
    "env_float",
    "env_int",
    "parse_port_list",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", "on", "o")
CDP_LINK_VERSION: str = __version__

DEFAULT_CDP_PORTS: tuple[int, ...] = (9000, 9001, 9002, 9003)
MAX_TCP_PORT = 65535


def parse_port_list(raw: str | None, default: tuple[int, ...] = DEFAULT_CDP_PORTS) -> list[int]:
    """Parse a comma separated port list, keeping the configured order.

    Blank, non-numeric and out of range entries are dropped. A missing or
    blank value (or one where nothing survives) yields ``default``.
    """
    if not raw or not raw.strip():
        return list(default)

    ports: list[int] = []
    for chunk in raw.split(","):
        token = chunk.strip()
        if not token:
            continue
        try:
            port = int(token)
        except ValueError:
            continue
        if 0 < port <= MAX_TCP_PORT:
            ports.append(port)
    return ports or list(default)


def env_float(name: str, default: float, environ: Mapping[str, str] | None = None) -> float:
    """Read a float from the environment, falling back on blank or malformed values."""
    source = os.environ if environ is None else environ
    value = source.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_int(name: str, default: int, environ: Mapping[str, str] | None = None) -> int:
    """Read an int from the environment, falling back on blank or malformed values."""
    source = os.environ if environ is None else environ
    value = source.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool, environ: Mapping[str, str] | None = None) -> bool:
    source = os.environ if environ is None else environ
    value = source.get(name)
    if value is None or value == "":
        return default
    return value.casefold() in YES_ANSWER


# Health server
CDP_LINK_HOST: str = os.environ.get("CDP_LINK_HOST", "0.0.0.0")
CDP_LINK_PORT: int = env_int("CDP_LINK_PORT", 3333)
HEALTH_SRV_START_TASK_NAME = "HealthServer_START"
WARM_CONNECT_TASK_NAME = "ConnectionManager_WARM"

CDP_LINK_DEBUG: bool = env_bool("CDP_LINK_DEBUG", False)

# Logging Configuration
CDP_LINK_LOG_FORMAT: str = os.environ.get("CDP_LINK_LOG_FORMAT", "human")  # "json", "human", or "both"
CDP_LINK_LOG_JSON_FILE: str | None = os.environ.get("CDP_LINK_LOG_JSON_FILE") or None
CDP_LINK_LOG_HUMAN_OUTPUT: str = os.environ.get("CDP_LINK_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or path

# Performance Instrumentation
CDP_LINK_PERF_TRACKING: bool = env_bool("CDP_LINK_PERF_TRACKING", True)
CDP_LINK_PERF_THRESHOLD_MS: int = env_int("CDP_LINK_PERF_THRESHOLD_MS", 500)
