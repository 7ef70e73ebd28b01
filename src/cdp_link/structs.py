from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

from cdp_link import const


class LinkEnv(BaseModel):
    """Runtime settings resolved from the environment.

    ``const`` is evaluated at import time; this model is rebuilt after ``--env``
    has loaded a dotenv file so late-loaded variables take effect.
    """

    cdp_ports: list[int] = Field(default_factory=lambda: list(const.DEFAULT_CDP_PORTS))
    cdp_host: str = "127.0.0.1"
    cdp_probe_path: str = "/json/version"
    cdp_probe_timeout: float = 1.0
    cdp_connect_timeout: float = 5.0
    cdp_retry_base_delay: float = 1.0
    cdp_retry_max_delay: float = 30.0
    cdp_join_timeout: float | None = 30.0
    link_host: str = "0.0.0.0"
    link_port: int = 3333
    metrics_enabled: bool = False
    metrics_port: int = 9400
    debug: bool = False

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> LinkEnv:
        """Read every setting, falling back to defaults on missing or malformed values.

        A non-positive ``CDP_JOIN_TIMEOUT`` means "wait without a ceiling".
        """
        env = os.environ if environ is None else environ
        join_timeout = const.env_float("CDP_JOIN_TIMEOUT", 30.0, env)
        base_delay = const.env_float("CDP_RETRY_BASE_DELAY", 1.0, env)
        max_delay = const.env_float("CDP_RETRY_MAX_DELAY", 30.0, env)
        if base_delay <= 0:
            base_delay = 1.0
        max_delay = max(max_delay, base_delay)
        probe_timeout = const.env_float("CDP_PROBE_TIMEOUT", 1.0, env)
        if probe_timeout <= 0:
            probe_timeout = 1.0
        return cls(
            cdp_ports=const.parse_port_list(env.get("CDP_PORTS")),
            cdp_host=env.get("CDP_HOST", "127.0.0.1"),
            cdp_probe_path=env.get("CDP_PROBE_PATH", "/json/version"),
            cdp_probe_timeout=probe_timeout,
            cdp_connect_timeout=const.env_float("CDP_CONNECT_TIMEOUT", 5.0, env),
            cdp_retry_base_delay=base_delay,
            cdp_retry_max_delay=max_delay,
            cdp_join_timeout=join_timeout if join_timeout > 0 else None,
            link_host=env.get("CDP_LINK_HOST", "0.0.0.0"),
            link_port=const.env_int("CDP_LINK_PORT", 3333, env),
            metrics_enabled=const.env_bool("CDP_LINK_METRICS_ENABLED", False, env),
            metrics_port=const.env_int("CDP_LINK_METRICS_PORT", 9400, env),
            debug=const.env_bool("CDP_LINK_DEBUG", False, env),
        )
