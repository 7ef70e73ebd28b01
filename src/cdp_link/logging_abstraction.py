"""Structured logging for cdp-link.

Each logger can write human-readable lines, JSON lines, or both. Records carry
the active correlation ID and any ``extra=`` context passed by the caller.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast, override

from cdp_link.correlation import get_correlation_id

__all__ = [
    "CdpLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "configure_third_party_loggers",
    "get_logger",
]

_THIRD_PARTY_LOGGERS: dict[str, int] = {
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "aiohttp": logging.WARNING,
}


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping) and extra_data:
        return cast("Mapping[str, object]", extra_data)
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }

        context = _context_of(record)
        if context:
            log_data["context"] = dict(context)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``time LEVEL [module:line] [corr-id] > message | key=value ...``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id[:8]}]" if correlation_id else "[--------]"

        formatted = super().format(record)
        context = _context_of(record)
        if context:
            context_str = " | ".join(f"{k}={v}" for k, v in context.items())
            formatted = f"{formatted} | {context_str}"
        return formatted


class CdpLogger:
    """Thin wrapper over :class:`logging.Logger` that accepts structured context.

    Handlers are attached once per logger name, so calling :func:`get_logger`
    repeatedly for the same module does not duplicate output.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
        debug: bool = False,
    ) -> None:
        """Initialize CdpLogger.

        Args:
            name: Logger name (typically module name)
            log_format: Output format - "json", "human", or "both"
            json_file: Path for JSON output file (None disables JSON output)
            human_output: "stdout", "stderr", or file path for human-readable output
            debug: Start at DEBUG instead of INFO

        """
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        self.logger.setLevel(logging.DEBUG if debug else logging.INFO)

        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        handler_level = self.logger.level

        if self.log_format in ("json", "both") and json_file:
            try:
                json_path = Path(json_file)
                json_path.parent.mkdir(parents=True, exist_ok=True)
                json_handler = logging.FileHandler(json_path, mode="a")
            except OSError as e:
                print(f"Warning: Failed to create JSON log file {json_file}: {e}", file=sys.stderr)
            else:
                json_handler.setFormatter(JSONFormatter())
                json_handler.setLevel(handler_level)
                self.logger.addHandler(json_handler)

        if self.log_format in ("human", "both"):
            human_handler = self._human_handler(human_output or "stdout")
            human_handler.setFormatter(HumanReadableFormatter())
            human_handler.setLevel(handler_level)
            self.logger.addHandler(human_handler)

    @staticmethod
    def _human_handler(output: str) -> logging.Handler:
        if output == "stdout":
            return logging.StreamHandler(sys.stdout)
        if output == "stderr":
            return logging.StreamHandler(sys.stderr)
        try:
            human_path = Path(output)
            human_path.parent.mkdir(parents=True, exist_ok=True)
            return logging.FileHandler(human_path, mode="a")
        except OSError as e:
            print(f"Warning: Failed to create human log file {output}: {e}", file=sys.stderr)
            return logging.StreamHandler(sys.stdout)

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        extra_payload = {"extra_data": dict(extra)} if extra else None
        # stacklevel points module/lineno at the caller, not at this wrapper
        self.logger.log(level, msg, *args, extra=extra_payload, stacklevel=3)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        extra_payload = {"extra_data": dict(extra)} if extra else None
        self.logger.exception(msg, *args, extra=extra_payload, stacklevel=2)

    def set_level(self, level: int) -> None:
        """Set the level on the logger and every handler it owns."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> CdpLogger:
    """Get a CdpLogger configured from the ``CDP_LINK_LOG_*`` settings.

    Args:
        name: Logger name
        log_format: Override default format ("json", "human", or "both")
        json_file: Override default JSON output file
        human_output: Override default human-readable output

    Returns:
        CdpLogger instance

    """
    # Imported lazily so const can be patched in tests before loggers exist
    from cdp_link.const import (  # noqa: PLC0415
        CDP_LINK_DEBUG,
        CDP_LINK_LOG_FORMAT,
        CDP_LINK_LOG_HUMAN_OUTPUT,
        CDP_LINK_LOG_JSON_FILE,
    )

    return CdpLogger(
        name=name,
        log_format=log_format or CDP_LINK_LOG_FORMAT,
        json_file=json_file or CDP_LINK_LOG_JSON_FILE,
        human_output=human_output or CDP_LINK_LOG_HUMAN_OUTPUT,
        debug=CDP_LINK_DEBUG,
    )


def configure_third_party_loggers() -> None:
    """Route uvicorn and aiohttp output through one plain stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s.%(msecs)03d %(levelname)s (%(name)s) > %(message)s",
            "%m/%d/%y %H:%M:%S",
        ),
    )
    for name, level in _THIRD_PARTY_LOGGERS.items():
        third_party = logging.getLogger(name)
        third_party.setLevel(level)
        third_party.propagate = False
        if not third_party.handlers:
            third_party.addHandler(handler)
