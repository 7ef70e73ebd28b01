"""Metrics module."""

from . import registry
from .registry import (
    record_connect_attempt,
    record_connection_state,
    record_disconnect,
    record_probe,
    start_metrics_server,
)

__all__ = [
    "record_connect_attempt",
    "record_connection_state",
    "record_disconnect",
    "record_probe",
    "registry",
    "start_metrics_server",
]
