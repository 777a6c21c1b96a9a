"""Execution log view assembly."""

from logs.aggregator import (
    LiveLogBuffer,
    filter_logs,
    merge,
    new_local_entry,
    synthesize_historical,
)

__all__ = [
    "LiveLogBuffer",
    "filter_logs",
    "merge",
    "new_local_entry",
    "synthesize_historical",
]
