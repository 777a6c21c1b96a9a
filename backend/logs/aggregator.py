"""Merge log lines from durable, synthesized, local and live sources.

The log view for an execution is stitched together from four places:

- durable: lines persisted in the ExecutionStore
- historical: lines synthesized from a settled snapshot
- local: lines produced by this client (approval transitions, notices)
- live: fragments read off the push channel

Settled lines come first in time order, followed by live lines in time
order. Lines are considered duplicates when message and timestamp match.
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable

from graph.models import ExecutionGraph, LogEntry, LogType


def merge(
    durable: Iterable[LogEntry],
    historical: Iterable[LogEntry],
    local: Iterable[LogEntry],
    live_fragments: Iterable[LogEntry],
) -> list[LogEntry]:
    """Combine all log sources into display order.

    The first occurrence of each (message, timestamp) pair wins, in the
    argument order above. Non-live entries are sorted by timestamp and
    placed before live entries, which are sorted by timestamp too.
    """
    seen: set[tuple[str, float]] = set()
    settled: list[LogEntry] = []
    live: list[LogEntry] = []

    for source in (durable, historical, local, live_fragments):
        for entry in source:
            key = (entry.message, entry.timestamp)
            if key in seen:
                continue
            seen.add(key)
            (live if entry.is_live else settled).append(entry)

    # sorted() is stable, so equal timestamps keep source order
    return sorted(settled, key=lambda e: e.timestamp) + sorted(live, key=lambda e: e.timestamp)


def _entry(
    graph: ExecutionGraph,
    suffix: str,
    log_type: LogType,
    message: str,
    timestamp: float,
    **fields: str | None,
) -> LogEntry:
    return LogEntry(
        id=f"hist_{graph.execution.id}_{suffix}",
        execution_id=graph.execution.id,
        log_type=log_type,
        message=message,
        timestamp=timestamp,
        is_live=False,
        **fields,
    )


def synthesize_historical(graph: ExecutionGraph) -> list[LogEntry]:
    """Derive settled log lines from an execution snapshot.

    Produces a start line, a line per agent, and the execution error if any.
    Ids are deterministic so re-synthesizing yields identical entries.
    """
    execution = graph.execution
    entries = [
        _entry(
            graph,
            "start",
            LogType.INFO,
            f"Agent execution started (ID: {execution.id})",
            execution.started_at or execution.created_at,
        ),
        _entry(
            graph,
            "status",
            LogType.STATUS_UPDATE,
            f"Execution {execution.status.value}",
            execution.completed_at or execution.started_at or execution.created_at,
        ),
    ]

    for agent in graph.agents:
        line = f"Agent {agent.role} ({agent.agent_id}) {agent.status.value}"
        if agent.current_task:
            line = f"{line}: {agent.current_task}"
        entries.append(
            _entry(
                graph,
                f"agent_{agent.id}",
                LogType.AGENT_EXECUTION,
                line,
                agent.last_updated or agent.created_at,
                agent_role=agent.role,
                agent_id=agent.id,
            )
        )

    if execution.error:
        entries.append(
            _entry(
                graph,
                "error",
                LogType.ERROR,
                f"Execution failed: {execution.error}",
                execution.completed_at or execution.created_at,
            )
        )
    return entries


def filter_logs(
    entries: Iterable[LogEntry],
    log_type: LogType | None = None,
    query: str | None = None,
) -> list[LogEntry]:
    """Filter by type and a case-insensitive search term."""
    needle = query.strip().lower() if query else ""
    result: list[LogEntry] = []
    for entry in entries:
        if log_type is not None and entry.log_type != log_type:
            continue
        if needle:
            haystack = " ".join(
                part
                for part in (
                    entry.message,
                    entry.log_type.value,
                    entry.agent_role or "",
                    entry.tool_name or "",
                )
            ).lower()
            if needle not in haystack:
                continue
        result.append(entry)
    return result


class LiveLogBuffer:
    """Per-execution buffers for locally generated lines and live fragments.

    Buffers are dropped when the user switches to another execution, since
    the new execution's settled lines come from storage.
    """

    MAX_ENTRIES_PER_EXECUTION = 5000

    def __init__(self) -> None:
        self._local: dict[str, list[LogEntry]] = defaultdict(list)
        self._live: dict[str, list[LogEntry]] = defaultdict(list)

    def _append(self, bucket: dict[str, list[LogEntry]], entry: LogEntry) -> None:
        entries = bucket[entry.execution_id]
        entries.append(entry)
        if len(entries) > self.MAX_ENTRIES_PER_EXECUTION:
            bucket[entry.execution_id] = entries[-self.MAX_ENTRIES_PER_EXECUTION:]

    def add_local(self, entry: LogEntry) -> None:
        self._append(self._local, entry)

    def add_fragment(self, entry: LogEntry) -> None:
        self._append(self._live, entry)

    def local(self, execution_id: str) -> list[LogEntry]:
        return list(self._local.get(execution_id, []))

    def fragments(self, execution_id: str) -> list[LogEntry]:
        return list(self._live.get(execution_id, []))

    def clear(self, execution_id: str | None = None) -> None:
        """Drop buffers for one execution, or all of them."""
        if execution_id is None:
            self._local.clear()
            self._live.clear()
            return
        self._local.pop(execution_id, None)
        self._live.pop(execution_id, None)

    def keep_only(self, execution_id: str) -> None:
        """Drop buffers of every execution except ``execution_id``."""
        for bucket in (self._local, self._live):
            for key in [k for k in bucket if k != execution_id]:
                del bucket[key]


def new_local_entry(
    execution_id: str,
    message: str,
    log_type: LogType = LogType.INFO,
    **fields: str | None,
) -> LogEntry:
    """Create a locally generated live log line."""
    return LogEntry(
        id=f"local_{uuid.uuid4().hex[:12]}",
        execution_id=execution_id,
        log_type=log_type,
        message=message,
        is_live=True,
        **fields,
    )
