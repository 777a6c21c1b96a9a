"""Fetch execution snapshots from durable storage.

The loader is the I/O boundary for snapshot reads: database failures are
caught here and returned as a ``SnapshotResult`` instead of propagating into
the Reconciler.
"""

from dataclasses import dataclass

import structlog

from graph.models import Execution, ExecutionGraph
from models.database import ExecutionStore

logger = structlog.get_logger(__name__)


@dataclass
class SnapshotResult:
    """Outcome of a snapshot fetch.

    Attributes:
        execution_id: The execution that was requested.
        graph: The loaded subtree on success.
        not_found: True if storage has no such execution.
        error: Human-readable failure description.
    """

    execution_id: str
    graph: ExecutionGraph | None = None
    not_found: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.graph is not None


class SnapshotLoader:
    """Reads execution subtrees and history listings from an ExecutionStore."""

    def __init__(self, store: ExecutionStore) -> None:
        self.store = store

    async def load_execution_graph(self, execution_id: str) -> SnapshotResult:
        try:
            graph = await self.store.get_execution_graph(execution_id)
        except Exception as e:
            logger.error("snapshot_load_failed", execution_id=execution_id, error=str(e))
            return SnapshotResult(
                execution_id=execution_id,
                error=f"Failed to load execution {execution_id}: {e}",
            )

        if graph is None:
            logger.warning("snapshot_not_found", execution_id=execution_id)
            return SnapshotResult(
                execution_id=execution_id,
                not_found=True,
                error=f"Execution {execution_id} not found",
            )
        if not graph.execution.id:
            logger.error("snapshot_missing_execution_id", execution_id=execution_id)
            return SnapshotResult(
                execution_id=execution_id,
                error="Snapshot is missing its execution id",
            )

        logger.debug(
            "snapshot_loaded",
            execution_id=execution_id,
            agents=len(graph.agents),
            tasks=len(graph.tasks),
            tool_executions=len(graph.tool_executions),
        )
        return SnapshotResult(execution_id=execution_id, graph=graph)

    async def load_execution_history(self, limit: int = 50, offset: int = 0) -> list[Execution]:
        """List past executions, newest first. Failures yield an empty list."""
        try:
            return await self.store.list_executions(limit=limit, offset=offset)
        except Exception as e:
            logger.error("execution_history_load_failed", error=str(e))
            return []
