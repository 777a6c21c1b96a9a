"""SQLite-backed durable storage for executions, using aiosqlite.

The ExecutionStore keeps every entity the tracker has seen so that past
executions can be reopened after the live stream is gone. Write methods
catch and log their own errors: a storage failure must never disturb the
in-memory view, which stays authoritative for the session.

Tables:
    executions: Root executions (status, result, timestamps).
    agents: Agents per execution.
    tasks: Sub-tasks per execution.
    tool_executions: Tool calls, upserted by id on every transition.
    execution_logs: Append-only log lines per execution.

Usage:
    >>> from models.database import ExecutionStore
    >>> store = ExecutionStore("./data/executions.db")
    >>> await store.init()
    >>> await store.save_execution(Execution(id="exec_1", task_description="Plan a trip"))
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from graph.models import (
    Agent,
    Execution,
    ExecutionGraph,
    ExecutionStatus,
    LogEntry,
    Task,
    ToolExecution,
)

logger = structlog.get_logger(__name__)

_TERMINAL_EXECUTION_VALUES = frozenset(
    {ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value, ExecutionStatus.ABORTED.value}
)

_EXECUTION_COLUMNS = """
    e.*,
    (SELECT COUNT(*) FROM agents a WHERE a.execution_id = e.id) AS total_agents,
    (SELECT COUNT(*) FROM tasks t WHERE t.execution_id = e.id) AS total_tasks,
    (SELECT COUNT(*) FROM tool_executions x WHERE x.execution_id = e.id)
        AS total_tool_executions
"""


def _loads_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


def _loads_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _row_to_execution(row: aiosqlite.Row) -> Execution:
    return Execution.model_validate(dict(row))


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    data = dict(row)
    data["expertise"] = _loads_list(data.get("expertise"))
    return Agent.model_validate(data)


def _row_to_tool(row: aiosqlite.Row) -> ToolExecution:
    data = dict(row)
    data["arguments"] = _loads_dict(data.get("arguments"))
    data["human_approved"] = bool(data.get("human_approved"))
    return ToolExecution.model_validate(data)


def _row_to_log(row: aiosqlite.Row) -> LogEntry:
    data = dict(row)
    data["is_live"] = bool(data.get("is_live"))
    return LogEntry.model_validate(data)


class ExecutionStore:
    """Async SQLite store for execution history.

    Write methods never raise. Read methods used for history listings return
    empty results on failure. ``get_execution_graph`` is the exception: it
    returns None only when the execution does not exist and lets database
    errors propagate, so callers can tell "missing" from "broken".

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create tables and indexes if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS executions (
                        id TEXT PRIMARY KEY,
                        task_description TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'pending',
                        result TEXT,
                        error TEXT,
                        created_at REAL NOT NULL,
                        started_at REAL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS agents (
                        id TEXT PRIMARY KEY,
                        execution_id TEXT NOT NULL,
                        agent_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'idle',
                        current_task TEXT,
                        expertise TEXT,
                        created_at REAL NOT NULL,
                        completed_at REAL,
                        last_updated REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        id TEXT PRIMARY KEY,
                        execution_id TEXT NOT NULL,
                        agent_id TEXT NOT NULL,
                        task_description TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'pending',
                        priority INTEGER NOT NULL DEFAULT 0,
                        iterations INTEGER NOT NULL DEFAULT 0,
                        max_iterations INTEGER NOT NULL DEFAULT 10,
                        result TEXT,
                        error TEXT,
                        created_at REAL NOT NULL,
                        completed_at REAL,
                        last_updated REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS tool_executions (
                        id TEXT PRIMARY KEY,
                        execution_id TEXT,
                        task_id TEXT,
                        agent_id TEXT,
                        tool_name TEXT NOT NULL,
                        mcp_server TEXT,
                        arguments TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        result TEXT,
                        error TEXT,
                        execution_time_ms INTEGER,
                        human_approved INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL,
                        completed_at REAL,
                        last_updated REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS execution_logs (
                        id TEXT PRIMARY KEY,
                        execution_id TEXT NOT NULL,
                        log_type TEXT NOT NULL,
                        message TEXT NOT NULL,
                        timestamp REAL NOT NULL,
                        agent_role TEXT,
                        agent_id TEXT,
                        task_id TEXT,
                        tool_name TEXT,
                        tool_execution_id TEXT,
                        is_live INTEGER NOT NULL DEFAULT 0
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_executions_created_at
                    ON executions(created_at DESC)
                """)
                for table in ("agents", "tasks", "tool_executions", "execution_logs"):
                    await db.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_execution_id "
                        f"ON {table}(execution_id)"
                    )
                await db.commit()
            logger.info("execution_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "execution_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Inserts
    # -----------------------------------------------------------------

    async def save_execution(self, execution: Execution) -> None:
        """Insert an execution record; an existing record is left untouched."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO executions
                        (id, task_description, status, result, error,
                         created_at, started_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        execution.id,
                        execution.task_description,
                        execution.status.value,
                        execution.result,
                        execution.error,
                        execution.created_at,
                        execution.started_at,
                        execution.completed_at,
                    ),
                )
                await db.commit()
            logger.debug("execution_saved", execution_id=execution.id)
        except Exception as e:
            logger.error("execution_save_failed", execution_id=execution.id, error=str(e))

    async def save_agent(self, agent: Agent) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO agents
                        (id, execution_id, agent_id, role, status, current_task,
                         expertise, created_at, completed_at, last_updated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        agent.id,
                        agent.execution_id,
                        agent.agent_id,
                        agent.role,
                        agent.status.value,
                        agent.current_task,
                        json.dumps(agent.expertise),
                        agent.created_at,
                        agent.completed_at,
                        agent.last_updated,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("agent_save_failed", agent_id=agent.id, error=str(e))

    async def save_task(self, task: Task) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO tasks
                        (id, execution_id, agent_id, task_description, status,
                         priority, iterations, max_iterations, result, error,
                         created_at, completed_at, last_updated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task.id,
                        task.execution_id,
                        task.agent_id,
                        task.task_description,
                        task.status.value,
                        task.priority,
                        task.iterations,
                        task.max_iterations,
                        task.result,
                        task.error,
                        task.created_at,
                        task.completed_at,
                        task.last_updated,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("task_save_failed", task_id=task.id, error=str(e))

    async def upsert_tool_execution(
        self, tool: ToolExecution, *, replace: bool = True
    ) -> None:
        """Write a tool call keyed by id.

        Args:
            tool: The full tool call record.
            replace: Overwrite an existing row (approval transitions). With
                False an existing row is kept (re-announced requests).
        """
        verb = "INSERT OR REPLACE" if replace else "INSERT OR IGNORE"
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"""
                    {verb} INTO tool_executions
                        (id, execution_id, task_id, agent_id, tool_name, mcp_server,
                         arguments, status, result, error, execution_time_ms,
                         human_approved, created_at, completed_at, last_updated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tool.id,
                        tool.execution_id,
                        tool.task_id,
                        tool.agent_id,
                        tool.tool_name,
                        tool.mcp_server,
                        json.dumps(tool.arguments, default=str),
                        tool.status.value,
                        tool.result,
                        tool.error,
                        tool.execution_time_ms,
                        int(tool.human_approved),
                        tool.created_at,
                        tool.completed_at,
                        tool.last_updated,
                    ),
                )
                await db.commit()
            logger.debug(
                "tool_execution_saved",
                tool_execution_id=tool.id,
                status=tool.status.value,
            )
        except Exception as e:
            logger.error("tool_execution_save_failed", tool_execution_id=tool.id, error=str(e))

    async def append_log(self, entry: LogEntry) -> None:
        """Append a log line. Re-appending the same entry id is a no-op."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO execution_logs
                        (id, execution_id, log_type, message, timestamp, agent_role,
                         agent_id, task_id, tool_name, tool_execution_id, is_live)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.execution_id,
                        entry.log_type.value,
                        entry.message,
                        entry.timestamp,
                        entry.agent_role,
                        entry.agent_id,
                        entry.task_id,
                        entry.tool_name,
                        entry.tool_execution_id,
                        int(entry.is_live),
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("log_append_failed", execution_id=entry.execution_id, error=str(e))

    # -----------------------------------------------------------------
    # Status updates
    # -----------------------------------------------------------------

    async def update_execution(
        self,
        execution_id: str,
        status: str | None = None,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        """Merge reported fields into an execution row and stamp timestamps."""
        now = time.time()
        terminal = status in _TERMINAL_EXECUTION_VALUES
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE executions
                    SET status = COALESCE(?, status),
                        result = COALESCE(?, result),
                        error = COALESCE(?, error),
                        started_at = CASE
                            WHEN ? = 'running' AND started_at IS NULL THEN ?
                            ELSE started_at END,
                        completed_at = CASE
                            WHEN ? AND completed_at IS NULL THEN ?
                            ELSE completed_at END
                    WHERE id = ?
                    """,
                    (status, result, error, status, now, int(terminal), now, execution_id),
                )
                await db.commit()
        except Exception as e:
            logger.error("execution_update_failed", execution_id=execution_id, error=str(e))

    async def update_agent(
        self,
        execution_id: str,
        agent_ref: str | None,
        role: str | None,
        status: str | None = None,
        current_task: str | None = None,
    ) -> bool:
        """Update the first agent that resolves from ``agent_ref`` or ``role``.

        Resolution order mirrors the in-memory resolver: internal id,
        external id, exact role, then role containment.

        Returns:
            True if a row was updated.
        """
        candidates: list[tuple[str, str]] = []
        for ref in (agent_ref, role):
            if not ref:
                continue
            candidates.extend(
                [
                    ("id = ?", ref),
                    ("agent_id = ?", ref),
                    ("role = ?", ref),
                    ("LOWER(role) LIKE '%' || LOWER(?) || '%'", ref),
                ]
            )
        try:
            async with aiosqlite.connect(self.db_path) as db:
                for clause, value in candidates:
                    cursor = await db.execute(
                        f"""
                        SELECT id FROM agents
                        WHERE execution_id = ? AND {clause}
                        ORDER BY created_at, rowid LIMIT 1
                        """,
                        (execution_id, value),
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        continue
                    await db.execute(
                        """
                        UPDATE agents
                        SET status = COALESCE(?, status),
                            current_task = COALESCE(?, current_task),
                            last_updated = ?
                        WHERE id = ?
                        """,
                        (status, current_task, time.time(), row[0]),
                    )
                    await db.commit()
                    return True
            return False
        except Exception as e:
            logger.error("agent_update_failed", execution_id=execution_id, error=str(e))
            return False

    async def update_task(
        self,
        task_id: str,
        status: str | None = None,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE tasks
                    SET status = COALESCE(?, status),
                        result = COALESCE(?, result),
                        error = COALESCE(?, error),
                        last_updated = ?
                    WHERE id = ?
                    """,
                    (status, result, error, time.time(), task_id),
                )
                await db.commit()
        except Exception as e:
            logger.error("task_update_failed", task_id=task_id, error=str(e))

    async def update_tool_execution(
        self,
        tool_execution_id: str,
        status: str | None = None,
        result: str | None = None,
        error: str | None = None,
        execution_time_ms: int | None = None,
    ) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE tool_executions
                    SET status = COALESCE(?, status),
                        result = COALESCE(?, result),
                        error = COALESCE(?, error),
                        execution_time_ms = COALESCE(?, execution_time_ms),
                        last_updated = ?
                    WHERE id = ?
                    """,
                    (status, result, error, execution_time_ms, time.time(), tool_execution_id),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "tool_execution_update_failed",
                tool_execution_id=tool_execution_id,
                error=str(e),
            )

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    async def get_execution_graph(self, execution_id: str) -> ExecutionGraph | None:
        """Load a complete execution subtree.

        Returns:
            The subtree, or None if the execution does not exist.

        Raises:
            aiosqlite.Error: On database failure.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions e WHERE e.id = ?",
                (execution_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            execution = _row_to_execution(row)

            cursor = await db.execute(
                "SELECT * FROM agents WHERE execution_id = ? ORDER BY created_at, rowid",
                (execution_id,),
            )
            agents = [_row_to_agent(r) for r in await cursor.fetchall()]

            cursor = await db.execute(
                "SELECT * FROM tasks WHERE execution_id = ? ORDER BY created_at, rowid",
                (execution_id,),
            )
            tasks = [Task.model_validate(dict(r)) for r in await cursor.fetchall()]

            cursor = await db.execute(
                "SELECT * FROM tool_executions WHERE execution_id = ? "
                "ORDER BY created_at, rowid",
                (execution_id,),
            )
            tools = [_row_to_tool(r) for r in await cursor.fetchall()]

            cursor = await db.execute(
                "SELECT * FROM execution_logs WHERE execution_id = ? "
                "ORDER BY timestamp, rowid",
                (execution_id,),
            )
            logs = [_row_to_log(r) for r in await cursor.fetchall()]

        return ExecutionGraph(
            execution=execution,
            agents=agents,
            tasks=tasks,
            tool_executions=tools,
            logs=logs,
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    f"SELECT {_EXECUTION_COLUMNS} FROM executions e WHERE e.id = ?",
                    (execution_id,),
                )
                row = await cursor.fetchone()
                return _row_to_execution(row) if row is not None else None
        except Exception as e:
            logger.error("execution_get_failed", execution_id=execution_id, error=str(e))
            return None

    async def list_executions(self, limit: int = 50, offset: int = 0) -> list[Execution]:
        """List executions, newest first.

        Raises:
            aiosqlite.Error: On database failure.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions e
                ORDER BY e.created_at DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            )
            return [_row_to_execution(r) for r in await cursor.fetchall()]

    async def search_executions(self, query: str, limit: int = 50) -> list[Execution]:
        """Case-insensitive search over task description and result."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                pattern = f"%{query.lower()}%"
                cursor = await db.execute(
                    f"""
                    SELECT {_EXECUTION_COLUMNS} FROM executions e
                    WHERE LOWER(e.task_description) LIKE ?
                       OR LOWER(COALESCE(e.result, '')) LIKE ?
                    ORDER BY e.created_at DESC
                    LIMIT ?
                    """,
                    (pattern, pattern, limit),
                )
                return [_row_to_execution(r) for r in await cursor.fetchall()]
        except Exception as e:
            logger.error("execution_search_failed", error=str(e))
            return []

    async def get_stats(self) -> dict[str, int]:
        """Count executions, overall and per status."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT status, COUNT(*) FROM executions GROUP BY status"
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("execution_stats_failed", error=str(e))
            return {"total": 0}
        stats = {str(status): int(count) for status, count in rows}
        stats["total"] = sum(stats.values())
        return stats

    async def get_logs(self, execution_id: str) -> list[LogEntry]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM execution_logs WHERE execution_id = ? "
                    "ORDER BY timestamp, rowid",
                    (execution_id,),
                )
                return [_row_to_log(r) for r in await cursor.fetchall()]
        except Exception as e:
            logger.error("log_list_failed", execution_id=execution_id, error=str(e))
            return []

    # -----------------------------------------------------------------
    # Destructive operations
    # -----------------------------------------------------------------

    async def delete_execution(self, execution_id: str) -> bool:
        """Delete a finished execution and everything under it.

        Running executions are refused; use ``force_delete_execution``.

        Returns:
            True if the execution existed and was removed.
        """
        execution = await self.get_execution(execution_id)
        if execution is None:
            return False
        if execution.status == ExecutionStatus.RUNNING:
            logger.warning("execution_delete_refused_running", execution_id=execution_id)
            return False
        return await self.force_delete_execution(execution_id)

    async def force_delete_execution(self, execution_id: str) -> bool:
        """Delete an execution regardless of its status."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                for table in ("execution_logs", "tool_executions", "tasks", "agents"):
                    await db.execute(
                        f"DELETE FROM {table} WHERE execution_id = ?", (execution_id,)
                    )
                cursor = await db.execute(
                    "DELETE FROM executions WHERE id = ?", (execution_id,)
                )
                deleted = cursor.rowcount > 0
                await db.commit()
            logger.info("execution_deleted", execution_id=execution_id, deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("execution_delete_failed", execution_id=execution_id, error=str(e))
            return False

    async def nuke_all_executions(self) -> int:
        """Delete every execution and all dependent rows.

        Returns:
            Number of execution rows removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM executions")
                count_row = await cursor.fetchone()
                deleted_count = int(count_row[0]) if count_row else 0
                for table in (
                    "execution_logs",
                    "tool_executions",
                    "tasks",
                    "agents",
                    "executions",
                ):
                    await db.execute(f"DELETE FROM {table}")
                await db.commit()
            logger.info("execution_store_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("execution_store_clear_failed", error=str(e))
            return 0
