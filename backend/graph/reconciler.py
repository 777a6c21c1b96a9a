"""Arbitration between live deltas, durable snapshots, and local actions.

The Reconciler is the single writer of the GraphStore. Its rule is "live
state wins while active": a snapshot of the execution currently on screen is
only installed once that execution has settled, because the durable copy lags
behind the push channel while work is in flight.

Precedence for a snapshot of execution Y while X is loaded:

    nothing loaded        -> install
    Y != X                -> install (switch, X is discarded)
    Y == X, X active      -> discard
    Y == X, X inactive    -> install (durable storage is ground truth)

Deltas are only ever applied to the loaded execution; anything else is
discarded.
"""

from collections.abc import Callable
from enum import StrEnum

import structlog

from graph.deltas import Delta, ExecutionCreated
from graph.models import ExecutionGraph
from graph.store import GraphStore, new_execution_graph

logger = structlog.get_logger(__name__)


class ReconcileOutcome(StrEnum):
    """What the Reconciler did with an input."""

    APPLIED = "applied"
    INSTALLED_FIRST_LOAD = "installed_first_load"
    INSTALLED_SWITCH = "installed_switch"
    INSTALLED_SETTLED = "installed_settled"
    DISCARDED_ACTIVE = "discarded_active"
    DISCARDED_FOREIGN = "discarded_foreign"
    DISCARDED_UNRESOLVED = "discarded_unresolved"
    ABORTED = "aborted"
    IGNORED = "ignored"

    @property
    def changed_graph(self) -> bool:
        return self in _CHANGING_OUTCOMES

    @property
    def replaced_graph(self) -> bool:
        return self in _REPLACING_OUTCOMES


_REPLACING_OUTCOMES = frozenset(
    {
        ReconcileOutcome.INSTALLED_FIRST_LOAD,
        ReconcileOutcome.INSTALLED_SWITCH,
        ReconcileOutcome.INSTALLED_SETTLED,
    }
)
_CHANGING_OUTCOMES = _REPLACING_OUTCOMES | {
    ReconcileOutcome.APPLIED,
    ReconcileOutcome.ABORTED,
}

ChangeListener = Callable[[ReconcileOutcome, str, Delta | None], None]


class Reconciler:
    """Sole mutator of a GraphStore.

    Listeners registered with ``add_listener`` are called synchronously after
    every change with the outcome, the affected execution id, and the delta
    that caused it (None for snapshots and aborts).
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(
        self, outcome: ReconcileOutcome, execution_id: str, delta: Delta | None = None
    ) -> None:
        for listener in list(self._listeners):
            try:
                listener(outcome, execution_id, delta)
            except Exception as e:
                logger.error(
                    "reconciler_listener_failed",
                    outcome=outcome.value,
                    execution_id=execution_id,
                    error=str(e),
                )

    def apply_delta(self, delta: Delta) -> ReconcileOutcome:
        """Apply a normalized delta if it targets the loaded execution."""
        current = self.store.current_execution_id()

        if isinstance(delta, ExecutionCreated):
            if current == delta.execution_id:
                return ReconcileOutcome.IGNORED
            self.store.replace(new_execution_graph(delta))
            outcome = (
                ReconcileOutcome.INSTALLED_FIRST_LOAD
                if current is None
                else ReconcileOutcome.INSTALLED_SWITCH
            )
            logger.info(
                "execution_switched_live",
                execution_id=delta.execution_id,
                previous_execution_id=current,
            )
            self._notify(outcome, delta.execution_id, delta)
            return outcome

        if current is None or delta.execution_id != current:
            logger.debug(
                "delta_discarded_foreign",
                kind=delta.kind,
                execution_id=delta.execution_id,
                current_execution_id=current,
            )
            return ReconcileOutcome.DISCARDED_FOREIGN

        if not self.store.apply_delta(delta):
            logger.debug(
                "delta_discarded_unresolved",
                kind=delta.kind,
                execution_id=delta.execution_id,
            )
            return ReconcileOutcome.DISCARDED_UNRESOLVED

        self._notify(ReconcileOutcome.APPLIED, current, delta)
        return ReconcileOutcome.APPLIED

    def apply_snapshot(self, snapshot: ExecutionGraph) -> ReconcileOutcome:
        """Install a durable snapshot according to the precedence rule."""
        current = self.store.current_execution_id()
        incoming = snapshot.execution.id

        if current is None:
            outcome = ReconcileOutcome.INSTALLED_FIRST_LOAD
        elif current != incoming:
            outcome = ReconcileOutcome.INSTALLED_SWITCH
        elif self.store.is_active():
            logger.info("snapshot_discarded_active", execution_id=incoming)
            return ReconcileOutcome.DISCARDED_ACTIVE
        else:
            outcome = ReconcileOutcome.INSTALLED_SETTLED

        self.store.replace(snapshot)
        logger.info(
            "snapshot_installed",
            execution_id=incoming,
            previous_execution_id=current,
            outcome=outcome.value,
        )
        self._notify(outcome, incoming)
        return outcome

    def abort(self, execution_id: str) -> ReconcileOutcome:
        """Mark the loaded execution as aborted so it stops counting as active."""
        if self.store.current_execution_id() != execution_id:
            return ReconcileOutcome.DISCARDED_FOREIGN
        if not self.store.mark_aborted():
            return ReconcileOutcome.IGNORED
        logger.info("execution_aborted_locally", execution_id=execution_id)
        self._notify(ReconcileOutcome.ABORTED, execution_id)
        return ReconcileOutcome.ABORTED

    def clear(self) -> None:
        self.store.clear()
