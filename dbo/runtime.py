from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Condition as _Cond
from typing import Any, Iterable


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Condition(str, Enum):
    """What a dependent must observe on a node before it may launch."""

    STARTED = "started"
    COMPLETED_SUCCESSFULLY = "completed_successfully"


class NodeState(str, Enum):
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    LAUNCH_ERROR = "launch_error"
    PROBE_FAILED = "probe_failed"
    PROBE_EXHAUSTED = "probe_exhausted"
    PROCESS_EXITED = "process_exited"
    TIMEOUT = "timeout"
    DEPENDENCY_FAILED = "dependency_failed"


TERMINAL_STATES = frozenset({NodeState.SUCCEEDED, NodeState.FAILED, NodeState.CANCELLED})
IN_FLIGHT_STATES = frozenset({NodeState.LAUNCHING, NodeState.RUNNING, NodeState.WAITING})

_ALLOWED: dict[NodeState, frozenset[NodeState]] = {
    NodeState.NOT_STARTED: frozenset({NodeState.LAUNCHING, NodeState.CANCELLED}),
    NodeState.LAUNCHING: frozenset({NodeState.RUNNING, NodeState.FAILED, NodeState.CANCELLED}),
    NodeState.RUNNING: frozenset({NodeState.WAITING, NodeState.FAILED, NodeState.CANCELLED}),
    NodeState.WAITING: frozenset({NodeState.SUCCEEDED, NodeState.FAILED, NodeState.CANCELLED}),
    NodeState.SUCCEEDED: frozenset(),
    NodeState.FAILED: frozenset(),
    NodeState.CANCELLED: frozenset(),
}


class InvalidTransition(Exception):
    pass


@dataclass
class NodeRecord:
    node_id: str
    state: NodeState = NodeState.NOT_STARTED
    failure_kind: FailureKind | None = None
    reason: str | None = None
    handle: Any = None
    launch_seq: int | None = None
    started_mono: float | None = None
    finished_mono: float | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def duration_s(self) -> float | None:
        if self.started_mono is None:
            return None
        end = self.finished_mono if self.finished_mono is not None else time.monotonic()
        return round(end - self.started_mono, 3)


class RunState:
    """Shared node-id -> NodeState store for one run.

    Every write happens under the condition's lock and wakes all waiters, so
    a reader that re-evaluates readiness after ``wait_for_change`` always
    sees the latest state.
    """

    def __init__(self, node_ids: Iterable[str]) -> None:
        self.cond = _Cond()
        self.records: dict[str, NodeRecord] = {nid: NodeRecord(node_id=nid) for nid in node_ids}
        self.launch_order: list[str] = []
        self._version = 0

    def state(self, node_id: str) -> NodeState:
        with self.cond:
            return self.records[node_id].state

    def record(self, node_id: str) -> NodeRecord:
        with self.cond:
            return self.records[node_id]

    def snapshot(self) -> dict[str, NodeState]:
        with self.cond:
            return {nid: r.state for nid, r in self.records.items()}

    def transition(
        self,
        node_id: str,
        new_state: NodeState,
        failure_kind: FailureKind | None = None,
        reason: str | None = None,
        handle: Any = None,
    ) -> NodeRecord:
        with self.cond:
            rec = self.records[node_id]
            if new_state not in _ALLOWED[rec.state]:
                raise InvalidTransition(f"{node_id}: {rec.state.value} -> {new_state.value}")
            rec.state = new_state
            if new_state == NodeState.LAUNCHING:
                rec.launch_seq = len(self.launch_order)
                self.launch_order.append(node_id)
                rec.started_mono = time.monotonic()
                rec.started_at = utc_now()
            if handle is not None:
                rec.handle = handle
            if new_state in TERMINAL_STATES:
                rec.failure_kind = failure_kind
                rec.reason = reason
                rec.finished_mono = time.monotonic()
                rec.finished_at = utc_now()
            self._version += 1
            self.cond.notify_all()
            return rec

    def try_transition(self, node_id: str, new_state: NodeState, **kwargs: Any) -> bool:
        """Like transition(), but returns False when the node is already terminal."""
        with self.cond:
            if self.records[node_id].state in TERMINAL_STATES:
                return False
            self.transition(node_id, new_state, **kwargs)
            return True

    def wait_for_change(self, seen: int, timeout: float) -> int:
        """Block until the store changes past version ``seen`` or ``timeout`` elapses."""
        with self.cond:
            if self._version == seen:
                self.cond.wait(timeout)
            return self._version

    @property
    def version(self) -> int:
        with self.cond:
            return self._version

    def all_terminal(self) -> bool:
        with self.cond:
            return all(r.state in TERMINAL_STATES for r in self.records.values())

    def any_in_flight(self) -> bool:
        with self.cond:
            return any(r.state in IN_FLIGHT_STATES for r in self.records.values())

    def live_handles(self) -> list[tuple[str, Any]]:
        with self.cond:
            return [(nid, r.handle) for nid, r in self.records.items() if r.handle is not None]
