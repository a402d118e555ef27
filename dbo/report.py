from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .runtime import Condition, FailureKind, NodeState


@dataclass(frozen=True)
class NodeOutcome:
    node_id: str
    state: NodeState
    required_condition: Condition
    duration_s: float | None = None
    failure_kind: FailureKind | None = None
    reason: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def satisfied(self) -> bool:
        if self.state == NodeState.SUCCEEDED:
            return True
        return self.required_condition == Condition.STARTED and self.state == NodeState.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "state": self.state.value,
            "required_condition": self.required_condition.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
            "duration_s": self.duration_s,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeOutcome":
        return cls(
            node_id=data["node_id"],
            state=NodeState(data["state"]),
            required_condition=Condition(data["required_condition"]),
            duration_s=data.get("duration_s"),
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            reason=data.get("reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass(frozen=True)
class RunReport:
    """Final, immutable outcome of one run.

    Outcomes are ordered by launch; nodes that never launched follow in
    declaration order.
    """

    run_id: str
    name: str
    outcomes: tuple[NodeOutcome, ...]
    started_at: str
    finished_at: str

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.satisfied for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def outcome(self, node_id: str) -> NodeOutcome:
        for o in self.outcomes:
            if o.node_id == node_id:
                return o
        raise KeyError(node_id)

    def states(self) -> dict[str, NodeState]:
        return {o.node_id: o.state for o in self.outcomes}

    def failures(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.state == NodeState.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "status": "succeeded" if self.success else "failed",
            "success": self.success,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "nodes": [o.to_dict() for o in self.outcomes],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunReport":
        return cls(
            run_id=data["run_id"],
            name=data["name"],
            outcomes=tuple(NodeOutcome.from_dict(n) for n in data.get("nodes", [])),
            started_at=data["started_at"],
            finished_at=data.get("finished_at") or data["started_at"],
        )
