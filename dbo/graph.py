from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .invoker import LaunchSpec, validate_node_id
from .probes import HealthProbe, default_probe
from .runtime import Condition, NodeState
from .settings import ConfigError


class DuplicateNode(ConfigError):
    pass


class UnknownNode(ConfigError):
    pass


class CycleDetected(ConfigError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("dependency cycle: " + " -> ".join(cycle))


class UnsatisfiableCondition(ConfigError):
    pass


@dataclass(frozen=True, eq=False)
class ServiceNode:
    id: str
    launch_spec: LaunchSpec | None = None  # None: probe-only node, nothing is launched
    probe: HealthProbe | None = None
    required_condition: Condition = Condition.COMPLETED_SUCCESSFULLY
    description: str = ""

    def __post_init__(self) -> None:
        if self.probe is None:
            object.__setattr__(self, "probe", default_probe(self.required_condition))

    # Nodes are identified by id; probes are stateful and must not take part in equality.
    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ServiceNode) and other.id == self.id


@dataclass(frozen=True)
class DependencyEdge:
    source: str
    target: str
    condition: Condition = Condition.COMPLETED_SUCCESSFULLY


@dataclass
class DependencyGraph:
    """Validated DAG. Edge ``source -> target`` means target waits on source."""

    nodes: dict[str, ServiceNode] = field(default_factory=dict)
    incoming: dict[str, list[DependencyEdge]] = field(default_factory=lambda: defaultdict(list))
    outgoing: dict[str, list[DependencyEdge]] = field(default_factory=lambda: defaultdict(list))
    name: str = "stack"

    def node(self, node_id: str) -> ServiceNode:
        return self.nodes[node_id]

    def dependencies(self, node_id: str) -> list[str]:
        return [e.source for e in self.incoming.get(node_id, [])]

    def dependents(self, node_id: str) -> list[str]:
        return [e.target for e in self.outgoing.get(node_id, [])]

    def descendants(self, node_id: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self.dependents(node_id))
        while stack:
            nid = stack.pop()
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(self.dependents(nid))
        return seen

    def edge_satisfied(self, edge: DependencyEdge, states: Mapping[str, NodeState]) -> bool:
        src_state = states.get(edge.source, NodeState.NOT_STARTED)
        if src_state == NodeState.SUCCEEDED:
            return True
        if edge.condition == Condition.STARTED:
            # A one-shot task is "started" once its process is live.
            src = self.nodes[edge.source]
            return src.required_condition == Condition.COMPLETED_SUCCESSFULLY and src_state in {
                NodeState.RUNNING,
                NodeState.WAITING,
            }
        return False

    def ready_to_launch(self, states: Mapping[str, NodeState]) -> set[ServiceNode]:
        ready: set[ServiceNode] = set()
        for nid, node in self.nodes.items():
            if states.get(nid, NodeState.NOT_STARTED) != NodeState.NOT_STARTED:
                continue
            if all(self.edge_satisfied(e, states) for e in self.incoming.get(nid, [])):
                ready.add(node)
        return ready

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        indegree = {nid: len(self.incoming.get(nid, [])) for nid in self.nodes}
        position = {nid: i for i, nid in enumerate(self.nodes)}
        queue = deque(nid for nid in self.nodes if indegree[nid] == 0)
        order: list[str] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            released = []
            for dep in self.dependents(nid):
                indegree[dep] -= 1
                if indegree[dep] == 0:
                    released.append(dep)
            queue.extend(sorted(released, key=position.__getitem__))
        return order


def _find_cycle(nodes: Iterable[str], outgoing: Mapping[str, list[DependencyEdge]]) -> list[str] | None:
    white, grey, black = 0, 1, 2
    colour = {nid: white for nid in nodes}
    parent: dict[str, str] = {}

    for root in colour:
        if colour[root] != white:
            continue
        colour[root] = grey
        stack = [(root, iter(outgoing.get(root, [])))]
        while stack:
            nid, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                colour[nid] = black
                stack.pop()
                continue
            nxt = edge.target
            if colour[nxt] == grey:
                cycle = [nxt, nid]
                while cycle[-1] != nxt:
                    cycle.append(parent[cycle[-1]])
                cycle.reverse()
                return cycle
            if colour[nxt] == white:
                colour[nxt] = grey
                parent[nxt] = nid
                stack.append((nxt, iter(outgoing.get(nxt, []))))
    return None


def build(nodes: Iterable[ServiceNode], edges: Iterable[DependencyEdge], name: str = "stack") -> DependencyGraph:
    """Validate nodes and edges and return the graph.

    Raises a ConfigError subclass on duplicate ids, edges to unknown nodes,
    unsatisfiable conditions, or cycles.
    """
    graph = DependencyGraph(name=name)
    for node in nodes:
        try:
            validate_node_id(node.id)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if node.id in graph.nodes:
            raise DuplicateNode(f"node '{node.id}' declared twice")
        graph.nodes[node.id] = node

    seen_edges: set[tuple[str, str]] = set()
    for edge in edges:
        for end in (edge.source, edge.target):
            if end not in graph.nodes:
                raise UnknownNode(f"edge {edge.source} -> {edge.target} references unknown node '{end}'")
        if edge.source == edge.target:
            raise CycleDetected([edge.source, edge.target])
        if (edge.source, edge.target) in seen_edges:
            continue
        seen_edges.add((edge.source, edge.target))
        if (
            edge.condition == Condition.COMPLETED_SUCCESSFULLY
            and graph.nodes[edge.source].required_condition == Condition.STARTED
        ):
            raise UnsatisfiableCondition(
                f"'{edge.target}' waits for '{edge.source}' to complete, but '{edge.source}' only has to start"
            )
        graph.incoming[edge.target].append(edge)
        graph.outgoing[edge.source].append(edge)

    cycle = _find_cycle(graph.nodes, graph.outgoing)
    if cycle:
        raise CycleDetected(cycle)
    return graph
