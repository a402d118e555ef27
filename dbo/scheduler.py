from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Callable

from . import db
from .graph import DependencyGraph, ServiceNode
from .invoker import Handle, Invoker, Signal
from .probes import ProbeTarget
from .report import NodeOutcome, RunReport
from .runtime import Condition, FailureKind, NodeState, RunState, utc_now
from .settings import settings


@dataclass(frozen=True)
class SchedulerPolicy:
    global_timeout_s: float | None = settings.global_timeout_s
    grace_period_s: float = settings.grace_period_s
    tick_s: float = settings.tick_s
    teardown_on_exit: bool = settings.teardown_on_exit


class Scheduler:
    """Walks a DependencyGraph once, launching every node as soon as it may.

    One worker thread per launched node drives that node's lifecycle
    (launch, probe polling, teardown) and is the only writer of its state.
    The coordinator (the thread calling ``run``) launches eligible nodes,
    cancels never-launched ones after a failure, and enforces the run
    deadline.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        invoker: Invoker,
        policy: SchedulerPolicy | None = None,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.graph = graph
        self.invoker = invoker
        self.policy = policy or SchedulerPolicy()
        self.run_id = run_id or secrets.token_hex(6)
        self.clock = clock
        self.state = RunState(graph.nodes)
        self._abort = Event()
        self._abort_lock = Lock()
        self._abort_kind: FailureKind | None = None
        self._abort_reason = ""
        self._threads: dict[str, Thread] = {}
        self._torn_down: set[str] = set()
        self._teardown_lock = Lock()
        self._deadline: float | None = None
        self._started = False

    # ------------------------------------------------------------------
    # coordinator
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        if self._started:
            raise RuntimeError("a Scheduler instance runs only once")
        self._started = True

        started_at = utc_now()
        db.init_db()
        db.insert_run(self.run_id, self.graph.name)
        db.log_event("INFO", f"Run '{self.graph.name}' started with {len(self.graph.nodes)} nodes", run_id=self.run_id)

        if self.policy.global_timeout_s is not None:
            self._deadline = self.clock() + float(self.policy.global_timeout_s)

        while True:
            seen = self.state.version
            if self._deadline is not None and self.clock() >= self._deadline:
                self._trigger_abort(
                    FailureKind.TIMEOUT, f"run deadline of {self.policy.global_timeout_s}s elapsed"
                )

            if self._abort.is_set():
                self._cancel_not_started()
            else:
                self._launch_ready()
                if self._stalled():
                    # Nothing running and nothing eligible: the rest can never launch.
                    self._trigger_abort(FailureKind.DEPENDENCY_FAILED, "no launchable nodes remain")
                    continue

            if self.state.all_terminal():
                break
            self.state.wait_for_change(seen, self._wait_timeout())

        for thr in list(self._threads.values()):
            thr.join(timeout=self.policy.grace_period_s + 5)

        if self.policy.teardown_on_exit:
            for nid, handle in self.state.live_handles():
                try:
                    self._teardown(nid, handle)
                except Exception as e:
                    db.log_event("ERROR", f"Teardown failed: {type(e).__name__}: {e}", run_id=self.run_id, node_id=nid)

        report = self._build_report(started_at)
        db.log_event(
            "INFO" if report.success else "ERROR",
            f"Run '{self.graph.name}' {'succeeded' if report.success else 'failed'}",
            run_id=self.run_id,
        )
        db.save_report(report)
        return report

    def _stalled(self) -> bool:
        with self.state.cond:
            if self.state.any_in_flight() or self.state.all_terminal():
                return False
            return not self.graph.ready_to_launch(self.state.snapshot())

    def _wait_timeout(self) -> float:
        tick = max(0.01, self.policy.tick_s)
        if self._deadline is None or self._abort.is_set():
            return tick
        return max(0.0, min(tick, self._deadline - self.clock()))

    def _launch_ready(self) -> list[str]:
        order = {nid: i for i, nid in enumerate(self.graph.topological_order())}
        launched: list[str] = []
        # Snapshot and the LAUNCHING writes happen under one lock so a node is claimed once.
        with self.state.cond:
            ready = sorted(self.graph.ready_to_launch(self.state.snapshot()), key=lambda n: order[n.id])
            for node in ready:
                self.state.transition(node.id, NodeState.LAUNCHING)
                launched.append(node.id)
        for node_id in launched:
            node = self.graph.node(node_id)
            thr = Thread(target=self._run_node, args=(node,), name=f"dbo-{node_id}", daemon=True)
            self._threads[node_id] = thr
            thr.start()
        return launched

    def _cancel_not_started(self) -> None:
        with self.state.cond:
            for nid, st in self.state.snapshot().items():
                if st == NodeState.NOT_STARTED:
                    self.state.transition(
                        nid,
                        NodeState.CANCELLED,
                        failure_kind=FailureKind.DEPENDENCY_FAILED,
                        reason=f"not launched: {self._abort_reason}",
                    )
                    db.log_event("WARN", f"Cancelled before launch: {self._abort_reason}", run_id=self.run_id, node_id=nid)

    def _trigger_abort(self, kind: FailureKind, reason: str) -> None:
        with self._abort_lock:
            if self._abort.is_set():
                return
            self._abort_kind = kind
            self._abort_reason = reason
            self._abort.set()
        db.log_event("ERROR", f"Aborting run: {reason}", run_id=self.run_id)
        with self.state.cond:
            self.state.cond.notify_all()

    # ------------------------------------------------------------------
    # per-node workers
    # ------------------------------------------------------------------

    def _handle_of(self, node_id: str) -> Handle | None:
        if node_id not in self.state.records:
            return None
        return self.state.record(node_id).handle

    def _run_node(self, node: ServiceNode) -> None:
        nid = node.id
        handle: Handle | None = None
        try:
            if node.launch_spec is not None:
                try:
                    handle = self.invoker.launch(nid, node.launch_spec)
                except Exception as e:
                    self._fail(nid, FailureKind.LAUNCH_ERROR, f"{type(e).__name__}: {e}", None)
                    return

            self.state.transition(nid, NodeState.RUNNING, handle=handle)
            db.log_event("INFO", "Running" if handle else "Running (probe only)", run_id=self.run_id, node_id=nid)

            node.probe.attach(ProbeTarget(nid, self.invoker, self._handle_of))
            self.state.transition(nid, NodeState.WAITING)
            self._wait(node, handle)
        except Exception as e:
            db.log_event("ERROR", f"Worker error: {type(e).__name__}: {e}", run_id=self.run_id, node_id=nid)
            self._fail(nid, FailureKind.PROBE_FAILED, f"internal error: {type(e).__name__}: {e}", handle)

    def _wait(self, node: ServiceNode, handle: Handle | None) -> None:
        nid = node.id
        probe = node.probe
        probe_covers = probe.satisfies == Condition.COMPLETED_SUCCESSFULLY or node.required_condition == Condition.STARTED
        ready_seen = False

        while True:
            if self._deadline is not None and self.clock() >= self._deadline:
                self._trigger_abort(
                    FailureKind.TIMEOUT, f"run deadline of {self.policy.global_timeout_s}s elapsed"
                )
            if self._abort.is_set():
                self._abort_node(nid, handle)
                return

            if not ready_seen:
                result = probe.poll()
                if result.is_failed:
                    if result.exhausted:
                        kind = FailureKind.PROBE_EXHAUSTED
                    elif result.exited:
                        kind = FailureKind.PROCESS_EXITED
                    elif result.timed_out:
                        kind = FailureKind.TIMEOUT
                    else:
                        kind = FailureKind.PROBE_FAILED
                    self._fail(nid, kind, result.reason or "probe failed", handle)
                    return
                if result.is_ready:
                    if probe_covers:
                        self._succeed(nid, f"{probe.describe()} ready")
                        return
                    ready_seen = True
                    db.log_event("INFO", "Healthy, waiting for exit", run_id=self.run_id, node_id=nid)

            # Completion-class probes already look at the exit code themselves.
            if probe.satisfies == Condition.STARTED and handle is not None:
                code = self.invoker.exit_code(handle)
                if code is not None:
                    if code == 0 and node.required_condition == Condition.COMPLETED_SUCCESSFULLY:
                        self._succeed(nid, "exited with code 0")
                    elif node.required_condition == Condition.COMPLETED_SUCCESSFULLY:
                        self._fail(nid, FailureKind.PROCESS_EXITED, f"exited with code {code}", handle)
                    else:
                        self._fail(nid, FailureKind.PROCESS_EXITED, f"exited with code {code} before becoming ready", handle)
                    return

            self._abort.wait(self._sleep_for(probe.interval_s))

    def _sleep_for(self, interval_s: float) -> float:
        if self._deadline is None:
            return max(0.0, interval_s)
        return max(0.0, min(interval_s, self._deadline - self.clock()))

    def _succeed(self, nid: str, detail: str) -> None:
        if self.state.try_transition(nid, NodeState.SUCCEEDED):
            db.log_event("INFO", f"Succeeded: {detail}", run_id=self.run_id, node_id=nid)

    def _fail(self, nid: str, kind: FailureKind, reason: str, handle: Handle | None) -> None:
        if self.state.try_transition(nid, NodeState.FAILED, failure_kind=kind, reason=reason):
            db.log_event("ERROR", f"Failed ({kind.value}): {reason}", run_id=self.run_id, node_id=nid)
            self._trigger_abort(FailureKind.DEPENDENCY_FAILED, f"'{nid}' failed: {reason}")
        if handle is not None:
            self._teardown(nid, handle)

    def _abort_node(self, nid: str, handle: Handle | None) -> None:
        self._teardown(nid, handle)
        if self._abort_kind == FailureKind.TIMEOUT:
            if self.state.try_transition(nid, NodeState.FAILED, failure_kind=FailureKind.TIMEOUT, reason=self._abort_reason):
                db.log_event("ERROR", f"Failed (timeout): {self._abort_reason}", run_id=self.run_id, node_id=nid)
        elif self.state.try_transition(
            nid, NodeState.CANCELLED, failure_kind=FailureKind.DEPENDENCY_FAILED, reason=f"torn down: {self._abort_reason}"
        ):
            db.log_event("WARN", f"Cancelled: {self._abort_reason}", run_id=self.run_id, node_id=nid)

    def _teardown(self, nid: str, handle: Handle | None) -> None:
        """Graceful stop, then a forced kill once the grace period is over."""
        if handle is None:
            return
        with self._teardown_lock:
            if handle.id in self._torn_down:
                return
            self._torn_down.add(handle.id)

        if self.invoker.exit_code(handle) is not None:
            return
        self.invoker.signal(handle, Signal.STOP)
        grace_end = self.clock() + self.policy.grace_period_s
        while self.clock() < grace_end:
            if self.invoker.exit_code(handle) is not None:
                db.log_event("INFO", f"Stopped {handle.name}", run_id=self.run_id, node_id=nid)
                return
            time.sleep(min(0.1, max(0.0, grace_end - self.clock())))
        if self.invoker.exit_code(handle) is None:
            self.invoker.signal(handle, Signal.KILL)
            db.log_event("WARN", f"Killed {handle.name} after {self.policy.grace_period_s}s grace period", run_id=self.run_id, node_id=nid)

    # ------------------------------------------------------------------
    # report
    # ------------------------------------------------------------------

    def _build_report(self, started_at: str) -> RunReport:
        with self.state.cond:
            order = list(self.state.launch_order)
            order += [nid for nid in self.graph.nodes if nid not in order]
            outcomes = tuple(
                NodeOutcome(
                    node_id=nid,
                    state=rec.state,
                    required_condition=self.graph.node(nid).required_condition,
                    duration_s=rec.duration_s,
                    failure_kind=rec.failure_kind,
                    reason=rec.reason,
                    started_at=rec.started_at,
                    finished_at=rec.finished_at,
                )
                for nid, rec in ((n, self.state.records[n]) for n in order)
            )
        return RunReport(
            run_id=self.run_id,
            name=self.graph.name,
            outcomes=outcomes,
            started_at=started_at,
            finished_at=utc_now(),
        )


def run_graph(
    graph: DependencyGraph,
    invoker: Invoker,
    policy: SchedulerPolicy | None = None,
    run_id: str | None = None,
) -> RunReport:
    return Scheduler(graph, invoker, policy=policy, run_id=run_id).run()


def policy_for(timeout_s: float | None = None, grace_period_s: float | None = None) -> SchedulerPolicy:
    """Defaults from settings, with manifest or caller overrides where given."""
    base = SchedulerPolicy()
    return SchedulerPolicy(
        global_timeout_s=timeout_s if timeout_s is not None else base.global_timeout_s,
        grace_period_s=grace_period_s if grace_period_s is not None else base.grace_period_s,
        tick_s=base.tick_s,
        teardown_on_exit=base.teardown_on_exit,
    )
