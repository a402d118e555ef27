"""Readiness probes.

A probe answers one question per ``poll()``: is this node ready yet? The
scheduler owns the polling loop (and the sleeping between polls), so every
probe can be driven step by step in a test without any timing.
"""
from __future__ import annotations

import operator
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx

from .invoker import ExecResult, Handle, Invoker
from .runtime import Condition


class ProbeTimeout(TimeoutError):
    """One check attempt took longer than its timeout."""


class ProbeStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    reason: str | None = None
    exhausted: bool = False  # FAILED because the retry budget ran out
    exited: bool = False  # FAILED because a watched process exited
    timed_out: bool = False  # FAILED because the probe's own timeout elapsed

    @classmethod
    def pending(cls, reason: str | None = None) -> "ProbeResult":
        return cls(ProbeStatus.PENDING, reason)

    @classmethod
    def ready(cls) -> "ProbeResult":
        return cls(ProbeStatus.READY)

    @classmethod
    def failed(cls, reason: str, exhausted: bool = False, exited: bool = False, timed_out: bool = False) -> "ProbeResult":
        return cls(ProbeStatus.FAILED, reason, exhausted, exited, timed_out)

    @property
    def is_ready(self) -> bool:
        return self.status == ProbeStatus.READY

    @property
    def is_failed(self) -> bool:
        return self.status == ProbeStatus.FAILED


class ProbeTarget:
    """What a probe is allowed to look at: its own node's handle, or a peer's."""

    def __init__(self, node_id: str, invoker: Invoker | None, handles: Callable[[str], Handle | None]) -> None:
        self.node_id = node_id
        self.invoker = invoker
        self._handles = handles

    def handle(self, node: str | None = None) -> Handle | None:
        return self._handles(node or self.node_id)

    def exit_code(self, node: str | None = None) -> int | None:
        h = self.handle(node)
        if h is None or self.invoker is None:
            return None
        return self.invoker.exit_code(h)

    def exec(self, command: list[str], timeout_s: float, node: str | None = None) -> ExecResult:
        h = self.handle(node)
        if h is None or self.invoker is None:
            raise LookupError(f"no running handle for node '{node or self.node_id}'")
        return self.invoker.exec(h, command, timeout_s)


class HealthProbe:
    satisfies: Condition = Condition.STARTED
    interval_s: float = 1.0

    def __init__(self) -> None:
        self.target: ProbeTarget | None = None

    def attach(self, target: ProbeTarget) -> "HealthProbe":
        self.target = target
        return self

    def poll(self) -> ProbeResult:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


def _exit_code(target: ProbeTarget | None, node: str | None = None) -> int | None:
    return target.exit_code(node) if target is not None else None


class ProcessExit(HealthProbe):
    """Ready the moment the process exits 0. Used for one-shot provisioning tasks."""

    satisfies = Condition.COMPLETED_SUCCESSFULLY

    def __init__(self, interval_s: float = 1.0) -> None:
        super().__init__()
        self.interval_s = interval_s

    def poll(self) -> ProbeResult:
        code = _exit_code(self.target)
        if code is None:
            return ProbeResult.pending("still running")
        if code == 0:
            return ProbeResult.ready()
        return ProbeResult.failed(f"exited with code {code}", exited=True)


class ProcessStarted(HealthProbe):
    """Ready as soon as the process is up; the default for long-running services."""

    satisfies = Condition.STARTED

    def __init__(self, interval_s: float = 1.0) -> None:
        super().__init__()
        self.interval_s = interval_s

    def poll(self) -> ProbeResult:
        code = _exit_code(self.target)
        if code is None or code == 0:
            return ProbeResult.ready()
        return ProbeResult.failed(f"exited with code {code}", exited=True)


class PollingCommand(HealthProbe):
    """Compose-style healthcheck: one attempt per poll, ``retries`` consecutive failures allowed.

    ``check(target, timeout_s)`` returns truthy on success. A falsy result, an
    exception or a timeout is one failed attempt. Attempts are counted, not
    timed: the probe fails on exactly the ``retries``-th consecutive failure
    no matter how long the attempts took. Failures inside ``start_period_s``
    (measured from the first poll) are not counted.
    """

    satisfies = Condition.STARTED

    def __init__(
        self,
        check: Callable[[ProbeTarget | None, float], Any],
        interval_s: float = 15.0,
        timeout_s: float = 30.0,
        retries: int = 3,
        start_period_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.check = check
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.retries = int(retries)
        self.start_period_s = start_period_s
        self.clock = clock
        self.consecutive_failures = 0
        self.attempts = 0
        self._first_poll: float | None = None

    def poll(self) -> ProbeResult:
        now = self.clock()
        if self._first_poll is None:
            self._first_poll = now
        self.attempts += 1

        try:
            ok = bool(self.check(self.target, self.timeout_s))
            detail = "check returned failure"
        except TimeoutError as e:
            ok, detail = False, f"attempt timed out: {e}"
        except Exception as e:
            ok, detail = False, f"{type(e).__name__}: {e}"

        if ok:
            self.consecutive_failures = 0
            return ProbeResult.ready()

        if now - self._first_poll < self.start_period_s:
            return ProbeResult.pending(f"{detail} (start period)")

        self.consecutive_failures += 1
        if self.consecutive_failures >= self.retries:
            return ProbeResult.failed(
                f"{self.consecutive_failures} consecutive failed attempts, last: {detail}", exhausted=True
            )
        return ProbeResult.pending(detail)

    def describe(self) -> str:
        return f"PollingCommand({getattr(self.check, 'describe', lambda: repr(self.check))()})"


_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}


class ConditionPredicate(HealthProbe):
    """Compares a value read from a running service against a threshold.

    Fails as soon as the ``source`` node's process exits, or once
    ``timeout_s`` passes without the predicate holding. There is no retry
    budget; reader errors simply keep the probe pending.
    """

    satisfies = Condition.COMPLETED_SUCCESSFULLY

    def __init__(
        self,
        reader: Callable[[ProbeTarget | None], Any],
        threshold: Any,
        comparison: str = ">=",
        timeout_s: float = 60.0,
        interval_s: float = 1.0,
        source: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        if comparison not in _COMPARISONS:
            raise ValueError(f"unknown comparison '{comparison}'")
        self.reader = reader
        self.threshold = threshold
        self.comparison = comparison
        self.timeout_s = timeout_s
        self.interval_s = interval_s
        self.source = source
        self.clock = clock
        self.last_value: Any = None
        self._first_poll: float | None = None

    def poll(self) -> ProbeResult:
        now = self.clock()
        if self._first_poll is None:
            self._first_poll = now

        code = _exit_code(self.target, self.source)
        if code is not None:
            return ProbeResult.failed(f"'{self.source or 'service'}' exited with code {code} before the condition held", exited=True)

        try:
            self.last_value = self.reader(self.target)
        except Exception as e:
            detail = f"read failed: {type(e).__name__}: {e}"
        else:
            if _COMPARISONS[self.comparison](self.last_value, self.threshold):
                return ProbeResult.ready()
            detail = f"value {self.last_value!r} not {self.comparison} {self.threshold!r}"

        if now - self._first_poll >= self.timeout_s:
            return ProbeResult.failed(f"timed out after {self.timeout_s}s: {detail}", timed_out=True)
        return ProbeResult.pending(detail)


# ---------------------------------------------------------------------------
# Check actions (PollingCommand) and value readers (ConditionPredicate)
# ---------------------------------------------------------------------------


class ExecCheck:
    """Run a command in the node's context; exit code 0 means healthy."""

    def __init__(self, command: list[str], node: str | None = None) -> None:
        self.command = list(command)
        self.node = node

    def __call__(self, target: ProbeTarget | None, timeout_s: float) -> bool:
        if target is None:
            raise LookupError("ExecCheck needs an attached target")
        return target.exec(self.command, timeout_s, self.node).exit_code == 0

    def describe(self) -> str:
        return " ".join(self.command)


def check_health(url: str, timeout_s: float = 2.0, expect_status_body: bool = True) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Expected JSON (when ``expect_status_body``): {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        if not expect_status_body:
            return True, "Healthy", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except httpx.TimeoutException as e:
        raise ProbeTimeout(f"GET {url} timed out after {timeout_s}s") from e
    except httpx.HTTPError:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms


class HttpCheck:
    def __init__(self, url: str, expect_status_body: bool = False) -> None:
        self.url = url
        self.expect_status_body = expect_status_body

    def __call__(self, target: ProbeTarget | None, timeout_s: float) -> bool:
        ok, _msg, _latency = check_health(self.url, timeout_s, self.expect_status_body)
        return ok

    def describe(self) -> str:
        return f"GET {self.url}"


class ExecLineCount:
    """Number of non-empty output lines of a command, e.g. ``lotus net peers``."""

    def __init__(self, command: list[str], node: str | None = None, timeout_s: float = 30.0) -> None:
        self.command = list(command)
        self.node = node
        self.timeout_s = timeout_s

    def __call__(self, target: ProbeTarget | None) -> int:
        if target is None:
            raise LookupError("ExecLineCount needs an attached target")
        res = target.exec(self.command, self.timeout_s, self.node)
        if res.exit_code != 0:
            raise RuntimeError(f"'{' '.join(self.command)}' exited with {res.exit_code}")
        return len([line for line in res.output.splitlines() if line.strip()])


class RpcValue:
    """JSON-RPC 2.0 call; list results are reduced to their length."""

    def __init__(self, url: str, method: str, params: list[Any] | None = None, timeout_s: float = 5.0) -> None:
        self.url = url
        self.method = method
        self.params = list(params or [])
        self.timeout_s = timeout_s

    def __call__(self, target: ProbeTarget | None) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": self.method, "params": self.params}
        with httpx.Client(timeout=self.timeout_s) as client:
            resp = client.post(self.url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            raise RuntimeError(f"{self.method}: {data['error']}")
        result = data.get("result")
        if isinstance(result, (list, tuple, dict)):
            return len(result)
        return result


def default_probe(condition: Condition) -> HealthProbe:
    if condition == Condition.COMPLETED_SUCCESSFULLY:
        return ProcessExit()
    return ProcessStarted()
