import httpx
import pytest

from dbo import probes
from dbo.invoker import ExecResult, Handle
from dbo.probes import (
    ConditionPredicate,
    ExecCheck,
    ExecLineCount,
    HttpCheck,
    PollingCommand,
    ProbeStatus,
    ProbeTarget,
    ProbeTimeout,
    ProcessExit,
    ProcessStarted,
    RpcValue,
)
from dbo.runtime import Condition


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _ExitInvoker:
    """Minimal invoker: exit codes and exec output keyed by node id."""

    def __init__(self, codes=None, outputs=None):
        self.codes = dict(codes or {})
        self.outputs = dict(outputs or {})
        self.execs = []

    def exit_code(self, handle):
        return self.codes.get(handle.node_id)

    def exec(self, handle, command, timeout_s):
        self.execs.append((handle.node_id, command, timeout_s))
        return self.outputs.get(handle.node_id, ExecResult(0, ""))


def _target(invoker, node_id="svc", others=()):
    handles = {n: Handle(id=f"h-{n}", name=n, node_id=n) for n in (node_id, *others)}
    return ProbeTarget(node_id, invoker, handles.get)


def test_process_exit_ready_only_on_zero():
    inv = _ExitInvoker()
    probe = ProcessExit().attach(_target(inv))
    assert probe.poll().status == ProbeStatus.PENDING

    inv.codes["svc"] = 0
    assert probe.poll().is_ready
    assert probe.satisfies == Condition.COMPLETED_SUCCESSFULLY

    inv.codes["svc"] = 2
    res = probe.poll()
    assert res.is_failed and res.exited
    assert "code 2" in res.reason


def test_process_started_ready_while_running():
    inv = _ExitInvoker()
    probe = ProcessStarted().attach(_target(inv))
    assert probe.poll().is_ready
    inv.codes["svc"] = 1
    assert probe.poll().is_failed


def test_polling_command_fails_after_exactly_retries_consecutive_failures():
    calls = []

    def check(target, timeout_s):
        calls.append(timeout_s)
        return False

    probe = PollingCommand(check, interval_s=15, timeout_s=600, retries=3)
    assert probe.poll().status == ProbeStatus.PENDING
    assert probe.poll().status == ProbeStatus.PENDING
    res = probe.poll()
    assert res.is_failed and res.exhausted
    assert probe.consecutive_failures == 3
    assert calls == [600, 600, 600]


def test_polling_command_transient_failures_never_exhaust():
    outcomes = iter([False, False, True, False, False, True, False, False, True])
    probe = PollingCommand(lambda t, s: next(outcomes), retries=3)
    results = [probe.poll().status for _ in range(9)]
    assert ProbeStatus.FAILED not in results
    assert results.count(ProbeStatus.READY) == 3


def test_polling_command_counts_timeouts_and_errors_as_failures():
    seq = iter([ProbeTimeout("slow"), RuntimeError("boom"), ProbeTimeout("slow")])

    def check(target, timeout_s):
        raise next(seq)

    probe = PollingCommand(check, retries=3)
    assert "timed out" in probe.poll().reason
    assert "RuntimeError" in probe.poll().reason
    assert probe.poll().is_failed


def test_polling_command_start_period_failures_not_counted():
    clock = _Clock()
    probe = PollingCommand(lambda t, s: False, retries=2, start_period_s=30, clock=clock)
    for _ in range(5):
        assert probe.poll().status == ProbeStatus.PENDING
        clock.now += 5
    assert probe.consecutive_failures == 0

    clock.now = 31
    assert probe.poll().status == ProbeStatus.PENDING
    assert probe.poll().is_failed


def test_polling_command_rejects_zero_retries():
    with pytest.raises(ValueError):
        PollingCommand(lambda t, s: True, retries=0)


def test_exec_check_uses_exit_code():
    inv = _ExitInvoker(outputs={"svc": ExecResult(1, "")})
    target = _target(inv)
    check = ExecCheck(["lotus", "wait-api"])
    assert check(target, 5) is False
    inv.outputs["svc"] = ExecResult(0, "ok")
    assert check(target, 5) is True
    assert inv.execs[-1] == ("svc", ["lotus", "wait-api"], 5)


def test_condition_predicate_ready_when_threshold_reached():
    inv = _ExitInvoker(outputs={"lotus": ExecResult(0, "peer1\n")})
    reader = ExecLineCount(["lotus", "net", "peers"], node="lotus")
    probe = ConditionPredicate(reader, threshold=2, source="lotus").attach(_target(inv, "check", others=("lotus",)))

    res = probe.poll()
    assert res.status == ProbeStatus.PENDING
    assert probe.last_value == 1

    inv.outputs["lotus"] = ExecResult(0, "peer1\npeer2\n\n")
    assert probe.poll().is_ready
    assert probe.last_value == 2


def test_condition_predicate_fails_when_source_exits_first():
    inv = _ExitInvoker(outputs={"lotus": ExecResult(0, "")})
    probe = ConditionPredicate(lambda t: 0, threshold=2, source="lotus").attach(_target(inv, "check", others=("lotus",)))
    assert probe.poll().status == ProbeStatus.PENDING
    inv.codes["lotus"] = 1
    res = probe.poll()
    assert res.is_failed and res.exited
    assert "lotus" in res.reason


def test_condition_predicate_fails_fast_at_timeout():
    clock = _Clock()
    probe = ConditionPredicate(lambda t: 1, threshold=2, timeout_s=10, clock=clock)
    assert probe.poll().status == ProbeStatus.PENDING
    clock.now = 9.9
    assert probe.poll().status == ProbeStatus.PENDING
    clock.now = 10
    res = probe.poll()
    assert res.is_failed and res.timed_out
    assert not res.exhausted and not res.exited
    assert "timed out" in res.reason


def test_condition_predicate_reader_errors_stay_pending():
    def reader(target):
        raise ConnectionError("not up yet")

    probe = ConditionPredicate(reader, threshold=1, timeout_s=60)
    res = probe.poll()
    assert res.status == ProbeStatus.PENDING
    assert "ConnectionError" in res.reason


def test_condition_predicate_unknown_comparison():
    with pytest.raises(ValueError):
        ConditionPredicate(lambda t: 1, threshold=1, comparison="=~")


def _mock_httpx(monkeypatch, handler):
    real_client = httpx.Client

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(probes.httpx, "Client", factory)


def test_http_check(monkeypatch):
    status = {"code": 503}

    def handler(request):
        return httpx.Response(status["code"], json={"status": "healthy"})

    _mock_httpx(monkeypatch, handler)
    check = HttpCheck("http://forest:2346/healthz")
    assert check(None, 1.0) is False
    status["code"] = 200
    assert check(None, 1.0) is True


def test_check_health_requires_healthy_body(monkeypatch):
    _mock_httpx(monkeypatch, lambda request: httpx.Response(200, json={"status": "starting"}))
    ok, msg, latency = probes.check_health("http://svc/health")
    assert ok is False
    assert "Unhealthy payload" in msg
    assert latency is not None


def test_check_health_timeout_raises_probe_timeout(monkeypatch):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    _mock_httpx(monkeypatch, handler)
    with pytest.raises(ProbeTimeout):
        probes.check_health("http://svc/health", timeout_s=0.1)


def test_rpc_value_counts_list_results(monkeypatch):
    seen = {}

    def handler(request):
        import json

        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [{"ID": "a"}, {"ID": "b"}, {"ID": "c"}]})

    _mock_httpx(monkeypatch, handler)
    reader = RpcValue("http://lotus:1234/rpc/v1", "Filecoin.NetPeers")
    assert reader(None) == 3
    assert seen["method"] == "Filecoin.NetPeers"


def test_rpc_value_error_response(monkeypatch):
    _mock_httpx(monkeypatch, lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -1}}))
    with pytest.raises(RuntimeError):
        RpcValue("http://lotus:1234/rpc/v1", "Filecoin.NetPeers")(None)
