from dataclasses import replace

from dbo import alerts
from dbo.report import NodeOutcome, RunReport
from dbo.runtime import Condition, FailureKind, NodeState


def _report(*outcomes):
    return RunReport(run_id="r1", name="stack", outcomes=tuple(outcomes), started_at="t0", finished_at="t1")


def test_success_rules():
    ok = NodeOutcome("init", NodeState.SUCCEEDED, Condition.COMPLETED_SUCCESSFULLY, 1.0)
    svc_running = NodeOutcome("svc", NodeState.RUNNING, Condition.STARTED, 2.0)
    job_running = NodeOutcome("job", NodeState.RUNNING, Condition.COMPLETED_SUCCESSFULLY, 2.0)
    cancelled = NodeOutcome("x", NodeState.CANCELLED, Condition.STARTED, None, FailureKind.DEPENDENCY_FAILED, "init failed")

    assert _report(ok, svc_running).success
    assert not _report(ok, job_running).success
    assert not _report(ok, cancelled).success
    assert not _report().success
    assert _report(ok).exit_code == 0
    assert _report(cancelled).exit_code == 1


def test_round_trip_dict():
    failed = NodeOutcome("peer", NodeState.FAILED, Condition.STARTED, 3.2, FailureKind.TIMEOUT, "deadline", "s", "f")
    report = _report(failed)
    again = RunReport.from_dict(report.to_dict())
    assert again == report
    assert again.outcome("peer").failure_kind == FailureKind.TIMEOUT
    assert report.failures() == [failed]


def test_failure_email_disabled_by_default():
    failed = NodeOutcome("peer", NodeState.FAILED, Condition.STARTED, 3.2, FailureKind.PROCESS_EXITED, "exited with code 1")
    report = _report(failed)
    assert alerts.notify_run_failure(report) is False

    subject, body = alerts.format_failure(report)
    assert "peer" in subject
    assert "process_exited: exited with code 1" in body


def test_failure_email_sent_when_enabled(monkeypatch):
    sent = []

    class _SMTP:
        def __init__(self, host, port):
            sent.append((host, port))

        def starttls(self):
            pass

        def login(self, user, password):
            pass

        def sendmail(self, from_, to, msg):
            sent.append(to)

        def quit(self):
            pass

    monkeypatch.setattr(
        alerts,
        "settings",
        replace(
            alerts.settings,
            enable_email=True,
            smtp_user="u",
            smtp_password="p",
            email_from="dbo@example.org",
            email_to="ops@example.org",
        ),
    )
    monkeypatch.setattr(alerts.smtplib, "SMTP", _SMTP)

    ok = NodeOutcome("init", NodeState.SUCCEEDED, Condition.COMPLETED_SUCCESSFULLY, 1.0)
    assert alerts.notify_run_failure(_report(ok)) is False
    failed = NodeOutcome("peer", NodeState.FAILED, Condition.STARTED, 1.0, FailureKind.TIMEOUT, "deadline")
    assert alerts.notify_run_failure(_report(failed)) is True
    assert sent[-1] == ["ops@example.org"]
