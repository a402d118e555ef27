import os as _os
import sys
import threading
import time
from dataclasses import dataclass, field, replace

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dbo import db  # noqa: E402
from dbo.invoker import ExecResult, Handle, Invoker, LaunchError, LaunchSpec, Signal  # noqa: E402
from dbo.scheduler import SchedulerPolicy  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "dbo-test.db")))
    db.init_db()
    yield


@dataclass
class FakeProc:
    exit_after: float | None = None  # seconds after launch; None runs until signalled
    exit_code: int = 0
    launch_error: str | None = None
    ignore_stop: bool = False


@dataclass
class _Live:
    node_id: str
    script: FakeProc
    launched: float
    stopped: bool = False
    killed: bool = False
    signals: list = field(default_factory=list)


class FakeInvoker(Invoker):
    """In-memory invoker: processes exit on a schedule and obey STOP/KILL."""

    def __init__(self, scripts=None, exec_handler=None):
        self.scripts = dict(scripts or {})
        self.exec_handler = exec_handler
        self.launches: list[tuple[str, float]] = []
        self.signals: list[tuple[str, Signal]] = []
        self.live: dict[str, _Live] = {}
        self.lock = threading.Lock()

    def launch(self, node_id: str, spec: LaunchSpec) -> Handle:
        now = time.monotonic()
        with self.lock:
            self.launches.append((node_id, now))
            script = self.scripts.get(node_id, FakeProc(exit_after=0.0))
            if script.launch_error:
                raise LaunchError(script.launch_error)
            h = Handle(id=f"h-{node_id}-{len(self.launches)}", name=f"fake-{node_id}", node_id=node_id)
            self.live[h.id] = _Live(node_id=node_id, script=script, launched=now)
        return h

    def signal(self, handle: Handle, action: Signal) -> None:
        with self.lock:
            self.signals.append((handle.node_id, action))
            live = self.live[handle.id]
            if action == Signal.KILL:
                live.killed = True
            elif not live.script.ignore_stop:
                live.stopped = True

    def exit_code(self, handle: Handle):
        with self.lock:
            live = self.live[handle.id]
            if live.killed:
                return 137
            if live.stopped:
                return 143
            s = live.script
            if s.exit_after is not None and time.monotonic() - live.launched >= s.exit_after:
                return s.exit_code
            return None

    def exec(self, handle: Handle, command, timeout_s: float) -> ExecResult:
        if self.exec_handler is None:
            return ExecResult(exit_code=0)
        return self.exec_handler(handle.node_id, list(command))

    # helpers for assertions
    def launched_ids(self) -> list[str]:
        return [nid for nid, _ in self.launches]

    def launch_time(self, node_id: str) -> float:
        return next(t for nid, t in self.launches if nid == node_id)

    def exit_time(self, node_id: str) -> float:
        return self.launch_time(node_id) + self.scripts.get(node_id, FakeProc(exit_after=0.0)).exit_after

    def signals_for(self, node_id: str) -> list[Signal]:
        return [a for nid, a in self.signals if nid == node_id]


@pytest.fixture
def fake_invoker():
    return FakeInvoker


@pytest.fixture
def fast_policy():
    return SchedulerPolicy(global_timeout_s=10.0, grace_period_s=0.2, tick_s=0.01, teardown_on_exit=True)
