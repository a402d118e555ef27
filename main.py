from __future__ import annotations

import secrets
from threading import Thread
from typing import Callable

from fastapi import Depends, FastAPI, HTTPException

from dbo import db
from dbo.alerts import notify_run_failure
from dbo.api_models import RunRequest, RunStarted
from dbo.graph import ConfigError
from dbo.invoker import Invoker, make_invoker
from dbo.manifest import build_graph, parse_manifest
from dbo.scheduler import Scheduler, policy_for
from dbo.settings import StackConfig

app = FastAPI(title="Dependency Bring-up Orchestrator")

InvokerFactory = Callable[[str, str], Invoker]


def get_invoker_factory() -> InvokerFactory:
    """(kind, run_id) -> Invoker. Overridden in tests."""
    return lambda kind, run_id: make_invoker(kind, run_id)


@app.on_event("startup")
def startup() -> None:
    db.init_db()


def _execute(scheduler: Scheduler) -> None:
    try:
        report = scheduler.run()
    except Exception as e:
        db.log_event("ERROR", f"Run crashed: {type(e).__name__}: {e}", run_id=scheduler.run_id)
        return
    notify_run_failure(report)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.post("/runs", response_model=RunStarted, status_code=202)
def start_run(req: RunRequest, invoker_factory: InvokerFactory = Depends(get_invoker_factory)) -> RunStarted:
    try:
        config = StackConfig.from_env().with_overrides(req.variables)
        manifest = parse_manifest(req.manifest, config)
        graph = build_graph(manifest)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))

    run_id = secrets.token_hex(6)
    try:
        invoker = invoker_factory(req.invoker, run_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    policy = policy_for(req.timeout_s or manifest.timeout_s, manifest.grace_period_s)
    scheduler = Scheduler(graph, invoker, policy=policy, run_id=run_id)
    Thread(target=_execute, args=(scheduler,), daemon=True).start()
    return RunStarted(run_id=run_id, name=graph.name, order=graph.topological_order())


@app.get("/runs")
def list_runs(limit: int = 50) -> list[dict]:
    return db.list_runs(limit=limit)


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> dict:
    report = db.get_report(run_id)
    if report is None:
        raise HTTPException(status_code=404, detail="unknown run")
    return report


@app.get("/events")
def events(limit: int = 100, run_id: str | None = None) -> list[dict]:
    return db.latest_events(limit=limit, run_id=run_id)
