"""Stack manifests.

A manifest is a JSON document shaped like the ``services`` section of a
compose file (``depends_on: {name: {condition: ...}}``), plus an explicit
readiness probe per node. ``${VAR}`` placeholders are filled from a
StackConfig before validation, so the built graph carries no ambient
environment.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .graph import ConfigError, DependencyEdge, DependencyGraph, ServiceNode, UnknownNode, build
from .invoker import LaunchSpec, Mount
from .probes import (
    ConditionPredicate,
    ExecCheck,
    ExecLineCount,
    HealthProbe,
    HttpCheck,
    PollingCommand,
    ProcessExit,
    ProcessStarted,
    RpcValue,
)
from .runtime import Condition
from .settings import StackConfig


class MissingVariable(ConfigError):
    pass


COMPOSE_CONDITIONS = {
    "service_started": Condition.STARTED,
    "service_completed_successfully": Condition.COMPLETED_SUCCESSFULLY,
}


class DependsOnModel(BaseModel):
    condition: Literal["service_started", "service_completed_successfully"] = "service_started"


class ProbeModel(BaseModel):
    kind: Literal["process_exit", "process_started", "polling_command", "condition_predicate"]
    interval_s: float = Field(1.0, gt=0, description="Seconds between polls")

    # polling_command: either a command run in the node's context, or an HTTP URL
    command: list[str] | None = None
    url: str | None = None
    expect_healthy_body: bool = Field(False, description='Require {"status": "healthy"} from the URL')
    timeout_s: float = Field(30.0, gt=0, description="Attempt timeout (polling) or overall timeout (predicate)")
    retries: int = Field(3, ge=1)
    start_period_s: float = Field(0.0, ge=0)

    # condition_predicate
    reader: Literal["exec_line_count", "rpc"] | None = None
    rpc_method: str | None = None
    rpc_params: list[Any] = Field(default_factory=list)
    threshold: float | None = None
    comparison: Literal[">=", ">", "<=", "<", "==", "!="] = ">="
    source: str | None = Field(None, description="Node whose handle commands run against and whose exit fails the probe")

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "ProbeModel":
        if self.kind == "polling_command" and not (self.command or self.url):
            raise ValueError("polling_command needs 'command' or 'url'")
        if self.kind == "condition_predicate":
            if self.threshold is None or self.reader is None:
                raise ValueError("condition_predicate needs 'reader' and 'threshold'")
            if self.reader == "exec_line_count" and not self.command:
                raise ValueError("reader 'exec_line_count' needs 'command'")
            if self.reader == "rpc" and not (self.url and self.rpc_method):
                raise ValueError("reader 'rpc' needs 'url' and 'rpc_method'")
        return self


class NodeModel(BaseModel):
    id: str
    description: str = ""
    image: str | None = None
    command: list[str] = Field(default_factory=list)
    entrypoint: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list, description="source:target[:ro]")
    user: str | None = None
    working_dir: str | None = None
    network: str | None = None
    requires: Literal["started", "completed_successfully"] = "completed_successfully"
    depends_on: dict[str, DependsOnModel] = Field(default_factory=dict)
    probe: ProbeModel | None = None

    @field_validator("environment", mode="before")
    @classmethod
    def _env_list(cls, v: Any) -> Any:
        # compose allows ["KEY=value", ...]
        if isinstance(v, list):
            out: dict[str, str] = {}
            for item in v:
                key, _, value = str(item).partition("=")
                out[key] = value
            return out
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def _depends_list(cls, v: Any) -> Any:
        # short form: ["init", "lotus"] means service_started
        if isinstance(v, list):
            return {name: {"condition": "service_started"} for name in v}
        return v

    @field_validator("volumes")
    @classmethod
    def _volume_syntax(cls, v: list[str]) -> list[str]:
        for item in v:
            parts = item.split(":")
            if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
                raise ValueError(f"volume '{item}' must be source:target[:ro]")
            if len(parts) == 3 and parts[2] not in ("ro", "rw"):
                raise ValueError(f"volume '{item}' mode must be ro or rw")
        return v

    def launch_spec(self) -> LaunchSpec | None:
        if self.image is None and not self.command and not self.entrypoint:
            return None
        mounts = []
        for item in self.volumes:
            parts = item.split(":")
            mounts.append(Mount(source=parts[0], target=parts[1], read_only=len(parts) == 3 and parts[2] == "ro"))
        return LaunchSpec(
            image=self.image,
            command=tuple(self.command),
            entrypoint=tuple(self.entrypoint),
            environment=tuple(sorted(self.environment.items())),
            mounts=tuple(mounts),
            user=self.user,
            working_dir=self.working_dir,
            network=self.network,
        )


class ManifestModel(BaseModel):
    name: str = "stack"
    timeout_s: float | None = Field(None, gt=0, description="Run deadline")
    grace_period_s: float | None = Field(None, ge=0)
    nodes: list[NodeModel] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# interpolation
# ---------------------------------------------------------------------------

_VAR_RE = re.compile(r"\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|([A-Za-z_][A-Za-z0-9_]*))")


def interpolate(value: Any, variables: dict[str, str]) -> Any:
    """Fill ``${VAR}``, ``${VAR:-default}`` and ``$VAR``; ``$$`` is a literal ``$``."""
    if isinstance(value, str):

        def _sub(m: re.Match) -> str:
            if m.group(1):
                return "$"
            name = m.group(2) or m.group(4)
            if name in variables:
                return variables[name]
            if m.group(3) is not None:
                return m.group(3)
            raise MissingVariable(f"variable '{name}' is not set and has no default")

        return _VAR_RE.sub(_sub, value)
    if isinstance(value, list):
        return [interpolate(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: interpolate(v, variables) for k, v in value.items()}
    return value


# ---------------------------------------------------------------------------
# loading and graph building
# ---------------------------------------------------------------------------


def parse_manifest(raw: dict[str, Any], config: StackConfig | None = None) -> ManifestModel:
    config = config or StackConfig()
    data = interpolate(raw, config.variables())
    try:
        return ManifestModel.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid manifest: {e}") from e


def load_manifest(path: str | Path, config: StackConfig | None = None) -> ManifestModel:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read manifest {p}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"manifest {p} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"manifest {p} must be a JSON object")
    return parse_manifest(raw, config)


def _build_probe(m: ProbeModel) -> HealthProbe:
    if m.kind == "process_exit":
        return ProcessExit(interval_s=m.interval_s)
    if m.kind == "process_started":
        return ProcessStarted(interval_s=m.interval_s)
    if m.kind == "polling_command":
        check = ExecCheck(m.command, node=m.source) if m.command else HttpCheck(m.url, m.expect_healthy_body)
        return PollingCommand(
            check,
            interval_s=m.interval_s,
            timeout_s=m.timeout_s,
            retries=m.retries,
            start_period_s=m.start_period_s,
        )
    if m.reader == "exec_line_count":
        reader: Any = ExecLineCount(m.command, node=m.source)
    else:
        reader = RpcValue(m.url, m.rpc_method, m.rpc_params)
    return ConditionPredicate(
        reader,
        threshold=m.threshold,
        comparison=m.comparison,
        timeout_s=m.timeout_s,
        interval_s=m.interval_s,
        source=m.source,
    )


def _check_probe_only(n: NodeModel) -> None:
    """A node without a launch spec has no process, so its probe must look elsewhere."""
    if n.probe is None:
        raise ConfigError(f"node '{n.id}' has no image, command or entrypoint and no probe")
    if n.probe.kind in {"process_exit", "process_started"}:
        raise ConfigError(f"node '{n.id}' launches nothing, a {n.probe.kind} probe has no process to watch")
    execs_command = n.probe.command is not None and (n.probe.kind == "polling_command" or n.probe.reader == "exec_line_count")
    if execs_command and not n.probe.source:
        raise ConfigError(f"node '{n.id}' launches nothing, its probe command needs a 'source' node to run in")


def build_graph(manifest: ManifestModel) -> DependencyGraph:
    declared = {n.id for n in manifest.nodes}
    nodes: list[ServiceNode] = []
    edges: list[DependencyEdge] = []
    for n in manifest.nodes:
        if n.probe is not None and n.probe.source and n.probe.source not in declared:
            raise UnknownNode(f"probe of '{n.id}' reads from unknown node '{n.probe.source}'")
        launch_spec = n.launch_spec()
        if launch_spec is None:
            _check_probe_only(n)
        nodes.append(
            ServiceNode(
                id=n.id,
                launch_spec=launch_spec,
                probe=_build_probe(n.probe) if n.probe else None,
                required_condition=Condition(n.requires),
                description=n.description,
            )
        )
        for dep, spec in n.depends_on.items():
            edges.append(DependencyEdge(source=dep, target=n.id, condition=COMPOSE_CONDITIONS[spec.condition]))
    return build(nodes, edges, name=manifest.name)
