from __future__ import annotations

import os
import re
import secrets
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound

from .db import log_event
from .settings import settings


NODE_ID_RE = re.compile(r"^[a-z][a-z0-9\-_]{0,62}$")


def validate_node_id(node_id: str) -> None:
    if not NODE_ID_RE.match(node_id):
        raise ValueError(
            f"Invalid node id {node_id!r}. Use lowercase letters/numbers, '-' and '_', starting with a letter (max 63 chars)."
        )


class LaunchError(Exception):
    """The invoker could not start a node."""


class Signal(str, Enum):
    STOP = "stop"
    KILL = "kill"


@dataclass(frozen=True)
class Mount:
    source: str  # named volume or host path
    target: str
    read_only: bool = False


@dataclass(frozen=True)
class LaunchSpec:
    """Everything an invoker needs to start one node. The scheduler never looks inside."""

    image: str | None = None
    command: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    mounts: tuple[Mount, ...] = ()
    user: str | None = None
    working_dir: str | None = None
    network: str | None = None

    @property
    def env(self) -> dict[str, str]:
        return dict(self.environment)


@dataclass(frozen=True)
class Handle:
    id: str
    name: str
    node_id: str


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str = ""


class Invoker:
    """Interface boundary to whatever actually runs a node."""

    def launch(self, node_id: str, spec: LaunchSpec) -> Handle:
        raise NotImplementedError

    def signal(self, handle: Handle, action: Signal) -> None:
        raise NotImplementedError

    def exit_code(self, handle: Handle) -> int | None:
        raise NotImplementedError

    def exec(self, handle: Handle, command: list[str], timeout_s: float) -> ExecResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------------


class DockerInvoker(Invoker):
    """Runs nodes as labelled, detached containers on a per-run network.

    Containers are labelled with the run and node id so a run can be cleaned
    up even after the orchestrator itself restarted.
    """

    def __init__(self, run_id: str, client: Any = None, network: str | None = None) -> None:
        self.run_id = run_id
        self._client = client
        self.network = network or settings.docker_network
        self._network_ready = False
        self._lock = threading.Lock()

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def _ensure_network(self, name: str) -> None:
        with self._lock:
            if self._network_ready:
                return
            try:
                self.client.networks.get(name)
            except NotFound:
                self.client.networks.create(name, driver="bridge")
                log_event("INFO", f"Created docker network '{name}'.", run_id=self.run_id)
            self._network_ready = True

    def launch(self, node_id: str, spec: LaunchSpec) -> Handle:
        validate_node_id(node_id)
        if not spec.image:
            raise LaunchError(f"Node '{node_id}' has no image to run.")

        name = f"dbo-{self.run_id}-{node_id}-{secrets.token_hex(3)}"
        labels = {"dbo.run": self.run_id, "dbo.node": node_id}
        volumes = {
            m.source: {"bind": m.target, "mode": "ro" if m.read_only else "rw"} for m in spec.mounts
        }
        network = spec.network or self.network
        try:
            self._ensure_network(network)
            container = self.client.containers.run(
                spec.image,
                command=list(spec.command) or None,
                entrypoint=list(spec.entrypoint) or None,
                detach=True,
                name=name,
                hostname=node_id,
                environment=spec.env,
                volumes=volumes,
                user=spec.user,
                working_dir=spec.working_dir,
                network=network,
                labels=labels,
                # The scheduler decides what a dead container means; no docker restarts.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise LaunchError(f"docker run failed for '{node_id}': {type(e).__name__}: {e}") from e

        log_event("INFO", f"Started container {name} from image {spec.image}", run_id=self.run_id, node_id=node_id)
        return Handle(id=container.id, name=name, node_id=node_id)

    def signal(self, handle: Handle, action: Signal) -> None:
        try:
            cont = self.client.containers.get(handle.id)
            if action == Signal.STOP:
                cont.kill(signal="SIGTERM")
            else:
                cont.remove(force=True)
        except NotFound:
            return
        except APIError as e:
            # Stopping an already exited container is not an error.
            log_event("WARN", f"{action.value} failed for {handle.name}: {e}", run_id=self.run_id, node_id=handle.node_id)

    def exit_code(self, handle: Handle) -> int | None:
        try:
            cont = self.client.containers.get(handle.id)
            cont.reload()
        except NotFound:
            # Removed containers count as killed.
            return 137
        except APIError as e:
            log_event("WARN", f"Could not inspect {handle.name}: {e}", run_id=self.run_id, node_id=handle.node_id)
            return None
        state = cont.attrs.get("State", {})
        if cont.status in {"created", "running", "restarting"} or state.get("Running"):
            return None
        return int(state.get("ExitCode", 0))

    def exec(self, handle: Handle, command: list[str], timeout_s: float) -> ExecResult:
        # docker-py has no exec timeout; wrap with coreutils `timeout` inside the container.
        wrapped = ["timeout", str(max(1, int(timeout_s)))] + list(command)
        try:
            cont = self.client.containers.get(handle.id)
            code, out = cont.exec_run(wrapped, stdout=True, stderr=True, demux=False)
        except NotFound:
            return ExecResult(exit_code=137, output="container gone")
        text = out.decode("utf-8", errors="replace") if isinstance(out, (bytes, bytearray)) else str(out or "")
        return ExecResult(exit_code=int(code if code is not None else 1), output=text)

    def cleanup(self) -> int:
        """Force-remove every container labelled with this run. Returns the count."""
        removed = 0
        for cont in self.client.containers.list(all=True, filters={"label": [f"dbo.run={self.run_id}"]}):
            try:
                cont.remove(force=True)
                removed += 1
            except NotFound:
                continue
        return removed


# ---------------------------------------------------------------------------
# Local processes
# ---------------------------------------------------------------------------


class ProcessInvoker(Invoker):
    """Runs nodes as local subprocesses; ``image`` is ignored."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._procs: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def launch(self, node_id: str, spec: LaunchSpec) -> Handle:
        validate_node_id(node_id)
        argv = list(spec.entrypoint) + list(spec.command)
        if not argv:
            raise LaunchError(f"Node '{node_id}' has no command to run.")
        env = dict(os.environ)
        env.update(spec.env)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=spec.working_dir,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(f"could not start '{node_id}': {e}") from e

        name = f"{node_id}-{proc.pid}"
        with self._lock:
            self._procs[name] = proc
        log_event("INFO", f"Started process {name}: {' '.join(argv)}", run_id=self.run_id, node_id=node_id)
        return Handle(id=str(proc.pid), name=name, node_id=node_id)

    def _proc(self, handle: Handle) -> subprocess.Popen | None:
        with self._lock:
            return self._procs.get(handle.name)

    def signal(self, handle: Handle, action: Signal) -> None:
        proc = self._proc(handle)
        if proc is None or proc.poll() is not None:
            return
        if action == Signal.STOP:
            proc.terminate()
        else:
            proc.kill()

    def exit_code(self, handle: Handle) -> int | None:
        proc = self._proc(handle)
        if proc is None:
            return None
        return proc.poll()

    def exec(self, handle: Handle, command: list[str], timeout_s: float) -> ExecResult:
        try:
            res = subprocess.run(
                list(command), capture_output=True, text=True, timeout=timeout_s, check=False
            )
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"'{' '.join(command)}' timed out after {timeout_s}s") from e
        return ExecResult(exit_code=res.returncode, output=res.stdout)


def make_invoker(kind: str, run_id: str) -> Invoker:
    if kind == "docker":
        return DockerInvoker(run_id)
    if kind == "process":
        return ProcessInvoker(run_id)
    raise ValueError(f"unknown invoker '{kind}' (expected docker|process)")
