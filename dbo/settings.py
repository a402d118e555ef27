from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping


class ConfigError(Exception):
    """The graph, manifest or stack configuration is invalid; nothing was launched."""


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DBO_DB_PATH", "dbo.db")
    docker_network: str = os.getenv("DBO_DOCKER_NETWORK", "dbo")
    api_url: str = os.getenv("DBO_API_URL", "http://localhost:8000")

    # Scheduling
    global_timeout_s: float = _env_float("DBO_GLOBAL_TIMEOUT_S", 600.0)
    grace_period_s: float = _env_float("DBO_GRACE_PERIOD_S", 10.0)
    tick_s: float = _env_float("DBO_TICK_S", 0.5)
    teardown_on_exit: bool = _env_bool("DBO_TEARDOWN_ON_EXIT", True)

    # Email alerting (optional)
    enable_email: bool = _env_bool("DBO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DBO_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DBO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DBO_SMTP_USER")
    smtp_password: str | None = os.getenv("DBO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DBO_EMAIL_FROM")
    email_to: str | None = os.getenv("DBO_EMAIL_TO")


settings = Settings()


# Environment variables read by StackConfig.from_env(), keyed by field name.
_STACK_ENV = {
    "chain": "DBO_CHAIN",
    "rpc_port": "DBO_RPC_PORT",
    "p2p_port": "DBO_P2P_PORT",
    "peer_keypair": "DBO_PEER_KEYPAIR",
    "snapshot_source": "DBO_SNAPSHOT_SOURCE",
    "param_cache": "DBO_PARAM_CACHE",
}


@dataclass(frozen=True)
class StackConfig:
    """Immutable stack variables substituted into launch specs at build time.

    Nothing in the scheduler reads these; they only flow into the
    ``${VAR}`` placeholders of a manifest.
    """

    chain: str = "calibnet"
    rpc_port: int = 2345
    p2p_port: int = 12345
    peer_keypair: str | None = None
    snapshot_source: str | None = None
    param_cache: str = "/var/tmp/filecoin-proof-parameters"
    extra: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        # Freeze whatever mapping the caller handed in.
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StackConfig":
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}
        for name, var in _STACK_ENV.items():
            raw = env.get(var)
            if raw is None:
                continue
            if name in {"rpc_port", "p2p_port"}:
                try:
                    kwargs[name] = int(raw)
                except ValueError:
                    continue
            else:
                kwargs[name] = raw
        return cls(**kwargs)  # type: ignore[arg-type]

    def with_overrides(self, overrides: Mapping[str, str]) -> "StackConfig":
        """Return a copy where known keys replace fields and the rest land in ``extra``."""
        fields: dict[str, object] = {}
        extra = dict(self.extra)
        by_var = {k.upper(): k for k in _STACK_ENV}
        for key, value in overrides.items():
            name = by_var.get(key.upper())
            if name is None:
                extra[key] = value
            elif name in {"rpc_port", "p2p_port"}:
                try:
                    fields[name] = int(value)
                except ValueError as e:
                    raise ConfigError(f"{key} must be an integer, got '{value}'") from e
            else:
                fields[name] = value
        return replace(self, extra=extra, **fields)  # type: ignore[arg-type]

    def variables(self) -> dict[str, str]:
        out: dict[str, str] = {
            "CHAIN": self.chain,
            "RPC_PORT": str(self.rpc_port),
            "P2P_PORT": str(self.p2p_port),
            "PARAM_CACHE": self.param_cache,
        }
        if self.peer_keypair is not None:
            out["PEER_KEYPAIR"] = self.peer_keypair
        if self.snapshot_source is not None:
            out["SNAPSHOT_SOURCE"] = self.snapshot_source
        out.update(self.extra)
        return out
