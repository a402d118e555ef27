from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RunRequest(BaseModel):
    manifest: dict[str, Any] = Field(..., description="Stack manifest (same shape as the JSON file)")
    variables: dict[str, str] = Field(default_factory=dict, description="Stack variables, e.g. CHAIN, RPC_PORT")
    invoker: str = Field("docker", description="docker|process")
    timeout_s: float | None = Field(None, gt=0, le=86400, description="Run deadline; overrides the manifest")


class RunStarted(BaseModel):
    run_id: str
    name: str
    order: list[str]
