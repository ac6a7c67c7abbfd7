"""Data models for the sandbox subsystem."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class SandboxPolicy(BaseModel):
    """Containment policy for resource locators; immutable per session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed_root: Path = Field(..., description="Directory every resource locator must resolve under.")
