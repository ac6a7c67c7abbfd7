"""Server settings and the YAML settings loader."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from toolbridge.protocol.errors import ToolbridgeError
from toolbridge.runtime.models import DispatcherConfig
from toolbridge.runtime.ratelimit import RateLimitConfig
from toolbridge.runtime.sandbox import SandboxPolicy

ROOT_ENV_VAR = "TOOLBRIDGE_ROOT"


class SettingsValidationError(ToolbridgeError):
    """Raised when a settings file fails reading, parsing or validation."""


class SandboxSettings(BaseModel):
    """Where locators may point."""

    model_config = ConfigDict(extra="forbid")

    root: Path = Field(default_factory=Path.cwd, description="Allowed root directory.")

    def to_policy(self) -> SandboxPolicy:
        return SandboxPolicy(allowed_root=self.root)


class RateLimitSettings(BaseModel):
    """Per-caller moving-window limits."""

    enabled: bool = True
    max_calls: int = Field(default=60, gt=0, description="Calls admitted per window.")
    window_seconds: int = Field(default=60, gt=0, description="Window duration in whole seconds.")

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(max_calls=self.max_calls, window_seconds=self.window_seconds)


class TelemetrySettings(BaseModel):
    """Optional telemetry configuration."""

    enabled: bool = False
    export_to_console: bool = False
    otlp_endpoint: str | None = None


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class ServerSettings(BaseModel):
    """Top-level server configuration parsed from YAML."""

    name: str = Field(default="toolbridge-filesystem", description="Reported as serverInfo.name.")
    version: str = "0.1.0"
    caller_id: str | None = Field(
        default=None,
        description="Rate-limit identity for the peer; defaults to its clientInfo name.",
    )
    tool_timeout: float | None = Field(default=30.0, gt=0, description="Per-invocation timeout in seconds.")
    max_result_chars: int = Field(default=100_000, gt=0, description="Result size above which output is paged.")
    max_file_size: int = Field(default=1024 * 1024, gt=0, description="Largest file read or written, in bytes.")
    request_timeout: float = Field(default=60.0, gt=0)
    shutdown_grace: float = Field(default=5.0, ge=0)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(timeout=self.tool_timeout, max_result_chars=self.max_result_chars)

    def with_root_override(self, environ: dict[str, str] | None = None) -> ServerSettings:
        """Apply ``TOOLBRIDGE_ROOT`` from *environ* (default ``os.environ``) when set."""
        env = os.environ if environ is None else environ
        root = env.get(ROOT_ENV_VAR)
        if not root:
            return self
        sandbox = self.sandbox.model_copy(update={"root": Path(root)})
        return self.model_copy(update={"sandbox": sandbox})


class SettingsLoader:
    """Load and validate a settings YAML file into :class:`ServerSettings`."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> ServerSettings:
        """Read YAML, interpolate env vars, and validate.

        Environment variables in the form ``${VAR}`` or ``$VAR`` are expanded
        using :func:`os.path.expandvars` before YAML parsing.  An empty file
        yields the defaults.

        Raises:
            SettingsValidationError: On read, YAML parse or schema validation failures.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SettingsValidationError(f"Cannot read {self._path}: {exc}") from exc

        expanded = os.path.expandvars(raw)

        try:
            data: Any = yaml.safe_load(expanded)
        except yaml.YAMLError as exc:
            raise SettingsValidationError(f"YAML parse error: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise SettingsValidationError("Settings YAML must be a mapping")

        try:
            return ServerSettings.model_validate(data)
        except ValidationError as exc:
            raise SettingsValidationError(str(exc)) from exc


def load_settings(path: Path | None = None, *, root: Path | None = None) -> ServerSettings:
    """Load settings from *path* (or defaults), then apply root overrides.

    Precedence for the sandbox root: *root* argument, ``TOOLBRIDGE_ROOT``,
    settings file, current directory.
    """
    settings = SettingsLoader(path).load() if path is not None else ServerSettings()
    settings = settings.with_root_override()
    if root is not None:
        settings = settings.model_copy(update={"sandbox": settings.sandbox.model_copy(update={"root": root})})
    return settings
