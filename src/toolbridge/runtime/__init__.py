"""Runtime layer — sandboxing, admission control, validation and dispatch."""

from toolbridge.runtime.cancellation import CancellationToken
from toolbridge.runtime.dispatcher import ToolDispatcher
from toolbridge.runtime.errors import (
    DuplicateToolError,
    InvocationCancelledError,
    InvocationTimeoutError,
    RuntimeSafetyError,
    SandboxViolationError,
    ToolError,
)
from toolbridge.runtime.models import (
    DispatcherConfig,
    Invocation,
    InvocationContext,
    ParameterContract,
    ParameterSpec,
    ResultBuilder,
    ToolDefinition,
)
from toolbridge.runtime.ratelimit import RateLimitConfig, RateLimiter
from toolbridge.runtime.resources import ResourceProvider
from toolbridge.runtime.sandbox import PathSandbox, SandboxPolicy
from toolbridge.runtime.validation import SchemaValidator

__all__ = [
    "CancellationToken",
    "DispatcherConfig",
    "DuplicateToolError",
    "Invocation",
    "InvocationCancelledError",
    "InvocationContext",
    "InvocationTimeoutError",
    "ParameterContract",
    "ParameterSpec",
    "PathSandbox",
    "RateLimitConfig",
    "RateLimiter",
    "ResourceProvider",
    "ResultBuilder",
    "RuntimeSafetyError",
    "SandboxPolicy",
    "SandboxViolationError",
    "SchemaValidator",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolError",
]
