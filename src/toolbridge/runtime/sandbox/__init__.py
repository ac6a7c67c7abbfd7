"""Sandbox subsystem — resource locator containment."""

from toolbridge.runtime.sandbox.models import SandboxPolicy
from toolbridge.runtime.sandbox.path_sandbox import PathSandbox

__all__ = [
    "PathSandbox",
    "SandboxPolicy",
]
