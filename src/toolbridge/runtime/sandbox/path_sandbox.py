"""PathSandbox — confines resource locators to an allowed root.

Every locator is joined onto the root, normalized, and symlink-resolved
*before* the boundary check.  The check compares path components, so
``/safe-evil`` never passes for a root of ``/safe``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from urllib.parse import unquote, urlparse

from toolbridge.runtime.errors import SandboxViolationError
from toolbridge.runtime.sandbox.models import SandboxPolicy

logger = logging.getLogger(__name__)


class PathSandbox:
    """Resolve locators against a :class:`SandboxPolicy`.

    Usage::

        sandbox = PathSandbox(SandboxPolicy(allowed_root=Path("/safe")))
        sandbox.resolve("sub/file.txt")       # Path("/safe/sub/file.txt")
        sandbox.resolve("../../etc/passwd")   # raises SandboxViolationError
    """

    def __init__(self, policy: SandboxPolicy | Path | str) -> None:
        if not isinstance(policy, SandboxPolicy):
            policy = SandboxPolicy(allowed_root=Path(policy))
        self._policy = policy
        self._root = Path(os.path.abspath(policy.allowed_root)).resolve()

    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, locator: str) -> Path:
        """Return the absolute, resolved path for *locator*.

        Accepts relative paths, absolute paths and ``file://`` URIs.

        Raises:
            SandboxViolationError: If the resolved path is outside the root.
        """
        raw = _strip_file_scheme(locator.strip())
        candidate = self._root / raw if raw else self._root
        resolved = candidate.resolve(strict=False)

        if not self.contains(resolved):
            logger.warning("Sandbox violation: %r resolved to %s", locator, resolved)
            raise SandboxViolationError(locator, str(self._root))
        return resolved

    def contains(self, path: Path) -> bool:
        """Component-wise containment check; *path* must already be resolved."""
        return path == self._root or path.is_relative_to(self._root)

    def relative(self, path: Path) -> str:
        """Render a resolved path relative to the root for display."""
        rel = path.relative_to(self._root)
        return rel.as_posix() if rel.parts else "."


def _strip_file_scheme(locator: str) -> str:
    if not locator.startswith("file://"):
        return locator
    parsed = urlparse(locator)
    path = unquote(parsed.path)
    # file://notes.md puts the first segment in the host slot
    if parsed.netloc and parsed.netloc != "localhost":
        return unquote(parsed.netloc) + path
    return path
