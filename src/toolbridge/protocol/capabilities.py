"""CapabilityRegistry — negotiated method categories for one session.

Pure logic, no I/O.  Each side declares its capability categories once during
negotiation; the registry intersects the two declarations and then answers
``is_allowed(method)`` for every inbound or outbound request.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from toolbridge.protocol.models import CapabilityFlags

logger = logging.getLogger(__name__)

GATED_CATEGORIES = frozenset({"tools", "resources", "prompts"})

# Methods usable regardless of negotiated categories.
LIFECYCLE_METHODS = frozenset({"initialize", "ping", "shutdown"})

_FLAG_NAMES = ("list_changed", "subscribe")


class AgreedCapabilities(BaseModel):
    """Result of negotiation: category -> agreed sub-flags."""

    categories: dict[str, CapabilityFlags] = Field(default_factory=dict)

    def __contains__(self, category: object) -> bool:
        return category in self.categories


def parse_capabilities(raw: dict[str, Any] | None) -> dict[str, CapabilityFlags]:
    """Normalize a wire ``capabilities`` mapping.

    Categories declared as ``{}`` or ``true`` count as declared with no
    sub-flags; ``null``/``false`` count as not declared.
    """
    declared: dict[str, CapabilityFlags] = {}
    for name, value in (raw or {}).items():
        if value is None or value is False:
            continue
        if value is True:
            declared[name] = CapabilityFlags()
        elif isinstance(value, CapabilityFlags):
            declared[name] = value
        elif isinstance(value, dict):
            declared[name] = CapabilityFlags.model_validate(value)
        else:
            logger.warning("Ignoring malformed capability declaration for %r: %r", name, value)
    return declared


class CapabilityRegistry:
    """Holds the agreed capability categories for one session.

    Usage::

        registry = CapabilityRegistry()
        registry.negotiate(local_offered, remote_offered)
        registry.is_allowed("tools/call")   # True if both sides declared "tools"
    """

    def __init__(self) -> None:
        self._agreed: AgreedCapabilities | None = None

    @property
    def agreed(self) -> AgreedCapabilities | None:
        return self._agreed

    @property
    def negotiated(self) -> bool:
        return self._agreed is not None

    def negotiate(
        self,
        local_offered: dict[str, CapabilityFlags] | dict[str, Any],
        remote_offered: dict[str, CapabilityFlags] | dict[str, Any],
    ) -> AgreedCapabilities:
        """Agree categories independently.

        A category is agreed only if the providing side offered it and the
        consuming side declared it can use it.  A sub-flag is agreed only if
        both declared it: the provider promises to emit (e.g. list-change
        notifications), the consumer promises to accept.

        Raises:
            RuntimeError: If called twice; declarations are immutable.
        """
        if self._agreed is not None:
            msg = "Capabilities were already negotiated for this session"
            raise RuntimeError(msg)

        local = parse_capabilities(local_offered)
        remote = parse_capabilities(remote_offered)

        categories: dict[str, CapabilityFlags] = {}
        for name in sorted(local.keys() & remote.keys()):
            flags = {
                flag: getattr(local[name], flag) and getattr(remote[name], flag)
                for flag in _FLAG_NAMES
            }
            categories[name] = CapabilityFlags(**flags)

        self._agreed = AgreedCapabilities(categories=categories)
        logger.debug("Negotiated capabilities: %s", sorted(categories))
        return self._agreed

    def is_allowed(self, method: str) -> bool:
        """Return whether *method* may be dispatched in this session."""
        if method in LIFECYCLE_METHODS or method.startswith("notifications/"):
            return True
        category = method.split("/", 1)[0]
        if category not in GATED_CATEGORIES or self._agreed is None:
            return False
        return category in self._agreed

    def supports(self, category: str, flag: str) -> bool:
        """Return whether sub-flag *flag* (``list_changed``/``subscribe``) was agreed."""
        if self._agreed is None or category not in self._agreed:
            return False
        return bool(getattr(self._agreed.categories[category], flag, False))
