"""ResourceProvider protocol — what a Session needs to serve ``resources/*``."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from toolbridge.protocol.models import ResourceContent, ResourceDescriptor

ResourceListener = Callable[[str], None]


@runtime_checkable
class ResourceProvider(Protocol):
    """Lists, reads and validates resources addressed by URI."""

    async def list_resources(self) -> list[ResourceDescriptor]:
        """Return the resources currently available."""
        ...

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        """Return the contents of *uri*.

        Raises ``SandboxViolationError`` for URIs outside the allowed root and
        ``InvalidParamsError`` for missing resources.
        """
        ...

    def validate_uri(self, uri: str) -> None:
        """Raise if *uri* can never be served (used by ``resources/subscribe``)."""
        ...

    def add_listener(self, listener: ResourceListener) -> None:
        """Call *listener(uri)* whenever a resource changes."""
        ...

    def remove_listener(self, listener: ResourceListener) -> None: ...
