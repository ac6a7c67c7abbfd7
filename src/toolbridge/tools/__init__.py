"""Built-in toolsets."""

from toolbridge.tools.filesystem import FileResources, FilesystemTools, register_filesystem_tools

__all__ = [
    "FileResources",
    "FilesystemTools",
    "register_filesystem_tools",
]
