"""
Storing upstream tool responses on disk.

The Materializer calls an upstream tool, converts the extracted payload into
the requested file format, writes it inside an allowed directory and returns
a small resource link that stands in for the payload in the conversation.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from .client import call_upstream_tool
from .config import StorageSettings, UpstreamRegistry
from .envelope import extract_value
from .formats import FileFormat, encode, file_extension
from .guard import require_within_allowed, require_writable_directory

logger = logging.getLogger(__name__)

Invoker = Callable[[str, str, Any, UpstreamRegistry], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ResourceLink:
    """Pointer to a stored response, returned instead of the response itself."""

    path: str
    bytes: int
    description: str

    @property
    def uri(self) -> str:
        return f"file://{self.path}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "@type": "resourceLink",
            "uri": self.uri,
            "bytes": self.bytes,
            "description": self.description,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp in ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def create_cache_data(
    tool_name: str,
    tool_args: Any,
    response: Any,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the record describing one stored upstream response."""
    return {
        "tool_name": tool_name,
        "tool_args": tool_args,
        "response": response,
        "description": description or f"Response from {tool_name}",
        "timestamp": iso_timestamp(),
        "type": "upstream_tool_response",
    }


def generate_filename(
    server: str,
    tool_name: str,
    custom_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Return ``custom_name`` or ``<server>-<tool>-<timestamp>`` (no extension)."""
    if custom_name:
        return custom_name
    timestamp = iso_timestamp(now).replace(":", "-").replace(".", "-")
    return f"{server}-{tool_name}-{timestamp}"


def generate_cache_file_path(
    target_dir: str,
    allowed_dirs: Sequence[str],
    filename: str,
    file_format: Union[str, FileFormat, None] = FileFormat.JSON,
) -> str:
    """
    Build the absolute path of a stored response.

    Raises:
        PathNotAllowedError: If the directory, or the file once joined with a
            caller-chosen name, falls outside the allowed directories
    """
    require_within_allowed(target_dir, allowed_dirs, what="Target directory")
    file_path = os.path.join(
        os.path.abspath(target_dir), f"{filename}{file_extension(file_format)}"
    )
    require_within_allowed(file_path, allowed_dirs, what="File path")
    return os.path.abspath(file_path)


def create_resource_link(
    file_path: str, data: Any, description: Optional[str] = None
) -> ResourceLink:
    """
    Create the pointer for a stored file.

    ``bytes`` is the UTF-8 size of ``data`` as compact JSON, i.e. of what
    the response would have cost if it had been returned inline.
    """
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)
    return ResourceLink(
        path=file_path,
        bytes=len(payload.encode("utf-8")),
        description=description or "Cached tool response",
    )


class Materializer:
    """
    Calls upstream tools and stores their responses in allowed directories.
    """

    def __init__(
        self,
        registry: UpstreamRegistry,
        storage: StorageSettings,
        invoke: Invoker = call_upstream_tool,
    ):
        """
        Initialize the materializer.

        Args:
            registry: Upstream server registry
            storage: Allowed directories; the first is the default target
            invoke: Upstream call function, replaceable for testing
        """
        self.registry = registry
        self.storage = storage
        self._invoke = invoke

    async def resolve_target_directory(self, storage_path: Optional[str]) -> str:
        """
        Pick the directory to store into.

        Raises:
            PathNotAllowedError: If ``storage_path`` is outside the allow-list
            DirectoryNotWritableError: If ``storage_path`` cannot be written
        """
        if not storage_path:
            return self.storage.default_directory

        require_within_allowed(
            storage_path, self.storage.allowed_directories, what="Storage path"
        )
        await require_writable_directory(storage_path)
        return storage_path

    async def materialize(
        self,
        server: str,
        tool_name: str,
        tool_args: Any = None,
        *,
        storage_path: Optional[str] = None,
        filename: Optional[str] = None,
        file_format: Union[str, FileFormat, None] = FileFormat.JSON,
        description: Optional[str] = None,
    ) -> ResourceLink:
        """
        Call an upstream tool and store its response as a file.

        Args:
            server: Upstream server name
            tool_name: Tool to call
            tool_args: Tool arguments, passed through unchanged
            storage_path: Directory to store into, defaults to the first allowed one
            filename: File name without extension, defaults to ``<server>-<tool>-<timestamp>``
            file_format: Storage format, also selects the file extension
            description: Human description for the resource link

        Returns:
            ResourceLink to the written file
        """
        if tool_args is None:
            tool_args = {}
        file_format = file_format or FileFormat.JSON

        target_dir = await self.resolve_target_directory(storage_path)

        response = await self._invoke(server, tool_name, tool_args, self.registry)

        content = encode(extract_value(response), file_format)

        file_path = generate_cache_file_path(
            target_dir,
            self.storage.allowed_directories,
            generate_filename(server, tool_name, filename),
            file_format,
        )
        with open(file_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        cache_data = create_cache_data(
            f"{server}:{tool_name}", tool_args, response, description
        )
        link = create_resource_link(
            file_path, cache_data, description or f"Response from {server}:{tool_name}"
        )
        logger.info(
            f"Stored response from {server}:{tool_name} at {file_path} ({link.bytes} bytes)"
        )
        return link
