"""
Exceptions raised by the Abstract MCP proxy.

Every error carries the operation context it happened in (server and tool
name, or the file path involved) so the tool surface can report it verbatim.
"""

from typing import Iterable, Optional


class ProxyError(Exception):
    """Base exception for all proxy failures."""

    def __init__(
        self,
        message: str,
        server_name: str = "",
        tool_name: str = "",
        path: str = "",
    ):
        """
        Initialize ProxyError.

        Args:
            message: Error message
            server_name: Upstream server involved in the failing operation
            tool_name: Upstream tool involved in the failing operation
            path: Filesystem path involved in the failing operation
        """
        super().__init__(message)
        self.message = message
        self.server_name = server_name
        self.tool_name = tool_name
        self.path = path

    @property
    def context(self) -> str:
        """Operation context as ``server:tool`` or the file path."""
        if self.server_name and self.tool_name:
            return f"{self.server_name}:{self.tool_name}"
        if self.server_name:
            return self.server_name
        return self.path

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ProxyError):
    """Raised when the proxy configuration cannot satisfy a request."""


class UnknownServerError(ConfigurationError):
    """Raised when a call names a server missing from the registry."""

    def __init__(self, server_name: str, available: Iterable[str]):
        self.available = list(available)
        super().__init__(
            f"Unknown upstream server: {server_name}. "
            f"Available servers: {', '.join(self.available)}",
            server_name=server_name,
        )


class ValidationError(ProxyError):
    """Raised when caller input violates a constraint."""


class PathNotAllowedError(ValidationError):
    """Raised when a path lies outside every allowed directory."""

    def __init__(self, path: str, allowed_dirs: Iterable[str], what: str = "Path"):
        self.allowed_dirs = list(allowed_dirs)
        super().__init__(
            f"{what} {path} is not within allowed directories: "
            f"{', '.join(self.allowed_dirs)}",
            path=path,
        )


class DirectoryNotWritableError(ValidationError):
    """Raised when a storage directory is missing or cannot be written."""

    def __init__(self, path: str):
        super().__init__(
            f"Storage directory {path} does not exist or is not writable", path=path
        )


class DataKeyConflictError(ValidationError):
    """Raised when file data would overwrite an explicit tool argument."""

    def __init__(self, data_key: str):
        self.data_key = data_key
        super().__init__(
            f"Conflict: data_key '{data_key}' already exists in tool_args. "
            "Choose a different data_key or remove the conflicting parameter."
        )


class FileTooLargeError(ValidationError):
    """Raised when an input file exceeds the ingestion size limit."""

    def __init__(self, path: str, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"File size {size} bytes exceeds maximum allowed size of "
            f"{limit} bytes ({limit // (1024 * 1024)}MB)",
            path=path,
        )


class FileAccessError(ValidationError):
    """Raised when an input file does not exist or cannot be read."""

    def __init__(self, path: str):
        super().__init__(f"File '{path}' does not exist or is not readable", path=path)


class ParseError(ProxyError):
    """Raised when file content cannot be parsed in its detected format."""

    def __init__(self, message: str, row: Optional[int] = None, path: str = ""):
        self.row = row
        super().__init__(message, path=path)


class UpstreamError(ProxyError):
    """Raised when the upstream process or its JSON-RPC exchange fails."""

    def __init__(
        self,
        message: str,
        server_name: str = "",
        tool_name: str = "",
        code: Optional[int] = None,
    ):
        self.code = code
        super().__init__(message, server_name=server_name, tool_name=tool_name)
