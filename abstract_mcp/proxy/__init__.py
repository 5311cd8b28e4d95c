"""
Abstract MCP Proxy

Calls tools on upstream MCP servers and stores their responses as files,
returning compact resource links instead of large payloads.
"""

from .config import ServerConfig, StorageSettings, UpstreamRegistry, load_upstream_registry
from .client import MCPMessage, ConnectionState, StdioTransport, UpstreamSession, call_upstream_tool
from .discovery import ToolInfo, get_tool_details, list_available_tools
from .envelope import extract_value, format_tool_response
from .errors import (
    ProxyError,
    ConfigurationError,
    UnknownServerError,
    ValidationError,
    PathNotAllowedError,
    DirectoryNotWritableError,
    DataKeyConflictError,
    FileTooLargeError,
    FileAccessError,
    ParseError,
    UpstreamError,
)
from .formats import FileFormat, detect_format, encode, file_extension, parse
from .guard import is_within_allowed, is_writable_directory
from .ingestor import FileIngestor, merge_file_data_with_args, read_and_parse_file
from .materializer import Materializer, ResourceLink

__all__ = [
    "ServerConfig",
    "StorageSettings",
    "UpstreamRegistry",
    "load_upstream_registry",
    "MCPMessage",
    "ConnectionState",
    "StdioTransport",
    "UpstreamSession",
    "call_upstream_tool",
    "ToolInfo",
    "get_tool_details",
    "list_available_tools",
    "extract_value",
    "format_tool_response",
    "ProxyError",
    "ConfigurationError",
    "UnknownServerError",
    "ValidationError",
    "PathNotAllowedError",
    "DirectoryNotWritableError",
    "DataKeyConflictError",
    "FileTooLargeError",
    "FileAccessError",
    "ParseError",
    "UpstreamError",
    "FileFormat",
    "detect_format",
    "encode",
    "file_extension",
    "parse",
    "is_within_allowed",
    "is_writable_directory",
    "FileIngestor",
    "merge_file_data_with_args",
    "read_and_parse_file",
    "Materializer",
    "ResourceLink",
]
