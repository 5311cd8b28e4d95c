"""
Calling upstream tools with arguments read from data files.

The mirror image of the Materializer: a structured file inside an allowed
directory is parsed and injected into the tool arguments, so bulk data never
has to travel through the conversation.
"""

import logging
import os
from typing import Any, Dict, Optional

from .client import call_upstream_tool
from .config import StorageSettings, UpstreamRegistry
from .envelope import format_tool_response
from .errors import DataKeyConflictError, FileAccessError, FileTooLargeError, ParseError
from .formats import detect_format, parse
from .guard import require_within_allowed
from .materializer import Invoker

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


def validate_file_size(file_path: str, limit: int = MAX_FILE_SIZE) -> int:
    """Return the file size, raising FileTooLargeError above ``limit``."""
    size = os.stat(file_path).st_size
    if size > limit:
        raise FileTooLargeError(file_path, size, limit)
    return size


def read_and_parse_file(file_path: str) -> Any:
    """
    Read a data file and parse it according to its extension.

    Raises:
        FileAccessError: If the file does not exist or is not readable
        FileTooLargeError: If the file exceeds MAX_FILE_SIZE
        ParseError: If the content does not parse
    """
    if not os.path.isfile(file_path) or not os.access(file_path, os.R_OK):
        raise FileAccessError(file_path)

    validate_file_size(file_path, MAX_FILE_SIZE)

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            content = f.read()
    except UnicodeDecodeError as e:
        raise ParseError(f"File '{file_path}' is not valid UTF-8: {e}", path=file_path) from e
    except OSError as e:
        raise FileAccessError(file_path) from e

    file_format = detect_format(file_path)
    logger.debug(f"Parsing {file_path} as {file_format.value}")
    try:
        return parse(content, file_format)
    except ParseError as e:
        e.path = file_path
        raise


def merge_file_data_with_args(
    file_content: Any,
    data_key: Optional[str] = None,
    tool_args: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Combine parsed file content with explicit tool arguments.

    Without ``data_key`` the file content is the whole argument value. With it,
    the content is added under that key next to ``tool_args``.

    Raises:
        DataKeyConflictError: If ``tool_args`` already has ``data_key``
    """
    if not data_key:
        return file_content

    if tool_args and data_key in tool_args:
        raise DataKeyConflictError(data_key)

    merged = dict(tool_args or {})
    merged[data_key] = file_content
    return merged


class FileIngestor:
    """
    Calls upstream tools with arguments built from data files.
    """

    def __init__(
        self,
        registry: UpstreamRegistry,
        storage: StorageSettings,
        invoke: Invoker = call_upstream_tool,
    ):
        self.registry = registry
        self.storage = storage
        self._invoke = invoke

    async def call_with_file(
        self,
        server: str,
        tool_name: str,
        file_path: str,
        *,
        data_key: Optional[str] = None,
        tool_args: Optional[Dict[str, Any]] = None,
        output_format: str = "json",
    ) -> str:
        """
        Read ``file_path``, merge it into the arguments and call the tool.

        Args:
            server: Upstream server name
            tool_name: Tool to call
            file_path: Data file inside an allowed directory
            data_key: Argument name for the file content; omitted means the
                content is the entire argument value
            tool_args: Extra arguments to merge with the file content
            output_format: ``"json"`` for the full result envelope or
                ``"string"`` for the extracted content

        Returns:
            The upstream result rendered per ``output_format``
        """
        require_within_allowed(
            file_path, self.storage.allowed_directories, what="File path"
        )

        file_content = read_and_parse_file(file_path)
        arguments = merge_file_data_with_args(file_content, data_key, tool_args)

        logger.info(f"Calling {server}:{tool_name} with content of {file_path}")
        response = await self._invoke(server, tool_name, arguments, self.registry)

        return format_tool_response(response, output_format or "json")
