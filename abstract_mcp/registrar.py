import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools import FunctionTool

from .proxy import (
    FileIngestor,
    Materializer,
    StorageSettings,
    UpstreamRegistry,
    get_tool_details,
    list_available_tools,
)

StorageFormat = Literal["json", "csv", "md", "txt", "html", "yaml", "xml", "tsv"]
OutputFormat = Literal["json", "string"]


class ToolRegistrar:
    """
    Registers the proxy's tools on the FastMCP server instance.

    The registry and the allowed directories are injected once and shared by
    every tool; nothing here keeps state between calls.
    """

    def __init__(
        self,
        registry: UpstreamRegistry,
        storage: StorageSettings,
        materializer: Optional[Materializer] = None,
        ingestor: Optional[FileIngestor] = None,
    ):
        self.registry = registry
        self.storage = storage
        self.materializer = materializer or Materializer(registry, storage)
        self.ingestor = ingestor or FileIngestor(registry, storage)

    async def call_tool_and_store(
        self,
        server: str,
        tool_name: str,
        tool_args: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        storage_path: Optional[str] = None,
        filename: Optional[str] = None,
        file_format: Optional[StorageFormat] = None,
    ) -> str:
        """Call an upstream tool and store its response, returning a resource link."""
        try:
            link = await self.materializer.materialize(
                server,
                tool_name,
                tool_args or {},
                storage_path=storage_path,
                filename=filename,
                file_format=file_format or "json",
                description=description,
            )
        except Exception as e:
            logging.error(f"Failed to call upstream tool: {e}")
            raise ToolError(f"Error calling {server}:{tool_name}: {e}") from e
        return link.to_json()

    async def call_tool_with_file_content(
        self,
        server: str,
        tool_name: str,
        file_path: str,
        data_key: Optional[str] = None,
        tool_args: Optional[Dict[str, Any]] = None,
        output_format: Optional[OutputFormat] = None,
    ) -> str:
        """Call an upstream tool with arguments read from a data file."""
        selected_format = output_format or "json"
        try:
            return await self.ingestor.call_with_file(
                server,
                tool_name,
                file_path,
                data_key=data_key,
                tool_args=tool_args,
                output_format=selected_format,
            )
        except Exception as e:
            logging.error(f"Failed to call tool with file content: {e}")
            if selected_format == "string":
                message = f"Error in call_tool_with_file_content: {e}"
            else:
                message = json.dumps(
                    {
                        "error": str(e),
                        "tool": f"{server}:{tool_name}",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    indent=2,
                )
            raise ToolError(message) from e

    async def list_available_tools(
        self, detailed: bool = False, filter_by_server: Optional[str] = None
    ) -> str:
        """List the tools offered by the upstream servers."""
        tools = await list_available_tools(
            self.registry, detailed=bool(detailed), filter_by_server=filter_by_server
        )
        return json.dumps([tool.to_dict() for tool in tools], indent=2)

    async def list_tool_details(self, server: str, tool_name: str) -> str:
        """Return the full definition of one upstream tool."""
        try:
            details = await get_tool_details(server, tool_name, self.registry)
        except Exception as e:
            logging.error(f"Failed to get tool details for {server}:{tool_name}: {e}")
            return f"Error getting tool details: {e}"

        if details is None:
            return f"Tool '{tool_name}' not found on server '{server}'"
        return json.dumps(details.to_dict(), indent=2)

    async def list_allowed_directories(self) -> str:
        """Report the directories responses may be stored in."""
        return json.dumps(self.storage.to_dict(), indent=2)

    def register_tools(self, server: FastMCP) -> None:
        """Register every proxy tool on the MCP server."""
        tools = [
            (
                "call_tool_and_store",
                self.call_tool_and_store,
                "Calls an upstream MCP tool and stores the response in a file inside "
                "an allowed directory, returning a compact resource link "
                "(uri, bytes, description) instead of the payload. file_format "
                "converts the response to json, csv, tsv, yaml, xml, html, txt or md.",
            ),
            (
                "call_tool_with_file_content",
                self.call_tool_with_file_content,
                "Reads a JSON, CSV, TSV, YAML, XML or TXT file from an allowed "
                "directory (max 10MB) and passes its content to an upstream tool, "
                "either as the whole argument object or under data_key merged with "
                "tool_args. output_format 'json' returns the full response, "
                "'string' only its content.",
            ),
            (
                "list_available_tools",
                self.list_available_tools,
                "Lists the tools offered by the configured upstream servers as "
                "{server, tool, description, inputSchema?} objects.",
            ),
            (
                "list_tool_details",
                self.list_tool_details,
                "Returns the full definition, including the input schema, of one "
                "upstream tool.",
            ),
            (
                "list_allowed_directories",
                self.list_allowed_directories,
                "Lists the directories responses can be stored in and files can be "
                "read from, with the default directory first.",
            ),
        ]

        for name, func, description in tools:
            server.add_tool(FunctionTool.from_function(func, name=name, description=description))
            logging.info(f"  - Registered tool: '{name}'")
