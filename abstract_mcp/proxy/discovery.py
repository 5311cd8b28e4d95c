"""
Tool discovery across upstream servers.

Each server is asked for its ``tools/list`` over a short-lived session, the
same way tool calls are made.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .client import UpstreamSession
from .config import ServerConfig, UpstreamRegistry
from .errors import UnknownServerError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class ToolInfo:
    """A tool offered by an upstream server."""

    server: str
    tool: str
    description: str
    input_schema: Optional[Dict[str, Any]] = field(default=None)

    @classmethod
    def from_mcp_response(
        cls, tool_data: Dict[str, Any], server_name: str, detailed: bool = True
    ) -> "ToolInfo":
        """Create ToolInfo from a ``tools/list`` entry."""
        return cls(
            server=server_name,
            tool=tool_data.get("name", ""),
            description=tool_data.get("description") or "No description",
            input_schema=tool_data.get("inputSchema") if detailed else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "server": self.server,
            "tool": self.tool,
            "description": self.description,
        }
        if self.input_schema:
            data["inputSchema"] = self.input_schema
        return data

    def __str__(self) -> str:
        return f"ToolInfo({self.tool} from {self.server})"


async def fetch_tools(server_config: ServerConfig) -> List[Dict[str, Any]]:
    """List the raw tool definitions of one server."""
    async with UpstreamSession(server_config) as session:
        return await session.list_tools()


async def list_available_tools(
    registry: UpstreamRegistry,
    detailed: bool = False,
    filter_by_server: Optional[str] = None,
) -> List[ToolInfo]:
    """
    Discover tools on every configured server (or just one).

    A server that cannot be reached is reported as a single entry with tool
    name ``ERROR`` instead of failing the whole listing.
    """
    if filter_by_server:
        server_config = registry.get(filter_by_server)
        servers = [server_config] if server_config else []
    else:
        servers = [config for _, config in registry.items()]

    available: List[ToolInfo] = []
    for server_config in servers:
        try:
            tools = await fetch_tools(server_config)
        except (UpstreamError, OSError) as e:
            logger.warning(f"Failed to discover tools from {server_config.name}: {e}")
            available.append(
                ToolInfo(
                    server=server_config.name,
                    tool="ERROR",
                    description=f"Error connecting: {e}",
                )
            )
            continue

        for tool_data in tools:
            available.append(
                ToolInfo.from_mcp_response(tool_data, server_config.name, detailed)
            )

    logger.info(f"Discovered {len(available)} tools from {len(servers)} servers")
    return available


async def get_tool_details(
    server: str, tool_name: str, registry: UpstreamRegistry
) -> Optional[ToolInfo]:
    """
    Get the full definition of one tool, or None if the server lacks it.

    Raises:
        UnknownServerError: If the server is not configured
        UpstreamError: If the server cannot be queried
    """
    server_config = registry.get(server)
    if server_config is None:
        raise UnknownServerError(server, registry.names())

    try:
        tools = await fetch_tools(server_config)
    except UpstreamError as e:
        raise UpstreamError(
            f"Failed to get tool details from {server}: {e}", server_name=server
        ) from e

    for tool_data in tools:
        if tool_data.get("name") == tool_name:
            return ToolInfo.from_mcp_response(tool_data, server, detailed=True)
    return None
