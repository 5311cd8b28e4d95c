#!/usr/bin/env python3
"""
STDIO MCP Test Server

An upstream MCP server used by the integration tests. Tools return JSON
strings so the text content they produce is exact.
"""

import json
import logging
import os
import sys
from fastmcp import FastMCP

# Configure logging for stdio mode (minimal to avoid interfering with MCP protocol)
logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
logger = logging.getLogger(__name__)

server = FastMCP("STDIO Test Server")


@server.tool()
def search(query: str) -> str:
    """Return two fixed search hits."""
    return json.dumps([{"name": "A"}, {"name": "B"}])


@server.tool()
def greet(name: str = "World") -> str:
    """Plain text greeting."""
    return f"Hello {name} from STDIO MCP Server!"


@server.tool()
def bulk_insert(records: list, table: str = "") -> str:
    """Echo back what would have been inserted."""
    return json.dumps({"table": table, "count": len(records), "records": records})


@server.tool()
def read_env(name: str) -> str:
    """Return the value of an environment variable of this process."""
    return os.environ.get(name, "")


@server.tool()
def explode() -> str:
    """Always fails."""
    raise ValueError("boom")


if __name__ == "__main__":
    logger.warning("Starting STDIO MCP Test Server...")
    server.run(transport="stdio")
