import sys
import asyncio
import logging
from fastmcp import FastMCP

from .registrar import ToolRegistrar
from .logging_config import setup_logging
from .proxy import StorageSettings, load_upstream_registry


async def main(argv=None):
    """
    The main entry point for the Abstract MCP proxy.

    Allowed storage directories are taken from the command line; upstream
    servers come from the MCP client config named by APP_CONFIG_PATH. The
    server always runs over stdio.
    """
    setup_logging(stdio_mode=True)
    logging.info("Starting Abstract MCP proxy...")

    storage = StorageSettings.from_args(sys.argv[1:] if argv is None else argv)
    storage.ensure_directories()

    registry = load_upstream_registry()

    server = FastMCP("abstract")
    ToolRegistrar(registry, storage).register_tools(server)

    logging.info("Running in stdio mode.")
    await server.run_async(transport="stdio")


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Shutting down Abstract MCP proxy.")


if __name__ == "__main__":
    run()
