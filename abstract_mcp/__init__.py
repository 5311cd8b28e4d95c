"""Abstract: an MCP proxy that stores large tool responses as files."""

__version__ = "1.0.0"
