"""
Configuration management for the Abstract MCP proxy.

This module loads the upstream server registry from an MCP client
configuration file and builds the storage settings (the allowed directory
set) from the command line. Both are constructed once at startup and passed
explicitly to every component that needs them.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "APP_CONFIG_PATH"
PROXY_SERVERS_ENV = "ABSTRACT_PROXY_SERVERS"

# Different MCP clients nest their server table under different keys
SERVER_TABLE_KEYS = ("mcpServers", "mcp_servers", "servers")


@dataclass(frozen=True)
class ServerConfig:
    """How to launch one upstream stdio MCP server."""

    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate server configuration after initialization."""
        if not self.name:
            raise ValueError("Server name cannot be empty")
        if not self.command:
            raise ValueError(f"Server '{self.name}' requires a command")
        if not isinstance(self.args, list):
            raise ValueError(f"Server '{self.name}' args must be a list")
        if not isinstance(self.env, dict):
            raise ValueError(f"Server '{self.name}' env must be a dictionary")

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ServerConfig":
        """Create a ServerConfig from an entry of the client config file."""
        return cls(
            name=name,
            command=data.get("command") or "",
            args=[str(arg) for arg in (data.get("args") or [])],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    def build_environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Build the environment for the server process.

        The server's own variables are overlaid on ``base`` (the current
        process environment by default) and win on conflict.
        """
        merged = dict(os.environ if base is None else base)
        merged.update(self.env)
        return merged


class UpstreamRegistry:
    """
    Read-only lookup of upstream servers by logical name.
    """

    def __init__(self, servers: Optional[Iterable[ServerConfig]] = None):
        self._servers: Dict[str, ServerConfig] = {}
        for server in servers or []:
            self._servers[server.name] = server

    def get(self, name: str) -> Optional[ServerConfig]:
        """Get server configuration by name."""
        return self._servers.get(name)

    def names(self) -> List[str]:
        """Names of all configured servers, in configuration order."""
        return list(self._servers.keys())

    def items(self) -> List[Tuple[str, ServerConfig]]:
        return list(self._servers.items())

    def __contains__(self, name: object) -> bool:
        return name in self._servers

    def __len__(self) -> int:
        return len(self._servers)

    def __str__(self) -> str:
        return f"UpstreamRegistry(servers={self.names()})"


def parse_server_names(value: Optional[str]) -> List[str]:
    """Split a comma-separated server list, dropping blanks."""
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


def load_upstream_registry(
    config_path: Optional[Union[str, Path]] = None,
    server_names: Optional[Sequence[str]] = None,
) -> UpstreamRegistry:
    """
    Load the upstream registry from an MCP client configuration file.

    Args:
        config_path: Path to the client config. Defaults to ``$APP_CONFIG_PATH``.
        server_names: Servers to proxy. Defaults to ``$ABSTRACT_PROXY_SERVERS``.

    Returns:
        The registry. It is empty when the environment is incomplete or the
        file cannot be read; the problem is logged rather than raised so the
        proxy still starts.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV)
    if not config_path:
        logger.error(
            f"No config file path specified. Set {CONFIG_PATH_ENV} to your MCP "
            "client configuration file (e.g. claude_desktop_config.json)."
        )
        return UpstreamRegistry()

    if server_names is None:
        server_names = parse_server_names(os.environ.get(PROXY_SERVERS_ENV))
    if not server_names:
        logger.error(
            f"No upstream servers configured. Set {PROXY_SERVERS_ENV} to a "
            'comma-separated list, e.g. "tavily-mcp,gordian".'
        )
        return UpstreamRegistry()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read config from {config_path}: {e}")
        return UpstreamRegistry()

    servers_data: Dict[str, Any] = {}
    if isinstance(config_data, dict):
        for key in SERVER_TABLE_KEYS:
            if isinstance(config_data.get(key), dict) and config_data[key]:
                servers_data = config_data[key]
                break

    if not servers_data:
        logger.error(f"No MCP servers found in config file {config_path}")
        return UpstreamRegistry()

    servers = []
    for name in server_names:
        server_data = servers_data.get(name)
        if server_data is None:
            logger.warning(f"Server {name} not found in config file")
            continue
        try:
            servers.append(ServerConfig.from_dict(name, server_data))
        except (ValueError, AttributeError) as e:
            logger.error(f"Invalid server configuration '{name}': {e}")

    logger.info(f"Loaded {len(servers)} upstream server configurations")
    return UpstreamRegistry(servers)


def default_storage_directory() -> Path:
    """The fallback storage directory used when none is given on the command line."""
    return Path(__file__).resolve().parent.parent.parent / "cache"


@dataclass(frozen=True)
class StorageSettings:
    """The ordered set of directories the proxy may read and write."""

    allowed_directories: Tuple[str, ...]

    def __post_init__(self):
        """Validate storage settings after initialization."""
        if not self.allowed_directories:
            raise ValueError("At least one allowed directory is required")
        for directory in self.allowed_directories:
            if not os.path.isabs(directory):
                raise ValueError(f"Allowed directory must be absolute: {directory}")

    @classmethod
    def from_paths(cls, paths: Iterable[Union[str, Path]]) -> "StorageSettings":
        """Create settings from paths, resolving each to an absolute path."""
        resolved = []
        for path in paths:
            absolute = os.path.abspath(os.path.expanduser(str(path)))
            if absolute not in resolved:
                resolved.append(absolute)
        return cls(tuple(resolved))

    @classmethod
    def from_args(cls, argv: Sequence[str]) -> "StorageSettings":
        """
        Create settings from command-line arguments.

        Every argument not starting with ``-`` is an allowed directory. With
        none given, the default cache directory is used.
        """
        paths = [arg for arg in argv if not arg.startswith("-")]
        if not paths:
            logger.warning(
                "No storage directories specified. Using default cache directory. "
                "Usage: abstract-mcp <dir1> [dir2] ..."
            )
            paths = [str(default_storage_directory())]
        return cls.from_paths(paths)

    @property
    def default_directory(self) -> str:
        """The directory used when a call does not name one."""
        return self.allowed_directories[0]

    def ensure_directories(self) -> None:
        """Create every allowed directory that does not exist yet."""
        for directory in self.allowed_directories:
            os.makedirs(directory, exist_ok=True)
        logger.info(f"Storage directories: {', '.join(self.allowed_directories)}")

    def to_dict(self) -> Dict[str, Any]:
        """The allowed directory report returned to callers."""
        return {
            "allowed_directories": list(self.allowed_directories),
            "default_directory": self.default_directory,
            "total_directories": len(self.allowed_directories),
        }
