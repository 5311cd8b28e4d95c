"""
MCP client for calling tools on upstream stdio servers.

Every call gets its own UpstreamSession: the server process is launched,
the MCP handshake is performed, exactly one request is answered and the
process is torn down again, whether the request succeeded or not.
"""

import asyncio
import json
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .config import ServerConfig, UpstreamRegistry
from .errors import UnknownServerError, UpstreamError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "abstract-proxy-client", "version": "1.0.0"}

METHOD_NOT_FOUND = -32601

PROCESS_EXIT_TIMEOUT = 5
READER_DRAIN_TIMEOUT = 2


class ConnectionState(Enum):
    """Connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class MCPMessage:
    """Represents an MCP protocol message."""

    jsonrpc: str = "2.0"
    id: Optional[Union[str, int]] = None
    method: Optional[str] = None
    params: Optional[Any] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary."""
        msg: Dict[str, Any] = {"jsonrpc": self.jsonrpc}

        if self.id is not None:
            msg["id"] = self.id
        if self.method is not None:
            msg["method"] = self.method
        if self.params is not None:
            msg["params"] = self.params
        if self.result is not None:
            msg["result"] = self.result
        if self.error is not None:
            msg["error"] = self.error

        return msg

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MCPMessage":
        """Create message from dictionary."""
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
            method=data.get("method"),
            params=data.get("params"),
            result=data.get("result"),
            error=data.get("error"),
        )

    def is_request(self) -> bool:
        """Check if this is a request message."""
        return self.method is not None and self.id is not None

    def is_response(self) -> bool:
        """Check if this is a response message."""
        return (
            self.method is None
            and self.id is not None
            and (self.result is not None or self.error is not None)
        )

    def is_notification(self) -> bool:
        """Check if this is a notification message."""
        return self.method is not None and self.id is None


class MCPTransport(ABC):
    """Abstract base class for MCP transport implementations."""

    def __init__(self, server_config: ServerConfig):
        self.server_config = server_config
        self.state = ConnectionState.DISCONNECTED
        self._message_handlers: List[Callable[[MCPMessage], None]] = []
        self._error_handlers: List[Callable[[Exception], None]] = []

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the MCP server."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the MCP server."""

    @abstractmethod
    async def send_message(self, message: MCPMessage) -> None:
        """Send a message to the MCP server."""

    def add_message_handler(self, handler: Callable[[MCPMessage], None]) -> None:
        """Add a message handler."""
        self._message_handlers.append(handler)

    def add_error_handler(self, handler: Callable[[Exception], None]) -> None:
        """Add an error handler."""
        self._error_handlers.append(handler)

    def _handle_message(self, message: MCPMessage) -> None:
        for handler in self._message_handlers:
            handler(message)

    def _handle_error(self, error: Exception) -> None:
        for handler in self._error_handlers:
            handler(error)


class StdioTransport(MCPTransport):
    """Transport for stdio-based MCP servers (newline-delimited JSON-RPC)."""

    def __init__(self, server_config: ServerConfig):
        super().__init__(server_config)
        self.process: Optional[subprocess.Popen] = None
        self._read_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Start the MCP server process and establish stdio connection."""
        if self.state in [ConnectionState.CONNECTED, ConnectionState.CONNECTING]:
            return

        self.state = ConnectionState.CONNECTING
        logger.info(f"Starting stdio MCP server: {self.server_config.command}")

        try:
            # stderr is inherited so upstream diagnostics reach our own stderr
            self.process = subprocess.Popen(
                [self.server_config.command] + list(self.server_config.args),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                env=self.server_config.build_environment(),
                text=True,
                encoding="utf-8",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            self.state = ConnectionState.FAILED
            logger.error(
                f"Failed to start stdio MCP server {self.server_config.name}: {e}"
            )
            raise UpstreamError(
                f"Failed to start upstream server {self.server_config.name}: {e}",
                server_name=self.server_config.name,
            ) from e

        self._read_task = asyncio.create_task(self._read_messages())
        self.state = ConnectionState.CONNECTED
        logger.debug(f"Connected to stdio MCP server: {self.server_config.name}")

    async def disconnect(self) -> None:
        """Stop the MCP server process and everything it spawned."""
        if self.state == ConnectionState.DISCONNECTED:
            return

        logger.debug(f"Disconnecting from stdio MCP server: {self.server_config.name}")

        if self.process:
            loop = asyncio.get_running_loop()
            try:
                if self.process.stdin:
                    self.process.stdin.close()
            except OSError:
                pass

            # Launchers such as npx leave grandchildren that still hold stdout
            self._signal_process_group(force=False)
            try:
                await loop.run_in_executor(
                    None, partial(self.process.wait, timeout=PROCESS_EXIT_TIMEOUT)
                )
            except subprocess.TimeoutExpired:
                logger.warning(f"Force killing stdio MCP server: {self.server_config.name}")
                self._signal_process_group(force=True)
                await loop.run_in_executor(None, self.process.wait)

        await self._stop_reader()

        self.process = None
        self.state = ConnectionState.DISCONNECTED

    def _signal_process_group(self, force: bool) -> None:
        """Terminate (or kill) the server's process group."""
        if hasattr(os, "killpg"):
            try:
                os.killpg(self.process.pid, signal.SIGKILL if force else signal.SIGTERM)
            except ProcessLookupError:
                pass
        elif force:
            self.process.kill()
        else:
            self.process.terminate()

    async def _stop_reader(self) -> None:
        """
        Let the reader run into EOF, then close stdout.

        The reader thread blocks inside ``readline`` holding the stream's lock,
        so stdout is only closed once it has returned. If some process outside
        the group still holds the pipe, the stream is left for that process to
        release.
        """
        if self._read_task is None:
            if self.process and self.process.stdout:
                self.process.stdout.close()
            return

        done, _ = await asyncio.wait({self._read_task}, timeout=READER_DRAIN_TIMEOUT)
        if done:
            if self.process and self.process.stdout:
                self.process.stdout.close()
        else:
            logger.debug(
                f"Reader for {self.server_config.name} still blocked; leaving stdout open"
            )
            self._read_task.cancel()
        self._read_task = None

    async def send_message(self, message: MCPMessage) -> None:
        """Send a message to the stdio MCP server."""
        if not self.process or not self.process.stdin:
            raise UpstreamError(
                "Not connected to stdio MCP server", server_name=self.server_config.name
            )

        try:
            self.process.stdin.write(json.dumps(message.to_dict()) + "\n")
            self.process.stdin.flush()
            logger.debug(f"Sent message to {self.server_config.name}: {message.method}")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to send message to {self.server_config.name}: {e}")
            raise UpstreamError(
                f"Failed to send message to {self.server_config.name}: {e}",
                server_name=self.server_config.name,
            ) from e

    async def _read_messages(self) -> None:
        """Read messages from the stdio MCP server until it closes stdout."""
        if not self.process or not self.process.stdout:
            return

        loop = asyncio.get_running_loop()
        stdout = self.process.stdout
        while True:
            try:
                line = await loop.run_in_executor(None, stdout.readline)
            except (OSError, ValueError) as e:
                self._handle_error(
                    UpstreamError(
                        f"Error reading from {self.server_config.name}: {e}",
                        server_name=self.server_config.name,
                    )
                )
                break

            if not line:  # EOF
                self.state = ConnectionState.FAILED
                self._handle_error(
                    UpstreamError(
                        f"Upstream server {self.server_config.name} closed the connection",
                        server_name=self.server_config.name,
                    )
                )
                break

            line = line.strip()
            if not line:
                continue

            try:
                message_data = json.loads(line)
            except json.JSONDecodeError as e:
                # Servers sometimes print banners to stdout; skip anything that is not JSON-RPC
                logger.warning(f"Invalid JSON from {self.server_config.name}: {e}")
                continue
            if isinstance(message_data, dict):
                self._handle_message(MCPMessage.from_dict(message_data))


class UpstreamSession:
    """
    One short-lived MCP session with an upstream server.

    Use as an async context manager; entering starts the process and performs
    the ``initialize`` handshake, leaving always tears the process down.
    """

    def __init__(
        self,
        server_config: ServerConfig,
        transport: Optional[MCPTransport] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the session.

        Args:
            server_config: The upstream server to launch
            transport: Transport to use. Defaults to a StdioTransport.
            timeout: Per-request timeout in seconds. None waits indefinitely.
        """
        self.server_config = server_config
        self.transport = transport or StdioTransport(server_config)
        self.timeout = timeout
        self.server_info: Dict[str, Any] = {}
        self._message_id_counter = 0
        self._pending_requests: Dict[Union[str, int], asyncio.Future] = {}
        self._replies: Set[asyncio.Task] = set()

        self.transport.add_message_handler(self._handle_message)
        self.transport.add_error_handler(self._handle_error)

    async def __aenter__(self) -> "UpstreamSession":
        await self.transport.connect()
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Tear down the transport and fail anything still pending."""
        if self._replies:
            await asyncio.gather(*self._replies, return_exceptions=True)
        try:
            await self.transport.disconnect()
        finally:
            for future in self._pending_requests.values():
                if not future.done():
                    future.cancel()
            self._pending_requests.clear()

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP handshake and return the server's initialize result."""
        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        if not isinstance(result, dict):
            raise UpstreamError(
                f"Invalid initialize response: {result}",
                server_name=self.server_config.name,
            )
        self.server_info = result.get("serverInfo", {})
        await self.send_notification("notifications/initialized")
        return result

    async def call_tool(self, tool_name: str, arguments: Any) -> Dict[str, Any]:
        """
        Call a tool and return the raw result envelope.

        Raises:
            UpstreamError: If the server answers with an error or a malformed result
        """
        logger.debug(f"Calling tool {tool_name} on {self.server_config.name}")
        try:
            result = await self.send_request(
                "tools/call", {"name": tool_name, "arguments": arguments}
            )
        except UpstreamError as e:
            e.tool_name = e.tool_name or tool_name
            raise

        if not isinstance(result, dict):
            raise UpstreamError(
                f"Invalid tools/call response: {result}",
                server_name=self.server_config.name,
                tool_name=tool_name,
            )
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Return the server's tool definitions from ``tools/list``."""
        result = await self.send_request("tools/list", {})
        tools = result.get("tools", []) if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise UpstreamError(
                "Expected 'tools' to be a list in response",
                server_name=self.server_config.name,
            )
        return [tool for tool in tools if isinstance(tool, dict)]

    async def send_request(self, method: str, params: Optional[Any] = None) -> Any:
        """
        Send a request to the MCP server and wait for its response.

        Raises:
            UpstreamError: If the server returns an error or goes away
            asyncio.TimeoutError: If a session timeout is set and expires
        """
        if self.transport.state != ConnectionState.CONNECTED:
            raise UpstreamError(
                "Not connected to MCP server", server_name=self.server_config.name
            )

        message_id = self._get_next_message_id()
        message = MCPMessage(id=message_id, method=method, params=params or {})

        response_future = asyncio.get_running_loop().create_future()
        self._pending_requests[message_id] = response_future

        try:
            await self.transport.send_message(message)
            if self.timeout is None:
                return await response_future
            return await asyncio.wait_for(response_future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Request timeout for {method} on {self.server_config.name}")
            raise
        finally:
            self._pending_requests.pop(message_id, None)

    async def send_notification(self, method: str, params: Optional[Any] = None) -> None:
        """Send a notification to the MCP server (no response expected)."""
        await self.transport.send_message(MCPMessage(method=method, params=params))

    def _get_next_message_id(self) -> int:
        self._message_id_counter += 1
        return self._message_id_counter

    def _handle_message(self, message: MCPMessage) -> None:
        """Handle incoming message from the transport."""
        if message.is_response() and message.id in self._pending_requests:
            future = self._pending_requests[message.id]
            if future.done():
                return
            if message.error:
                error = message.error if isinstance(message.error, dict) else {}
                code = error.get("code")
                future.set_exception(
                    UpstreamError(
                        f"MCP error {code}: {error.get('message', message.error)}",
                        server_name=self.server_config.name,
                        code=code,
                    )
                )
            else:
                future.set_result(message.result)
        elif message.is_request():
            # We advertise no client capabilities, so refuse server-initiated requests
            reply = asyncio.ensure_future(
                self.transport.send_message(
                    MCPMessage(
                        id=message.id,
                        error={"code": METHOD_NOT_FOUND, "message": "Method not found"},
                    )
                )
            )
            self._replies.add(reply)
            reply.add_done_callback(self._reply_sent)
        elif message.is_notification():
            logger.debug(
                f"Received notification from {self.server_config.name}: {message.method}"
            )
        else:
            logger.warning(
                f"Unhandled message from {self.server_config.name}: {message.to_dict()}"
            )

    def _reply_sent(self, task: asyncio.Task) -> None:
        self._replies.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                f"Failed to answer request from {self.server_config.name}: {task.exception()}"
            )

    def _handle_error(self, error: Exception) -> None:
        """Fail every pending request with a transport error."""
        if not self._pending_requests:
            logger.debug(f"Transport closed for {self.server_config.name}: {error}")
            return
        logger.error(f"Transport error for {self.server_config.name}: {error}")
        for future in self._pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self._pending_requests.clear()


async def call_upstream_tool(
    server: str,
    tool_name: str,
    arguments: Any,
    registry: UpstreamRegistry,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Call a tool on an upstream server and return the raw result envelope.

    Args:
        server: Logical server name from the registry
        tool_name: Tool to call on that server
        arguments: Tool arguments, passed through unchanged
        registry: Upstream server registry
        timeout: Optional per-request timeout; None waits indefinitely

    Raises:
        UnknownServerError: If the server is not configured
        UpstreamError: If the process or the RPC exchange fails
    """
    server_config = registry.get(server)
    if server_config is None:
        raise UnknownServerError(server, registry.names())

    logger.info(f"Calling tool {tool_name} on server {server}")
    logger.debug(f"Arguments for {server}:{tool_name}: {json.dumps(arguments, default=str)}")

    async with UpstreamSession(server_config, timeout=timeout) as session:
        return await session.call_tool(tool_name, arguments)
