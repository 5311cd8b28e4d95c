import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from conftest_logging import configure_test_logging  # noqa: F401

from abstract_mcp.proxy.config import ServerConfig, StorageSettings, UpstreamRegistry

TEST_SERVER = Path(__file__).parent / "test_servers" / "stdio_server.py"


def text_envelope(text, **extra):
    """A tools/call result holding a single text item."""
    return {"content": [{"type": "text", "text": text}], **extra}


@pytest.fixture
def allowed_dirs(tmp_path):
    """Two allowed directories under a temporary root."""
    first = tmp_path / "store"
    second = tmp_path / "data"
    first.mkdir()
    second.mkdir()
    return [str(first), str(second)]


@pytest.fixture
def storage(allowed_dirs):
    """StorageSettings over the temporary allowed directories."""
    return StorageSettings.from_paths(allowed_dirs)


@pytest.fixture
def stdio_server_config():
    """Config launching the FastMCP test server in a subprocess."""
    return ServerConfig(
        name="test-stdio",
        command=sys.executable,
        args=[str(TEST_SERVER)],
        env={"ABSTRACT_TEST_VALUE": "from-descriptor"},
    )


@pytest.fixture
def registry(stdio_server_config):
    """Registry with one fake server and the real test server."""
    return UpstreamRegistry(
        [
            ServerConfig(name="search-server", command="search-mcp"),
            stdio_server_config,
        ]
    )


@pytest.fixture
def search_response():
    """Upstream response carrying a JSON array of two records."""
    return text_envelope(json.dumps([{"name": "A"}, {"name": "B"}]))


@pytest.fixture
def mock_invoke(search_response):
    """Replacement for call_upstream_tool that never spawns a process."""
    return AsyncMock(return_value=search_response)
