"""
Tests for storing upstream responses as files.
"""

import json
import os
import re
from datetime import datetime, timezone

import pytest

from abstract_mcp.proxy.errors import (
    DirectoryNotWritableError,
    PathNotAllowedError,
    UnknownServerError,
)
from abstract_mcp.proxy.materializer import (
    Materializer,
    ResourceLink,
    create_cache_data,
    create_resource_link,
    generate_cache_file_path,
    generate_filename,
    iso_timestamp,
)


@pytest.fixture
def materializer(registry, storage, mock_invoke):
    return Materializer(registry, storage, invoke=mock_invoke)


class TestResourceLink:
    """Test ResourceLink."""

    def test_to_dict(self):
        link = ResourceLink(path="/tmp/x.json", bytes=42, description="Search results")

        assert link.uri == "file:///tmp/x.json"
        assert link.to_dict() == {
            "@type": "resourceLink",
            "uri": "file:///tmp/x.json",
            "bytes": 42,
            "description": "Search results",
        }
        assert json.loads(link.to_json()) == link.to_dict()

    def test_create_resource_link_measures_compact_json(self):
        data = {"key": "välue", "list": [1, 2]}

        link = create_resource_link("/tmp/x.json", data)

        compact = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
        assert link.bytes == len(compact.encode("utf-8"))
        assert link.description == "Cached tool response"


class TestHelpers:
    """Test naming and cache record helpers."""

    def test_iso_timestamp(self):
        moment = datetime(2024, 3, 5, 14, 7, 9, 123456, tzinfo=timezone.utc)
        assert iso_timestamp(moment) == "2024-03-05T14:07:09.123Z"

    def test_default_filename(self):
        moment = datetime(2024, 3, 5, 14, 7, 9, 123000, tzinfo=timezone.utc)

        name = generate_filename("search-server", "search", now=moment)

        assert name == "search-server-search-2024-03-05T14-07-09-123Z"

    def test_custom_filename(self):
        assert generate_filename("s", "t", "results") == "results"

    def test_cache_data(self):
        data = create_cache_data("s:t", {"q": 1}, {"content": []})

        assert data["tool_name"] == "s:t"
        assert data["tool_args"] == {"q": 1}
        assert data["response"] == {"content": []}
        assert data["description"] == "Response from s:t"
        assert data["type"] == "upstream_tool_response"
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", data["timestamp"])

    def test_cache_file_path_extension(self, allowed_dirs):
        path = generate_cache_file_path(allowed_dirs[0], allowed_dirs, "out", "csv")
        assert path == os.path.join(allowed_dirs[0], "out.csv")

    def test_cache_file_path_rejects_escaping_filename(self, allowed_dirs):
        with pytest.raises(PathNotAllowedError, match="File path"):
            generate_cache_file_path(allowed_dirs[0], allowed_dirs, "../../escape", "json")

    def test_cache_file_path_rejects_outside_directory(self, allowed_dirs, tmp_path):
        with pytest.raises(PathNotAllowedError, match="Target directory"):
            generate_cache_file_path(str(tmp_path), allowed_dirs, "out", "json")


class TestMaterializer:
    """Test Materializer.materialize."""

    @pytest.mark.asyncio
    async def test_csv_end_to_end(self, materializer, allowed_dirs, mock_invoke, search_response):
        """Records returned as JSON text are written as CSV and linked."""
        link = await materializer.materialize(
            "search-server",
            "search",
            {"q": "x"},
            filename="results",
            file_format="csv",
        )

        expected_path = os.path.join(allowed_dirs[0], "results.csv")
        assert link.path == expected_path
        assert link.uri == f"file://{expected_path}"
        assert link.description == "Response from search-server:search"
        with open(expected_path, encoding="utf-8") as f:
            assert f.read() == "name\nA\nB"

        # bytes measures the cache record, which embeds the whole envelope
        record = create_cache_data("search-server:search", {"q": "x"}, search_response)
        expected_bytes = len(
            json.dumps(record, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        )
        assert link.bytes == expected_bytes
        assert link.bytes != os.path.getsize(expected_path)
        mock_invoke.assert_awaited_once_with(
            "search-server", "search", {"q": "x"}, materializer.registry
        )

    @pytest.mark.asyncio
    async def test_default_location_and_name(self, materializer, allowed_dirs):
        link = await materializer.materialize("search-server", "search")

        directory, name = os.path.split(link.path)
        assert directory == allowed_dirs[0]
        assert re.fullmatch(
            r"search-server-search-\d{4}-\d\d-\d\dT\d\d-\d\d-\d\d-\d{3}Z\.json", name
        )
        with open(link.path, encoding="utf-8") as f:
            assert json.load(f) == [{"name": "A"}, {"name": "B"}]

    @pytest.mark.asyncio
    async def test_default_arguments_are_empty_object(self, materializer, mock_invoke):
        await materializer.materialize("search-server", "search", filename="x")
        assert mock_invoke.await_args.args[2] == {}

    @pytest.mark.asyncio
    async def test_second_allowed_directory(self, materializer, allowed_dirs):
        link = await materializer.materialize(
            "search-server", "search", storage_path=allowed_dirs[1], filename="second"
        )
        assert link.path == os.path.join(allowed_dirs[1], "second.json")

    @pytest.mark.asyncio
    async def test_custom_description(self, materializer):
        link = await materializer.materialize(
            "search-server", "search", filename="d", description="Top hits"
        )
        assert link.description == "Top hits"

    @pytest.mark.asyncio
    async def test_storage_path_outside_allow_list(self, materializer, allowed_dirs, mock_invoke, tmp_path):
        """The guard rejects the directory before the upstream is called."""
        outside = str(tmp_path)

        with pytest.raises(PathNotAllowedError) as exc_info:
            await materializer.materialize("search-server", "search", storage_path=outside)

        message = str(exc_info.value)
        assert outside in message
        for directory in allowed_dirs:
            assert directory in message
        mock_invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_path_not_writable(self, materializer, allowed_dirs, mock_invoke):
        missing = os.path.join(allowed_dirs[0], "missing")

        with pytest.raises(DirectoryNotWritableError):
            await materializer.materialize("search-server", "search", storage_path=missing)

        mock_invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_filename_traversal_rejected(self, materializer, allowed_dirs, tmp_path):
        with pytest.raises(PathNotAllowedError):
            await materializer.materialize(
                "search-server", "search", filename="../../escaped"
            )

        assert not (tmp_path.parent / "escaped.json").exists()

    @pytest.mark.asyncio
    async def test_upstream_error_writes_nothing(self, materializer, allowed_dirs, mock_invoke):
        mock_invoke.side_effect = UnknownServerError("nope", ["search-server"])

        with pytest.raises(UnknownServerError):
            await materializer.materialize("nope", "search")

        assert os.listdir(allowed_dirs[0]) == []

    @pytest.mark.asyncio
    async def test_plain_text_as_markdown(self, materializer, mock_invoke):
        mock_invoke.return_value = {"content": [{"type": "text", "text": "# Report"}]}

        link = await materializer.materialize(
            "search-server", "report", filename="report", file_format="md"
        )

        assert link.path.endswith("report.md")
        with open(link.path, encoding="utf-8") as f:
            assert f.read() == "# Report"

    @pytest.mark.asyncio
    async def test_real_upstream(self, registry, storage, allowed_dirs):
        """Store a response from the FastMCP test server as TSV."""
        materializer = Materializer(registry, storage)

        link = await materializer.materialize(
            "test-stdio", "search", {"query": "x"}, filename="live", file_format="tsv"
        )

        assert link.path == os.path.join(allowed_dirs[0], "live.tsv")
        with open(link.path, encoding="utf-8") as f:
            assert f.read() == "name\nA\nB"
