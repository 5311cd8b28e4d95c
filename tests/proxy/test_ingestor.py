"""
Tests for calling upstream tools with file content.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from abstract_mcp.proxy.errors import (
    DataKeyConflictError,
    FileAccessError,
    FileTooLargeError,
    ParseError,
    PathNotAllowedError,
)
from abstract_mcp.proxy.ingestor import (
    MAX_FILE_SIZE,
    FileIngestor,
    merge_file_data_with_args,
    read_and_parse_file,
    validate_file_size,
)


@pytest.fixture
def ingestor(registry, storage, mock_invoke):
    return FileIngestor(registry, storage, invoke=mock_invoke)


@pytest.fixture
def data_dir(allowed_dirs):
    return Path(allowed_dirs[1])


class TestMergeFileDataWithArgs:
    """Test merge_file_data_with_args."""

    def test_without_data_key_content_is_whole_arguments(self):
        records = [{"id": 1}, {"id": 2}]
        assert merge_file_data_with_args(records) is records

    def test_without_data_key_tool_args_ignored(self):
        assert merge_file_data_with_args("raw", None, {"table": "users"}) == "raw"

    def test_with_data_key(self):
        result = merge_file_data_with_args([{"id": 1}], "records", {"table": "users"})
        assert result == {"table": "users", "records": [{"id": 1}]}

    def test_with_data_key_and_no_tool_args(self):
        assert merge_file_data_with_args({"a": 1}, "payload") == {"payload": {"a": 1}}

    def test_tool_args_not_mutated(self):
        tool_args = {"table": "users"}
        merge_file_data_with_args([], "records", tool_args)
        assert tool_args == {"table": "users"}

    def test_conflict(self):
        with pytest.raises(DataKeyConflictError, match="data_key 'records' already exists"):
            merge_file_data_with_args([], "records", {"records": "explicit"})


class TestReadAndParseFile:
    """Test read_and_parse_file."""

    def test_csv(self, data_dir):
        path = data_dir / "users.csv"
        path.write_text("name,email\nAda,ada@example.com\n")

        assert read_and_parse_file(str(path)) == [
            {"name": "Ada", "email": "ada@example.com"}
        ]

    def test_json(self, data_dir):
        path = data_dir / "payload.json"
        path.write_text(json.dumps({"ids": [1, 2]}))

        assert read_and_parse_file(str(path)) == {"ids": [1, 2]}

    def test_unknown_extension_tries_json(self, data_dir):
        path = data_dir / "payload.dat"
        path.write_text('{"a": 1}')
        assert read_and_parse_file(str(path)) == {"a": 1}

        path.write_text("free text")
        assert read_and_parse_file(str(path)) == "free text"

    def test_missing_file(self, data_dir):
        with pytest.raises(FileAccessError, match="does not exist or is not readable"):
            read_and_parse_file(str(data_dir / "missing.csv"))

    def test_directory_is_not_a_file(self, data_dir):
        with pytest.raises(FileAccessError):
            read_and_parse_file(str(data_dir))

    def test_parse_error_carries_path(self, data_dir):
        path = data_dir / "bad.csv"
        path.write_text("a,b\n1\n")

        with pytest.raises(ParseError, match="Row 2 has 1 columns") as exc_info:
            read_and_parse_file(str(path))

        assert exc_info.value.path == str(path)

    def test_invalid_utf8(self, data_dir):
        path = data_dir / "binary.txt"
        path.write_bytes(b"\xff\xfe\x00bad")

        with pytest.raises(ParseError, match="not valid UTF-8"):
            read_and_parse_file(str(path))


class TestValidateFileSize:
    """Test the ingestion size limit."""

    def test_under_limit(self, data_dir):
        path = data_dir / "small.txt"
        path.write_text("12345")
        assert validate_file_size(str(path)) == 5

    def test_over_limit(self, data_dir):
        path = data_dir / "big.txt"
        path.write_text("123456")

        with pytest.raises(FileTooLargeError) as exc_info:
            validate_file_size(str(path), limit=5)

        assert exc_info.value.size == 6

    def test_message_names_limit(self):
        error = FileTooLargeError("/x", MAX_FILE_SIZE + 1, MAX_FILE_SIZE)
        assert str(error) == (
            f"File size {MAX_FILE_SIZE + 1} bytes exceeds maximum allowed size of "
            f"{MAX_FILE_SIZE} bytes (10MB)"
        )

    def test_checked_before_reading(self, data_dir):
        """Oversized files are rejected without being opened."""
        path = data_dir / "huge.json"
        path.write_text("{}")

        with patch("abstract_mcp.proxy.ingestor.MAX_FILE_SIZE", 1):
            with patch("builtins.open") as mock_open:
                with pytest.raises(FileTooLargeError):
                    read_and_parse_file(str(path))

        mock_open.assert_not_called()


class TestFileIngestor:
    """Test FileIngestor.call_with_file."""

    @pytest.mark.asyncio
    async def test_records_under_data_key(self, ingestor, data_dir, mock_invoke):
        path = data_dir / "users.csv"
        path.write_text("name\nAda\nGrace\n")

        await ingestor.call_with_file(
            "search-server",
            "bulk_insert",
            str(path),
            data_key="records",
            tool_args={"table": "users"},
        )

        mock_invoke.assert_awaited_once_with(
            "search-server",
            "bulk_insert",
            {"table": "users", "records": [{"name": "Ada"}, {"name": "Grace"}]},
            ingestor.registry,
        )

    @pytest.mark.asyncio
    async def test_content_as_whole_arguments(self, ingestor, data_dir, mock_invoke):
        path = data_dir / "args.json"
        path.write_text(json.dumps({"query": "x"}))

        await ingestor.call_with_file("search-server", "search", str(path))

        assert mock_invoke.await_args.args[2] == {"query": "x"}

    @pytest.mark.asyncio
    async def test_json_output_is_full_envelope(self, ingestor, data_dir, search_response):
        path = data_dir / "args.json"
        path.write_text("{}")

        result = await ingestor.call_with_file("search-server", "search", str(path))

        assert json.loads(result) == search_response

    @pytest.mark.asyncio
    async def test_string_output_is_extracted_value(self, ingestor, data_dir, mock_invoke):
        mock_invoke.return_value = {"content": [{"type": "text", "text": "Inserted 2 rows"}]}
        path = data_dir / "args.json"
        path.write_text("{}")

        result = await ingestor.call_with_file(
            "search-server", "bulk_insert", str(path), output_format="string"
        )

        assert result == "Inserted 2 rows"

    @pytest.mark.asyncio
    async def test_file_outside_allow_list_not_read(self, ingestor, tmp_path, mock_invoke):
        outside = tmp_path / "secret.json"
        outside.write_text("{}")

        with patch("abstract_mcp.proxy.ingestor.read_and_parse_file") as mock_read:
            with pytest.raises(PathNotAllowedError, match="File path"):
                await ingestor.call_with_file("search-server", "search", str(outside))

        mock_read.assert_not_called()
        mock_invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conflict_stops_before_upstream(self, ingestor, data_dir, mock_invoke):
        path = data_dir / "users.csv"
        path.write_text("name\nAda\n")

        with pytest.raises(DataKeyConflictError):
            await ingestor.call_with_file(
                "search-server",
                "bulk_insert",
                str(path),
                data_key="records",
                tool_args={"records": []},
            )

        mock_invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_real_upstream_with_array_arguments(self, registry, storage, data_dir):
        """TSV records are sent to the FastMCP test server under a data key."""
        path = data_dir / "users.tsv"
        path.write_text("name\tcity\nAda\tLondon\nGrace\tNew York\n")
        ingestor = FileIngestor(registry, storage)

        result = await ingestor.call_with_file(
            "test-stdio",
            "bulk_insert",
            str(path),
            data_key="records",
            tool_args={"table": "people"},
            output_format="string",
        )

        assert json.loads(result) == {
            "table": "people",
            "count": 2,
            "records": [
                {"name": "Ada", "city": "London"},
                {"name": "Grace", "city": "New York"},
            ],
        }
