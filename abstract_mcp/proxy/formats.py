"""
Format conversion for stored responses and ingested files.

``encode`` turns an extracted upstream value into the text written to disk for
a given target format; ``parse`` reads a data file back into a value that can
be passed as tool arguments. The YAML and XML handling is a deliberately small
subset: flat ``key: value`` YAML on the way in, no XML parsing at all, and no
escaping of YAML scalars on the way out.
"""

import csv
import html
import json
import logging
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from xml.sax.saxutils import escape as xml_escape

from .errors import ParseError

logger = logging.getLogger(__name__)


class FileFormat(str, Enum):
    """Supported storage and ingestion formats."""

    JSON = "json"
    CSV = "csv"
    TSV = "tsv"
    YAML = "yaml"
    XML = "xml"
    HTML = "html"
    TXT = "txt"
    MD = "md"


EXTENSION_FORMATS = {
    ".json": FileFormat.JSON,
    ".csv": FileFormat.CSV,
    ".tsv": FileFormat.TSV,
    ".yaml": FileFormat.YAML,
    ".yml": FileFormat.YAML,
    ".xml": FileFormat.XML,
    ".html": FileFormat.HTML,
    ".htm": FileFormat.HTML,
    ".txt": FileFormat.TXT,
    ".md": FileFormat.MD,
}

# A single field may be as large as an ingestible file
CSV_FIELD_SIZE_LIMIT = 16 * 1024 * 1024
csv.field_size_limit(CSV_FIELD_SIZE_LIMIT)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>Response</title>
</head>
<body>
<pre>{content}</pre>
</body>
</html>"""


def coerce_format(file_format: Union[str, FileFormat, None]) -> Optional[FileFormat]:
    """Map a format name to FileFormat, or None if it is not supported."""
    if file_format is None:
        return FileFormat.JSON
    if isinstance(file_format, FileFormat):
        return file_format
    try:
        return FileFormat(str(file_format).lower())
    except ValueError:
        return None


def detect_format(filename: str) -> FileFormat:
    """Detect a file's format from its extension, defaulting to plain text."""
    _, ext = os.path.splitext(filename or "")
    return EXTENSION_FORMATS.get(ext.lower(), FileFormat.TXT)


def file_extension(file_format: Union[str, FileFormat, None]) -> str:
    """File extension (with the leading dot) for a storage format."""
    fmt = coerce_format(file_format)
    if fmt is None:
        return ".json"
    return f".{fmt.value}"


# --- encoding ---------------------------------------------------------------


def to_pretty_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _scalar_text(value: Any) -> str:
    """Render a scalar the way it reads in JSON text (true, null, 1 rather than 1.0)."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    return _scalar_text(value)


def _escape_csv_field(text: str) -> str:
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def is_tabular(value: Any) -> bool:
    """True for a non-empty list whose first element is a plain mapping."""
    return isinstance(value, list) and len(value) > 0 and isinstance(value[0], dict)


def rows_to_delimited(rows: Sequence[Any], delimiter: str = ",") -> str:
    """
    Render a list of mappings as CSV (``delimiter=","``) or TSV (``"\\t"``).

    The header is taken from the first row's keys. CSV fields are quoted
    when needed; TSV fields are joined as-is.
    """
    if not rows:
        return ""

    headers = list(rows[0].keys())
    quote = delimiter == ","

    def render(text: str) -> str:
        return _escape_csv_field(text) if quote else text

    lines = [delimiter.join(render(str(h)) for h in headers)]
    for row in rows:
        fields = []
        for header in headers:
            value = row.get(header) if isinstance(row, dict) else None
            fields.append(render(_field_text(value)))
        lines.append(delimiter.join(fields))
    return "\n".join(lines)


def to_yaml(value: Any, indent: int = 0) -> str:
    """Render mappings and sequences as block YAML with two-space indentation."""
    spaces = "  " * indent

    if isinstance(value, list):
        return "\n".join(
            f"{spaces}- {to_yaml(item, indent + 1).strip()}" for item in value
        )

    if isinstance(value, dict):
        lines = []
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                lines.append(f"{spaces}{key}:\n{to_yaml(item, indent + 1)}")
            else:
                lines.append(f"{spaces}{key}: {_scalar_text(item)}")
        return "\n".join(lines)

    return _scalar_text(value)


def to_xml(value: Any, indent: int = 0) -> str:
    """Render mappings as nested tags and sequences as repeated ``<item>`` tags."""
    spaces = "  " * indent

    if isinstance(value, list):
        lines = []
        for item in value:
            if isinstance(item, (dict, list)) and item:
                lines.append(
                    f"{spaces}<item>\n{to_xml(item, indent + 1)}\n{spaces}</item>"
                )
            else:
                lines.append(f"{spaces}<item>{to_xml(item, 0)}</item>")
        return "\n".join(lines)

    if isinstance(value, dict):
        lines = []
        for key, item in value.items():
            if isinstance(item, (dict, list)) and item:
                lines.append(
                    f"{spaces}<{key}>\n{to_xml(item, indent + 1)}\n{spaces}</{key}>"
                )
            else:
                lines.append(f"{spaces}<{key}>{to_xml(item, 0)}</{key}>")
        return "\n".join(lines)

    return xml_escape(_scalar_text(value))


def looks_like_xml(text: str) -> bool:
    stripped = text.lstrip()
    return stripped.startswith("<?xml") or ("<" in text and "</" in text)


def looks_like_html(text: str) -> bool:
    return (
        "<html" in text
        or "<!DOCTYPE" in text
        or ("<" in text and ">" in text)
    )


def _encode_tabular(value: Any, fmt: FileFormat) -> str:
    if is_tabular(value):
        return rows_to_delimited(value, "," if fmt == FileFormat.CSV else "\t")
    logger.warning(
        f"Content is not tabular data, storing as JSON with .{fmt.value} extension"
    )
    return to_pretty_json(value)


def _encode_yaml(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return to_yaml(value, 0)
    if isinstance(value, str):
        return value
    return to_pretty_json(value)


def _encode_xml(value: Any) -> str:
    if isinstance(value, str) and looks_like_xml(value):
        return value
    if isinstance(value, (dict, list)):
        return f"{XML_DECLARATION}\n<root>\n{to_xml(value, 1)}\n</root>"
    text = value if isinstance(value, str) else _scalar_text(value)
    return f"{XML_DECLARATION}\n<root>{xml_escape(text)}</root>"


def _encode_html(value: Any) -> str:
    text = value if isinstance(value, str) else to_pretty_json(value)
    if looks_like_html(text):
        return text
    return HTML_TEMPLATE.format(content=html.escape(text, quote=False))


def encode(value: Any, file_format: Union[str, FileFormat, None] = FileFormat.JSON) -> str:
    """
    Serialize an extracted value for storage in the requested format.

    Non-tabular values requested as CSV or TSV are stored as pretty JSON and a
    warning is logged; unknown formats fall back to JSON the same way.
    """
    fmt = coerce_format(file_format)

    if fmt is None:
        logger.warning(f"Unknown format '{file_format}', defaulting to JSON")
        return to_pretty_json(value)
    if fmt == FileFormat.JSON:
        return to_pretty_json(value)
    if fmt in (FileFormat.TXT, FileFormat.MD):
        return value if isinstance(value, str) else to_pretty_json(value)
    if fmt in (FileFormat.CSV, FileFormat.TSV):
        return _encode_tabular(value, fmt)
    if fmt == FileFormat.YAML:
        return _encode_yaml(value)
    if fmt == FileFormat.XML:
        return _encode_xml(value)
    return _encode_html(value)


# --- parsing ----------------------------------------------------------------


def _build_records(
    header: List[str], rows: List[List[str]]
) -> List[Dict[str, str]]:
    records = []
    for index, values in enumerate(rows):
        if len(values) != len(header):
            row_number = index + 2
            raise ParseError(
                f"Row {row_number} has {len(values)} columns, expected "
                f"{len(header)} based on headers",
                row=row_number,
            )
        records.append({name: values[i] or "" for i, name in enumerate(header)})
    return records


def _check_line_count(label: str, lines: List[str]) -> None:
    if not lines:
        raise ParseError(f"{label} file is empty")
    if len(lines) == 1:
        raise ParseError(f"{label} file contains only headers, no data rows")


def parse_csv(content: str) -> List[Dict[str, str]]:
    """
    Parse CSV text into a list of records keyed by the header row.

    Quoted fields may contain commas and doubled quotes. Blank lines are
    skipped; a field spanning several lines is not supported.
    """
    lines = [line.strip() for line in content.split("\n")]
    lines = [line for line in lines if line]
    _check_line_count("CSV", lines)

    parsed = []
    for row_number, line in enumerate(lines, start=1):
        try:
            parsed.append(next(csv.reader([line])))
        except csv.Error as e:
            raise ParseError(f"Row {row_number} could not be parsed: {e}", row=row_number) from e
    return _build_records(parsed[0], parsed[1:])


def parse_tsv(content: str) -> List[Dict[str, str]]:
    """Parse tab-separated text into records. Fields are not unquoted."""
    lines = [line.rstrip("\r") for line in content.split("\n")]
    lines = [line for line in lines if line.strip()]
    _check_line_count("TSV", lines)

    parsed = [line.split("\t") for line in lines]
    return _build_records(parsed[0], parsed[1:])


def parse_simple_yaml(content: str) -> Dict[str, str]:
    """
    Parse flat ``key: value`` YAML. Nesting and lists are not understood;
    every value is returned as a string.
    """
    result: Dict[str, str] = {}
    for line in content.split("\n"):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if ":" in line:
            key, _, value = line.partition(":")
            result[key.strip()] = value.strip()
    return result


def parse(content: str, file_format: Union[str, FileFormat, None]) -> Any:
    """
    Parse file content according to its format.

    Raises:
        ParseError: If JSON is malformed or CSV/TSV rows are inconsistent
    """
    fmt = coerce_format(file_format)

    if fmt == FileFormat.JSON:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(f"Failed to parse JSON file: {e}") from e
    if fmt == FileFormat.CSV:
        return parse_csv(content)
    if fmt == FileFormat.TSV:
        return parse_tsv(content)
    if fmt == FileFormat.YAML:
        return parse_simple_yaml(content)
    if fmt == FileFormat.XML:
        return content

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return content
