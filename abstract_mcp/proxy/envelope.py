"""
Unwrapping of MCP ``tools/call`` results.

Upstream tools answer with ``{"content": [{"type": "text", "text": ...}], ...}``.
The value the caller actually cares about is usually a JSON document encoded
inside that single text item.
"""

import json
from typing import Any

from .formats import to_pretty_json

OUTPUT_MODES = ("json", "string")


def extract_value(envelope: Any) -> Any:
    """
    Recover the payload from a tool result envelope.

    A single text item is re-parsed as JSON, falling back to the raw text.
    Any other content list (several items, or one non-text item) is returned
    as the list itself. Input without a content list is returned unchanged.
    """
    if not isinstance(envelope, dict):
        return envelope

    content = envelope.get("content")
    if not isinstance(content, list):
        return envelope

    if len(content) == 1 and isinstance(content[0], dict) and content[0].get("type") == "text":
        text = content[0].get("text", "")
        try:
            return json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return text

    return content


def format_tool_response(envelope: Any, output_mode: str = "json") -> str:
    """
    Render an upstream result for the caller.

    Args:
        envelope: The raw tool result
        output_mode: ``"json"`` for the full envelope as pretty JSON (the
            default, keeping result metadata such as ``isError``), or
            ``"string"`` for just the extracted value

    Returns:
        The rendered text
    """
    if output_mode == "string":
        value = extract_value(envelope)
        return value if isinstance(value, str) else to_pretty_json(value)
    return to_pretty_json(envelope)
