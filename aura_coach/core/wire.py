"""Wire convention shared by the stream endpoint and the client consumer.

The response body is plain UTF-8 prose. When a tool ran, the last chunk is
``TOOL_BLOCK_MARKER`` followed by the tool result as JSON. A body without the
marker, or with a payload that is not valid JSON, is treated as prose.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Tuple

WIRE_VERSION = 1
TOOL_BLOCK_MARKER = f"\n\n\U0001f4cb aura-tool/v{WIRE_VERSION}\n"


class StreamParseFailure(ValueError):
    pass


@dataclass
class ConversationRequest:
    """Request body of the stream endpoint: ordered messages plus a language tag."""

    messages: list[dict[str, Any]]
    lang: str = "sv"

    def to_payload(self) -> dict[str, Any]:
        return {"messages": list(self.messages), "lang": self.lang}


def encode_tool_block(result: Any) -> str:
    return TOOL_BLOCK_MARKER + json.dumps(result, ensure_ascii=False, separators=(",", ":"))


def decode_tool_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseFailure(f"Invalid tool block payload: {exc.msg}") from exc


def split_body(body: str) -> Tuple[str, Optional[str]]:
    """Split a complete body into ``(prose, tool_payload)``."""
    idx = body.find(TOOL_BLOCK_MARKER)
    if idx == -1:
        return body, None
    return body[:idx], body[idx + len(TOOL_BLOCK_MARKER) :]


def marker_prefix_overlap(text: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of the marker."""
    upper = min(len(text), len(TOOL_BLOCK_MARKER) - 1)
    for size in range(upper, 0, -1):
        if TOOL_BLOCK_MARKER.startswith(text[-size:]):
            return size
    return 0
