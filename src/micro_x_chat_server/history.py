from __future__ import annotations

import json
from typing import Any

from micro_x_chat_server.models import Message, TextBlock, ToolCallBlock, ToolResultBlock


def serialize_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def to_provider_messages(history: list[Message]) -> list[dict]:
    """Transform stored messages into the internal provider message format.

    - text only: one message with the original role (text blocks joined by blank lines)
    - tool results only: one `tool` message per result
    - mixed: the text message first, then one `tool` message per result

    Tool-call blocks are never replayed; they only supply names for results stored without one.
    Image blocks are not sent.
    """
    tool_names: dict[str, str] = {}
    for msg in history:
        for block in msg.content:
            if isinstance(block, ToolCallBlock):
                tool_names[block.tool_call_id] = block.tool_name

    out: list[dict] = []
    for msg in history:
        texts = [b.text for b in msg.content if isinstance(b, TextBlock)]
        results = [b for b in msg.content if isinstance(b, ToolResultBlock)]

        if not results or texts:
            out.append({"role": msg.role, "content": "\n\n".join(texts)})

        for block in results:
            # Error payloads are always sent as a JSON string
            content = json.dumps(block.result, default=str) if block.is_error else serialize_tool_result(block.result)
            out.append({
                "role": "tool",
                "tool_use_id": block.tool_call_id,
                "tool_name": block.tool_name or tool_names.get(block.tool_call_id, ""),
                "content": content,
                "is_error": bool(block.is_error),
            })

    return out
