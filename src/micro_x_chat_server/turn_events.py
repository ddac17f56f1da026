from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from micro_x_chat_server.models import Message, ToolCallBlock, Usage


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    tool_call: ToolCallBlock


@dataclass(frozen=True)
class ToolResultReady:
    tool_call_id: str
    tool_name: str
    result: Any
    is_error: bool


@dataclass(frozen=True)
class ApprovalRequired:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    dangerous: bool


@dataclass(frozen=True)
class UsageReported:
    usage: Usage
    model: str


@dataclass(frozen=True)
class TurnComplete:
    message: Message


# Everything a turn may emit, in the order the driver can produce it.
TurnEvent = Union[TextDelta, ToolCallStarted, ToolResultReady, ApprovalRequired, UsageReported, TurnComplete]
