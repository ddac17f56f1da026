"""Wire protocol: one closed union per direction, JSON objects tagged by `type`."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import Field, TypeAdapter, ValidationError

from micro_x_chat_server.errors import ChatServerError, ErrorCode
from micro_x_chat_server.models import Message, Session, ToolCallBlock, Usage, WireModel
from micro_x_chat_server.turn_events import (
    ApprovalRequired,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnComplete,
    TurnEvent,
    UsageReported,
)


class ProtocolError(ChatServerError):
    pass


# Client -> server

class SessionCreate(WireModel):
    type: Literal["session.create"] = "session.create"
    preconfig_id: str | None = None
    title: str | None = None
    workspace_id: str | None = None


class SessionResume(WireModel):
    type: Literal["session.resume"] = "session.resume"
    session_id: str


class SessionUpdate(WireModel):
    type: Literal["session.update"] = "session.update"
    session_id: str
    preconfig_id: str | None = None


class SessionUpdateModel(WireModel):
    type: Literal["session.update_model"] = "session.update_model"
    session_id: str
    model_id: str
    provider_id: str


class SessionClose(WireModel):
    type: Literal["session.close"] = "session.close"
    session_id: str


class ChatMessage(WireModel):
    type: Literal["chat.message"] = "chat.message"
    session_id: str
    content: str


class ToolApproval(WireModel):
    type: Literal["tool.approval"] = "tool.approval"
    tool_call_id: str
    approved: bool


ClientCommand = Annotated[
    Union[SessionCreate, SessionResume, SessionUpdate, SessionUpdateModel, SessionClose, ChatMessage, ToolApproval],
    Field(discriminator="type"),
]

CLIENT_COMMAND_TYPES = frozenset({
    "session.create",
    "session.resume",
    "session.update",
    "session.update_model",
    "session.close",
    "chat.message",
    "tool.approval",
})

_CLIENT_ADAPTER = TypeAdapter(ClientCommand)


def parse_client_message(raw: str | bytes) -> ClientCommand:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as ex:
        raise ProtocolError(f"Invalid JSON: {ex}", code=ErrorCode.PARSE_ERROR) from ex
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object", code=ErrorCode.PARSE_ERROR)

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or msg_type not in CLIENT_COMMAND_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type}", code=ErrorCode.UNKNOWN_MESSAGE)

    try:
        return _CLIENT_ADAPTER.validate_python(data)
    except ValidationError as ex:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]) for err in ex.errors())
        raise ProtocolError(f"Invalid {msg_type} message: {fields}", code=ErrorCode.INVALID_MESSAGE) from ex


# Server -> client

class SessionCreated(WireModel):
    type: Literal["session.created"] = "session.created"
    session: Session


class SessionResumed(WireModel):
    type: Literal["session.resumed"] = "session.resumed"
    session: Session
    messages: list[Message] = Field(default_factory=list)
    usage: Usage | None = None


class SessionUpdated(WireModel):
    type: Literal["session.updated"] = "session.updated"
    session: Session


class SessionClosed(WireModel):
    type: Literal["session.closed"] = "session.closed"
    session_id: str


class ChatUserMessage(WireModel):
    type: Literal["chat.user_message"] = "chat.user_message"
    session_id: str
    message: Message


class ChatStart(WireModel):
    type: Literal["chat.start"] = "chat.start"
    session_id: str
    message_id: str


class ChatDelta(WireModel):
    type: Literal["chat.delta"] = "chat.delta"
    session_id: str
    message_id: str
    delta: str


class ChatToolCall(WireModel):
    type: Literal["chat.tool_call"] = "chat.tool_call"
    session_id: str
    message_id: str
    tool_call: ToolCallBlock


class ChatToolResult(WireModel):
    type: Literal["chat.tool_result"] = "chat.tool_result"
    session_id: str
    message_id: str
    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool | None = None


class ToolApprovalRequired(WireModel):
    type: Literal["tool.approval_required"] = "tool.approval_required"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    dangerous: bool = False
    session_id: str | None = None
    message_id: str | None = None


class ChatUsage(WireModel):
    type: Literal["chat.usage"] = "chat.usage"
    session_id: str
    usage: Usage
    model: str


class ChatComplete(WireModel):
    type: Literal["chat.complete"] = "chat.complete"
    session_id: str
    message: Message


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    code: str
    message: str


ServerEvent = Annotated[
    Union[
        SessionCreated,
        SessionResumed,
        SessionUpdated,
        SessionClosed,
        ChatUserMessage,
        ChatStart,
        ChatDelta,
        ChatToolCall,
        ChatToolResult,
        ToolApprovalRequired,
        ChatUsage,
        ChatComplete,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

_SERVER_ADAPTER = TypeAdapter(ServerEvent)


def parse_server_event(data: dict[str, Any]) -> ServerEvent:
    return _SERVER_ADAPTER.validate_python(data)


def error_event(code: ErrorCode | str, message: str) -> ErrorEvent:
    return ErrorEvent(code=code.value if isinstance(code, ErrorCode) else code, message=message)


def turn_event_to_wire(session_id: str, message_id: str, event: TurnEvent) -> ServerEvent:
    if isinstance(event, TextDelta):
        return ChatDelta(session_id=session_id, message_id=message_id, delta=event.text)
    if isinstance(event, ToolCallStarted):
        return ChatToolCall(session_id=session_id, message_id=message_id, tool_call=event.tool_call)
    if isinstance(event, ToolResultReady):
        return ChatToolResult(
            session_id=session_id,
            message_id=message_id,
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            result=event.result,
            is_error=event.is_error,
        )
    if isinstance(event, ApprovalRequired):
        return ToolApprovalRequired(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            args=event.args,
            dangerous=event.dangerous,
            session_id=session_id,
            message_id=message_id,
        )
    if isinstance(event, UsageReported):
        return ChatUsage(session_id=session_id, usage=event.usage, model=event.model)
    if isinstance(event, TurnComplete):
        return ChatComplete(session_id=session_id, message=event.message)
    assert_never(event)
