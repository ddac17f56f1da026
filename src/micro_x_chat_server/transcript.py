"""Client-side transcript reconciliation.

`reduce(state, event)` folds server events into per-message content blocks without mutating its
input, so every race below can be replayed in tests:

1. `tool.approval_required` may arrive before or after the `chat.tool_call` it belongs to, and its
   `toolCallId` may differ from the call's id. Matching falls back to the tool name inside the
   in-flight assistant message.
2. A `chat.tool_call` for a tool that already has an unresolved approval placeholder is dropped;
   the placeholder is authoritative.
3. `group_blocks` pairs every call with its result for display; unmatched results stand alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Union

from micro_x_chat_server.models import (
    ContentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    Usage,
)
from micro_x_chat_server.protocol import (
    ChatComplete,
    ChatDelta,
    ChatStart,
    ChatToolCall,
    ChatToolResult,
    ChatUsage,
    ChatUserMessage,
    ErrorEvent,
    ServerEvent,
    SessionClosed,
    SessionCreated,
    SessionResumed,
    SessionUpdated,
    ToolApprovalRequired,
)
from micro_x_chat_server.memory.events import utc_now


@dataclass(frozen=True)
class TranscriptState:
    session_id: str | None = None
    messages: tuple[Message, ...] = ()
    streaming_message_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    model: str | None = None
    closed: bool = False
    last_error: ErrorEvent | None = None


def reduce(state: TranscriptState, event: ServerEvent) -> TranscriptState:
    if isinstance(event, SessionCreated):
        return TranscriptState(session_id=event.session.id, usage=event.session.usage())
    if isinstance(event, SessionResumed):
        return TranscriptState(
            session_id=event.session.id,
            messages=tuple(event.messages),
            usage=event.usage or event.session.usage(),
            model=event.session.selected_model,
            closed=event.session.status == "closed",
        )
    if isinstance(event, SessionUpdated):
        if event.session.id != state.session_id:
            return state
        return replace(state, model=event.session.selected_model or state.model)
    if isinstance(event, SessionClosed):
        return replace(state, closed=True) if event.session_id == state.session_id else state
    if isinstance(event, ErrorEvent):
        return replace(state, last_error=event)

    # Everything below belongs to a session; ignore other sessions' traffic
    if _event_session(event) not in (None, state.session_id):
        return state

    if isinstance(event, ChatUserMessage):
        if _find_message(state, event.message.id) is not None:
            return state
        return replace(state, messages=state.messages + (event.message,))
    if isinstance(event, ChatStart):
        state = _ensure_assistant_message(state, event.message_id)
        return replace(state, streaming_message_id=event.message_id)
    if isinstance(event, ChatDelta):
        return _update_message(_ensure_assistant_message(state, event.message_id), event.message_id, _append_text(event.delta))
    if isinstance(event, ChatToolCall):
        return _update_message(_ensure_assistant_message(state, event.message_id), event.message_id, _add_tool_call(event.tool_call))
    if isinstance(event, ChatToolResult):
        return _update_message(_ensure_assistant_message(state, event.message_id), event.message_id, _add_tool_result(event))
    if isinstance(event, ToolApprovalRequired):
        return _apply_approval_required(state, event)
    if isinstance(event, ChatUsage):
        return replace(
            state,
            usage=Usage(
                prompt_tokens=state.usage.prompt_tokens + event.usage.prompt_tokens,
                completion_tokens=state.usage.completion_tokens + event.usage.completion_tokens,
                total_tokens=state.usage.total_tokens + event.usage.total_tokens,
            ),
            model=event.model,
        )
    if isinstance(event, ChatComplete):
        # The final message replaces the streamed one wholesale
        final = event.message
        if _find_message(state, final.id) is None:
            messages = state.messages + (final,)
        else:
            messages = tuple(final if m.id == final.id else m for m in state.messages)
        streaming = None if state.streaming_message_id == final.id else state.streaming_message_id
        return replace(state, messages=messages, streaming_message_id=streaming)
    return state


def resolve_approval(state: TranscriptState, tool_call_id: str, approved: bool) -> TranscriptState:
    """Local effect of the user answering an approval prompt."""

    def apply(content: list[ContentBlock]) -> list[ContentBlock] | None:
        for index, block in enumerate(content):
            if isinstance(block, ToolCallBlock) and block.tool_call_id == tool_call_id:
                updated = block.model_copy(
                    update={"needs_approval": None, "dangerous": None, "pending": True if approved else None}
                )
                return content[:index] + [updated] + content[index + 1:]
        return None

    for message in reversed(state.messages):
        new_content = apply(list(message.content))
        if new_content is not None:
            return _replace_message(state, message.model_copy(update={"content": new_content}))
    return state


def pending_approvals(state: TranscriptState) -> list[ToolCallBlock]:
    return [
        block
        for message in state.messages
        for block in message.content
        if isinstance(block, ToolCallBlock) and block.needs_approval
    ]


@dataclass(frozen=True)
class ToolPair:
    call: ToolCallBlock
    result: ToolResultBlock | None


DisplayItem = Union[TextBlock, ImageBlock, ToolPair, ToolResultBlock]


def group_blocks(content: list[ContentBlock]) -> list[DisplayItem]:
    """Pair each tool call with its result; results without a call render on their own."""
    results_by_id: dict[str, ToolResultBlock] = {}
    call_ids: set[str] = set()
    for block in content:
        if isinstance(block, ToolResultBlock):
            results_by_id.setdefault(block.tool_call_id, block)
        elif isinstance(block, ToolCallBlock):
            call_ids.add(block.tool_call_id)

    paired: set[int] = set()
    items: list[DisplayItem] = []
    for block in content:
        if isinstance(block, ToolCallBlock):
            result = results_by_id.get(block.tool_call_id)
            if result is not None and id(result) not in paired:
                paired.add(id(result))
                items.append(ToolPair(call=block, result=result))
            else:
                items.append(ToolPair(call=block, result=None))
        elif isinstance(block, ToolResultBlock):
            # The first result for a known call renders inside that call's pair
            if block.tool_call_id in call_ids and results_by_id[block.tool_call_id] is block:
                continue
            items.append(block)
        else:
            items.append(block)
    return items


def _event_session(event: ServerEvent) -> str | None:
    return getattr(event, "session_id", None)


def _find_message(state: TranscriptState, message_id: str) -> Message | None:
    for message in state.messages:
        if message.id == message_id:
            return message
    return None


def _ensure_assistant_message(state: TranscriptState, message_id: str) -> TranscriptState:
    if _find_message(state, message_id) is not None:
        return state
    placeholder = Message(id=message_id, role="assistant", content=[], created_at=utc_now())
    return replace(state, messages=state.messages + (placeholder,))


def _replace_message(state: TranscriptState, updated: Message) -> TranscriptState:
    return replace(state, messages=tuple(updated if m.id == updated.id else m for m in state.messages))


def _update_message(state: TranscriptState, message_id: str, change) -> TranscriptState:
    message = _find_message(state, message_id)
    if message is None:
        return state
    new_content = change(list(message.content))
    if new_content is None:
        return state
    return _replace_message(state, message.model_copy(update={"content": new_content}))


def _append_text(delta: str):
    def change(content: list[ContentBlock]) -> list[ContentBlock]:
        if content and isinstance(content[-1], TextBlock):
            return content[:-1] + [TextBlock(text=content[-1].text + delta)]
        return content + [TextBlock(text=delta)]

    return change


def _add_tool_call(tool_call: ToolCallBlock):
    def change(content: list[ContentBlock]) -> list[ContentBlock] | None:
        for block in content:
            if not isinstance(block, ToolCallBlock):
                continue
            if block.tool_call_id == tool_call.tool_call_id:
                return None
            if block.tool_name == tool_call.tool_name and block.needs_approval and not _has_result(content, block):
                return None
        return content + [tool_call.model_copy()]

    return change


def _add_tool_result(event: ChatToolResult):
    def change(content: list[ContentBlock]) -> list[ContentBlock]:
        updated = [
            block.model_copy(update={"pending": None})
            if isinstance(block, ToolCallBlock) and block.tool_call_id == event.tool_call_id
            else block
            for block in content
        ]
        return updated + [
            ToolResultBlock(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                result=event.result,
                is_error=event.is_error,
            )
        ]

    return change


def _has_result(content: list[ContentBlock], call: ToolCallBlock) -> bool:
    return any(isinstance(b, ToolResultBlock) and b.tool_call_id == call.tool_call_id for b in content)


def _approval_target(state: TranscriptState, event: ToolApprovalRequired) -> Message | None:
    for message_id in (event.message_id, state.streaming_message_id):
        if message_id:
            message = _find_message(state, message_id)
            if message is not None:
                return message
    for message in reversed(state.messages):
        if message.role == "assistant":
            return message
    return None


def _apply_approval_required(state: TranscriptState, event: ToolApprovalRequired) -> TranscriptState:
    target = _approval_target(state, event)
    if target is None:
        if not event.message_id:
            return state
        state = _ensure_assistant_message(state, event.message_id)
        target = _find_message(state, event.message_id)

    content = list(target.content)
    markers = {"needs_approval": True, "dangerous": event.dangerous, "pending": None}

    # Exact id first
    for index, block in enumerate(content):
        if isinstance(block, ToolCallBlock) and block.tool_call_id == event.tool_call_id:
            content[index] = block.model_copy(update=markers)
            return _replace_message(state, target.model_copy(update={"content": content}))

    # Then the newest same-name call that is neither marked nor finished; its id is replaced
    for index in range(len(content) - 1, -1, -1):
        block = content[index]
        if (
            isinstance(block, ToolCallBlock)
            and block.tool_name == event.tool_name
            and not block.needs_approval
            and not _has_result(content, block)
        ):
            content[index] = block.model_copy(update={**markers, "tool_call_id": event.tool_call_id})
            return _replace_message(state, target.model_copy(update={"content": content}))

    # Approval arrived first: provisional block
    content.append(
        ToolCallBlock(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            args=dict(event.args),
            needs_approval=True,
            dangerous=event.dangerous,
        )
    )
    return _replace_message(state, target.model_copy(update={"content": content}))
