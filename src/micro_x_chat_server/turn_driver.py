from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from loguru import logger

from micro_x_chat_server.history import serialize_tool_result, to_provider_messages
from micro_x_chat_server.memory.events import utc_now
from micro_x_chat_server.model_catalog import ModelCatalog, guess_provider
from micro_x_chat_server.models import ContentBlock, Message, TextBlock, ToolCallBlock, ToolResultBlock, Usage
from micro_x_chat_server.preconfig import BehaviorProfile
from micro_x_chat_server.provider import (
    LLMProvider,
    ProviderPool,
    StepUsage,
    StreamStepEnd,
    StreamText,
    StreamToolCall,
    to_tool_schemas,
)
from micro_x_chat_server.tool import DEFAULT_TOOL_TIMEOUT_MS, ToolDefinition, ToolInvoker
from micro_x_chat_server.turn_events import (
    ApprovalRequired,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnComplete,
    TurnEvent,
    UsageReported,
)

MAX_STEPS = 10
USER_REJECTION = "USER_REJECTION"

_DONE = object()


class ApprovalChannel(Protocol):
    async def request(self, tool_call: ToolCallBlock, dangerous: bool, *, session_id: str | None = None) -> bool: ...


class ToolLookup(Protocol):
    def get(self, name: str) -> ToolDefinition | None: ...


def denied_result(tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
    return {
        "error": USER_REJECTION,
        "message": (
            f"The user explicitly denied permission to execute this tool ({tool_name}). "
            "Do NOT retry this tool call or similar variations. "
            "Acknowledge this rejection to the user and ask what they would like you to do instead, "
            "or suggest alternative approaches that don't require this specific action."
        ),
        "toolName": tool_name,
        "args": args,
    }


def no_approval_channel_result(tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
    return {
        "error": USER_REJECTION,
        "message": (
            f"No approval callback was configured, so the tool ({tool_name}) could not be executed. "
            "This is a configuration error - do NOT retry this tool call. "
            "Inform the user that the tool execution was not possible due to missing approval configuration."
        ),
        "toolName": tool_name,
        "args": args,
    }


def is_error_result(result: Any) -> bool:
    return isinstance(result, dict) and "error" in result


@dataclass(frozen=True)
class ModelSelection:
    model_id: str
    provider_id: str


def resolve_model(
    *,
    session_model: str | None,
    session_provider: str | None,
    profile: BehaviorProfile,
    default_model: str,
    default_provider: str | None,
    catalog: ModelCatalog,
) -> ModelSelection:
    """Session override, then the profile's default, then the configured default.

    A provider travels with the model it was chosen alongside; when none is given the catalog
    decides, and unknown ids fall back to `guess_provider`.
    """
    if session_model:
        model_id, provider_id = session_model, session_provider
    elif profile.model:
        model_id, provider_id = profile.model, profile.provider
    else:
        model_id, provider_id = default_model, default_provider

    if not provider_id:
        found = catalog.find_model(model_id)
        provider_id = found.provider_id if found is not None else guess_provider(model_id)
    return ModelSelection(model_id=model_id, provider_id=provider_id)


@dataclass
class TurnRequest:
    session_id: str
    history: list[Message]
    profile: BehaviorProfile
    selection: ModelSelection
    working_directory: str | None = None
    message_id: str = field(default_factory=lambda: str(uuid4()))


class _TurnBuffer:
    """The in-progress assistant message: text flushes into a block whenever a tool call interrupts it."""

    def __init__(self) -> None:
        self.blocks: list[ContentBlock] = []
        self._text: list[str] = []
        self._calls: dict[str, ToolCallBlock] = {}

    def add_text(self, text: str) -> None:
        self._text.append(text)

    def flush_text(self) -> None:
        if self._text:
            self.blocks.append(TextBlock(text="".join(self._text)))
            self._text.clear()

    def add_tool_call(self, block: ToolCallBlock) -> None:
        self.flush_text()
        self.blocks.append(block)
        self._calls[block.tool_call_id] = block

    def add_tool_result(self, block: ToolResultBlock) -> None:
        call = self._calls.get(block.tool_call_id)
        if call is not None:
            call.pending = None
        self.blocks.append(block)

    def finish(self, message_id: str) -> Message:
        self.flush_text()
        content = self.blocks or [TextBlock(text="")]
        return Message(id=message_id, role="assistant", content=content, created_at=utc_now())


class _UsageTotals:
    def __init__(self) -> None:
        self.reported = False
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.total_tokens = 0

    def add(self, usage: StepUsage | None) -> None:
        if usage is None:
            return
        self.reported = True
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.total_tokens += (
            usage.total_tokens if usage.total_tokens is not None else usage.prompt_tokens + usage.completion_tokens
        )

    def as_usage(self) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )


class TurnDriver:
    """Runs one assistant turn and yields its events in emission order.

    States: resolving-model -> streaming -> (tool-pending -> streaming)* -> finalizing -> complete | failed.
    The turn ends when a step requests no tools or after `max_steps` steps. A provider error
    propagates out of `stream` and no TurnComplete is emitted.
    """

    def __init__(
        self,
        *,
        providers: ProviderPool,
        tools: ToolLookup,
        invoker: ToolInvoker,
        approval_channel: ApprovalChannel | None,
        max_tokens: int = 4096,
        default_temperature: float = 0.7,
        max_steps: int = MAX_STEPS,
        tool_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
        on_tool_result: Callable[[str, ToolCallBlock, Any, bool], None] | None = None,
    ):
        self._providers = providers
        self._tools = tools
        self._invoker = invoker
        self._approval_channel = approval_channel
        self._max_tokens = max_tokens
        self._default_temperature = default_temperature
        self._max_steps = max_steps
        self._tool_timeout_ms = tool_timeout_ms
        self._on_tool_result = on_tool_result

    def ensure_configured(self, selection: ModelSelection) -> LLMProvider:
        """Raises ConfigurationError when the provider is unsupported or has no credential."""
        return self._providers.get(selection.provider_id)

    async def stream(self, request: TurnRequest) -> AsyncIterator[TurnEvent]:
        provider = self.ensure_configured(request.selection)

        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._drive(request, provider, queue.put_nowait))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    async def _drive(
        self,
        request: TurnRequest,
        provider: LLMProvider,
        emit: Callable[[object], None],
    ) -> None:
        try:
            await self._run_steps(request, provider, emit)
        finally:
            emit(_DONE)

    async def _run_steps(
        self,
        request: TurnRequest,
        provider: LLMProvider,
        emit: Callable[[object], None],
    ) -> None:
        profile = request.profile
        allowed = self._allowed_tools(profile)
        tool_schemas = to_tool_schemas(list(allowed.values()))
        temperature = profile.temperature if profile.temperature is not None else self._default_temperature
        messages = to_provider_messages(request.history)
        buffer = _TurnBuffer()
        usage = _UsageTotals()

        logger.debug(
            f"Turn {request.message_id} streaming: session={request.session_id}, "
            f"model={request.selection.provider_id}/{request.selection.model_id}, tools={list(allowed)}"
        )

        for step in range(1, self._max_steps + 1):
            step_text: list[str] = []
            calls: list[ToolCallBlock] = []

            async for event in provider.stream_step(
                request.selection.model_id,
                self._max_tokens,
                temperature,
                profile.system_prompt,
                messages,
                tool_schemas,
            ):
                if isinstance(event, StreamText):
                    if event.text:
                        buffer.add_text(event.text)
                        step_text.append(event.text)
                        emit(TextDelta(event.text))
                elif isinstance(event, StreamToolCall):
                    block = ToolCallBlock(
                        tool_call_id=event.id or f"call_{uuid4().hex}",
                        tool_name=event.name,
                        args=event.args if isinstance(event.args, dict) else {},
                        pending=True,
                    )
                    buffer.add_tool_call(block)
                    calls.append(block)
                    emit(ToolCallStarted(block.model_copy(deep=True)))
                elif isinstance(event, StreamStepEnd):
                    usage.add(event.usage)

            if not calls:
                break

            logger.debug(f"Turn {request.message_id} step {step}: running {', '.join(c.tool_name for c in calls)}")
            assistant_content: list[dict] = []
            if step_text:
                assistant_content.append({"type": "text", "text": "".join(step_text)})
            assistant_content.extend(
                {"type": "tool_use", "id": c.tool_call_id, "name": c.tool_name, "input": c.args} for c in calls
            )
            messages.append({"role": "assistant", "content": assistant_content})

            results = await asyncio.gather(*(self._run_tool(request, allowed, call, buffer, emit) for call in calls))
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": r.tool_call_id,
                        "content": serialize_tool_result(r.result),
                        "is_error": bool(r.is_error),
                    }
                    for r in results
                ],
            })

            if step == self._max_steps:
                logger.warning(f"Turn {request.message_id} stopped at the {self._max_steps}-step cap")

        if usage.reported:
            emit(UsageReported(usage=usage.as_usage(), model=request.selection.model_id))
        emit(TurnComplete(buffer.finish(request.message_id)))

    async def _run_tool(
        self,
        request: TurnRequest,
        allowed: dict[str, ToolDefinition],
        call: ToolCallBlock,
        buffer: _TurnBuffer,
        emit: Callable[[object], None],
    ) -> ToolResultBlock:
        result = await self._execute(request, allowed.get(call.tool_name), call, emit)
        is_error = is_error_result(result)
        block = ToolResultBlock(
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            result=result,
            is_error=is_error,
        )
        buffer.add_tool_result(block)
        emit(ToolResultReady(call.tool_call_id, call.tool_name, result, is_error))
        if self._on_tool_result is not None:
            self._on_tool_result(request.session_id, call, result, is_error)
        return block

    async def _execute(
        self,
        request: TurnRequest,
        definition: ToolDefinition | None,
        call: ToolCallBlock,
        emit: Callable[[object], None],
    ) -> Any:
        if definition is None:
            return {"error": f"Unknown tool: {call.tool_name}"}

        if definition.require_approval:
            if self._approval_channel is None:
                logger.warning(f"{call.tool_name} requires approval but no approval channel is configured")
                return no_approval_channel_result(call.tool_name, dict(call.args))
            emit(ApprovalRequired(call.tool_call_id, call.tool_name, dict(call.args), definition.dangerous))
            if not await self._approval_channel.request(
                call, definition.dangerous, session_id=request.session_id
            ):
                return denied_result(call.tool_name, dict(call.args))

        try:
            outcome = await self._invoker.invoke(
                definition,
                call.args,
                working_directory=request.working_directory,
                timeout_ms=definition.timeout_ms or self._tool_timeout_ms,
            )
        except Exception as ex:
            logger.error(f'Error executing tool "{call.tool_name}": {ex}')
            return {"error": f'Error executing tool "{call.tool_name}": {ex}'}

        if not outcome.success:
            return {"error": outcome.error}
        return outcome.result

    def _allowed_tools(self, profile: BehaviorProfile) -> dict[str, ToolDefinition]:
        allowed: dict[str, ToolDefinition] = {}
        for name in profile.tools:
            definition = self._tools.get(name)
            if definition is None:
                logger.warning(f"Tool {name!r} from preconfig {profile.id!r} is not installed")
                continue
            allowed[name] = definition
        return allowed
