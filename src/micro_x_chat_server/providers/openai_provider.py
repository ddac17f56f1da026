import json
from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from micro_x_chat_server.provider import ProviderEvent, StepUsage, StreamStepEnd, StreamText, StreamToolCall
from micro_x_chat_server.providers.common import default_retry_kwargs, tool_message_as_text

# OpenAI finish_reason -> stop reason used by the turn driver
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
}


def _assistant_blocks(blocks: list[dict]) -> dict:
    text = [b["text"] for b in blocks if b.get("type") == "text"]
    calls = [
        {
            "id": b["id"],
            "type": "function",
            "function": {"name": b["name"], "arguments": json.dumps(b["input"])},
        }
        for b in blocks
        if b.get("type") == "tool_use"
    ]
    message: dict = {"role": "assistant", "content": "\n".join(text) if text else None}
    if calls:
        message["tool_calls"] = calls
    return message


def _user_blocks(blocks: list[dict]) -> list[dict]:
    """In-turn tool results go out as `tool` messages, followed by any plain text."""
    out = [
        {"role": "tool", "tool_call_id": b["tool_use_id"], "content": str(b.get("content", ""))}
        for b in blocks
        if b.get("type") == "tool_result"
    ]
    text = [b["text"] for b in blocks if b.get("type") == "text"]
    if text:
        out.append({"role": "user", "content": "\n".join(text)})
    return out


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    out: list[dict] = [{"role": "system", "content": system_prompt}] if system_prompt else []

    for msg in messages:
        role, content = msg["role"], msg.get("content", "")
        if role == "tool":
            out.append({"role": "user", "content": tool_message_as_text(msg)})
        elif isinstance(content, str):
            if content:
                out.append({"role": role, "content": content})
        elif role == "assistant":
            out.append(_assistant_blocks(content))
        elif role == "user":
            out.extend(_user_blocks(content))
        elif content:
            out.append({"role": role, "content": str(content)})
    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


class _ToolCallAccumulator:
    """Tool calls stream in fragments keyed by index; arguments are only valid JSON once complete."""

    def __init__(self) -> None:
        self._calls: dict[int, tuple[list[str], list[str], list[str]]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, fragment) -> None:
        ids, names, arguments = self._calls.setdefault(fragment.index, ([], [], []))
        if fragment.id:
            ids.append(fragment.id)
        function = fragment.function
        if function is None:
            return
        if function.name:
            names.append(function.name)
        if function.arguments:
            arguments.append(function.arguments)

    def finish(self) -> list[StreamToolCall]:
        calls = []
        for index in sorted(self._calls):
            ids, names, arguments = self._calls[index]
            raw = "".join(arguments)
            try:
                args = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw[:200]}")
                args = {}
            calls.append(StreamToolCall(id=ids[-1] if ids else "", name="".join(names), args=args))
        return calls


class OpenAIProvider:
    """OpenAI chat completions, also used for OpenAI-compatible endpoints such as OpenRouter."""

    def __init__(self, api_key: str, base_url: str | None = None):
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url or None)

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def _open_stream(self, **kwargs):
        return await self._client.chat.completions.create(**kwargs)

    async def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        request: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": _to_openai_messages(system_prompt, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            request["tools"] = _to_openai_tools(tools)
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(request['messages'])}, tools={len(tools)}"
        )

        stream = await self._open_stream(**request)

        calls = _ToolCallAccumulator()
        finish_reason: str | None = None
        usage: StepUsage | None = None

        async for chunk in stream:
            # With include_usage the final chunk carries usage and no choices
            reported = getattr(chunk, "usage", None)
            if reported is not None:
                usage = StepUsage(
                    prompt_tokens=reported.prompt_tokens or 0,
                    completion_tokens=reported.completion_tokens or 0,
                    total_tokens=getattr(reported, "total_tokens", None),
                )
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            finish_reason = choice.finish_reason or finish_reason
            delta = choice.delta
            if delta is None:
                continue
            if delta.content:
                yield StreamText(delta.content)
            for fragment in delta.tool_calls or ():
                calls.add(fragment)

        for call in calls.finish():
            yield call

        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")
        logger.debug(f"API response: stop_reason={stop_reason}, tool_calls={len(calls)}, usage={usage}")
        yield StreamStepEnd(stop_reason=stop_reason, usage=usage)
