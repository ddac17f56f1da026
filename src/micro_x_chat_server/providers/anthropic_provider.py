import json
from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from micro_x_chat_server.provider import ProviderEvent, StepUsage, StreamStepEnd, StreamText, StreamToolCall
from micro_x_chat_server.providers.common import default_retry_kwargs, tool_message_as_text


def _to_anthropic_request(system_prompt: str, messages: list[dict]) -> tuple[str, list[dict]]:
    """Split out system messages and render history tool messages as user text.

    Consecutive messages with the same role are accepted by the API and merged server-side.
    """
    system_parts = [system_prompt] if system_prompt else []
    out: list[dict] = []

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "system":
            if content:
                system_parts.append(content)
        elif role == "tool":
            out.append({"role": "user", "content": tool_message_as_text(msg)})
        elif isinstance(content, str):
            # Empty text content is rejected by the API
            if content:
                out.append({"role": role, "content": content})
        else:
            out.append({"role": role, "content": content})

    return "\n\n".join(system_parts), out


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def _open_stream(self, **kwargs):
        return await self._client.messages.create(**kwargs)

    async def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        system, anthropic_messages = _to_anthropic_request(system_prompt, messages)
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(anthropic_messages)}, tools={len(tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=anthropic_messages,
            stream=True,
        )
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        stream = await self._open_stream(**kwargs)

        # tool_blocks: content block index -> {"id", "name", "json_parts"}
        tool_blocks: dict[int, dict] = {}
        input_tokens = 0
        output_tokens = 0
        saw_usage = False
        stop_reason = "end_turn"

        async for event in stream:
            if event.type == "message_start":
                usage = getattr(event.message, "usage", None)
                if usage is not None:
                    input_tokens = usage.input_tokens or 0
                    output_tokens = usage.output_tokens or 0
                    saw_usage = True

            elif event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    tool_blocks[event.index] = {"id": block.id, "name": block.name, "json_parts": []}

            elif event.type == "content_block_delta":
                if event.delta.type == "text_delta":
                    yield StreamText(event.delta.text)
                elif event.delta.type == "input_json_delta" and event.index in tool_blocks:
                    tool_blocks[event.index]["json_parts"].append(event.delta.partial_json)

            elif event.type == "content_block_stop":
                acc = tool_blocks.pop(event.index, None)
                if acc is not None:
                    raw_args = "".join(acc["json_parts"])
                    try:
                        parsed_input = json.loads(raw_args) if raw_args else {}
                    except json.JSONDecodeError:
                        logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                        parsed_input = {}
                    yield StreamToolCall(id=acc["id"], name=acc["name"], args=parsed_input)

            elif event.type == "message_delta":
                if event.delta.stop_reason:
                    stop_reason = event.delta.stop_reason
                usage = getattr(event, "usage", None)
                if usage is not None:
                    output_tokens = usage.output_tokens or 0
                    saw_usage = True

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"input_tokens={input_tokens}, output_tokens={output_tokens}"
        )
        yield StreamStepEnd(
            stop_reason=stop_reason,
            usage=StepUsage(input_tokens, output_tokens) if saw_usage else None,
        )
