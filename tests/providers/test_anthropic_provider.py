import asyncio
import unittest
from types import SimpleNamespace

from micro_x_chat_server.provider import StreamStepEnd, StreamText, StreamToolCall
from micro_x_chat_server.providers.anthropic_provider import AnthropicProvider, _to_anthropic_request


class _FakeEventStream:
    def __init__(self, events: list[object]):
        self._events = events

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _FakeMessages:
    def __init__(self, events: list[object]):
        self._events = events
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return _FakeEventStream(self._events)


def _make_provider(events: list[object]) -> tuple[AnthropicProvider, _FakeMessages]:
    provider = AnthropicProvider.__new__(AnthropicProvider)
    messages = _FakeMessages(events)
    provider._client = SimpleNamespace(messages=messages)
    return provider, messages


def _message_start(input_tokens: int, output_tokens: int = 0) -> SimpleNamespace:
    return SimpleNamespace(
        type="message_start",
        message=SimpleNamespace(usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens)),
    )


def _text(index: int, text: str) -> SimpleNamespace:
    return SimpleNamespace(type="content_block_delta", index=index, delta=SimpleNamespace(type="text_delta", text=text))


def _message_delta(stop_reason: str, output_tokens: int) -> SimpleNamespace:
    return SimpleNamespace(
        type="message_delta",
        delta=SimpleNamespace(stop_reason=stop_reason),
        usage=SimpleNamespace(output_tokens=output_tokens),
    )


async def _collect(provider: AnthropicProvider, system: str = "sys", tools: list | None = None) -> list:
    return [
        event
        async for event in provider.stream_step(
            "claude-haiku-4-5", 100, 0.5, system, [{"role": "user", "content": "hi"}], tools or []
        )
    ]


class ToAnthropicRequestTests(unittest.TestCase):
    def test_system_messages_are_merged_into_system_prompt(self) -> None:
        system, messages = _to_anthropic_request("base", [
            {"role": "system", "content": "extra"},
            {"role": "user", "content": "hello"},
        ])
        self.assertEqual("base\n\nextra", system)
        self.assertEqual([{"role": "user", "content": "hello"}], messages)

    def test_history_tool_message_becomes_user_text(self) -> None:
        _, messages = _to_anthropic_request("", [
            {"role": "tool", "tool_use_id": "c1", "tool_name": "shell", "content": "{}", "is_error": True},
        ])
        self.assertEqual("user", messages[0]["role"])
        self.assertTrue(messages[0]["content"].startswith("[tool error: shell (c1)]"))

    def test_empty_string_content_is_dropped(self) -> None:
        _, messages = _to_anthropic_request("", [{"role": "assistant", "content": ""}])
        self.assertEqual([], messages)

    def test_block_content_passes_through(self) -> None:
        blocks = [{"type": "tool_result", "tool_use_id": "x", "content": "ok", "is_error": False}]
        _, messages = _to_anthropic_request("", [{"role": "user", "content": blocks}])
        self.assertIs(blocks, messages[0]["content"])


class AnthropicProviderStreamTests(unittest.TestCase):
    def test_text_and_usage(self) -> None:
        provider, _ = _make_provider([
            _message_start(input_tokens=20, output_tokens=1),
            _text(0, "Hel"),
            _text(0, "lo"),
            _message_delta("end_turn", output_tokens=7),
        ])
        events = asyncio.run(_collect(provider))

        self.assertEqual([StreamText("Hel"), StreamText("lo")], events[:2])
        end = events[-1]
        self.assertIsInstance(end, StreamStepEnd)
        self.assertEqual("end_turn", end.stop_reason)
        self.assertEqual(20, end.usage.prompt_tokens)
        self.assertEqual(7, end.usage.completion_tokens)

    def test_tool_use_block_is_yielded_on_block_stop(self) -> None:
        provider, _ = _make_provider([
            _message_start(input_tokens=5),
            SimpleNamespace(
                type="content_block_start",
                index=1,
                content_block=SimpleNamespace(type="tool_use", id="toolu_1", name="calculator"),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='{"expression": '),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='"2+2"}'),
            ),
            SimpleNamespace(type="content_block_stop", index=1),
            _message_delta("tool_use", output_tokens=9),
        ])
        events = asyncio.run(_collect(provider))

        self.assertEqual(StreamToolCall(id="toolu_1", name="calculator", args={"expression": "2+2"}), events[0])
        self.assertEqual("tool_use", events[-1].stop_reason)

    def test_request_includes_system_and_tools_only_when_present(self) -> None:
        provider, messages = _make_provider([_message_delta("end_turn", 0)])
        asyncio.run(_collect(provider, system=""))
        self.assertNotIn("system", messages.calls[0])
        self.assertNotIn("tools", messages.calls[0])
        self.assertTrue(messages.calls[0]["stream"])

        tools = [{"name": "glob", "description": "", "input_schema": {}}]
        provider, messages = _make_provider([_message_delta("end_turn", 0)])
        asyncio.run(_collect(provider, tools=tools))
        self.assertEqual("sys", messages.calls[0]["system"])
        self.assertEqual(tools, messages.calls[0]["tools"])


if __name__ == "__main__":
    unittest.main()
