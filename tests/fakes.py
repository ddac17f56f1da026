import asyncio
import copy
from typing import Any

from micro_x_chat_server.models import Message, TextBlock
from micro_x_chat_server.preconfig import BehaviorProfile
from micro_x_chat_server.provider import ProviderPool, StepUsage, StreamStepEnd, StreamText, StreamToolCall
from micro_x_chat_server.tool import ToolDefinition, ToolOutcome


def text_step(text: str, usage: StepUsage | None = None) -> list:
    return [StreamText(text), StreamStepEnd("end_turn", usage)]


def tool_step(call_id: str, name: str, args: dict, usage: StepUsage | None = None, text: str = "") -> list:
    events: list = [StreamText(text)] if text else []
    events.extend([StreamToolCall(call_id, name, args), StreamStepEnd("tool_use", usage)])
    return events


class _FakeProvider:
    """Replays one scripted list of events per step; an Exception entry is raised at that point."""

    def __init__(self, steps: list[list], *, repeat_last: bool = False):
        self._steps = steps
        self._repeat_last = repeat_last
        self.requests: list[dict] = []

    async def stream_step(self, model, max_tokens, temperature, system_prompt, messages, tools):
        self.requests.append({
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system_prompt": system_prompt,
            "messages": copy.deepcopy(messages),
            "tools": tools,
        })
        index = len(self.requests) - 1
        if index >= len(self._steps):
            if not self._repeat_last:
                raise AssertionError(f"Provider called more times than scripted ({index + 1})")
            index = len(self._steps) - 1
        for event in self._steps[index]:
            if isinstance(event, Exception):
                raise event
            await asyncio.sleep(0)
            yield event


def provider_pool(provider: _FakeProvider, provider_id: str = "openai") -> ProviderPool:
    return ProviderPool({provider_id: "test-key"}, factory=lambda name, key, base_url: provider)


class _FakeInvoker:
    def __init__(self, results: dict[str, Any] | None = None):
        self._results = results or {}
        self.calls: list[tuple[str, dict, str | None, int]] = []

    async def invoke(self, tool, args, *, working_directory=None, timeout_ms=30_000):
        self.calls.append((tool.name, dict(args), working_directory, timeout_ms))
        result = self._results.get(tool.name, {"ok": True})
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ToolOutcome):
            return result
        return ToolOutcome.ok(result)


class _FakeTools:
    def __init__(self, *definitions: ToolDefinition):
        self._tools = {d.name: d for d in definitions}

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())


class _FakeApprovals:
    def __init__(self, answers: dict[str, bool] | None = None, default: bool = True):
        self._answers = answers or {}
        self._default = default
        self.requests: list[tuple[str, str, bool, str | None]] = []

    async def request(self, tool_call, dangerous, *, session_id=None):
        self.requests.append((tool_call.tool_call_id, tool_call.tool_name, dangerous, session_id))
        return self._answers.get(tool_call.tool_name, self._default)


class _FakeConnection:
    def __init__(self, *, fail: bool = False, delay: float = 0.0):
        self.sent: list[dict] = []
        self._fail = fail
        self._delay = delay

    async def send_json(self, data):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [item["type"] for item in self.sent]


def make_tool(name: str, *, require_approval: bool = False, dangerous: bool = False, timeout_ms: int | None = None) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        script="script.py",
        runtime="python",
        input_schema={"type": "object", "properties": {}},
        timeout_ms=timeout_ms,
        require_approval=require_approval,
        dangerous=dangerous,
    )


def make_profile(tools: tuple[str, ...] = (), **overrides) -> BehaviorProfile:
    values = dict(
        id="test",
        name="Test",
        system_prompt="You are a test assistant.",
        tools=tools,
        settings={"temperature": 0.2},
        is_default=True,
    )
    values.update(overrides)
    return BehaviorProfile(**values)


def user_message(text: str, message_id: str = "u1") -> Message:
    return Message(id=message_id, role="user", content=[TextBlock(text=text)], created_at="2026-01-01T00:00:00.000+00:00")
