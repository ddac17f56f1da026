import asyncio
import unittest

from micro_x_chat_server.approvals import ApprovalGate
from micro_x_chat_server.errors import ConfigurationError, ErrorCode
from micro_x_chat_server.model_catalog import ModelCatalog
from micro_x_chat_server.models import TextBlock, ToolCallBlock, ToolResultBlock
from micro_x_chat_server.provider import ProviderPool, StepUsage, StreamStepEnd, StreamText, StreamToolCall
from micro_x_chat_server.tool import ToolOutcome
from micro_x_chat_server.turn_driver import (
    MAX_STEPS,
    USER_REJECTION,
    ModelSelection,
    TurnDriver,
    TurnRequest,
    resolve_model,
)
from micro_x_chat_server.turn_events import (
    ApprovalRequired,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnComplete,
    UsageReported,
)
from tests.fakes import (
    _FakeApprovals,
    _FakeInvoker,
    _FakeProvider,
    _FakeTools,
    make_profile,
    make_tool,
    provider_pool,
    text_step,
    tool_step,
    user_message,
)

SELECTION = ModelSelection(model_id="gpt-4o", provider_id="openai")


def _request(tools: tuple[str, ...] = (), **profile_overrides) -> TurnRequest:
    return TurnRequest(
        session_id="s1",
        history=[user_message("hi")],
        profile=make_profile(tools, **profile_overrides),
        selection=SELECTION,
        working_directory="/work",
        message_id="a1",
    )


async def _collect(driver: TurnDriver, request: TurnRequest) -> list:
    return [event async for event in driver.stream(request)]


class TurnDriverTests(unittest.IsolatedAsyncioTestCase):
    def _driver(self, provider, *, tools=(), invoker=None, approvals="default", **kwargs) -> TurnDriver:
        self.invoker = invoker or _FakeInvoker()
        self.approvals = _FakeApprovals() if approvals == "default" else approvals
        return TurnDriver(
            providers=provider_pool(provider),
            tools=_FakeTools(*tools),
            invoker=self.invoker,
            approval_channel=self.approvals,
            **kwargs,
        )

    async def test_text_only_turn(self) -> None:
        provider = _FakeProvider([text_step("Hello", StepUsage(10, 2))])
        events = await _collect(self._driver(provider), _request())

        self.assertEqual([TextDelta, UsageReported, TurnComplete], [type(e) for e in events])
        message = events[-1].message
        self.assertEqual("a1", message.id)
        self.assertEqual("assistant", message.role)
        self.assertEqual([TextBlock(text="Hello")], message.content)
        self.assertEqual(1, len(provider.requests))

    async def test_profile_settings_reach_the_provider(self) -> None:
        provider = _FakeProvider([text_step("ok")])
        await _collect(self._driver(provider, max_tokens=123), _request())

        sent = provider.requests[0]
        self.assertEqual("gpt-4o", sent["model"])
        self.assertEqual(123, sent["max_tokens"])
        self.assertEqual(0.2, sent["temperature"])
        self.assertEqual("You are a test assistant.", sent["system_prompt"])
        self.assertEqual([{"role": "user", "content": "hi"}], sent["messages"])

    async def test_default_temperature_when_profile_has_none(self) -> None:
        provider = _FakeProvider([text_step("ok")])
        await _collect(self._driver(provider, default_temperature=0.9), _request(settings={}))
        self.assertEqual(0.9, provider.requests[0]["temperature"])

    async def test_approved_tool_runs_and_turn_continues(self) -> None:
        provider = _FakeProvider([
            tool_step("c1", "calculator", {"expression": "2+2"}),
            text_step("The answer is 4."),
        ])
        invoker = _FakeInvoker({"calculator": {"result": 4}})
        driver = self._driver(provider, tools=[make_tool("calculator", require_approval=True)], invoker=invoker)

        events = await _collect(driver, _request(("calculator",)))

        self.assertEqual(
            [ToolCallStarted, ApprovalRequired, ToolResultReady, TextDelta, TurnComplete],
            [type(e) for e in events],
        )
        started, approval, result = events[0], events[1], events[2]
        self.assertTrue(started.tool_call.pending)
        self.assertEqual("c1", approval.tool_call_id)
        self.assertEqual({"result": 4}, result.result)
        self.assertFalse(result.is_error)
        self.assertEqual([("calculator", {"expression": "2+2"}, "/work", 30_000)], invoker.calls)
        self.assertEqual([("c1", "calculator", False, "s1")], self.approvals.requests)

        content = events[-1].message.content
        self.assertIsInstance(content[0], ToolCallBlock)
        self.assertIsNone(content[0].pending)
        self.assertIsInstance(content[1], ToolResultBlock)
        self.assertEqual(TextBlock(text="The answer is 4."), content[2])

    async def test_tool_results_are_fed_back_to_the_model(self) -> None:
        provider = _FakeProvider([
            tool_step("c1", "calculator", {"expression": "2+2"}, text="Let me compute."),
            text_step("4"),
        ])
        driver = self._driver(provider, tools=[make_tool("calculator")], invoker=_FakeInvoker({"calculator": 4}))
        await _collect(driver, _request(("calculator",)))

        followup = provider.requests[1]["messages"]
        self.assertEqual("assistant", followup[1]["role"])
        self.assertEqual({"type": "text", "text": "Let me compute."}, followup[1]["content"][0])
        self.assertEqual("tool_use", followup[1]["content"][1]["type"])
        self.assertEqual(
            {"type": "tool_result", "tool_use_id": "c1", "content": "4", "is_error": False},
            followup[2]["content"][0],
        )
        self.assertEqual([{"name": "calculator", "description": "calculator tool", "input_schema": {"type": "object", "properties": {}}}], provider.requests[0]["tools"])

    async def test_denied_tool_never_executes(self) -> None:
        provider = _FakeProvider([
            tool_step("c1", "shell", {"command": "rm -rf /"}),
            text_step("Understood, I will not run that."),
        ])
        driver = self._driver(
            provider,
            tools=[make_tool("shell", require_approval=True, dangerous=True)],
            approvals=_FakeApprovals({"shell": False}),
        )

        events = await _collect(driver, _request(("shell",)))

        self.assertEqual([], self.invoker.calls)
        approval = next(e for e in events if isinstance(e, ApprovalRequired))
        self.assertTrue(approval.dangerous)
        result = next(e for e in events if isinstance(e, ToolResultReady))
        self.assertTrue(result.is_error)
        self.assertEqual(USER_REJECTION, result.result["error"])
        self.assertIn("Do NOT retry", result.result["message"])
        self.assertEqual("shell", result.result["toolName"])
        self.assertEqual({"command": "rm -rf /"}, result.result["args"])

        fed_back = provider.requests[1]["messages"][-1]["content"][0]
        self.assertTrue(fed_back["is_error"])
        self.assertIn(USER_REJECTION, fed_back["content"])
        self.assertIsInstance(events[-1], TurnComplete)

    async def test_missing_approval_channel_rejects_without_prompting(self) -> None:
        provider = _FakeProvider([tool_step("c1", "write-file", {"path": "a"}), text_step("ok")])
        driver = self._driver(provider, tools=[make_tool("write-file", require_approval=True)], approvals=None)

        events = await _collect(driver, _request(("write-file",)))

        self.assertFalse(any(isinstance(e, ApprovalRequired) for e in events))
        result = next(e for e in events if isinstance(e, ToolResultReady))
        self.assertEqual(USER_REJECTION, result.result["error"])
        self.assertIn("No approval callback was configured", result.result["message"])
        self.assertEqual([], self.invoker.calls)

    async def test_tool_without_approval_flag_runs_directly(self) -> None:
        provider = _FakeProvider([tool_step("c1", "glob", {"pattern": "*.py"}), text_step("done")])
        driver = self._driver(provider, tools=[make_tool("glob", timeout_ms=500)])

        await _collect(driver, _request(("glob",)))

        self.assertEqual([], self.approvals.requests)
        self.assertEqual(500, self.invoker.calls[0][3])

    async def test_unknown_or_disallowed_tool_is_an_error_result(self) -> None:
        provider = _FakeProvider([tool_step("c1", "shell", {}), text_step("ok")])
        # Installed but not in the profile's allow-list
        driver = self._driver(provider, tools=[make_tool("shell")])

        events = await _collect(driver, _request(("glob",)))

        result = next(e for e in events if isinstance(e, ToolResultReady))
        self.assertEqual({"error": "Unknown tool: shell"}, result.result)
        self.assertTrue(result.is_error)
        self.assertEqual([], self.invoker.calls)

    async def test_failed_outcome_and_invoker_exception_become_error_results(self) -> None:
        provider = _FakeProvider([
            [StreamToolCall("c1", "grep", {}), StreamToolCall("c2", "glob", {}), StreamStepEnd("tool_use")],
            text_step("ok"),
        ])
        invoker = _FakeInvoker({
            "grep": ToolOutcome.failed("Tool execution timed out after 30000ms"),
            "glob": RuntimeError("spawn failed"),
        })
        driver = self._driver(provider, tools=[make_tool("grep"), make_tool("glob")], invoker=invoker)

        events = await _collect(driver, _request(("grep", "glob")))

        results = {e.tool_call_id: e for e in events if isinstance(e, ToolResultReady)}
        self.assertEqual({"error": "Tool execution timed out after 30000ms"}, results["c1"].result)
        self.assertTrue(results["c2"].is_error)
        self.assertIn("spawn failed", results["c2"].result["error"])
        self.assertIsInstance(events[-1], TurnComplete)

    async def test_tool_call_precedes_its_result(self) -> None:
        provider = _FakeProvider([
            [StreamToolCall("c1", "glob", {}), StreamToolCall("c2", "grep", {}), StreamStepEnd("tool_use")],
            text_step("ok"),
        ])
        driver = self._driver(provider, tools=[make_tool("glob"), make_tool("grep")])

        events = await _collect(driver, _request(("glob", "grep")))

        for call_id in ("c1", "c2"):
            started = next(i for i, e in enumerate(events) if isinstance(e, ToolCallStarted) and e.tool_call.tool_call_id == call_id)
            finished = next(i for i, e in enumerate(events) if isinstance(e, ToolResultReady) and e.tool_call_id == call_id)
            self.assertLess(started, finished)

    async def test_step_cap_still_completes(self) -> None:
        provider = _FakeProvider([tool_step("c1", "glob", {})], repeat_last=True)
        driver = self._driver(provider, tools=[make_tool("glob")])

        events = await _collect(driver, _request(("glob",)))

        self.assertEqual(MAX_STEPS, len(provider.requests))
        self.assertEqual(MAX_STEPS, sum(1 for e in events if isinstance(e, ToolResultReady)))
        self.assertIsInstance(events[-1], TurnComplete)

    async def test_usage_is_summed_across_steps(self) -> None:
        provider = _FakeProvider([
            tool_step("c1", "glob", {}, usage=StepUsage(10, 5)),
            text_step("done", StepUsage(20, 7, total_tokens=30)),
        ])
        driver = self._driver(provider, tools=[make_tool("glob")])

        events = await _collect(driver, _request(("glob",)))

        usage_events = [e for e in events if isinstance(e, UsageReported)]
        self.assertEqual(1, len(usage_events))
        self.assertEqual(30, usage_events[0].usage.prompt_tokens)
        self.assertEqual(12, usage_events[0].usage.completion_tokens)
        self.assertEqual(45, usage_events[0].usage.total_tokens)
        self.assertEqual("gpt-4o", usage_events[0].model)
        self.assertIsInstance(events[-1], TurnComplete)

    async def test_no_usage_event_when_provider_reports_none(self) -> None:
        provider = _FakeProvider([text_step("hi")])
        events = await _collect(self._driver(provider), _request())
        self.assertFalse(any(isinstance(e, UsageReported) for e in events))

    async def test_empty_response_completes_with_empty_text_block(self) -> None:
        provider = _FakeProvider([[StreamStepEnd("end_turn")]])
        events = await _collect(self._driver(provider), _request())
        self.assertEqual([TextBlock(text="")], events[-1].message.content)

    async def test_provider_error_aborts_without_complete(self) -> None:
        provider = _FakeProvider([[StreamText("partial"), RuntimeError("connection reset")]])
        driver = self._driver(provider)

        seen = []
        with self.assertRaises(RuntimeError):
            async for event in driver.stream(_request()):
                seen.append(event)

        self.assertEqual([TextDelta("partial")], seen)

    async def test_missing_credential_fails_before_any_provider_call(self) -> None:
        provider = _FakeProvider([text_step("never")])
        driver = TurnDriver(
            providers=ProviderPool({}, factory=lambda name, key, base_url: provider),
            tools=_FakeTools(),
            invoker=_FakeInvoker(),
            approval_channel=None,
        )

        with self.assertRaises(ConfigurationError) as ctx:
            await _collect(driver, _request())

        self.assertEqual(ErrorCode.NO_API_KEY, ctx.exception.code)
        self.assertIn("LLM_OPENAI_API_KEY", str(ctx.exception))
        self.assertEqual([], provider.requests)

    async def test_closing_the_stream_denies_the_pending_approval(self) -> None:
        provider = _FakeProvider([tool_step("c1", "shell", {}), text_step("never")])
        gate = ApprovalGate(timeout_seconds=60)
        driver = self._driver(provider, tools=[make_tool("shell", require_approval=True)], approvals=gate)

        stream = driver.stream(_request(("shell",)))
        async for event in stream:
            if isinstance(event, ApprovalRequired):
                break
        await asyncio.sleep(0)
        self.assertEqual(1, gate.pending_count)

        await stream.aclose()

        self.assertEqual(0, gate.pending_count)
        self.assertEqual([], self.invoker.calls)

    async def test_tool_result_hook_is_called(self) -> None:
        seen = []
        provider = _FakeProvider([tool_step("c1", "glob", {}), text_step("ok")])
        driver = self._driver(
            provider,
            tools=[make_tool("glob")],
            on_tool_result=lambda session_id, call, result, is_error: seen.append((session_id, call.tool_call_id, is_error)),
        )
        await _collect(driver, _request(("glob",)))
        self.assertEqual([("s1", "c1", False)], seen)


class ResolveModelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = ModelCatalog.default()

    def _resolve(self, *, session_model=None, session_provider=None, profile_model=None, profile_provider=None):
        return resolve_model(
            session_model=session_model,
            session_provider=session_provider,
            profile=make_profile(model=profile_model, provider=profile_provider),
            default_model="gpt-4o",
            default_provider="openai",
            catalog=self.catalog,
        )

    def test_session_override_wins(self) -> None:
        selection = self._resolve(
            session_model="claude-haiku-4-5",
            session_provider="anthropic",
            profile_model="gpt-4o-mini",
            profile_provider="openai",
        )
        self.assertEqual(ModelSelection("claude-haiku-4-5", "anthropic"), selection)

    def test_profile_model_beats_default(self) -> None:
        self.assertEqual(ModelSelection("gpt-4o-mini", "openai"), self._resolve(profile_model="gpt-4o-mini"))

    def test_default_model_used_last(self) -> None:
        self.assertEqual(ModelSelection("gpt-4o", "openai"), self._resolve())

    def test_catalog_supplies_missing_provider(self) -> None:
        selection = self._resolve(profile_model="anthropic/claude-3.5-sonnet")
        self.assertEqual("openrouter", selection.provider_id)

    def test_unknown_model_provider_is_guessed(self) -> None:
        self.assertEqual("anthropic", self._resolve(session_model="claude-opus-9").provider_id)
        self.assertEqual("google", self._resolve(session_model="gemini-2.0-flash").provider_id)
        self.assertEqual("openrouter", self._resolve(session_model="meta/llama").provider_id)
        self.assertEqual("openai", self._resolve(session_model="o3-mini").provider_id)


if __name__ == "__main__":
    unittest.main()
