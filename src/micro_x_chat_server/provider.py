from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Protocol, Union, runtime_checkable

from micro_x_chat_server.errors import ConfigurationError, ErrorCode
from micro_x_chat_server.tool import ToolDefinition

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
SUPPORTED_PROVIDERS = ("openai", "anthropic", "openrouter")


@dataclass(frozen=True)
class StreamText:
    text: str


@dataclass(frozen=True)
class StreamToolCall:
    id: str
    name: str
    args: dict


@dataclass(frozen=True)
class StepUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int | None = None


@dataclass(frozen=True)
class StreamStepEnd:
    stop_reason: str
    usage: StepUsage | None = None


ProviderEvent = Union[StreamText, StreamToolCall, StreamStepEnd]


@runtime_checkable
class LLMProvider(Protocol):
    def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model step.

        Yields text fragments as they arrive, then each requested tool call, then exactly one
        StreamStepEnd. `messages` use the internal format produced by `history.to_provider_messages`
        plus in-turn assistant/tool_result messages; `tools` come from `to_tool_schemas`.
        """
        ...


def to_tool_schemas(tools: list[ToolDefinition]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def create_provider(provider_name: str, api_key: str, base_url: str | None = None) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from micro_x_chat_server.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from micro_x_chat_server.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=base_url)
    if name == "openrouter":
        from micro_x_chat_server.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=OPENROUTER_BASE_URL)
    raise ConfigurationError(
        f"Unsupported provider: {provider_name!r}. Supported: {', '.join(SUPPORTED_PROVIDERS)}",
        code=ErrorCode.UNSUPPORTED_PROVIDER,
    )


class ProviderPool:
    """Holds provider credentials and hands out one client per provider id."""

    def __init__(
        self,
        api_keys: dict[str, str | None],
        *,
        base_url: str | None = None,
        factory: Callable[[str, str, str | None], LLMProvider] = create_provider,
    ):
        self._api_keys = api_keys
        self._base_url = base_url
        self._factory = factory
        self._providers: dict[str, LLMProvider] = {}

    def get(self, provider_id: str) -> LLMProvider:
        if provider_id in self._providers:
            return self._providers[provider_id]

        api_key = self._api_keys.get(provider_id)
        if not api_key:
            raise ConfigurationError(
                f"No API key configured for provider: {provider_id}. "
                f"Set LLM_{provider_id.upper()}_API_KEY environment variable.",
                code=ErrorCode.NO_API_KEY,
            )
        provider = self._factory(provider_id, api_key, self._base_url)
        self._providers[provider_id] = provider
        return provider
