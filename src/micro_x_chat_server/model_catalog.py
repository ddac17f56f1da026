from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

FALLBACK_MODEL = "gpt-4o"
FALLBACK_PROVIDER = "openai"


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    name: str
    context_window: int
    tier: str = "standard"


@dataclass(frozen=True)
class ProviderDefinition:
    id: str
    name: str
    models: tuple[ModelDefinition, ...]


@dataclass(frozen=True)
class ModelWithProvider:
    model: ModelDefinition
    provider_id: str
    provider_name: str


_DEFAULT_CATALOG = {
    "providers": [
        {
            "id": "openai",
            "name": "OpenAI",
            "models": [
                {"id": "gpt-4o", "name": "GPT-4o", "contextWindow": 128000, "tier": "standard"},
                {"id": "gpt-4o-mini", "name": "GPT-4o mini", "contextWindow": 128000, "tier": "budget"},
            ],
        },
        {
            "id": "anthropic",
            "name": "Anthropic",
            "models": [
                {"id": "claude-sonnet-4-5-20250929", "name": "Claude Sonnet 4.5", "contextWindow": 200000, "tier": "premium"},
                {"id": "claude-haiku-4-5", "name": "Claude Haiku 4.5", "contextWindow": 200000, "tier": "budget"},
            ],
        },
        {
            "id": "openrouter",
            "name": "OpenRouter",
            "models": [
                {"id": "anthropic/claude-3.5-sonnet", "name": "Claude 3.5 Sonnet (OpenRouter)", "contextWindow": 200000, "tier": "premium"},
            ],
        },
    ],
    "defaultModel": FALLBACK_MODEL,
    "defaultProvider": FALLBACK_PROVIDER,
}


def guess_provider(model_id: str) -> str:
    """Best guess for a model id that is not in the catalog."""
    if "/" in model_id:
        return "openrouter"
    if model_id.startswith("claude-"):
        return "anthropic"
    if model_id.startswith("gemini-"):
        return "google"
    return "openai"


class ModelCatalog:
    def __init__(self, providers: list[ProviderDefinition], default_model: str, default_provider: str):
        self.providers = providers
        self.default_model = default_model
        self.default_provider = default_provider

    @classmethod
    def from_dict(cls, data: dict) -> ModelCatalog:
        providers = [
            ProviderDefinition(
                id=p["id"],
                name=p.get("name", p["id"]),
                models=tuple(
                    ModelDefinition(
                        id=m["id"],
                        name=m.get("name", m["id"]),
                        context_window=int(m.get("contextWindow", 0)),
                        tier=m.get("tier", "standard"),
                    )
                    for m in p.get("models", [])
                ),
            )
            for p in data.get("providers", [])
        ]
        return cls(
            providers,
            default_model=data.get("defaultModel") or FALLBACK_MODEL,
            default_provider=data.get("defaultProvider") or FALLBACK_PROVIDER,
        )

    @classmethod
    def default(cls) -> ModelCatalog:
        return cls.from_dict(_DEFAULT_CATALOG)

    @classmethod
    def load(cls, path: str | None) -> ModelCatalog:
        if path and Path(path).exists():
            try:
                with open(path, encoding="utf-8") as f:
                    return cls.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError, KeyError) as ex:
                logger.warning(f"Failed to load models config {path}: {ex}; using built-in catalog")
        return cls.default()

    def find_model(self, model_id: str) -> ModelWithProvider | None:
        for provider in self.providers:
            for model in provider.models:
                if model.id == model_id:
                    return ModelWithProvider(model=model, provider_id=provider.id, provider_name=provider.name)
        return None

    def list_models(self) -> list[ModelWithProvider]:
        return [
            ModelWithProvider(model=model, provider_id=provider.id, provider_name=provider.name)
            for provider in self.providers
            for model in provider.models
        ]
