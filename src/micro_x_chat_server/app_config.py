from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class RuntimeEnv:
    api_keys: dict[str, str] = field(default_factory=dict)
    base_url: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class AppConfig:
    host: str
    port: int
    default_model: str | None
    default_provider: str | None
    max_tokens: int
    temperature: float
    max_steps: int
    tools_path: str
    tool_timeout_ms: int
    tool_cache_seconds: float
    preconfigs_path: str
    models_config_path: str
    database_path: str
    working_directory: str | None
    workspaces: dict[str, str]
    approval_timeout_seconds: float
    approval_sweep_interval_seconds: float
    log_level: str
    log_consumers: list | None


_PROVIDER_KEY_VARS = {
    "openai": "LLM_OPENAI_API_KEY",
    "anthropic": "LLM_ANTHROPIC_API_KEY",
    "openrouter": "LLM_OPENROUTER_API_KEY",
    "google": "LLM_GOOGLE_API_KEY",
}


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_app_config(config: dict) -> AppConfig:
    workspaces = config.get("Workspaces") or {}
    provider = _optional_str(config.get("DefaultProvider"))
    return AppConfig(
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 3000)),
        default_model=_optional_str(config.get("DefaultModel")),
        default_provider=provider.lower() if provider else None,
        max_tokens=int(config.get("MaxTokens", 4096)),
        temperature=float(config.get("Temperature", 0.7)),
        max_steps=int(config.get("MaxSteps", 10)),
        tools_path=str(config.get("ToolsPath", "data/tools")),
        tool_timeout_ms=int(config.get("ToolTimeoutMs", 30_000)),
        tool_cache_seconds=float(config.get("ToolCacheSeconds", 60)),
        preconfigs_path=str(config.get("PreconfigsPath", "data/preconfigs")),
        models_config_path=str(config.get("ModelsConfigPath", "config/models.json")),
        database_path=str(config.get("DatabasePath", "data/agent.db")),
        working_directory=_optional_str(config.get("WorkingDirectory")),
        workspaces={str(k): str(v) for k, v in workspaces.items()},
        approval_timeout_seconds=float(config.get("ApprovalTimeoutSeconds", 300)),
        approval_sweep_interval_seconds=float(config.get("ApprovalSweepIntervalSeconds", 30)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(environ: dict[str, str] | None = None) -> RuntimeEnv:
    env = os.environ if environ is None else environ

    api_keys = {}
    for provider, var in _PROVIDER_KEY_VARS.items():
        value = env.get(var, "").strip()
        if value:
            api_keys[provider] = value

    max_tokens = env.get("LLM_MAX_TOKENS", "").strip()
    temperature = env.get("LLM_TEMPERATURE", "").strip()
    return RuntimeEnv(
        api_keys=api_keys,
        base_url=env.get("LLM_BASE_URL", "").strip() or None,
        max_tokens=int(max_tokens) if max_tokens else None,
        temperature=float(temperature) if temperature else None,
    )


def apply_env_overrides(app: AppConfig, env: RuntimeEnv) -> AppConfig:
    if env.max_tokens is not None:
        app.max_tokens = env.max_tokens
    if env.temperature is not None:
        app.temperature = env.temperature
    return app
