from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from micro_x_chat_server.app_config import AppConfig, RuntimeEnv
from micro_x_chat_server.approvals import ApprovalGate, PendingApproval
from micro_x_chat_server.broadcast import SessionBroadcastRouter
from micro_x_chat_server.logging_config import setup_logging
from micro_x_chat_server.memory import EventEmitter, MemoryStore, SessionManager
from micro_x_chat_server.model_catalog import ModelCatalog
from micro_x_chat_server.models import ToolCallBlock
from micro_x_chat_server.preconfig import PreconfigStore
from micro_x_chat_server.provider import LLMProvider, ProviderPool, create_provider
from micro_x_chat_server.services.chat_service import ChatService
from micro_x_chat_server.tool import ToolInvoker
from micro_x_chat_server.tool_registry import ToolRegistry
from micro_x_chat_server.tools.executor import SubprocessToolInvoker
from micro_x_chat_server.turn_driver import TurnDriver


@dataclass
class AppRuntime:
    config: AppConfig
    memory_store: MemoryStore
    sessions: SessionManager
    events: EventEmitter
    preconfigs: PreconfigStore
    catalog: ModelCatalog
    tools: ToolRegistry
    gate: ApprovalGate
    router: SessionBroadcastRouter
    driver: TurnDriver
    chat_service: ChatService
    log_descriptions: list[str]

    def close(self) -> None:
        self.memory_store.close()


def _resolve_path(path: str) -> str:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path.cwd() / p
    return str(p)


def _approval_audit(events: EventEmitter) -> Callable[[PendingApproval, bool, str], None]:
    def record(entry: PendingApproval, approved: bool, reason: str) -> None:
        if entry.session_id is None:
            return
        events.emit(
            entry.session_id,
            "approval.resolved",
            {"tool_call_id": entry.tool_call_id, "tool_name": entry.tool_name, "approved": approved, "reason": reason},
        )

    return record


def _tool_audit(events: EventEmitter) -> Callable[[str, ToolCallBlock, Any, bool], None]:
    def record(session_id: str, call: ToolCallBlock, result: Any, is_error: bool) -> None:
        events.emit(
            session_id,
            "tool.executed",
            {"tool_call_id": call.tool_call_id, "tool_name": call.tool_name, "args": call.args, "is_error": is_error},
        )

    return record


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    configure_logging: bool = True,
    provider_factory: Callable[[str, str, str | None], LLMProvider] = create_provider,
    invoker: ToolInvoker | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    memory_store = MemoryStore(_resolve_path(app.database_path))
    events = EventEmitter(memory_store)
    sessions = SessionManager(memory_store, events)

    preconfigs = PreconfigStore(_resolve_path(app.preconfigs_path))
    preconfigs.initialize()

    catalog = ModelCatalog.load(_resolve_path(app.models_config_path))
    tools = ToolRegistry(_resolve_path(app.tools_path), cache_seconds=app.tool_cache_seconds)

    gate = ApprovalGate(app.approval_timeout_seconds, on_resolved=_approval_audit(events))
    router = SessionBroadcastRouter()
    driver = TurnDriver(
        providers=ProviderPool(env.api_keys, base_url=env.base_url, factory=provider_factory),
        tools=tools,
        invoker=invoker or SubprocessToolInvoker(),
        approval_channel=gate,
        max_tokens=app.max_tokens,
        default_temperature=app.temperature,
        max_steps=app.max_steps,
        tool_timeout_ms=app.tool_timeout_ms,
        on_tool_result=_tool_audit(events),
    )
    chat_service = ChatService(
        sessions=sessions,
        preconfigs=preconfigs,
        catalog=catalog,
        driver=driver,
        router=router,
        gate=gate,
        default_model=app.default_model,
        default_provider=app.default_provider,
        working_directory=app.working_directory,
        workspaces=app.workspaces,
    )

    return AppRuntime(
        config=app,
        memory_store=memory_store,
        sessions=sessions,
        events=events,
        preconfigs=preconfigs,
        catalog=catalog,
        tools=tools,
        gate=gate,
        router=router,
        driver=driver,
        chat_service=chat_service,
        log_descriptions=log_descriptions,
    )
