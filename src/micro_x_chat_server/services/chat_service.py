from __future__ import annotations

import asyncio
import dataclasses
import os
from uuid import uuid4

from loguru import logger

from micro_x_chat_server.approvals import ApprovalGate
from micro_x_chat_server.broadcast import Connection, SessionBroadcastRouter
from micro_x_chat_server.errors import ChatServerError, ConfigurationError, ErrorCode
from micro_x_chat_server.memory import SessionManager
from micro_x_chat_server.memory.events import utc_now
from micro_x_chat_server.model_catalog import ModelCatalog
from micro_x_chat_server.models import Message, Session, TextBlock, WireModel
from micro_x_chat_server.preconfig import BehaviorProfile, PreconfigStore
from micro_x_chat_server.protocol import (
    ChatMessage,
    ChatStart,
    ChatUserMessage,
    ClientCommand,
    SessionClose,
    SessionClosed,
    SessionCreate,
    SessionCreated,
    SessionResume,
    SessionResumed,
    SessionUpdate,
    SessionUpdated,
    SessionUpdateModel,
    ToolApproval,
    error_event,
    turn_event_to_wire,
)
from micro_x_chat_server.system_prompt import build_system_prompt
from micro_x_chat_server.turn_driver import ModelSelection, TurnDriver, TurnRequest, resolve_model
from micro_x_chat_server.turn_events import TurnComplete, UsageReported


class ChatService:
    """Executes client commands against storage, the turn driver and the broadcast router.

    Failures surface as `error` events on the connection that sent the command; the
    connection itself is never closed here.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        preconfigs: PreconfigStore,
        catalog: ModelCatalog,
        driver: TurnDriver,
        router: SessionBroadcastRouter,
        gate: ApprovalGate,
        default_model: str | None = None,
        default_provider: str | None = None,
        working_directory: str | None = None,
        workspaces: dict[str, str] | None = None,
    ):
        self._sessions = sessions
        self._preconfigs = preconfigs
        self._catalog = catalog
        self._driver = driver
        self._router = router
        self._gate = gate
        self._default_model = default_model
        self._default_provider = default_provider
        self._working_directory = working_directory
        self._workspaces = workspaces or {}
        self._turn_locks: dict[str, asyncio.Lock] = {}

    async def handle(self, connection: Connection, command: ClientCommand) -> None:
        try:
            await self._dispatch(connection, command)
        except ChatServerError as ex:
            logger.warning(f"{command.type} failed: {ex.code.value}: {ex}")
            await self._router.send(connection, error_event(ex.code, str(ex)))

    async def _dispatch(self, connection: Connection, command: ClientCommand) -> None:
        if isinstance(command, SessionCreate):
            await self.create_session(connection, command)
        elif isinstance(command, SessionResume):
            await self.resume_session(connection, command)
        elif isinstance(command, SessionUpdate):
            await self.update_session(connection, command)
        elif isinstance(command, SessionUpdateModel):
            await self.update_model(connection, command)
        elif isinstance(command, SessionClose):
            await self.close_session(connection, command)
        elif isinstance(command, ChatMessage):
            await self.chat(connection, command)
        elif isinstance(command, ToolApproval):
            self.resolve_approval(command)

    async def create_session(self, connection: Connection, command: SessionCreate) -> Session:
        profile = self._require_profile(command.preconfig_id)
        session = self._sessions.create_session(
            preconfig_id=profile.id,
            title=command.title,
            workspace_id=command.workspace_id,
        )
        await self._router.bind(connection, session.id)
        logger.info(f"Session created: {session.id} (preconfig={profile.id})")
        await self._router.send(connection, SessionCreated(session=session))
        return session

    async def resume_session(self, connection: Connection, command: SessionResume) -> Session:
        session = self._sessions.require_session(command.session_id)
        await self._router.bind(connection, session.id)
        usage = session.usage() if session.total_tokens > 0 else None
        await self._router.send(
            connection,
            SessionResumed(session=session, messages=self._sessions.list_messages(session.id), usage=usage),
        )
        return session

    async def update_session(self, connection: Connection, command: SessionUpdate) -> Session:
        self._sessions.require_session(command.session_id)
        changes = {}
        if command.preconfig_id is not None:
            changes["preconfig_id"] = self._require_profile(command.preconfig_id).id
        session = self._sessions.update_session(command.session_id, **changes)
        await self._notify(connection, session.id, SessionUpdated(session=session))
        return session

    async def update_model(self, connection: Connection, command: SessionUpdateModel) -> Session:
        self._sessions.require_session(command.session_id)
        session = self._sessions.update_session(
            command.session_id,
            selected_model=command.model_id,
            selected_provider=command.provider_id,
        )
        logger.info(f"Session {session.id} model set to {command.provider_id}/{command.model_id}")
        await self._notify(connection, session.id, SessionUpdated(session=session))
        return session

    async def close_session(self, connection: Connection, command: SessionClose) -> None:
        self._sessions.require_session(command.session_id)
        self._sessions.update_session(command.session_id, status="closed")
        await self._notify(connection, command.session_id, SessionClosed(session_id=command.session_id))

    def resolve_approval(self, command: ToolApproval) -> bool:
        # Unknown or expired ids are logged by the gate and otherwise ignored
        return self._gate.resolve(command.tool_call_id, command.approved)

    async def chat(self, connection: Connection, command: ChatMessage) -> Message | None:
        session = self._sessions.require_session(command.session_id)
        profile = self._require_profile(session.preconfig_id)
        selection = resolve_model(
            session_model=session.selected_model,
            session_provider=session.selected_provider,
            profile=profile,
            default_model=self._default_model or self._catalog.default_model,
            default_provider=self._default_provider if self._default_model else self._catalog.default_provider,
            catalog=self._catalog,
        )
        self._driver.ensure_configured(selection)

        if self._router.session_of(connection) is None:
            await self._router.bind(connection, session.id)

        lock = self._turn_locks.setdefault(session.id, asyncio.Lock())
        if lock.locked():
            logger.info(f"Session {session.id} is busy; queueing message")
        async with lock:
            return await self._run_turn(session, profile, selection, command.content)

    async def _run_turn(
        self,
        session: Session,
        profile: BehaviorProfile,
        selection: ModelSelection,
        content: str,
    ) -> Message | None:
        session_id = session.id
        user_message = Message(
            id=str(uuid4()),
            role="user",
            content=[TextBlock(text=content)],
            created_at=utc_now(),
        )
        self._sessions.create_message(session_id, user_message)
        await self._router.publish(session_id, ChatUserMessage(session_id=session_id, message=user_message))

        working_directory = self._working_directory_for(session)
        request = TurnRequest(
            session_id=session_id,
            history=self._sessions.list_messages(session_id),
            profile=dataclasses.replace(
                profile, system_prompt=build_system_prompt(profile.system_prompt, working_directory)
            ),
            selection=selection,
            working_directory=working_directory,
        )
        await self._router.publish(session_id, ChatStart(session_id=session_id, message_id=request.message_id))

        completed: Message | None = None
        try:
            async for event in self._driver.stream(request):
                if isinstance(event, UsageReported):
                    self._sessions.add_usage(session_id, event.usage)
                elif isinstance(event, TurnComplete):
                    completed = self._sessions.create_message(session_id, event.message)
                await self._router.publish(session_id, turn_event_to_wire(session_id, request.message_id, event))
        except ChatServerError:
            raise
        except Exception as ex:
            logger.error(f"Turn {request.message_id} failed for session {session_id}: {type(ex).__name__}: {ex}")
            raise ChatServerError(str(ex) or "Chat failed", code=ErrorCode.CHAT_ERROR) from ex
        return completed

    async def _notify(self, connection: Connection, session_id: str, event: WireModel) -> None:
        """Publish to the session's subscribers and make sure the requester sees it too."""
        await self._router.publish(session_id, event)
        if self._router.session_of(connection) != session_id:
            await self._router.send(connection, event)

    def _require_profile(self, preconfig_id: str | None) -> BehaviorProfile:
        profile = self._preconfigs.get(preconfig_id) if preconfig_id else self._preconfigs.get_default()
        if profile is None:
            raise ConfigurationError(
                f"Preconfig not found: {preconfig_id}" if preconfig_id else "No preconfig found",
                code=ErrorCode.NO_PRECONFIG,
            )
        return profile

    def _working_directory_for(self, session: Session) -> str | None:
        if session.workspace_id:
            path = self._workspaces.get(session.workspace_id)
            if path:
                return os.path.expanduser(path)
            logger.warning(f"Unknown workspace {session.workspace_id!r} for session {session.id}")
        return os.path.expanduser(self._working_directory) if self._working_directory else None
