from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from loguru import logger

from micro_x_chat_server.approvals import run_sweeper
from micro_x_chat_server.bootstrap import AppRuntime
from micro_x_chat_server.protocol import ChatMessage, ProtocolError, error_event, parse_client_message


def create_app(runtime: AppRuntime) -> FastAPI:
    # Turns outlive the socket that started them; shutdown cancels whatever is still running
    turns: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.runtime = runtime
        sweeper = asyncio.create_task(
            run_sweeper(runtime.gate, runtime.config.approval_sweep_interval_seconds)
        )
        tools = runtime.tools.list_tools()
        logger.info(f"Found {len(tools)} tools: {', '.join(t.name for t in tools)}")
        try:
            yield
        finally:
            for task in list(turns):
                task.cancel()
            for task in list(turns):
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            denied = runtime.gate.deny_all("shutdown")
            if denied:
                logger.info(f"Denied {denied} pending approval(s) on shutdown")

    app = FastAPI(title="micro-x-chat-server", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "connections": runtime.router.connection_count,
            "pendingApprovals": runtime.gate.pending_count,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        await runtime.router.attach(websocket)
        logger.info(f"Client connected. Total clients: {runtime.router.connection_count}")

        # Turns run in the background so approvals can arrive on the same socket mid-turn
        try:
            async for raw in websocket.iter_text():
                try:
                    command = parse_client_message(raw)
                except ProtocolError as ex:
                    logger.warning(f"Rejected client message: {ex.code.value}: {ex}")
                    await runtime.router.send(websocket, error_event(ex.code, str(ex)))
                    continue

                if isinstance(command, ChatMessage):
                    task = asyncio.create_task(runtime.chat_service.handle(websocket, command))
                    turns.add(task)
                    task.add_done_callback(_turn_finished(turns))
                else:
                    await runtime.chat_service.handle(websocket, command)
        except WebSocketDisconnect:
            pass
        finally:
            await runtime.router.detach(websocket)
            logger.info(f"Client disconnected. Total clients: {runtime.router.connection_count}")

    return app


def _turn_finished(turns: set[asyncio.Task]):
    def done(task: asyncio.Task) -> None:
        turns.discard(task)
        if not task.cancelled() and task.exception() is not None:
            ex = task.exception()
            logger.error(f"Unhandled error in chat turn: {type(ex).__name__}: {ex}")

    return done
