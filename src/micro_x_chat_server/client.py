"""Terminal client: `python -m micro_x_chat_server.client [--url URL] [--session ID] [--preconfig ID]`."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import websockets
from dotenv import load_dotenv
from pydantic import ValidationError

from micro_x_chat_server.models import Message, TextBlock, ToolResultBlock, WireModel
from micro_x_chat_server.protocol import (
    ChatComplete,
    ChatDelta,
    ChatMessage,
    ErrorEvent,
    ServerEvent,
    SessionCreate,
    SessionCreated,
    SessionResume,
    SessionResumed,
    ToolApproval,
    ToolApprovalRequired,
    parse_server_event,
)
from micro_x_chat_server.transcript import ToolPair, TranscriptState, group_blocks, reduce, resolve_approval

DEFAULT_URL = "ws://127.0.0.1:3000/ws"
_MAX_PREVIEW_CHARS = 400


def _preview(value: object) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > _MAX_PREVIEW_CHARS:
        return text[:_MAX_PREVIEW_CHARS] + "..."
    return text


def format_message(message: Message) -> list[str]:
    lines: list[str] = []
    for item in group_blocks(message.content):
        if isinstance(item, TextBlock):
            if item.text:
                lines.append(item.text)
        elif isinstance(item, ToolPair):
            lines.append(f"  [tool] {item.call.tool_name} {json.dumps(item.call.args)}")
            if item.result is not None:
                marker = "error" if item.result.is_error else "result"
                lines.append(f"    -> {marker}: {_preview(item.result.result)}")
            elif item.call.pending:
                lines.append("    -> running...")
        elif isinstance(item, ToolResultBlock):
            lines.append(f"  [tool result] {item.tool_name or item.tool_call_id}: {_preview(item.result)}")
    return lines


class TerminalClient:
    def __init__(self, ws, *, out=sys.stdout):
        self._ws = ws
        self._out = out
        self.state = TranscriptState()

    async def send(self, command: WireModel) -> None:
        await self._ws.send(json.dumps(command.to_wire()))

    async def receive(self) -> ServerEvent | None:
        raw = await self._ws.recv()
        try:
            event = parse_server_event(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as ex:
            self._print(f"! unreadable server event: {ex}")
            return None
        self.state = reduce(self.state, event)
        return event

    async def open_session(self, session_id: str | None, preconfig_id: str | None) -> None:
        if session_id:
            await self.send(SessionResume(session_id=session_id))
        else:
            await self.send(SessionCreate(preconfig_id=preconfig_id))
        while True:
            event = await self.receive()
            if isinstance(event, ErrorEvent):
                raise RuntimeError(f"{event.code}: {event.message}")
            if isinstance(event, (SessionCreated, SessionResumed)):
                break
        self._print(f"Session: {self.state.session_id}")
        for message in self.state.messages:
            self._print(f"{message.role}> " + "\n".join(format_message(message)))

    async def run_turn(self, content: str) -> None:
        await self.send(ChatMessage(session_id=self.state.session_id, content=content))
        while True:
            event = await self.receive()
            if isinstance(event, ChatDelta):
                self._out.write(event.delta)
                self._out.flush()
            elif isinstance(event, ToolApprovalRequired):
                await self._ask_approval(event)
            elif isinstance(event, ChatComplete):
                self._print("")
                for line in format_message(event.message):
                    if line.startswith("  "):
                        self._print(line)
                usage = self.state.usage
                self._print(f"[{self.state.model}] tokens: {usage.total_tokens:,} total")
                return
            elif isinstance(event, ErrorEvent):
                self._print(f"\n! {event.code}: {event.message}")
                return

    async def _ask_approval(self, event: ToolApprovalRequired) -> None:
        warning = " (DANGEROUS)" if event.dangerous else ""
        prompt = f"\nApprove {event.tool_name}{warning} {json.dumps(event.args)}? [y/N] "
        answer = await asyncio.to_thread(input, prompt)
        approved = answer.strip().lower() in {"y", "yes"}
        self.state = resolve_approval(self.state, event.tool_call_id, approved)
        await self.send(ToolApproval(tool_call_id=event.tool_call_id, approved=approved))

    def _print(self, text: str) -> None:
        print(text, file=self._out)


async def run(url: str, session_id: str | None, preconfig_id: str | None) -> None:
    async with websockets.connect(url, open_timeout=10.0) as ws:
        client = TerminalClient(ws)
        await client.open_session(session_id, preconfig_id)
        print("(type 'exit' to quit)")
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break
            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue
            print("assistant> ", end="", flush=True)
            await client.run_turn(trimmed)
            print()


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(prog="micro-x-chat-client")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--session", default=None, help="resume an existing session id")
    parser.add_argument("--preconfig", default=None, help="preconfig for a new session")
    args = parser.parse_args(argv)
    try:
        asyncio.run(run(args.url, args.session, args.preconfig))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
