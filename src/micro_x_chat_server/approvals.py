from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from micro_x_chat_server.models import ToolCallBlock

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 300.0


@dataclass
class PendingApproval:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    dangerous: bool
    created_at: float
    future: asyncio.Future = field(repr=False)
    session_id: str | None = None


class ApprovalGate:
    """Rendezvous between a tool call waiting for a human and the message that answers it.

    Every entry settles exactly once: an explicit `resolve`, the per-request timeout, `sweep`,
    or cancellation of the waiting task. Anything but an explicit approval counts as a denial.
    Settling pops the entry before touching its future and never awaits in between, so the
    first settlement wins and every later attempt sees "not found".
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_resolved: Callable[[PendingApproval, bool, str], None] | None = None,
    ):
        self._timeout = timeout_seconds
        self._clock = clock
        self._on_resolved = on_resolved
        self._pending: dict[str, PendingApproval] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get(self, tool_call_id: str) -> PendingApproval | None:
        return self._pending.get(tool_call_id)

    async def request(self, tool_call: ToolCallBlock, dangerous: bool, *, session_id: str | None = None) -> bool:
        tool_call_id = tool_call.tool_call_id
        if tool_call_id in self._pending:
            logger.warning(f"Approval already pending for {tool_call_id}; denying the earlier request")
            self._settle(tool_call_id, False, "superseded")

        entry = PendingApproval(
            tool_call_id=tool_call_id,
            tool_name=tool_call.tool_name,
            args=dict(tool_call.args),
            dangerous=dangerous,
            created_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
            session_id=session_id,
        )
        self._pending[tool_call_id] = entry
        logger.info(f"Approval requested: tool={entry.tool_name}, id={tool_call_id}, dangerous={dangerous}")

        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._settle(tool_call_id, False, "timeout", entry)
            return entry.future.result()
        finally:
            if not entry.future.done():
                self._settle(tool_call_id, False, "cancelled", entry)

    def resolve(self, tool_call_id: str, approved: bool) -> bool:
        if self._settle(tool_call_id, approved, "client"):
            return True
        logger.warning(f"Approval not found or already resolved: {tool_call_id}")
        return False

    def sweep(self) -> int:
        """Deny every entry older than the timeout. Returns how many were denied."""
        now = self._clock()
        expired = [
            tool_call_id
            for tool_call_id, entry in self._pending.items()
            if now - entry.created_at >= self._timeout
        ]
        return sum(1 for tool_call_id in expired if self._settle(tool_call_id, False, "expired"))

    def deny_all(self, reason: str = "shutdown") -> int:
        return sum(1 for tool_call_id in list(self._pending) if self._settle(tool_call_id, False, reason))

    def _settle(
        self, tool_call_id: str, approved: bool, reason: str, expected: PendingApproval | None = None
    ) -> bool:
        # A waiter only settles its own entry, never a newer request that reused the id
        entry = self._pending.get(tool_call_id)
        if entry is None or (expected is not None and entry is not expected):
            return False
        del self._pending[tool_call_id]
        if entry.future.done():
            return False
        entry.future.set_result(approved)
        logger.info(f"Approval {'granted' if approved else 'denied'} ({reason}): tool={entry.tool_name}, id={tool_call_id}")
        if self._on_resolved is not None:
            self._on_resolved(entry, approved, reason)
        return True


async def run_sweeper(gate: ApprovalGate, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        expired = gate.sweep()
        if expired:
            logger.info(f"Approval sweep denied {expired} expired request(s)")
