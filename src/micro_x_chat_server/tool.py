from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

DEFAULT_TOOL_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class ToolDefinition:
    """Static manifest of a tool, read from its `tool.json`."""

    name: str
    description: str
    script: str
    runtime: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    output_schema: dict[str, Any] = field(default_factory=dict)
    timeout_ms: int | None = None
    require_approval: bool = False
    dangerous: bool = False
    path: str = ""

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], path: str = "") -> ToolDefinition:
        timeout = manifest.get("timeout")
        return cls(
            name=str(manifest["name"]),
            description=str(manifest.get("description", "")),
            script=str(manifest["script"]),
            runtime=str(manifest["runtime"]),
            input_schema=manifest.get("inputSchema") or {"type": "object", "properties": {}},
            output_schema=manifest.get("outputSchema") or {},
            timeout_ms=int(timeout) if timeout else None,
            require_approval=bool(manifest.get("requireApproval", False)),
            dangerous=bool(manifest.get("dangerous", False)),
            path=path,
        )


@dataclass(frozen=True)
class ToolOutcome:
    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any) -> ToolOutcome:
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: str) -> ToolOutcome:
        return cls(success=False, error=error)


@runtime_checkable
class ToolInvoker(Protocol):
    async def invoke(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        *,
        working_directory: str | None = None,
        timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
    ) -> ToolOutcome:
        """Run a tool and report its outcome. Never raises: every failure is a failed outcome."""
        ...
