from __future__ import annotations

import json
import time
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from micro_x_chat_server.tool import ToolDefinition

_REQUIRED_FIELDS = ("name", "script", "runtime")


class ToolRegistry:
    """Discovers tools from `<tools_path>/<tool>/tool.json` manifests, with a short-lived cache."""

    def __init__(
        self,
        tools_path: str,
        *,
        cache_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._tools_path = Path(tools_path).expanduser().resolve()
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._cache: dict[str, ToolDefinition] = {}
        self._last_scan: float | None = None

    @property
    def tools_path(self) -> Path:
        return self._tools_path

    def scan(self) -> list[ToolDefinition]:
        tools: list[ToolDefinition] = []
        if not self._tools_path.is_dir():
            logger.warning(f"Tools directory not found: {self._tools_path}")
        else:
            for entry in sorted(self._tools_path.iterdir()):
                if not entry.is_dir():
                    continue
                definition = self._load_manifest(entry)
                if definition is not None:
                    tools.append(definition)

        self._cache = {t.name: t for t in tools}
        self._last_scan = self._clock()
        logger.debug(f"Scanned {len(tools)} tool(s) from {self._tools_path}")
        return tools

    def get(self, name: str) -> ToolDefinition | None:
        # Misses are cached too; a newly added tool shows up after the next scan
        if not self._is_fresh():
            self.scan()
        return self._cache.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        if not self._is_fresh():
            self.scan()
        return list(self._cache.values())

    def clear_cache(self) -> None:
        self._cache.clear()
        self._last_scan = None

    def _is_fresh(self) -> bool:
        return self._last_scan is not None and self._clock() - self._last_scan < self._cache_seconds

    def _load_manifest(self, tool_dir: Path) -> ToolDefinition | None:
        manifest_path = tool_dir / "tool.json"
        if not manifest_path.exists():
            return None
        try:
            with open(manifest_path, encoding="utf-8") as f:
                manifest = json.load(f)
        except (OSError, json.JSONDecodeError) as ex:
            logger.warning(f"Failed to read tool.json in {tool_dir.name}: {ex}")
            return None

        if not isinstance(manifest, dict) or any(not manifest.get(key) for key in _REQUIRED_FIELDS):
            logger.warning(f"Invalid tool.json in {tool_dir.name}: missing required fields")
            return None

        try:
            return ToolDefinition.from_manifest(manifest, path=str(tool_dir))
        except (ValueError, TypeError) as ex:
            logger.warning(f"Invalid tool.json in {tool_dir.name}: {ex}")
            return None
