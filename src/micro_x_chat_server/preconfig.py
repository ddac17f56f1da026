from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from micro_x_chat_server.system_prompt import CODER_PROMPT, READER_PROMPT, WRITER_PROMPT, with_rejection_handling


@dataclass(frozen=True)
class BehaviorProfile:
    """A named bundle of system prompt, tool allow-list, default model and sampling settings."""

    id: str
    name: str
    system_prompt: str
    tools: tuple[str, ...] = ()
    description: str = ""
    model: str | None = None
    provider: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    is_default: bool = False

    @property
    def temperature(self) -> float | None:
        value = self.settings.get("temperature")
        return float(value) if value is not None else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BehaviorProfile:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            system_prompt=str(data.get("systemPrompt", "")),
            tools=tuple(data.get("tools") or ()),
            description=str(data.get("description", "")),
            model=data.get("model"),
            provider=data.get("provider"),
            settings=dict(data.get("settings") or {}),
            is_default=bool(data.get("isDefault", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "systemPrompt": self.system_prompt,
            "tools": list(self.tools),
            "model": self.model,
            "provider": self.provider,
            "settings": dict(self.settings),
            "isDefault": self.is_default,
        }


DEFAULT_PROFILES = (
    BehaviorProfile(
        id="reader",
        name="Reader",
        description="Read-only agent for exploring codebases and documents",
        system_prompt=with_rejection_handling(READER_PROMPT),
        tools=("read-file", "glob", "grep"),
        settings={"temperature": 0.5},
        is_default=True,
    ),
    BehaviorProfile(
        id="coder",
        name="Coder",
        description="Full-featured agent for writing and modifying code",
        system_prompt=with_rejection_handling(CODER_PROMPT),
        tools=("read-file", "write-file", "shell", "glob", "grep"),
        settings={"temperature": 0.3},
    ),
    BehaviorProfile(
        id="writer",
        name="Writer",
        description="Agent for writing documentation and content",
        system_prompt=with_rejection_handling(WRITER_PROMPT),
        tools=("read-file", "write-file"),
        settings={"temperature": 0.7},
    ),
)


class PreconfigStore:
    """Behavior profiles stored as `<id>.json` files in one directory."""

    def __init__(self, directory: str):
        self._dir = Path(directory).expanduser()

    def initialize(self) -> int:
        """Write the built-in profiles when the directory holds none. Returns how many were written."""
        self._dir.mkdir(parents=True, exist_ok=True)
        if any(self._dir.glob("*.json")):
            return 0
        for profile in DEFAULT_PROFILES:
            self.save(profile)
        logger.info(f"Initialized {len(DEFAULT_PROFILES)} default preconfigs in {self._dir}")
        return len(DEFAULT_PROFILES)

    def save(self, profile: BehaviorProfile) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with open(self._dir / f"{profile.id}.json", "w", encoding="utf-8") as f:
            json.dump(profile.to_dict(), f, indent=2)

    def get(self, profile_id: str) -> BehaviorProfile | None:
        path = self._dir / f"{profile_id}.json"
        if not path.exists():
            return None
        return self._read(path)

    def list_profiles(self) -> list[BehaviorProfile]:
        if not self._dir.is_dir():
            return []
        profiles = [p for p in (self._read(path) for path in sorted(self._dir.glob("*.json"))) if p is not None]
        return sorted(profiles, key=lambda p: (not p.is_default, p.name.lower()))

    def get_default(self) -> BehaviorProfile | None:
        profiles = self.list_profiles()
        for profile in profiles:
            if profile.is_default:
                return profile
        return profiles[0] if profiles else None

    def _read(self, path: Path) -> BehaviorProfile | None:
        try:
            with open(path, encoding="utf-8") as f:
                return BehaviorProfile.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError) as ex:
            logger.error(f"Failed to read preconfig {path.name}: {ex}")
            return None
