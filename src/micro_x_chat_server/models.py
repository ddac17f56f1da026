"""Conversation data model shared by the server, the storage layer and the client.

Field names are snake_case in Python and camelCase on the wire; `to_wire()` produces the
JSON-ready dict and `model_validate()` accepts either spelling.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class TextBlock(WireModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallBlock(WireModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    pending: bool | None = None
    needs_approval: bool | None = None
    dangerous: bool | None = None


class ToolResultBlock(WireModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str = ""
    result: Any = None
    is_error: bool | None = None


class ImageBlock(WireModel):
    type: Literal["image"] = "image"
    url: str
    mime_type: str | None = None


ContentBlock = Annotated[
    Union[TextBlock, ToolCallBlock, ToolResultBlock, ImageBlock],
    Field(discriminator="type"),
]

Role = Literal["user", "assistant", "system"]


class Message(WireModel):
    id: str
    role: Role
    content: list[ContentBlock]
    created_at: str

    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


class Usage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


SessionStatus = Literal["active", "paused", "closed"]


class Session(WireModel):
    id: str
    workspace_id: str | None = None
    preconfig_id: str | None = None
    title: str | None = None
    status: SessionStatus = "active"
    selected_model: str | None = None
    selected_provider: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    created_at: str
    updated_at: str
    metadata: dict[str, Any] | None = None

    def usage(self) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )
