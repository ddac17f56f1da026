from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Codes carried by `error` events on the wire."""

    PARSE_ERROR = "parse_error"
    UNKNOWN_MESSAGE = "unknown_message"
    INVALID_MESSAGE = "invalid_message"
    NOT_FOUND = "not_found"
    NO_PRECONFIG = "no_preconfig"
    NO_API_KEY = "no_api_key"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    CHAT_ERROR = "chat_error"


class ChatServerError(Exception):
    code: ErrorCode = ErrorCode.CHAT_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigurationError(ChatServerError):
    """Raised before any provider call when a turn cannot be configured."""


class SessionNotFoundError(ChatServerError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
