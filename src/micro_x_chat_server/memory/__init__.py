from micro_x_chat_server.memory.events import EventEmitter
from micro_x_chat_server.memory.session_manager import SessionManager
from micro_x_chat_server.memory.store import MemoryStore

__all__ = [
    "EventEmitter",
    "MemoryStore",
    "SessionManager",
]
