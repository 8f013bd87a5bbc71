"""
Session Module - Black Box Interface

Purpose: Manage preview session lifecycle
Interface: start_preview(), stop_preview(), sync_files(), update_file(),
           extend_session(), get_active_session(), cleanup_expired_sessions()
Hidden: Session storage, machine provisioning, state transitions, compensation

Replaceable with any session backend (database, in-memory, distributed cache).
"""

from .models import PreviewSession
from .session import TRANSITIONS, SessionModule
from .store import MemorySessionStore, RedisSessionStore, SessionStore

__all__ = [
    "MemorySessionStore",
    "PreviewSession",
    "RedisSessionStore",
    "SessionModule",
    "SessionStore",
    "TRANSITIONS",
]
