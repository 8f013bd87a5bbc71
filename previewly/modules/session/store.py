"""
Session Store - persisted preview session records.

The store is the single writer of truth for session status. The check
"does this workspace already have an active session" and the insert of a
new one happen in one atomic store operation (``insert_active``), so two
concurrent starts for a workspace can never both succeed.

Updates are atomic read-modify-writes, and may be guarded by the status
the caller validated.
"""

import asyncio
import json
import logging
from dataclasses import fields, replace
from datetime import datetime
from typing import List, Optional, Protocol

import redis.asyncio as redis

from previewly.modules.api.models import ACTIVE_STATUSES, SessionStatus
from previewly.modules.errors import ActiveSessionConflict, NotFoundError, SessionChanged, StoreError
from previewly.modules.polling import Clock

from .models import PreviewSession

logger = logging.getLogger("previewly.store")

_SESSION_FIELDS = frozenset(f.name for f in fields(PreviewSession))

# Delete KEYS[1] only while it still holds ARGV[1]
RELEASE_POINTER_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class SessionStore(Protocol):
    """Contract every session store implements."""

    async def insert_active(self, session: PreviewSession) -> PreviewSession:
        """Insert a starting session unless the workspace already has an active one."""
        ...

    async def get(self, session_id: str) -> Optional[PreviewSession]:
        ...

    async def get_active(self, workspace_id: str) -> Optional[PreviewSession]:
        """Most recent starting/running session of the workspace."""
        ...

    async def update(
        self, session_id: str, expected_status: Optional[SessionStatus] = None, **changes
    ) -> PreviewSession:
        """
        Apply field changes atomically, stamp updated_at, return the stored record.

        With expected_status set, raise SessionChanged instead of writing
        when the stored status differs.
        """
        ...

    async def list_by_status(self, status: SessionStatus) -> List[PreviewSession]:
        ...

    async def list_expired(self, before: datetime) -> List[PreviewSession]:
        """Running sessions whose expires_at is earlier than ``before``."""
        ...

    async def list_for_workspace(self, workspace_id: str, limit: int = 20) -> List[PreviewSession]:
        """Session history of a workspace, newest first."""
        ...

    async def ping(self) -> bool:
        ...


def _check_changes(changes: dict) -> None:
    invalid = sorted((set(changes) - _SESSION_FIELDS) | ({"id"} & set(changes)))
    if invalid:
        raise ValueError(f"Cannot update session fields: {', '.join(invalid)}")


class RedisSessionStore:
    """
    Session store backed by Redis.

    Keys:
    - preview:session:{id}               JSON session record
    - preview:workspace:{ws}:active      id of the active session (SET NX)
    - preview:workspace:{ws}:sessions    sorted set of session ids by creation time
    - preview:status:{status}            set of session ids per status
    """

    def __init__(self, redis_client, clock: Optional[Clock] = None, max_update_attempts: int = 10):
        """
        Initialize session store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            clock: Clock used to stamp updated_at
            max_update_attempts: WATCH retries before an update gives up
        """
        self.redis = redis_client
        self.clock = clock or Clock()
        self.max_update_attempts = max_update_attempts

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"preview:session:{session_id}"

    @staticmethod
    def _active_key(workspace_id: str) -> str:
        return f"preview:workspace:{workspace_id}:active"

    @staticmethod
    def _history_key(workspace_id: str) -> str:
        return f"preview:workspace:{workspace_id}:sessions"

    @staticmethod
    def _status_key(status: SessionStatus) -> str:
        return f"preview:status:{SessionStatus(status).value}"

    @staticmethod
    def _decode(value):
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def _save(self, session: PreviewSession) -> None:
        await self.redis.set(self._session_key(session.id), json.dumps(session.to_dict()))

    async def _load(self, session_id: str) -> Optional[PreviewSession]:
        data = await self.redis.get(self._session_key(session_id))
        if not data:
            return None
        return PreviewSession.from_dict(json.loads(self._decode(data)))

    async def _release_pointer(self, workspace_id: str, session_id: str) -> None:
        await self.redis.eval(RELEASE_POINTER_SCRIPT, 1, self._active_key(workspace_id), session_id)

    async def insert_active(self, session: PreviewSession) -> PreviewSession:
        """
        Insert a new active session.

        The record is written before the workspace pointer is claimed, so a
        claimed pointer always resolves to a record.

        Raises:
            ActiveSessionConflict: Workspace already has an active session
            StoreError: Redis failure
        """
        active_key = self._active_key(session.workspace_id)
        try:
            await self._save(session)

            claimed = False
            for _ in range(2):
                if await self.redis.set(active_key, session.id, nx=True):
                    claimed = True
                    break

                holder_id = self._decode(await self.redis.get(active_key))
                if not holder_id:
                    continue
                holder = await self._load(holder_id)
                if holder is not None and holder.is_active:
                    await self.redis.delete(self._session_key(session.id))
                    raise ActiveSessionConflict(session.workspace_id, holder.id)

                logger.warning(
                    f"Reclaiming stale active pointer for workspace {session.workspace_id} "
                    f"(held by {holder_id})"
                )
                await self._release_pointer(session.workspace_id, holder_id)

            if not claimed:
                await self.redis.delete(self._session_key(session.id))
                raise ActiveSessionConflict(session.workspace_id)

            await self.redis.zadd(
                self._history_key(session.workspace_id),
                {session.id: session.created_at.timestamp()},
            )
            await self.redis.sadd(self._status_key(session.status), session.id)
        except redis.RedisError as e:
            raise StoreError(f"Failed to insert preview session: {e}") from e

        return session

    async def get(self, session_id: str) -> Optional[PreviewSession]:
        try:
            return await self._load(session_id)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read preview session {session_id}: {e}") from e

    async def get_active(self, workspace_id: str) -> Optional[PreviewSession]:
        try:
            session_id = self._decode(await self.redis.get(self._active_key(workspace_id)))
            if not session_id:
                return None
            session = await self._load(session_id)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read active session for {workspace_id}: {e}") from e

        if session is None or not session.is_active:
            return None
        return session

    async def update(
        self,
        session_id: str,
        expected_status: Optional[SessionStatus] = None,
        **changes,
    ) -> PreviewSession:
        """
        Update a session record.

        The read-modify-write runs under WATCH/MULTI and starts over when
        another writer touches the record in between. Status changes move
        the id between status index sets; leaving the active statuses
        releases the workspace pointer.

        Args:
            session_id: Session to update
            expected_status: Only write while the stored status still equals this
            **changes: Session fields to set

        Raises:
            NotFoundError: No such session
            SessionChanged: Stored status differs from expected_status
            StoreError: Redis failure or too many conflicting writers
        """
        _check_changes(changes)
        session_key = self._session_key(session_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(self.max_update_attempts):
                    try:
                        await pipe.watch(session_key)
                        data = await pipe.get(session_key)
                        if not data:
                            raise NotFoundError(f"Preview session {session_id} not found")

                        current = PreviewSession.from_dict(json.loads(self._decode(data)))
                        if expected_status is not None and current.status != expected_status:
                            raise SessionChanged(
                                session_id, SessionStatus(expected_status).value, current.status.value
                            )

                        session = replace(current, **changes)
                        session.status = SessionStatus(session.status)
                        session.updated_at = self.clock.now()

                        pipe.multi()
                        pipe.set(session_key, json.dumps(session.to_dict()))
                        if session.status != current.status:
                            pipe.srem(self._status_key(current.status), session_id)
                            pipe.sadd(self._status_key(session.status), session_id)
                            if session.status not in ACTIVE_STATUSES:
                                pipe.eval(
                                    RELEASE_POINTER_SCRIPT,
                                    1,
                                    self._active_key(session.workspace_id),
                                    session_id,
                                )
                        await pipe.execute()
                        return session
                    except redis.WatchError:
                        logger.debug(f"Session {session_id} changed during update, retrying")
        except redis.RedisError as e:
            raise StoreError(f"Failed to update preview session {session_id}: {e}") from e

        raise StoreError(
            f"Failed to update preview session {session_id}: "
            f"record kept changing after {self.max_update_attempts} attempts"
        )

    async def list_by_status(self, status: SessionStatus) -> List[PreviewSession]:
        status_key = self._status_key(status)
        try:
            session_ids = await self.redis.smembers(status_key)

            sessions = []
            for session_id in session_ids:
                session_id = self._decode(session_id)
                session = await self._load(session_id)
                if session is None:
                    # Clean up stale entry
                    await self.redis.srem(status_key, session_id)
                    continue
                if session.status == status:
                    sessions.append(session)
        except redis.RedisError as e:
            raise StoreError(f"Failed to list {SessionStatus(status).value} sessions: {e}") from e

        return sessions

    async def list_expired(self, before: datetime) -> List[PreviewSession]:
        sessions = await self.list_by_status(SessionStatus.RUNNING)
        return [s for s in sessions if s.is_expired(before)]

    async def list_for_workspace(self, workspace_id: str, limit: int = 20) -> List[PreviewSession]:
        try:
            session_ids = await self.redis.zrevrange(self._history_key(workspace_id), 0, limit - 1)
            sessions = []
            for session_id in session_ids:
                session = await self._load(self._decode(session_id))
                if session is not None:
                    sessions.append(session)
        except redis.RedisError as e:
            raise StoreError(f"Failed to list sessions for {workspace_id}: {e}") from e
        return sessions

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except redis.RedisError as e:
            logger.error(f"Session store ping failed: {e}")
            return False


class MemorySessionStore:
    """
    Process-local session store for development and tests.

    Records are copied in and out so callers never share mutable state
    with the store.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._sessions = {}
        self._lock = asyncio.Lock()

    async def insert_active(self, session: PreviewSession) -> PreviewSession:
        async with self._lock:
            for existing in self._sessions.values():
                if existing.workspace_id == session.workspace_id and existing.is_active:
                    raise ActiveSessionConflict(session.workspace_id, existing.id)
            self._sessions[session.id] = replace(session)
        return replace(session)

    async def get(self, session_id: str) -> Optional[PreviewSession]:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def get_active(self, workspace_id: str) -> Optional[PreviewSession]:
        active = [
            s for s in self._sessions.values()
            if s.workspace_id == workspace_id and s.is_active
        ]
        if not active:
            return None
        return replace(max(active, key=lambda s: s.created_at))

    async def update(
        self, session_id: str, expected_status: Optional[SessionStatus] = None, **changes
    ) -> PreviewSession:
        _check_changes(changes)
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Preview session {session_id} not found")
            if expected_status is not None and session.status != expected_status:
                raise SessionChanged(
                    session_id, SessionStatus(expected_status).value, session.status.value
                )
            session = replace(session, **changes)
            session.status = SessionStatus(session.status)
            session.updated_at = self.clock.now()
            self._sessions[session_id] = session
        return replace(session)

    async def list_by_status(self, status: SessionStatus) -> List[PreviewSession]:
        return [replace(s) for s in self._sessions.values() if s.status == status]

    async def list_expired(self, before: datetime) -> List[PreviewSession]:
        sessions = await self.list_by_status(SessionStatus.RUNNING)
        return [s for s in sessions if s.is_expired(before)]

    async def list_for_workspace(self, workspace_id: str, limit: int = 20) -> List[PreviewSession]:
        sessions = sorted(
            (s for s in self._sessions.values() if s.workspace_id == workspace_id),
            key=lambda s: s.created_at,
            reverse=True,
        )
        return [replace(s) for s in sessions[:limit]]

    async def ping(self) -> bool:
        return True
