import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from previewly.config.provider import PreviewSettings
from previewly.modules.api.models import MachineState, SessionStatus, validate_file_map, validate_file_path
from previewly.modules.errors import InvalidStateTransition, NotFoundError, SessionChanged
from previewly.modules.machines import MachineModule
from previewly.modules.polling import Clock
from previewly.modules.sync import SyncModule, SyncResult

from .models import PreviewSession
from .store import SessionStore

logger = logging.getLogger("previewly.session")

# Allowed status changes; error and stopped are terminal for a row
TRANSITIONS = {
    SessionStatus.STARTING: {
        SessionStatus.RUNNING,
        SessionStatus.ERROR,
        SessionStatus.STOPPING,
        SessionStatus.STOPPED,
    },
    SessionStatus.RUNNING: {SessionStatus.STOPPING, SessionStatus.STOPPED},
    SessionStatus.STOPPING: {SessionStatus.STOPPED},
    SessionStatus.STOPPED: set(),
    SessionStatus.ERROR: set(),
}


class SessionModule:
    def __init__(
        self,
        machines: MachineModule,
        store: SessionStore,
        sync: SyncModule,
        settings: Optional[PreviewSettings] = None,
        clock: Optional[Clock] = None,
        default_region: str = "",
    ):
        """
        Initialize session module.

        Args:
            machines: Control-plane client
            store: Session store
            sync: In-VM sync server client
            settings: Session TTL and wait budgets
            clock: Clock for timestamps and the DNS settle delay
            default_region: Region recorded when the control plane omits one
        """
        self.machines = machines
        self.store = store
        self.sync = sync
        self.settings = settings or PreviewSettings()
        self.clock = clock or Clock()
        self.default_region = default_region

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.session_ttl_seconds)

    async def _transition(self, session: PreviewSession, status: SessionStatus, **changes) -> PreviewSession:
        """
        Validate and persist a status change against the stored status.

        The write only lands while the stored status is still the one that
        was validated; a concurrent change re-reads and re-validates.
        Store failures propagate.
        """
        while True:
            current = await self.store.get(session.id)
            if current is None:
                raise NotFoundError(f"Preview session {session.id} not found")
            if status not in TRANSITIONS[current.status]:
                raise InvalidStateTransition(session.id, current.status.value, status.value)

            try:
                updated = await self.store.update(
                    session.id, expected_status=current.status, status=status, **changes
                )
            except SessionChanged as e:
                logger.debug(f"Retrying transition to {status.value}: {e}")
                continue

            logger.info(
                f"Session {session.id} ({session.workspace_id}): {current.status.value} -> {status.value}"
            )
            return updated

    async def _destroy_quietly(self, machine_id: str) -> bool:
        """Best-effort machine destroy. Returns False if it failed."""
        try:
            await self.machines.destroy_machine(machine_id)
            return True
        except Exception as e:
            logger.warning(f"Failed to destroy machine {machine_id}: {e}")
            return False

    async def get_active_session(self, workspace_id: str) -> Optional[PreviewSession]:
        """
        Get the workspace's active session.

        Returns:
            Most recent starting or running session, or None
        """
        return await self.store.get_active(workspace_id)

    async def _require_running(self, workspace_id: str) -> PreviewSession:
        session = await self.get_active_session(workspace_id)
        if not session or session.status != SessionStatus.RUNNING or not session.sync_url:
            raise NotFoundError("No active preview session")
        return session

    async def start_preview(self, workspace_id: str) -> PreviewSession:
        """
        Start (or return) the workspace's preview.

        Args:
            workspace_id: Workspace identifier

        Returns:
            Running session with preview_url and sync_url set

        Logic:
        1. Return an already running session unchanged
        2. Stop a half-started session; it is never reused
        3. Create a machine and insert a starting session
        4. Destroy the machine if the insert fails
        5. Wait for "started", settle DNS, mark running with URLs
        6. On any failure in 5: mark error, destroy machine, re-raise
        """
        existing = await self.get_active_session(workspace_id)
        if existing and existing.is_ready:
            return existing

        if existing:
            logger.info(f"Stopping half-started session {existing.id} before restarting {workspace_id}")
            await self.stop_preview(workspace_id)

        machine = await self.machines.create_machine(workspace_id)

        now = self.clock.now()
        session = PreviewSession(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            machine_id=machine.id,
            machine_ip=machine.private_ip,
            region=machine.region or self.default_region,
            status=SessionStatus.STARTING,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            expires_at=now + self.session_ttl,
        )

        try:
            session = await self.store.insert_active(session)
        except Exception:
            logger.error(f"Failed to record session for machine {machine.id}, destroying it")
            await self._destroy_quietly(machine.id)
            raise

        logger.info(f"Session {session.id} starting on machine {machine.id} for workspace {workspace_id}")

        try:
            started = await self.machines.wait_for_state(
                machine.id, MachineState.STARTED.value, self.settings.start_timeout_seconds
            )
            urls = self.machines.get_urls(started)

            # Give DNS a brief window to propagate before handing back the URLs
            await self.clock.sleep(self.settings.settle_delay_seconds)

            return await self._transition(
                session,
                SessionStatus.RUNNING,
                preview_url=urls.preview_url,
                sync_url=urls.sync_url,
                machine_ip=started.private_ip,
                last_activity_at=self.clock.now(),
            )
        except Exception as e:
            logger.error(f"Session {session.id} failed to start: {e}")
            try:
                await self._transition(
                    session, SessionStatus.ERROR, error_message=str(e) or type(e).__name__
                )
            except InvalidStateTransition:
                # Stopped concurrently; the stopper owns the record
                logger.info(f"Session {session.id} was stopped while starting")
            finally:
                await self._destroy_quietly(machine.id)
            raise

    async def stop_preview(self, workspace_id: str) -> Optional[PreviewSession]:
        """
        Stop the workspace's active session.

        Destroy failures are logged and tolerated so a provider outage never
        blocks new sessions for the workspace.

        Returns:
            The stopped session, or None if nothing was active
        """
        session = await self.get_active_session(workspace_id)
        if not session:
            return None

        try:
            session = await self._transition(session, SessionStatus.STOPPING)
        except InvalidStateTransition as e:
            return await self._stopped_concurrently(session, e)

        await self._destroy_quietly(session.machine_id)

        try:
            return await self._transition(session, SessionStatus.STOPPED)
        except InvalidStateTransition as e:
            return await self._stopped_concurrently(session, e)

    async def _stopped_concurrently(
        self, session: PreviewSession, error: InvalidStateTransition
    ) -> PreviewSession:
        """Return the stored row when a sweep or another stop already finished it."""
        current = await self.store.get(session.id)
        if current is None or current.status != SessionStatus.STOPPED:
            raise error
        logger.info(f"Session {session.id} was already stopped by a concurrent call")
        return current

    async def sync_files(self, workspace_id: str, files: Dict[str, str]) -> SyncResult:
        """
        Replace the preview's source with a file map.

        Waits for the sync server to become healthy first. Partial failures
        are returned, not raised; sync errors never change session status.

        Raises:
            NotFoundError: No running session
            UnreachableError: Sync server never became healthy
            SyncError: Sync server rejected the request
        """
        validate_file_map(files)
        session = await self._require_running(workspace_id)

        await self.sync.wait_until_healthy(session.sync_url)
        result = await self.sync.sync_files(session.sync_url, files)

        synced_at = self.clock.now()
        await self.store.update(
            session.id,
            files_synced_at=synced_at,
            file_count=len(files),
            last_activity_at=synced_at,
        )
        return result

    async def update_file(self, workspace_id: str, path: str, content: str) -> PreviewSession:
        """Overwrite a single file in the running preview."""
        validate_file_path(path)
        session = await self._require_running(workspace_id)
        await self.sync.update_file(session.sync_url, path, content)
        return await self.store.update(session.id, last_activity_at=self.clock.now())

    async def delete_file(self, workspace_id: str, path: str) -> PreviewSession:
        """Delete a single file from the running preview."""
        validate_file_path(path)
        session = await self._require_running(workspace_id)
        await self.sync.delete_file(session.sync_url, path)
        return await self.store.update(session.id, last_activity_at=self.clock.now())

    async def reset_preview(self, workspace_id: str) -> PreviewSession:
        """Restore the running preview's project to the baseline template."""
        session = await self._require_running(workspace_id)
        await self.sync.reset(session.sync_url)
        return await self.store.update(session.id, last_activity_at=self.clock.now())

    async def list_files(self, workspace_id: str) -> List[str]:
        """List the files currently in the running preview's project."""
        session = await self._require_running(workspace_id)
        return await self.sync.list_files(session.sync_url)

    async def extend_session(self, workspace_id: str) -> PreviewSession:
        """
        Push the active session's expiry forward by one TTL.

        Also records a keep-alive heartbeat on the machine.

        Raises:
            NotFoundError: No active session
        """
        session = await self.get_active_session(workspace_id)
        if not session:
            raise NotFoundError("No active preview session")

        now = self.clock.now()
        session = await self.store.update(
            session.id, expires_at=now + self.session_ttl, last_activity_at=now
        )
        await self.machines.extend_lease(session.machine_id, self.settings.session_ttl_seconds)
        return session

    async def cleanup_expired_sessions(self) -> int:
        """
        Tear down running sessions past their deadline.

        Destroy failures are logged and never abort the sweep. Store write
        failures propagate.

        Returns:
            Number of sessions processed
        """
        expired = await self.store.list_expired(self.clock.now())
        if not expired:
            return 0

        for session in expired:
            if not await self._destroy_quietly(session.machine_id):
                logger.error(f"Failed to destroy expired machine {session.machine_id}")
            try:
                await self._transition(session, SessionStatus.STOPPED)
            except InvalidStateTransition as e:
                # Stopped concurrently by a live call
                logger.info(f"Skipping expired session {session.id}: {e}")

        logger.info(f"Cleaned up {len(expired)} expired preview sessions")
        return len(expired)

    async def get_session(self, session_id: str) -> PreviewSession:
        """Get any session by id."""
        session = await self.store.get(session_id)
        if not session:
            raise NotFoundError(f"Preview session {session_id} not found")
        return session

    async def get_history(self, workspace_id: str, limit: int = 20) -> List[PreviewSession]:
        """Past and present sessions of a workspace, newest first."""
        return await self.store.list_for_workspace(workspace_id, limit)
