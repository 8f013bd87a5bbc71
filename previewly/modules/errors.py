"""
Error taxonomy shared by every Previewly module.

Control-plane errors propagate unchanged into the session module, which
converts them into a session marked ``error`` plus a compensating machine
destroy, then re-raises. Sync errors never change session status.
"""

from typing import Optional


class PreviewError(Exception):
    """Base class for all preview orchestration failures."""


class MachineAPIError(PreviewError):
    """The control-plane API rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProvisioningError(MachineAPIError):
    """Creating or starting a machine was rejected or failed."""


class TerminalStateError(PreviewError):
    """Machine reached a dead state before the state being waited for."""

    def __init__(self, machine_id: str, state: str, target: str):
        super().__init__(
            f"Machine {machine_id} entered terminal state '{state}' "
            f"while waiting for '{target}'"
        )
        self.machine_id = machine_id
        self.state = state
        self.target = target


class StateTimeoutError(PreviewError, TimeoutError):
    """Polling budget exhausted before the machine reached its target state."""

    def __init__(self, machine_id: str, target: str, timeout: float, last_state: Optional[str] = None):
        super().__init__(
            f"Timeout waiting for machine {machine_id} to reach state '{target}' "
            f"after {timeout:g}s (last state: {last_state or 'unknown'})"
        )
        self.machine_id = machine_id
        self.target = target
        self.timeout = timeout
        self.last_state = last_state


class StoreError(PreviewError):
    """The session store failed to read or write."""


class ActiveSessionConflict(StoreError):
    """Another session is already starting or running for the workspace."""

    def __init__(self, workspace_id: str, existing_session_id: Optional[str] = None):
        super().__init__(
            f"Workspace {workspace_id} already has an active preview session"
            + (f" ({existing_session_id})" if existing_session_id else "")
        )
        self.workspace_id = workspace_id
        self.existing_session_id = existing_session_id


class SyncError(PreviewError):
    """The in-VM sync server rejected a write."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UnreachableError(PreviewError):
    """The sync server never answered its health check within budget."""


class NotFoundError(PreviewError):
    """A referenced session or machine does not exist."""


class InvalidStateTransition(PreviewError):
    """A session status change is not allowed by the lifecycle."""

    def __init__(self, session_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Session {session_id} cannot move from '{from_status}' to '{to_status}'"
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


class SessionChanged(PreviewError):
    """The stored session status no longer matches the one an update expected."""

    def __init__(self, session_id: str, expected_status: str, actual_status: str):
        super().__init__(
            f"Session {session_id} is '{actual_status}', expected '{expected_status}'"
        )
        self.session_id = session_id
        self.expected_status = expected_status
        self.actual_status = actual_status
