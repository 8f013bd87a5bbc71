"""
Previewly shared data models.

These models define the structure of all data passed between
components in the Previewly system.
"""

import posixpath
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Enums


class SessionStatus(str, Enum):
    """Status of a preview session."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})


class MachineState(str, Enum):
    """Lifecycle state reported by the control plane for a machine."""

    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


# Validation Helpers


def validate_file_path(path: str) -> str:
    """
    Validate a project-relative file path.

    Rules:
    - Non-empty, forward-slash separated
    - No leading slash, no backslashes
    - No '.' or '..' segments
    """
    if not path or not isinstance(path, str):
        raise ValueError("File path must be a non-empty string")
    if path.startswith("/") or "\\" in path:
        raise ValueError(f"File path must be relative and use forward slashes: {path}")
    segments = path.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise ValueError(f"File path contains an empty, '.' or '..' segment: {path}")
    if posixpath.normpath(path) != path:
        raise ValueError(f"File path is not normalized: {path}")
    return path


def validate_file_map(files: Dict[str, str]) -> Dict[str, str]:
    """Validate every path of a file map and that every content is text."""
    for path, content in files.items():
        validate_file_path(path)
        if not isinstance(content, str):
            raise ValueError(f"File content must be text: {path}")
    return files


# Request Models (API Input)


class WorkspaceRequest(BaseModel):
    """Request addressed to a workspace's preview."""

    workspace_id: str = Field(..., description="Workspace identifier", min_length=1, max_length=100)


class SyncFilesRequest(WorkspaceRequest):
    """Request to replace the preview's editable source with a file map."""

    files: Dict[str, str] = Field(..., description="Relative path to UTF-8 file content")

    @field_validator("files")
    @classmethod
    def validate_files(cls, v):
        return validate_file_map(v)


class UpdateFileRequest(WorkspaceRequest):
    """Request to overwrite a single file (hot edit)."""

    path: str = Field(..., description="Relative file path")
    content: str = Field(..., description="New file content")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        return validate_file_path(v)


class DeleteFileRequest(WorkspaceRequest):
    """Request to delete a single file."""

    path: str = Field(..., description="Relative file path")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        return validate_file_path(v)


# Response Models (API Output)


class SessionResponse(BaseModel):
    """Preview session as returned to callers."""

    session_id: str
    workspace_id: str
    machine_id: str
    status: SessionStatus
    region: str
    preview_url: Optional[str] = None
    sync_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    files_synced_at: Optional[datetime] = None
    file_count: int = 0

    @classmethod
    def from_session(cls, session) -> "SessionResponse":
        """Build a response from a PreviewSession record."""
        return cls(
            session_id=session.id,
            workspace_id=session.workspace_id,
            machine_id=session.machine_id,
            status=session.status,
            region=session.region,
            preview_url=session.preview_url,
            sync_url=session.sync_url,
            error_message=session.error_message,
            created_at=session.created_at,
            updated_at=session.updated_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            files_synced_at=session.files_synced_at,
            file_count=session.file_count,
        )


class ActiveSessionResponse(BaseModel):
    """Lookup result for a workspace's active session."""

    active: bool
    session: Optional[SessionResponse] = None


class FileResultResponse(BaseModel):
    """Outcome of writing one file during a full sync."""

    path: str
    status: str
    error: Optional[str] = None


class SyncResponse(BaseModel):
    """Outcome of a full sync. success_count < file_count is a partial failure."""

    success: bool
    synced_at: Optional[str] = None
    file_count: int
    success_count: int
    failed_paths: List[str] = Field(default_factory=list)
    results: List[FileResultResponse] = Field(default_factory=list)


class FileOperationResponse(BaseModel):
    """Outcome of a single-file update or delete."""

    success: bool
    path: str


class CleanupResponse(BaseModel):
    """Outcome of an expiry sweep."""

    processed: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status", pattern="^(healthy|unhealthy|degraded)$")
    store: str = Field(..., description="Session store status")
    modules: str = Field(..., description="Module initialization status")
    sweeper: str = Field(default="disabled", description="Expiry sweeper status")
    version: str = Field(default="1.0.0", description="API version")


# Error Models


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error message")


# Export all models
__all__ = [
    # Enums
    "SessionStatus",
    "MachineState",
    "ACTIVE_STATUSES",
    # Request models
    "WorkspaceRequest",
    "SyncFilesRequest",
    "UpdateFileRequest",
    "DeleteFileRequest",
    # Response models
    "SessionResponse",
    "ActiveSessionResponse",
    "FileResultResponse",
    "SyncResponse",
    "FileOperationResponse",
    "CleanupResponse",
    "HealthResponse",
    "ErrorResponse",
    # Validators
    "validate_file_path",
    "validate_file_map",
]
