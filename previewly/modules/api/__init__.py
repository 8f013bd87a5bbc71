"""
API Module - Black Box Interface

Purpose: HTTP routing and module orchestration
Interface: REST API endpoints
Hidden: Module initialization, request handling, error responses

The API module only orchestrates - it contains no business logic.
All logic is delegated to appropriate modules.
"""

from .models import (
    ACTIVE_STATUSES,
    ActiveSessionResponse,
    CleanupResponse,
    DeleteFileRequest,
    ErrorResponse,
    FileOperationResponse,
    FileResultResponse,
    HealthResponse,
    MachineState,
    SessionResponse,
    SessionStatus,
    SyncFilesRequest,
    SyncResponse,
    UpdateFileRequest,
    WorkspaceRequest,
    validate_file_map,
    validate_file_path,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ActiveSessionResponse",
    "CleanupResponse",
    "DeleteFileRequest",
    "ErrorResponse",
    "FileOperationResponse",
    "FileResultResponse",
    "HealthResponse",
    "MachineState",
    "SessionResponse",
    "SessionStatus",
    "SyncFilesRequest",
    "SyncResponse",
    "UpdateFileRequest",
    "WorkspaceRequest",
    "validate_file_map",
    "validate_file_path",
]
