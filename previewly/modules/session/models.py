"""Preview session record."""

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional

from previewly.modules.api.models import ACTIVE_STATUSES, SessionStatus

_DATETIME_FIELDS = (
    "created_at",
    "updated_at",
    "last_activity_at",
    "expires_at",
    "files_synced_at",
)


@dataclass
class PreviewSession:
    """
    Pairing of a workspace with a provisioned machine and its endpoints.

    At most one session per workspace is starting or running at a time.
    Sessions are never deleted; stop and cleanup move them to ``stopped``.
    """

    id: str
    workspace_id: str
    machine_id: str
    region: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    machine_ip: Optional[str] = None
    preview_url: Optional[str] = None
    sync_url: Optional[str] = None
    error_message: Optional[str] = None
    files_synced_at: Optional[datetime] = None
    file_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_ready(self) -> bool:
        """Running with a reachable preview."""
        return self.status == SessionStatus.RUNNING and bool(self.preview_url)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        for key in _DATETIME_FIELDS:
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreviewSession":
        """Create from dictionary (e.g., from JSON)."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = SessionStatus(values["status"])
        for key in _DATETIME_FIELDS:
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)
