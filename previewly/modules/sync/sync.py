"""
Sync Module for Previewly.

HTTP client for the sync server running inside each preview VM. The sync
server writes files into the project directory watched by the VM's
live-reloading dev server.

Wire contract:
- GET /health          200 when ready
- POST /sync           {files: {path: content}} wipe editable source, write all
- PUT /update          {path, content} single-file overwrite
- DELETE /file         {path} remove if present
- POST /reset          restore baseline template
- GET /files           {files: [path, ...]}

A full sync is not atomic: a 2xx response with successCount < fileCount is
a partial failure the caller retries selectively, not an exception.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from previewly.modules.api.models import validate_file_map, validate_file_path
from previewly.modules.errors import SyncError, UnreachableError
from previewly.modules.polling import Clock

logger = logging.getLogger("previewly.sync")


@dataclass
class FileResult:
    """Outcome of writing one file."""

    path: str
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class SyncResult:
    """Outcome of a full sync as reported by the sync server."""

    success: bool
    synced_at: Optional[str]
    file_count: int
    success_count: int
    results: List[FileResult] = field(default_factory=list)

    @property
    def failed_paths(self) -> List[str]:
        return [r.path for r in self.results if not r.ok]

    @property
    def is_partial(self) -> bool:
        return self.success_count < self.file_count

    @classmethod
    def from_response(cls, data: Dict[str, Any], requested: int) -> "SyncResult":
        """Create from a /sync response body."""
        results = [
            FileResult(path=r.get("path", ""), status=r.get("status", "error"), error=r.get("error"))
            for r in data.get("results") or []
        ]
        file_count = data.get("fileCount", len(results) or requested)
        success_count = data.get("successCount", sum(1 for r in results if r.ok))
        return cls(
            success=bool(data.get("success", True)),
            synced_at=data.get("syncedAt"),
            file_count=file_count,
            success_count=success_count,
            results=results,
        )


class SyncModule:
    """Client for the in-VM sync server. Stateless; the sync URL is passed per call."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        health_attempts: int = 20,
        health_interval: float = 2.0,
        health_timeout: float = 4.0,
        request_timeout: float = 60.0,
    ):
        """
        Initialize sync module.

        Args:
            http_client: Optional pre-built httpx client (owned by the caller)
            clock: Clock used between health check attempts
            health_attempts: Health checks before giving up
            health_interval: Seconds between health checks
            health_timeout: Per-attempt health check timeout in seconds
            request_timeout: Timeout for write requests in seconds
        """
        self.clock = clock or Clock()
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.health_timeout = health_timeout
        self.request_timeout = request_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        """Close the HTTP client if this module created it."""
        if self._owns_client:
            await self._client.aclose()

    async def check_health(self, sync_url: str) -> bool:
        """Single health probe. Never raises."""
        try:
            response = await self._client.get(f"{sync_url}/health", timeout=self.health_timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check against {sync_url} failed: {e!r}")
            return False
        return response.is_success

    async def wait_until_healthy(self, sync_url: str) -> int:
        """
        Wait for the sync server to answer its health check.

        Freshly started VMs are often not reachable yet (private DNS and
        routing lag behind the machine reaching "started").

        Returns:
            Number of attempts it took

        Raises:
            UnreachableError: No healthy answer within the attempt budget
        """
        for attempt in range(1, self.health_attempts + 1):
            if await self.check_health(sync_url):
                if attempt > 1:
                    logger.info(f"Sync server at {sync_url} healthy after {attempt} attempts")
                return attempt
            if attempt < self.health_attempts:
                await self.clock.sleep(self.health_interval)

        raise UnreachableError(f"Preview VM not reachable yet at {sync_url}. Please retry.")

    async def _send(self, method: str, url: str, body: Optional[Dict[str, Any]], action: str) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, json=body, timeout=self.request_timeout)
        except httpx.HTTPError as e:
            raise SyncError(f"Failed to {action}: {e}") from e

        if not response.is_success:
            raise SyncError(
                f"Failed to {action}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.content:
            return {}
        return response.json()

    async def sync_files(self, sync_url: str, files: Dict[str, str]) -> SyncResult:
        """
        Replace the project's editable source with the given file map.

        Returns:
            SyncResult; check is_partial / failed_paths for per-file failures

        Raises:
            SyncError: Sync server rejected the request
        """
        validate_file_map(files)
        logger.info(f"Syncing {len(files)} files to {sync_url}")

        data = await self._send("POST", f"{sync_url}/sync", {"files": files}, "sync files")
        result = SyncResult.from_response(data, len(files))

        if result.is_partial:
            logger.warning(
                f"Partial sync to {sync_url}: {result.success_count}/{result.file_count} files written, "
                f"failed: {', '.join(result.failed_paths)}"
            )
        return result

    async def update_file(self, sync_url: str, path: str, content: str) -> Dict[str, Any]:
        """Overwrite a single file (hot edit)."""
        validate_file_path(path)
        return await self._send("PUT", f"{sync_url}/update", {"path": path, "content": content}, "update file")

    async def delete_file(self, sync_url: str, path: str) -> Dict[str, Any]:
        """Delete a single file; deleting a missing file is a no-op on the server."""
        validate_file_path(path)
        return await self._send("DELETE", f"{sync_url}/file", {"path": path}, "delete file")

    async def reset(self, sync_url: str) -> Dict[str, Any]:
        """Discard edits and restore the baseline template."""
        return await self._send("POST", f"{sync_url}/reset", None, "reset project")

    async def list_files(self, sync_url: str) -> List[str]:
        """List the project's files (dependency caches excluded)."""
        data = await self._send("GET", f"{sync_url}/files", None, "list files")
        return list(data.get("files") or [])
