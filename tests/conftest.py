"""
Shared pytest fixtures for Previewly tests.

This module provides common fixtures including:
- FakeClock: virtual time for polling loops
- FakeMachineModule: in-memory stand-in for the control-plane client
- FakeSyncServer: httpx.MockTransport handler emulating the in-VM sync server
- A SessionModule wired to the fakes and an in-memory session store
"""

import asyncio
import json
import os
import sys
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
import pytest
import pytest_asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from previewly.config.provider import PreviewSettings
from previewly.modules.api.models import SessionStatus
from previewly.modules.machines import MachineHandle, MachineUrls
from previewly.modules.polling import Clock
from previewly.modules.session import MemorySessionStore, PreviewSession, SessionModule
from previewly.modules.sync import SyncModule


# =============================================================================
# Virtual Time
# =============================================================================


class FakeClock(Clock):
    """
    Clock whose sleep advances virtual time instead of waiting.

    Sleep still yields to the event loop once so background tasks
    driven by this clock never starve the test.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        self._monotonic = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


# =============================================================================
# Control Plane Fake
# =============================================================================


class FakeMachineModule:
    """
    In-memory stand-in for MachineModule.

    Usage:
        def test_start_timeout(fake_machines):
            fake_machines.wait_error = StateTimeoutError("m-1", "started", 120)
            ...
            assert fake_machines.destroyed == ["m-1"]
    """

    def __init__(self, app_name: str = "previewly-test", region: str = "arn"):
        self.app_name = app_name
        self.region = region
        self.machines: Dict[str, MachineHandle] = {}
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.waits: List[Tuple[str, str, float]] = []
        self.leases: List[Tuple[str, int]] = []
        self.create_error: Optional[Exception] = None
        self.wait_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        self.destroy_hook: Optional[Callable[[str], Awaitable[None]]] = None
        self._counter = 0

    async def create_machine(self, workspace_id: str, name: Optional[str] = None) -> MachineHandle:
        if self.create_error:
            raise self.create_error
        self._counter += 1
        machine = MachineHandle(
            id=f"m-{self._counter}",
            name=name or f"preview-{workspace_id[:8]}-{self._counter}",
            region=self.region,
            state="created",
            cpu_kind="shared",
            cpus=1,
            memory_mb=512,
        )
        self.machines[machine.id] = machine
        self.created.append(machine.id)
        return replace(machine)

    async def get_machine(self, machine_id: str) -> Optional[MachineHandle]:
        machine = self.machines.get(machine_id)
        return replace(machine) if machine else None

    async def wait_for_state(self, machine_id: str, target: str, timeout: float = 60.0) -> MachineHandle:
        self.waits.append((machine_id, target, timeout))
        if self.wait_error:
            raise self.wait_error
        machine = self.machines[machine_id]
        machine.state = target
        machine.private_ip = f"fdaa:0:1:a7b::{self._counter}"
        return replace(machine)

    def get_urls(self, machine: MachineHandle) -> MachineUrls:
        return MachineUrls(
            preview_url=f"https://{machine.id}.{self.app_name}.fly.dev",
            sync_url=f"http://[{machine.private_ip}]:3001",
        )

    async def destroy_machine(self, machine_id: str) -> None:
        self.destroyed.append(machine_id)
        if self.destroy_hook:
            await self.destroy_hook(machine_id)
        if self.destroy_error:
            raise self.destroy_error
        if machine_id in self.machines:
            self.machines[machine_id].state = "destroyed"

    async def extend_lease(self, machine_id: str, seconds: int = 1800) -> None:
        self.leases.append((machine_id, seconds))

    async def aclose(self) -> None:
        pass


# =============================================================================
# Sync Server Fake
# =============================================================================


@dataclass
class FakeSyncServer:
    """
    Emulates the in-VM sync server behind httpx.MockTransport.

    - unhealthy_for: number of health checks answered with a connection error
    - fail_paths: paths whose write fails during /sync
    - reject_status: when set, every write answers with this status
    """

    unhealthy_for: int = 0
    fail_paths: Set[str] = field(default_factory=set)
    reject_status: Optional[int] = None
    files: Dict[str, str] = field(default_factory=dict)
    health_checks: int = 0
    requests: List[Tuple[str, str, Optional[dict]]] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))

        if request.url.path == "/health":
            self.health_checks += 1
            if self.health_checks <= self.unhealthy_for:
                raise httpx.ConnectError("Name or service not known", request=request)
            return httpx.Response(200, json={"status": "healthy"})

        if self.reject_status:
            return httpx.Response(self.reject_status, text="disk full")

        if request.method == "POST" and request.url.path == "/sync":
            self.files = {}
            results = []
            for path, content in body["files"].items():
                if path in self.fail_paths:
                    results.append({"path": path, "status": "error", "error": "EACCES"})
                else:
                    self.files[path] = content
                    results.append({"path": path, "status": "success"})
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "syncedAt": "2026-01-15T12:00:00.000Z",
                    "fileCount": len(results),
                    "successCount": sum(1 for r in results if r["status"] == "success"),
                    "results": results,
                },
            )

        if request.method == "PUT" and request.url.path == "/update":
            self.files[body["path"]] = body["content"]
            return httpx.Response(200, json={"success": True, "path": body["path"]})

        if request.method == "DELETE" and request.url.path == "/file":
            self.files.pop(body["path"], None)
            return httpx.Response(200, json={"success": True, "path": body["path"]})

        if request.method == "POST" and request.url.path == "/reset":
            self.files = {}
            return httpx.Response(200, json={"success": True})

        if request.method == "GET" and request.url.path == "/files":
            return httpx.Response(200, json={"files": sorted(self.files)})

        return httpx.Response(404, json={"error": "not found"})


# =============================================================================
# Session Helpers
# =============================================================================


def make_session(
    workspace_id: str,
    now: datetime,
    status: SessionStatus = SessionStatus.STARTING,
    expires_in: timedelta = timedelta(minutes=30),
    machine_id: Optional[str] = None,
    preview_url: Optional[str] = None,
    sync_url: Optional[str] = None,
) -> PreviewSession:
    """Build a session record without going through the orchestrator."""
    return PreviewSession(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        machine_id=machine_id or f"m-{uuid.uuid4().hex[:8]}",
        region="arn",
        status=status,
        created_at=now,
        updated_at=now,
        last_activity_at=now,
        expires_at=now + expires_in,
        preview_url=preview_url,
        sync_url=sync_url,
    )


async def seed_session(store, session: PreviewSession) -> PreviewSession:
    """Insert a session in any status through the store's public interface."""
    target = session.status
    await store.insert_active(replace(session, status=SessionStatus.STARTING))
    if target != SessionStatus.STARTING:
        return await store.update(session.id, status=target)
    return await store.get(session.id)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return PreviewSettings()


@pytest.fixture
def fake_machines():
    return FakeMachineModule()


@pytest.fixture
def store(clock):
    return MemorySessionStore(clock=clock)


@pytest.fixture
def sync_server():
    return FakeSyncServer()


@pytest_asyncio.fixture
async def sync_module(clock, sync_server, settings):
    client = httpx.AsyncClient(transport=httpx.MockTransport(sync_server.handler))
    module = SyncModule(
        http_client=client,
        clock=clock,
        health_attempts=settings.health_attempts,
        health_interval=settings.health_interval_seconds,
        health_timeout=settings.health_timeout_seconds,
    )
    yield module
    await client.aclose()


@pytest.fixture
def session_module(fake_machines, store, sync_module, settings, clock):
    return SessionModule(
        fake_machines,
        store,
        sync_module,
        settings=settings,
        clock=clock,
        default_region="arn",
    )
