import asyncio
import os
import sys
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from previewly.modules.api.models import SessionStatus
from previewly.modules.errors import (
    ActiveSessionConflict,
    InvalidStateTransition,
    MachineAPIError,
    NotFoundError,
    ProvisioningError,
    StateTimeoutError,
    StoreError,
    SyncError,
    TerminalStateError,
    UnreachableError,
)
from previewly.modules.session import TRANSITIONS

from conftest import make_session, seed_session

WORKSPACE = "ws-7f3a9c21"


async def active_count(store, workspace_id):
    history = await store.list_for_workspace(workspace_id, limit=100)
    return sum(1 for s in history if s.is_active)


@pytest.mark.asyncio
async def test_start_stop_restart(session_module, fake_machines, store):
    """Test the full lifecycle: start, reuse, stop, start again on a fresh VM."""
    session = await session_module.start_preview(WORKSPACE)

    assert session.status == SessionStatus.RUNNING
    assert session.preview_url == "https://m-1.previewly-test.fly.dev"
    assert session.sync_url.startswith("http://[fdaa:")
    assert session.machine_id == "m-1"
    assert session.region == "arn"
    assert fake_machines.waits == [("m-1", "started", 120.0)]

    again = await session_module.start_preview(WORKSPACE)
    assert again.id == session.id
    assert fake_machines.created == ["m-1"]

    stopped = await session_module.stop_preview(WORKSPACE)
    assert stopped.status == SessionStatus.STOPPED
    assert fake_machines.destroyed == ["m-1"]
    assert await session_module.get_active_session(WORKSPACE) is None

    fresh = await session_module.start_preview(WORKSPACE)
    assert fresh.id != session.id
    assert fresh.machine_id == "m-2"
    assert await active_count(store, WORKSPACE) == 1


@pytest.mark.asyncio
async def test_start_waits_for_dns_settle(session_module, clock, settings):
    """Test the settle delay is observed before URLs are handed back."""
    await session_module.start_preview(WORKSPACE)

    assert clock.sleeps == [settings.settle_delay_seconds]


@pytest.mark.asyncio
async def test_start_sets_expiry(session_module, clock):
    """Test a new session expires one TTL after creation."""
    session = await session_module.start_preview(WORKSPACE)

    assert session.expires_at == session.created_at + timedelta(seconds=1800)


@pytest.mark.asyncio
async def test_start_timeout_marks_error(session_module, fake_machines, store):
    """Test a machine that never starts leaves an error session and no VM."""
    fake_machines.wait_error = StateTimeoutError("m-1", "started", 120, "starting")

    with pytest.raises(StateTimeoutError):
        await session_module.start_preview(WORKSPACE)

    assert fake_machines.destroyed == ["m-1"]
    history = await store.list_for_workspace(WORKSPACE)
    assert len(history) == 1
    assert history[0].status == SessionStatus.ERROR
    assert "Timeout waiting for machine m-1" in history[0].error_message
    assert await session_module.get_active_session(WORKSPACE) is None


@pytest.mark.asyncio
async def test_start_terminal_state_marks_error(session_module, fake_machines, store):
    """Test a machine that dies during boot."""
    fake_machines.wait_error = TerminalStateError("m-1", "failed", "started")

    with pytest.raises(TerminalStateError):
        await session_module.start_preview(WORKSPACE)

    history = await store.list_for_workspace(WORKSPACE)
    assert history[0].status == SessionStatus.ERROR
    assert fake_machines.destroyed == ["m-1"]


@pytest.mark.asyncio
async def test_start_after_error_creates_new_session(session_module, fake_machines, store):
    """Test an error session never blocks a new start."""
    fake_machines.wait_error = StateTimeoutError("m-1", "started", 120)
    with pytest.raises(StateTimeoutError):
        await session_module.start_preview(WORKSPACE)

    fake_machines.wait_error = None
    session = await session_module.start_preview(WORKSPACE)

    assert session.status == SessionStatus.RUNNING
    assert session.machine_id == "m-2"
    assert len(await store.list_for_workspace(WORKSPACE)) == 2


@pytest.mark.asyncio
async def test_start_create_failure(session_module, fake_machines, store):
    """Test nothing is recorded when the machine cannot be created."""
    fake_machines.create_error = ProvisioningError("Failed to create preview machine", status_code=401)

    with pytest.raises(ProvisioningError):
        await session_module.start_preview(WORKSPACE)

    assert await store.list_for_workspace(WORKSPACE) == []
    assert fake_machines.destroyed == []


@pytest.mark.asyncio
async def test_start_insert_failure_destroys_machine(session_module, fake_machines, store):
    """Test the machine is not leaked when the session cannot be recorded."""
    store.insert_active = AsyncMock(side_effect=StoreError("Failed to insert preview session"))

    with pytest.raises(StoreError):
        await session_module.start_preview(WORKSPACE)

    assert fake_machines.created == ["m-1"]
    assert fake_machines.destroyed == ["m-1"]


@pytest.mark.asyncio
async def test_start_conflict_destroys_machine(session_module, fake_machines, store):
    """Test losing a concurrent start releases the loser's machine."""
    store.insert_active = AsyncMock(side_effect=ActiveSessionConflict(WORKSPACE, "winner"))

    with pytest.raises(ActiveSessionConflict):
        await session_module.start_preview(WORKSPACE)

    assert fake_machines.destroyed == ["m-1"]


@pytest.mark.asyncio
async def test_concurrent_starts_single_active(session_module, fake_machines, store):
    """Test two concurrent starts for a workspace leave exactly one active session."""
    results = await asyncio.gather(
        session_module.start_preview(WORKSPACE),
        session_module.start_preview(WORKSPACE),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], (ActiveSessionConflict, InvalidStateTransition))
    assert await active_count(store, WORKSPACE) == 1
    assert (await store.get_active(WORKSPACE)).id == winners[0].id
    # Every machine but the winner's is released
    assert set(fake_machines.created) - set(fake_machines.destroyed) == {winners[0].machine_id}


@pytest.mark.asyncio
async def test_start_stops_half_started_session(session_module, fake_machines, store, clock):
    """Test a starting session without URLs is stopped and replaced."""
    stale = await seed_session(store, make_session(WORKSPACE, clock.now(), machine_id="m-old"))

    session = await session_module.start_preview(WORKSPACE)

    assert session.id != stale.id
    assert (await store.get(stale.id)).status == SessionStatus.STOPPED
    assert fake_machines.destroyed == ["m-old"]
    assert await active_count(store, WORKSPACE) == 1


@pytest.mark.asyncio
async def test_stop_without_session(session_module, fake_machines):
    """Test stopping an idle workspace is a no-op."""
    assert await session_module.stop_preview(WORKSPACE) is None
    assert fake_machines.destroyed == []


@pytest.mark.asyncio
async def test_stop_tolerates_destroy_failure(session_module, fake_machines):
    """Test a control-plane outage never leaves the session active."""
    await session_module.start_preview(WORKSPACE)
    fake_machines.destroy_error = MachineAPIError("Machine API error (503)", status_code=503)

    stopped = await session_module.stop_preview(WORKSPACE)

    assert stopped.status == SessionStatus.STOPPED
    assert await session_module.get_active_session(WORKSPACE) is None


@pytest.mark.asyncio
async def test_stop_during_sweep(session_module, fake_machines, store, clock):
    """Test a stop racing the sweeper returns the session the sweep stopped."""
    session = await session_module.start_preview(WORKSPACE)
    clock.advance(31 * 60)
    swept = asyncio.Event()
    stop_task = None

    async def on_destroy(machine_id):
        nonlocal stop_task
        if stop_task is None:
            # Sweep's destroy: let the user's stop move the row to stopping
            stop_task = asyncio.create_task(session_module.stop_preview(WORKSPACE))
            while (await store.get(session.id)).status != SessionStatus.STOPPING:
                await asyncio.sleep(0)
        else:
            # Stop's destroy: hold until the sweep has written stopped
            await swept.wait()

    fake_machines.destroy_hook = on_destroy

    assert await session_module.cleanup_expired_sessions() == 1
    assert (await store.get(session.id)).status == SessionStatus.STOPPED
    swept.set()

    stopped = await stop_task

    assert stopped.id == session.id
    assert stopped.status == SessionStatus.STOPPED
    assert fake_machines.destroyed == [session.machine_id, session.machine_id]
    assert await session_module.get_active_session(WORKSPACE) is None


@pytest.mark.asyncio
async def test_sync_files_waits_for_health(session_module, sync_server, clock, store):
    """Test the first sync after boot retries health checks, then writes."""
    session = await session_module.start_preview(WORKSPACE)
    sync_server.unhealthy_for = 3
    clock.sleeps.clear()
    files = {"src/App.tsx": "export default 1;\n", "src/main.tsx": "import './App';\n"}

    result = await session_module.sync_files(WORKSPACE, files)

    assert result.success_count == 2
    assert clock.sleeps == [2.0, 2.0, 2.0]
    stored = await store.get(session.id)
    assert stored.file_count == 2
    assert stored.files_synced_at == clock.now()
    assert stored.last_activity_at == clock.now()
    assert sync_server.files == files


@pytest.mark.asyncio
async def test_sync_files_partial(session_module, sync_server, store):
    """Test a partial sync returns the failures and keeps the session running."""
    session = await session_module.start_preview(WORKSPACE)
    files = {f"src/file{i:02d}.ts": f"export const v = {i};\n" for i in range(20)}
    sync_server.fail_paths = {"src/file03.ts", "src/file17.ts"}

    result = await session_module.sync_files(WORKSPACE, files)

    assert result.is_partial
    assert (result.success_count, result.file_count) == (18, 20)
    assert result.failed_paths == ["src/file03.ts", "src/file17.ts"]
    assert (await store.get(session.id)).status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_sync_files_without_session(session_module):
    """Test syncing to an idle workspace."""
    with pytest.raises(NotFoundError):
        await session_module.sync_files(WORKSPACE, {"src/App.tsx": ""})


@pytest.mark.asyncio
async def test_sync_files_starting_session(session_module, store, clock):
    """Test a session that is still starting cannot receive files."""
    await seed_session(store, make_session(WORKSPACE, clock.now()))

    with pytest.raises(NotFoundError):
        await session_module.sync_files(WORKSPACE, {"src/App.tsx": ""})


@pytest.mark.asyncio
async def test_sync_errors_keep_status(session_module, sync_server, store):
    """Test sync failures never change session status."""
    session = await session_module.start_preview(WORKSPACE)

    sync_server.reject_status = 500
    with pytest.raises(SyncError):
        await session_module.sync_files(WORKSPACE, {"src/App.tsx": ""})

    sync_server.unhealthy_for = 1000
    with pytest.raises(UnreachableError):
        await session_module.sync_files(WORKSPACE, {"src/App.tsx": ""})

    assert (await store.get(session.id)).status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_sync_files_invalid_path(session_module, sync_server):
    """Test invalid paths are rejected before contacting the VM."""
    await session_module.start_preview(WORKSPACE)

    with pytest.raises(ValueError):
        await session_module.sync_files(WORKSPACE, {"/etc/hosts": ""})

    assert sync_server.requests == []


@pytest.mark.asyncio
async def test_single_file_operations(session_module, sync_server, store, clock):
    """Test update, delete, list and reset against the running preview."""
    session = await session_module.start_preview(WORKSPACE)
    await session_module.sync_files(WORKSPACE, {"src/a.ts": "1", "src/b.ts": "2"})

    clock.advance(60)
    updated = await session_module.update_file(WORKSPACE, "src/a.ts", "3")
    assert updated.last_activity_at == clock.now()
    assert sync_server.files["src/a.ts"] == "3"

    await session_module.delete_file(WORKSPACE, "src/b.ts")
    assert await session_module.list_files(WORKSPACE) == ["src/a.ts"]

    clock.advance(30)
    reset = await session_module.reset_preview(WORKSPACE)
    assert reset.last_activity_at == clock.now()
    assert reset.file_count == 2
    assert reset.files_synced_at is not None
    assert reset.id == session.id
    assert await session_module.list_files(WORKSPACE) == []


@pytest.mark.asyncio
async def test_extend_session(session_module, fake_machines, clock):
    """Test extending pushes the deadline one TTL past now."""
    session = await session_module.start_preview(WORKSPACE)
    clock.advance(25 * 60)

    extended = await session_module.extend_session(WORKSPACE)

    assert extended.expires_at == clock.now() + timedelta(minutes=30)
    assert extended.expires_at > session.expires_at
    assert fake_machines.leases == [(session.machine_id, 1800)]


@pytest.mark.asyncio
async def test_extend_without_session(session_module, fake_machines):
    """Test extending an idle workspace."""
    with pytest.raises(NotFoundError):
        await session_module.extend_session(WORKSPACE)

    assert fake_machines.leases == []


@pytest.mark.asyncio
async def test_cleanup_expired_sessions(session_module, fake_machines, store, clock):
    """Test only running sessions past their deadline are reclaimed."""
    now = clock.now()
    past = timedelta(minutes=-1)
    expired = await seed_session(
        store, make_session("ws-1", now, SessionStatus.RUNNING, past, machine_id="m-expired")
    )
    await seed_session(store, make_session("ws-2", now, SessionStatus.RUNNING, machine_id="m-live"))
    await seed_session(store, make_session("ws-3", now, SessionStatus.STARTING, past, machine_id="m-booting"))
    await seed_session(store, make_session("ws-4", now, SessionStatus.STOPPED, past, machine_id="m-gone"))
    await seed_session(store, make_session("ws-5", now, SessionStatus.ERROR, past, machine_id="m-failed"))
    stopping = await seed_session(
        store, make_session("ws-6", now, SessionStatus.STOPPING, past, machine_id="m-stopping")
    )

    processed = await session_module.cleanup_expired_sessions()

    assert processed == 1
    assert fake_machines.destroyed == ["m-expired"]
    assert (await store.get(expired.id)).status == SessionStatus.STOPPED
    assert (await store.get_active("ws-2")).status == SessionStatus.RUNNING
    assert (await store.get_active("ws-3")).status == SessionStatus.STARTING
    assert (await store.get(stopping.id)).status == SessionStatus.STOPPING


@pytest.mark.asyncio
async def test_cleanup_nothing_expired(session_module, fake_machines):
    """Test a sweep with nothing to do."""
    await session_module.start_preview(WORKSPACE)

    assert await session_module.cleanup_expired_sessions() == 0
    assert fake_machines.destroyed == []


@pytest.mark.asyncio
async def test_cleanup_continues_after_destroy_failure(session_module, fake_machines, store, clock):
    """Test one failing destroy does not abort the sweep."""
    now = clock.now()
    past = timedelta(seconds=-1)
    first = await seed_session(store, make_session("ws-1", now, SessionStatus.RUNNING, past, machine_id="m-a"))
    second = await seed_session(store, make_session("ws-2", now, SessionStatus.RUNNING, past, machine_id="m-b"))
    fake_machines.destroy_error = MachineAPIError("Machine API error (500)", status_code=500)

    assert await session_module.cleanup_expired_sessions() == 2

    assert sorted(fake_machines.destroyed) == ["m-a", "m-b"]
    assert (await store.get(first.id)).status == SessionStatus.STOPPED
    assert (await store.get(second.id)).status == SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_cleanup_after_ttl(session_module, clock):
    """Test a session started and left alone is swept once its TTL elapses."""
    await session_module.start_preview(WORKSPACE)
    clock.advance(31 * 60)

    assert await session_module.cleanup_expired_sessions() == 1
    assert await session_module.get_active_session(WORKSPACE) is None


@pytest.mark.asyncio
async def test_invalid_transition(session_module, store, clock):
    """Test a stopped session can never become running again."""
    session = await seed_session(store, make_session(WORKSPACE, clock.now(), SessionStatus.STOPPED))

    with pytest.raises(InvalidStateTransition) as exc_info:
        await session_module._transition(session, SessionStatus.RUNNING)

    assert exc_info.value.from_status == "stopped"
    assert exc_info.value.to_status == "running"


@pytest.mark.asyncio
async def test_transition_uses_stored_status(session_module, store, clock):
    """Test a stale in-memory copy cannot bypass the lifecycle."""
    session = await seed_session(store, make_session(WORKSPACE, clock.now(), SessionStatus.RUNNING))
    await store.update(session.id, status=SessionStatus.STOPPED)

    with pytest.raises(InvalidStateTransition):
        await session_module._transition(session, SessionStatus.STOPPING)


@pytest.mark.asyncio
async def test_transition_revalidates_after_concurrent_change(session_module, store, clock, monkeypatch):
    """Test a status written between validation and write is re-checked."""
    session = await seed_session(store, make_session(WORKSPACE, clock.now(), SessionStatus.RUNNING))
    await store.update(session.id, status=SessionStatus.STOPPED)
    real_get = store.get
    reads = []

    async def stale_first_read(session_id):
        reads.append(session_id)
        if len(reads) == 1:
            return session
        return await real_get(session_id)

    monkeypatch.setattr(store, "get", stale_first_read)

    with pytest.raises(InvalidStateTransition) as exc_info:
        await session_module._transition(session, SessionStatus.STOPPING)

    assert exc_info.value.from_status == "stopped"
    assert len(reads) == 2
    assert (await real_get(session.id)).status == SessionStatus.STOPPED


def test_terminal_statuses():
    """Test stopped and error have no outgoing transitions."""
    assert TRANSITIONS[SessionStatus.STOPPED] == set()
    assert TRANSITIONS[SessionStatus.ERROR] == set()
    assert SessionStatus.STARTING not in TRANSITIONS[SessionStatus.RUNNING]


@pytest.mark.asyncio
async def test_get_session_and_history(session_module):
    """Test lookups by id and per-workspace history."""
    first = await session_module.start_preview(WORKSPACE)
    await session_module.stop_preview(WORKSPACE)
    second = await session_module.start_preview(WORKSPACE)

    assert (await session_module.get_session(first.id)).status == SessionStatus.STOPPED
    history = await session_module.get_history(WORKSPACE)
    assert {s.id for s in history} == {first.id, second.id}

    with pytest.raises(NotFoundError):
        await session_module.get_session("missing")
