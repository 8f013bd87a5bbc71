"""
Machine Module for Previewly.

Wraps the remote machine-provisioning REST API used to run preview VMs:
create, inspect, start/stop/destroy, poll until a state is reached, and
derive the URLs a running machine is reachable at.

Design Principles:
- The control plane is authoritative: a MachineHandle is a read-through
  mirror of the last response, never a source of truth
- Fail visibly: machines use restart policy "no"
- Destroy is idempotent and safe on a machine in any state
"""

import ipaddress
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from previewly.config.provider import MachineConfig
from previewly.modules.api.models import MachineState
from previewly.modules.errors import (
    MachineAPIError,
    NotFoundError,
    ProvisioningError,
    StateTimeoutError,
    TerminalStateError,
)
from previewly.modules.polling import Clock, PollSchedule

logger = logging.getLogger("previewly.machines")

# States a machine never comes back from
DEAD_STATES = frozenset({MachineState.DESTROYING, MachineState.DESTROYED, MachineState.FAILED})

DEFAULT_LEASE_SECONDS = 1800


@dataclass
class MachineHandle:
    """Snapshot of a machine as last reported by the control plane."""

    id: str
    name: str
    region: str
    state: str
    private_ip: Optional[str] = None
    cpu_kind: Optional[str] = None
    cpus: Optional[int] = None
    memory_mb: Optional[int] = None
    image: Optional[str] = None
    created_at: Optional[str] = None
    instance_id: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MachineHandle":
        """Create from a control-plane machine object."""
        config = data.get("config") or {}
        guest = config.get("guest") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            region=data.get("region", ""),
            state=data.get("state", ""),
            private_ip=data.get("private_ip"),
            cpu_kind=guest.get("cpu_kind"),
            cpus=guest.get("cpus"),
            memory_mb=guest.get("memory_mb"),
            image=config.get("image"),
            created_at=data.get("created_at"),
            instance_id=data.get("instance_id"),
            config=config,
        )


@dataclass(frozen=True)
class MachineUrls:
    """Endpoints of a started machine."""

    preview_url: str
    sync_url: str


class MachineModule:
    """
    Client for the machine control plane.

    One instance per application; configuration is passed at construction
    so tests can substitute the HTTP transport and the clock.
    """

    def __init__(
        self,
        config: MachineConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        poll_schedule: Optional[PollSchedule] = None,
        request_timeout: float = 30.0,
    ):
        """
        Initialize machine module.

        Args:
            config: Control-plane configuration (app, token, region, guest size, image)
            http_client: Optional pre-built httpx client (owned by the caller)
            clock: Clock used by wait_for_state
            poll_schedule: Delays between state polls
            request_timeout: Per-request timeout in seconds for an owned client
        """
        self.config = config
        self.clock = clock or Clock()
        self.poll_schedule = poll_schedule or PollSchedule()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=request_timeout)

    async def aclose(self) -> None:
        """Close the HTTP client if this module created it."""
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.config.api_base}/apps/{self.config.app_name}{path}"

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one authenticated request to the control plane.

        Raises:
            MachineAPIError: Missing token, transport failure or non-2xx response
        """
        if not self.config.api_token:
            raise MachineAPIError("Machine API token is not configured")

        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client.request(method, self._url(path), headers=headers, json=body)
        except httpx.HTTPError as e:
            raise MachineAPIError(f"Machine API request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise MachineAPIError(
                f"Machine API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        # Empty responses (e.g. DELETE)
        if not response.content:
            return {}
        return response.json()

    def _build_machine_request(self, workspace_id: str, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "region": self.config.region,
            "config": {
                "image": self.config.image,
                "auto_destroy": True,
                "restart": {"policy": "no"},
                "guest": {
                    "cpu_kind": self.config.cpu_kind,
                    "cpus": self.config.cpus,
                    "memory_mb": self.config.memory_mb,
                },
                "env": {
                    "WORKSPACE_ID": workspace_id,
                    "NODE_ENV": "development",
                },
                "metadata": {
                    "workspace_id": workspace_id,
                },
                "services": [
                    # Dev server (public preview)
                    {
                        "ports": [
                            {"port": 443, "handlers": ["tls", "http"]},
                            {"port": 80, "handlers": ["http"]},
                        ],
                        "protocol": "tcp",
                        "internal_port": self.config.dev_port,
                        "force_https": True,
                        "auto_start_machines": True,
                        "auto_stop_machines": True,
                        "min_machines_running": 0,
                    },
                    # Sync server (private)
                    {
                        "ports": [{"port": self.config.sync_port, "handlers": ["http"]}],
                        "protocol": "tcp",
                        "internal_port": self.config.sync_port,
                    },
                ],
            },
        }

    async def create_machine(self, workspace_id: str, name: Optional[str] = None) -> MachineHandle:
        """
        Create a new preview VM.

        Args:
            workspace_id: Workspace the machine is provisioned for
            name: Optional machine name (defaults to preview-<ws prefix>-<epoch ms>)

        Returns:
            Handle of the created machine

        Raises:
            ProvisioningError: Missing credentials or the create request failed
        """
        name = name or f"preview-{workspace_id[:8]}-{int(time.time() * 1000)}"
        payload = self._build_machine_request(workspace_id, name)

        try:
            data = await self._request("POST", "/machines", payload)
        except MachineAPIError as e:
            raise ProvisioningError(
                f"Failed to create preview machine: {e}", status_code=e.status_code, body=e.body
            ) from e

        machine = MachineHandle.from_api(data)
        logger.info(
            f"Created machine {machine.id} ({machine.name}) in {machine.region or self.config.region} "
            f"for workspace {workspace_id}"
        )
        return machine

    async def get_machine(self, machine_id: str) -> Optional[MachineHandle]:
        """
        Get machine details.

        Returns:
            MachineHandle, or None if the machine does not exist
        """
        try:
            data = await self._request("GET", f"/machines/{machine_id}")
        except MachineAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return MachineHandle.from_api(data)

    async def list_machines(self) -> List[MachineHandle]:
        """List all machines in the app namespace."""
        data = await self._request("GET", "/machines")
        return [MachineHandle.from_api(item) for item in data or []]

    async def wait_for_state(self, machine_id: str, target: str, timeout: float = 60.0) -> MachineHandle:
        """
        Poll until the machine reaches the target state.

        Args:
            machine_id: Machine identifier
            target: State to wait for (e.g. "started")
            timeout: Budget in seconds

        Returns:
            Handle observed in the target state

        Raises:
            TerminalStateError: Machine reached a dead state first
            StateTimeoutError: Budget exhausted
            NotFoundError: Machine disappeared
        """
        target = MachineState(target).value
        dead_states = {state.value for state in DEAD_STATES}
        dead_states.discard(target)
        if target == MachineState.DESTROYED.value:
            dead_states.discard(MachineState.DESTROYING.value)

        deadline = self.clock.monotonic() + timeout
        delays = self.poll_schedule.delays()
        last_state = None

        while True:
            machine = await self.get_machine(machine_id)
            if machine is None:
                raise NotFoundError(f"Machine {machine_id} not found")

            if machine.state != last_state:
                logger.debug(f"Machine {machine_id} is {machine.state} (waiting for {target})")
                last_state = machine.state

            if machine.state == target:
                return machine

            if machine.state in dead_states:
                raise TerminalStateError(machine_id, machine.state, target)

            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                raise StateTimeoutError(machine_id, target, timeout, last_state)

            await self.clock.sleep(min(next(delays), remaining))

    async def start_machine(self, machine_id: str) -> None:
        """Start a stopped machine."""
        try:
            await self._request("POST", f"/machines/{machine_id}/start")
        except MachineAPIError as e:
            raise ProvisioningError(
                f"Failed to start machine {machine_id}: {e}", status_code=e.status_code, body=e.body
            ) from e

    async def stop_machine(self, machine_id: str) -> None:
        """Stop a running machine. Stopping an already stopped machine is a no-op."""
        try:
            await self._request("POST", f"/machines/{machine_id}/stop")
        except MachineAPIError as e:
            body = (e.body or "").lower()
            if e.status_code in (409, 412) or "already stopped" in body or "not started" in body:
                logger.debug(f"Machine {machine_id} already stopped")
                return
            raise

    async def destroy_machine(self, machine_id: str) -> None:
        """
        Destroy a machine permanently.

        Stops it first (best effort), then force-deletes it. A machine that
        no longer exists is treated as destroyed.
        """
        try:
            await self.stop_machine(machine_id)
        except MachineAPIError as e:
            logger.debug(f"Stop before destroy of {machine_id} failed, forcing delete: {e}")

        try:
            await self._request("DELETE", f"/machines/{machine_id}?force=true")
        except MachineAPIError as e:
            if e.status_code == 404:
                logger.debug(f"Machine {machine_id} already destroyed")
                return
            raise

        logger.info(f"Destroyed machine {machine_id}")

    def get_urls(self, machine: MachineHandle) -> MachineUrls:
        """
        Derive the URLs of a machine. No network call.

        The preview URL is the public HTTPS hostname; the sync URL is the
        private address of the sync server.
        """
        hostname = self.config.public_hostname.format(
            machine_id=machine.id, app_name=self.config.app_name
        )

        if machine.private_ip:
            host = machine.private_ip
            try:
                if ipaddress.ip_address(host).version == 6:
                    host = f"[{host}]"
            except ValueError:
                pass
        else:
            host = f"{machine.id}.vm.{self.config.app_name}.internal"

        return MachineUrls(
            preview_url=f"https://{hostname}",
            sync_url=f"http://{host}:{self.config.sync_port}",
        )

    async def extend_lease(self, machine_id: str, seconds: int = DEFAULT_LEASE_SECONDS) -> None:
        """
        Record a keep-alive heartbeat on the machine.

        The control plane has no lease primitive; the heartbeat is written
        into the machine metadata by re-posting its config. Whether this
        defers any provider-side auto-stop is not guaranteed.

        Raises:
            NotFoundError: Machine no longer exists
        """
        machine = await self.get_machine(machine_id)
        if machine is None:
            raise NotFoundError(f"Machine {machine_id} not found")

        config = dict(machine.config)
        metadata = dict(config.get("metadata") or {})
        metadata["last_activity"] = self.clock.now().isoformat()
        metadata["lease_seconds"] = str(seconds)
        config["metadata"] = metadata

        await self._request("POST", f"/machines/{machine_id}", {"config": config})
        logger.debug(f"Extended lease on machine {machine_id} by {seconds}s")
