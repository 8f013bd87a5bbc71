"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class MachineConfig:
    """Control-plane configuration for preview machines."""
    api_base: str
    app_name: str
    api_token: Optional[str]
    region: str
    cpu_kind: str
    cpus: int
    memory_mb: int
    image: str
    dev_port: int
    sync_port: int
    public_hostname: str

    @property
    def is_configured(self) -> bool:
        """Check if control-plane credentials are present."""
        return bool(self.api_token) and bool(self.app_name)


@dataclass
class PreviewSettings:
    """Session lifetime and wait budgets."""
    session_ttl_seconds: int = 1800
    start_timeout_seconds: float = 120.0
    settle_delay_seconds: float = 5.0
    poll_interval_seconds: float = 1.0
    poll_backoff_factor: float = 1.0
    poll_max_interval_seconds: float = 5.0
    health_attempts: int = 20
    health_interval_seconds: float = 2.0
    health_timeout_seconds: float = 4.0
    sync_timeout_seconds: float = 60.0


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_machine_config(self) -> MachineConfig:
        """Get control-plane configuration."""
        ...

    def get_preview_settings(self) -> PreviewSettings:
        """Get session lifetime and wait budgets."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_machine_config(self) -> MachineConfig:
        """Get control-plane configuration from environment variables."""
        return MachineConfig(
            api_base=os.getenv("MACHINES_API_BASE", "https://api.machines.dev/v1").rstrip("/"),
            app_name=os.getenv("PREVIEW_APP_NAME", "previewly-previews"),
            api_token=os.getenv("MACHINES_API_TOKEN"),
            region=os.getenv("PREVIEW_REGION", "arn"),
            cpu_kind=os.getenv("PREVIEW_CPU_KIND", "shared"),
            cpus=int(os.getenv("PREVIEW_CPUS", "1")),
            memory_mb=int(os.getenv("PREVIEW_MEMORY_MB", "512")),
            image=os.getenv("PREVIEW_IMAGE", "registry.fly.io/previewly-preview-base:latest"),
            dev_port=int(os.getenv("PREVIEW_DEV_PORT", "5173")),
            sync_port=int(os.getenv("PREVIEW_SYNC_PORT", "3001")),
            public_hostname=os.getenv("PREVIEW_PUBLIC_HOSTNAME", "{machine_id}.{app_name}.fly.dev"),
        )

    def get_preview_settings(self) -> PreviewSettings:
        """Get session lifetime and wait budgets from environment variables."""
        return PreviewSettings(
            session_ttl_seconds=int(os.getenv("PREVIEW_SESSION_TTL", "1800")),
            start_timeout_seconds=float(os.getenv("PREVIEW_START_TIMEOUT", "120")),
            settle_delay_seconds=float(os.getenv("PREVIEW_SETTLE_DELAY", "5")),
            poll_interval_seconds=float(os.getenv("PREVIEW_POLL_INTERVAL", "1")),
            poll_backoff_factor=float(os.getenv("PREVIEW_POLL_BACKOFF", "1")),
            poll_max_interval_seconds=float(os.getenv("PREVIEW_POLL_MAX_INTERVAL", "5")),
            health_attempts=int(os.getenv("PREVIEW_HEALTH_ATTEMPTS", "20")),
            health_interval_seconds=float(os.getenv("PREVIEW_HEALTH_INTERVAL", "2")),
            health_timeout_seconds=float(os.getenv("PREVIEW_HEALTH_TIMEOUT", "4")),
            sync_timeout_seconds=float(os.getenv("PREVIEW_SYNC_TIMEOUT", "60")),
        )
