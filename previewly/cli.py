"""Previewly operator CLI."""

import asyncio
import logging.config

import click
import uvicorn
from dotenv import load_dotenv

from previewly.config.provider import EnvConfigProvider
from previewly.logging_config import get_logging_config

load_dotenv()


@click.group()
def main():
    """Previewly - ephemeral preview VMs."""


@main.command()
@click.option("--host", "host", default=None, help="Bind address (defaults to API_HOST)")
@click.option("--port", "port", default=None, type=int, help="Bind port (defaults to API_PORT)")
@click.option("--reload", "reload", is_flag=True, default=False)
def serve(host, port, reload):
    """Run the HTTP API and the in-process expiry sweeper."""
    from previewly.modules.config import get_config

    config = get_config()
    uvicorn.run(
        "previewly.main:app",
        host=host or config.get("host"),
        port=port or config.get("port"),
        reload=reload,
        log_level=config.get("log_level").lower(),
        log_config=get_logging_config(config.get("log_level")),
    )


async def _sweep_once() -> int:
    from previewly.main import build_session_module, build_session_store, config
    from previewly.modules.storage import StorageModule

    storage = StorageModule.from_config(config) if config.get("session_store") == "redis" else None
    store = await build_session_store(storage)
    session_module = build_session_module(store)
    try:
        return await session_module.cleanup_expired_sessions()
    finally:
        await session_module.machines.aclose()
        await session_module.sync.aclose()
        if storage:
            await storage.disconnect()


@main.command()
def sweep():
    """Run one expiry sweep (for cron-style hosts)."""
    count = asyncio.run(_sweep_once())
    click.echo(f"Processed {count} expired sessions")


async def _list_machines():
    from previewly.modules.machines import MachineModule

    machines = MachineModule(EnvConfigProvider().get_machine_config())
    try:
        return await machines.list_machines()
    finally:
        await machines.aclose()


@main.command()
def machines():
    """List machines in the preview app namespace."""
    logging.config.dictConfig(get_logging_config())
    for machine in asyncio.run(_list_machines()):
        click.echo(f"{machine.id}\t{machine.state}\t{machine.region}\t{machine.name}")


if __name__ == "__main__":
    main()
