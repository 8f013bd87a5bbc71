"""
Previewly - Ephemeral Preview VM Orchestrator

Runs live, hot-reloading previews of generated source code inside
short-lived virtual machines.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- machines: Control-plane client for preview VMs
- session: Preview session lifecycle and session store
- sync: Client for the in-VM file sync server
- sweeper: Periodic teardown of expired sessions
- storage: Data persistence abstraction
- api: Shared data models for the REST API
- config: Application configuration
"""

__version__ = "1.0.0"
