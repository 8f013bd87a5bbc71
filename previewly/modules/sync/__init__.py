"""
Sync Module - Black Box Interface

Purpose: Push generated files into a running preview VM
Interface: wait_until_healthy(), sync_files(), update_file(), delete_file(), reset()
Hidden: Sync server wire format, health check retries

Replaceable with any transport that applies a file map to the preview project.
"""

from .sync import FileResult, SyncModule, SyncResult

__all__ = ["FileResult", "SyncModule", "SyncResult"]
