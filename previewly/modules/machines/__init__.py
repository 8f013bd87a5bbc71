"""
Machine Module - Black Box Interface

Purpose: Provision and tear down preview VMs
Interface: create_machine(), get_machine(), wait_for_state(), destroy_machine(), get_urls()
Hidden: Control-plane REST API, authentication, polling

Replaceable with any machine provider exposing the same operations.
"""

from .machines import MachineHandle, MachineModule, MachineUrls

__all__ = ["MachineHandle", "MachineModule", "MachineUrls"]
