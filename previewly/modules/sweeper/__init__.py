"""
Sweeper Module - Black Box Interface

Purpose: Reclaim machines of sessions past their deadline
Interface: run_once(), start(), stop()
Hidden: Scheduling loop, failure isolation between passes
"""

from .sweeper import SweeperModule

__all__ = ["SweeperModule"]
