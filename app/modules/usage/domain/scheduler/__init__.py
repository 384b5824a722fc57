"""
Scheduler Service - Package Entry Point

Exports the scheduler orchestrator that drives the periodic cache refresh.
"""

from .orchestrator import SchedulerOrchestrator, SchedulerService

__all__ = [
    "SchedulerService",
    "SchedulerOrchestrator",
]
