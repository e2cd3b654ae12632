"""Worker layer - Scheduled detection passes and cooldown."""

from telltide.worker.cooldown import CooldownGate
from telltide.worker.scheduler import MetaEventWorker, PassSummary, WorkerState, WorkerStats

__all__ = [
    "CooldownGate",
    "MetaEventWorker",
    "PassSummary",
    "WorkerState",
    "WorkerStats",
]
