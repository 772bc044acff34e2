"""Core contracts/ports."""

from .ledger import LedgerClient, RandomnessOracle
from .repositories import EventLogRepository, JobRepository, MirrorRepository
from .scheduling import JobScheduler

__all__ = [
    "LedgerClient",
    "RandomnessOracle",
    "JobRepository",
    "MirrorRepository",
    "EventLogRepository",
    "JobScheduler",
]
