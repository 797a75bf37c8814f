"""Repository layer for tokensync.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from tokensync.repositories.contract import ContractRepository
from tokensync.repositories.current_state import BalanceTotals, CurrentStateRepository
from tokensync.repositories.event import DuplicateGroup, EventRepository
from tokensync.repositories.sync_status import SyncStatusRepository

__all__ = [
    "BalanceTotals",
    "ContractRepository",
    "CurrentStateRepository",
    "DuplicateGroup",
    "EventRepository",
    "SyncStatusRepository",
]
