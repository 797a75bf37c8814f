"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from tokensync.models.contract import Contract, ContractType
from tokensync.models.current_state import CurrentState
from tokensync.models.event import ZERO_ADDRESS, Event
from tokensync.models.sync_status import CheckpointStatus, SyncStatus

__all__ = [
    "Contract",
    "ContractType",
    "CurrentState",
    "Event",
    "ZERO_ADDRESS",
    "CheckpointStatus",
    "SyncStatus",
]
