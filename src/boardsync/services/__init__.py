"""Service layer."""

from boardsync.services.lanes import Lane, SerialLanes
from boardsync.services.sync import SyncEngine
from boardsync.services.types import BoardId, CardId, ColumnId, SyncResult, TagId

__all__ = [
    "BoardId",
    "CardId",
    "ColumnId",
    "Lane",
    "SerialLanes",
    "SyncEngine",
    "SyncResult",
    "TagId",
]
