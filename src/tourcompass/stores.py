"""Contracts of the collaborators the engine talks to.

All calls are async; each collaborator is expected to return or fail within
its own time bound. `tourcompass.data.DatabaseStore` implements all four on SQLite.
"""
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from tourcompass.models import AvailabilityRecord, LogEntry, TourConfig


class TourStore(Protocol):
    async def get_tour(self, tour_id: str) -> Optional[TourConfig]: ...

    async def find_published_tours(self, limit: Optional[int] = None) -> List[TourConfig]: ...


class AvailabilityStore(Protocol):
    async def find_availability(self, tour_ref: str) -> Optional[AvailabilityRecord]: ...

    async def insert_availability(self, record: AvailabilityRecord) -> AvailabilityRecord: ...

    async def update_availability(self, record: AvailabilityRecord) -> AvailabilityRecord:
        """Full replacement of the record with the same id."""
        ...


class PolicyStore(Protocol):
    async def get_season_policy(self, ref: str) -> Optional[Dict]:
        """{'name': ..., 'jsonCode': list or JSON string}"""
        ...

    async def get_cancellation_policy(self, ref: str) -> Optional[Dict]: ...


class LogSink(Protocol):
    async def insert_log(self, entry: LogEntry) -> LogEntry: ...

    async def load_logs(self, since: Optional[datetime] = None, state_type: Optional[str] = None,
                        limit: Optional[int] = None) -> List[LogEntry]:
        """Newest first."""
        ...

    async def delete_logs_before(self, cutoff: datetime) -> int:
        """Number of entries removed; System Configuration entries are kept."""
        ...
