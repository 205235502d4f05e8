"""Append-only ledger of settled quota reservations.

Storage is an external concern. The gateway only appends one record per
settled operation and reads aggregate sums back; ``InMemoryUsageLedger`` is
the default backend and the one used in tests.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional


class UsageOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class UsageRecord:
    """One settled reservation.

    Attributes:
        operation_kind: Provider operation the reservation was for
        cost_charged: Units actually charged (0 for rollbacks)
        timestamp: When the reservation was settled (aware UTC)
        outcome: committed or rolled_back
        reservation_id: Identifier of the settled reservation
    """

    operation_kind: str
    cost_charged: int
    timestamp: datetime
    outcome: UsageOutcome
    reservation_id: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["outcome"] = self.outcome.value
        return data


class UsageLedger(ABC):
    """Abstract ledger backend."""

    @abstractmethod
    async def append(self, record: UsageRecord) -> None:
        """Append a record. Records are never updated or removed."""

    @abstractmethod
    async def records(self, since: Optional[datetime] = None) -> List[UsageRecord]:
        """Records settled at or after ``since`` (all records when None)."""

    async def total_cost(self, since: Optional[datetime] = None) -> int:
        """Sum of units charged since ``since``."""
        return sum(r.cost_charged for r in await self.records(since))


class InMemoryUsageLedger(UsageLedger):
    """Process-local ledger, bounded to the most recent ``max_records`` entries."""

    def __init__(self, max_records: int = 10000):
        self._records: List[UsageRecord] = []
        self._max_records = max_records
        self._lock = asyncio.Lock()

    async def append(self, record: UsageRecord) -> None:
        async with self._lock:
            self._records.append(record)
            if len(self._records) > self._max_records:
                del self._records[: len(self._records) - self._max_records]

    async def records(self, since: Optional[datetime] = None) -> List[UsageRecord]:
        async with self._lock:
            if since is None:
                return list(self._records)
            return [r for r in self._records if r.timestamp >= since]

    def __len__(self) -> int:
        return len(self._records)
