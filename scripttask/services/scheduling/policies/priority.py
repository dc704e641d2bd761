"""
Deferred firing queue.

Firings blocked by a maintenance window under the `queue` missed-job policy
wait here until the periodic queue processor re-evaluates them. Each
schedule holds at most one entry; re-queuing replaces the old entry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from heapq import heapify, heappop, heappush
from typing import Any, Dict, List, Optional

from scripttask.models.scheduling import SchedulePriority
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import utcnow

logger = get_logger(__name__)


@dataclass
class DeferredFiring:
    """Heap entry for a schedule waiting to be re-evaluated"""

    weight: int
    queued_at: datetime
    schedule_id: str
    reason: str = ""
    attempts: int = 0
    sequence: int = field(default=0, compare=False)

    def __lt__(self, other) -> bool:
        """Lower weight first, then oldest entry, then insertion order"""
        if self.weight != other.weight:
            return self.weight < other.weight
        if self.queued_at != other.queued_at:
            return self.queued_at < other.queued_at
        return self.sequence < other.sequence


class DeferredQueue:
    """Heap-based priority queue of deferred schedule firings"""

    def __init__(self):
        self._heap: List[DeferredFiring] = []
        self._entries: Dict[str, DeferredFiring] = {}
        self._sequence = 0

        self._stats = {
            "total_enqueued": 0,
            "total_dequeued": 0,
            "current_size": 0,
        }

    @staticmethod
    def weight_for(priority: SchedulePriority) -> int:
        """Deferred firings rank one step below fresh firings of the same priority"""
        return SchedulePriority(priority).weight + 1

    def enqueue(
        self,
        schedule_id: str,
        priority: SchedulePriority,
        reason: str = "",
        queued_at: Optional[datetime] = None,
    ) -> DeferredFiring:
        attempts = 0
        previous = self._entries.pop(schedule_id, None)
        if previous is not None:
            attempts = previous.attempts
            queued_at = queued_at or previous.queued_at

        self._sequence += 1
        entry = DeferredFiring(
            weight=self.weight_for(priority),
            queued_at=queued_at or utcnow(),
            schedule_id=schedule_id,
            reason=reason,
            attempts=attempts + 1,
            sequence=self._sequence,
        )
        heappush(self._heap, entry)
        self._entries[schedule_id] = entry
        if previous is not None:
            self._compact()

        self._stats["total_enqueued"] += 1
        self._stats["current_size"] = len(self._entries)

        logger.debug(
            "Schedule firing deferred",
            schedule_id=schedule_id,
            weight=entry.weight,
            attempts=entry.attempts,
            queue_size=len(self._entries),
        )
        return entry

    def dequeue(self) -> Optional[DeferredFiring]:
        """Remove and return the highest priority entry"""
        while self._heap:
            entry = heappop(self._heap)
            # Skip entries superseded by a later enqueue or removed
            if self._entries.get(entry.schedule_id) is entry:
                del self._entries[entry.schedule_id]
                self._stats["total_dequeued"] += 1
                self._stats["current_size"] = len(self._entries)
                return entry
        return None

    def drain(self) -> List[DeferredFiring]:
        """Dequeue everything currently queued, in priority order"""
        entries = []
        entry = self.dequeue()
        while entry is not None:
            entries.append(entry)
            entry = self.dequeue()
        return entries

    def remove(self, schedule_id: str) -> bool:
        removed = self._entries.pop(schedule_id, None) is not None
        if removed:
            self._compact()
        self._stats["current_size"] = len(self._entries)
        return removed

    def _compact(self) -> None:
        """Drop superseded heap entries once they outnumber the live ones"""
        if not self._entries:
            self._heap.clear()
        elif len(self._heap) > 2 * len(self._entries):
            self._heap = list(self._entries.values())
            heapify(self._heap)

    def __contains__(self, schedule_id: str) -> bool:
        return schedule_id in self._entries

    def size(self) -> int:
        return len(self._entries)

    def is_empty(self) -> bool:
        return not self._entries

    def clear(self) -> int:
        count = len(self._entries)
        self._heap.clear()
        self._entries.clear()
        self._stats["current_size"] = 0
        return count

    def get_queue_contents(self) -> List[Dict[str, Any]]:
        return [
            {
                "schedule_id": e.schedule_id,
                "weight": e.weight,
                "queued_at": e.queued_at.isoformat(),
                "reason": e.reason,
                "attempts": e.attempts,
            }
            for e in sorted(self._entries.values())
        ]

    def get_statistics(self) -> Dict[str, Any]:
        return {**self._stats, "heap_size": len(self._heap)}
