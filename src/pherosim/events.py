"""
Reaction events and the bounded event log.

Events are transient: they are produced during a reaction sub-step,
pushed to subscribers with the tick result, kept in a bounded log for
``recent_events`` queries and then discarded (oldest first by count, and
optionally by age).
"""

from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .reactions import RECORD_VERSION, check_record_version


@dataclass(frozen=True)
class ReactionEvent:
    """One fired reaction.

    Attributes
    ----------
    reaction_id : str
        Id of the reaction that fired
    time : float
        Simulated time of the event
    cell : tuple of int
        (x, y) lattice cell where it fired
    reactants_consumed : tuple of (species_id, molecules)
    products_produced : tuple of (species_id, molecules)
    propensity : float
        Propensity of the fired (cell, reaction) pair at selection time
    partition : int
        Index of the spatial partition that produced the event
    """
    reaction_id: str
    time: float
    cell: Tuple[int, int]
    reactants_consumed: Tuple[Tuple[str, int], ...]
    products_produced: Tuple[Tuple[str, int], ...]
    propensity: float
    partition: int = 0

    def to_record(self) -> dict:
        return {
            "version": RECORD_VERSION,
            "reaction_id": self.reaction_id,
            "time": float(self.time),
            "cell": [int(self.cell[0]), int(self.cell[1])],
            "reactants_consumed": [[sp, int(n)] for sp, n in self.reactants_consumed],
            "products_produced": [[sp, int(n)] for sp, n in self.products_produced],
            "propensity": float(self.propensity),
            "partition": int(self.partition),
        }

    @classmethod
    def from_record(cls, record: dict) -> "ReactionEvent":
        check_record_version(record)
        return cls(
            reaction_id=record["reaction_id"],
            time=float(record["time"]),
            cell=(int(record["cell"][0]), int(record["cell"][1])),
            reactants_consumed=tuple((sp, int(n)) for sp, n in record["reactants_consumed"]),
            products_produced=tuple((sp, int(n)) for sp, n in record["products_produced"]),
            propensity=float(record["propensity"]),
            partition=int(record.get("partition", 0)),
        )


class EventLog:
    """Bounded, time-ordered log of reaction events.

    Parameters
    ----------
    capacity : int
        Maximum number of events kept
    retention_time : float, optional
        Events older than ``latest_time - retention_time`` are dropped
    """

    def __init__(self, capacity: int = 10000, retention_time: Optional[float] = None):
        if capacity < 1:
            raise ValueError(f"Event log capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.retention_time = retention_time
        self._events = deque(maxlen=capacity)
        self.total_recorded = 0

    def extend(self, events: Iterable[ReactionEvent], now: Optional[float] = None) -> None:
        for event in events:
            self._events.append(event)
            self.total_recorded += 1
        if self.retention_time is not None and now is not None:
            horizon = now - self.retention_time
            while self._events and self._events[0].time < horizon:
                self._events.popleft()

    def recent(self, count: int = 100) -> List[ReactionEvent]:
        if count <= 0:
            return []
        return list(self._events)[-count:]

    def clear(self) -> None:
        self._events.clear()
        self.total_recorded = 0

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))
