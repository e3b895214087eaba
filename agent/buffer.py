from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, NewType, Optional, Protocol, Sequence

ReadingId = NewType("ReadingId", str)

READINGS_KEY = "readings"
AGGREGATES_KEY = "aggregates"


def new_reading_id() -> ReadingId:
    return ReadingId(uuid.uuid4().hex)


def _parse_dt(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp missing")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class RecordStore(Protocol):
    def put(self, key: str, records: List[Dict[str, Any]]) -> None: ...

    def get(self, key: str) -> List[Dict[str, Any]] | None: ...


@dataclass
class Reading:
    id: ReadingId
    timestamp: datetime
    value: float
    sent: bool = False

    @classmethod
    def create(cls, value: float, *, timestamp: datetime | None = None) -> "Reading":
        return cls(
            id=new_reading_id(),
            timestamp=timestamp or datetime.now(timezone.utc),
            value=float(value),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "sent": self.sent,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Reading":
        reading_id = record.get("id")
        if not isinstance(reading_id, str) or not reading_id:
            raise ValueError("reading id missing")
        value = record.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("reading value must be numeric")
        return cls(
            id=ReadingId(reading_id),
            timestamp=_parse_dt(record.get("timestamp")),
            value=float(value),
            sent=bool(record.get("sent", False)),
        )


@dataclass(frozen=True)
class Aggregate:
    """Server-pushed result as seen by the client."""

    timestamp: datetime
    value: float

    def to_record(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Aggregate":
        value = record.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("aggregate value must be numeric")
        return cls(timestamp=_parse_dt(record.get("timestamp")), value=float(value))


def last_sent_index(readings: Sequence[Reading]) -> Optional[int]:
    for idx in range(len(readings) - 1, -1, -1):
        if readings[idx].sent:
            return idx
    return None


class SampleBuffer:
    """Ordered log of locally generated readings.

    Mutations only touch memory; `save()` is the persistence boundary. The
    owner calls it after each batch of mutations.
    """

    def __init__(self, store: RecordStore, *, key: str = READINGS_KEY) -> None:
        self.store = store
        self.key = key
        self._readings: List[Reading] = []
        self._index: Dict[ReadingId, int] = {}

    def load(self) -> int:
        records = self.store.get(self.key) or []
        readings: List[Reading] = []
        for record in records:
            try:
                readings.append(Reading.from_record(record))
            except (TypeError, ValueError) as exc:
                print(f"[relay-agent] skipping malformed buffered reading: {exc}")
        self._readings = readings
        self._reindex()
        return len(readings)

    def save(self) -> None:
        self.store.put(self.key, [r.to_record() for r in self._readings])

    def _reindex(self) -> None:
        self._index = {r.id: idx for idx, r in enumerate(self._readings)}

    def __len__(self) -> int:
        return len(self._readings)

    def append(self, reading: Reading) -> None:
        if reading.id in self._index:
            raise ValueError(f"duplicate reading id {reading.id}")
        self._index[reading.id] = len(self._readings)
        self._readings.append(reading)

    def get(self, reading_id: ReadingId) -> Optional[Reading]:
        idx = self._index.get(reading_id)
        return self._readings[idx] if idx is not None else None

    def mark_sent(self, reading_id: ReadingId) -> bool:
        reading = self.get(reading_id)
        if reading is None:
            return False
        reading.sent = True
        return True

    def mark_unsent(self, indices: range) -> int:
        """Flip `sent` back to False for every index in range; returns flips made."""

        flipped = 0
        for idx in indices:
            if idx < 0 or idx >= len(self._readings):
                continue
            reading = self._readings[idx]
            if reading.sent:
                reading.sent = False
                flipped += 1
        return flipped

    def all(self) -> List[Reading]:
        return list(self._readings)

    def unsent(self) -> List[Reading]:
        return [r for r in self._readings if not r.sent]

    def clear(self) -> None:
        self._readings = []
        self._index = {}


class AggregateLog:
    """Received aggregates, persisted independently of the readings."""

    def __init__(self, store: RecordStore, *, key: str = AGGREGATES_KEY) -> None:
        self.store = store
        self.key = key
        self._items: List[Aggregate] = []

    def load(self) -> int:
        items: List[Aggregate] = []
        for record in self.store.get(self.key) or []:
            try:
                items.append(Aggregate.from_record(record))
            except (TypeError, ValueError) as exc:
                print(f"[relay-agent] skipping malformed stored aggregate: {exc}")
        self._items = items
        return len(items)

    def save(self) -> None:
        self.store.put(self.key, [a.to_record() for a in self._items])

    def __len__(self) -> int:
        return len(self._items)

    def append(self, aggregate: Aggregate) -> None:
        self._items.append(aggregate)

    def all(self) -> List[Aggregate]:
        return list(self._items)

    def last(self) -> Optional[Aggregate]:
        return self._items[-1] if self._items else None

    def clear(self) -> None:
        self._items = []
