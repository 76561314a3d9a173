from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

from ..helpers import now_ts

INSERT = "INSERT"
UPDATE = "UPDATE"
ALL = "*"

# primary key column per table
ROW_KEYS = {
    "tickets": "ticket_number",
    "orders": "id",
    "order_items": "id",
}


@dataclass
class ChangeEvent:
    table: str
    type: str  # INSERT | UPDATE
    new: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None
    commit_ts: float = field(default_factory=now_ts)

    @property
    def key(self) -> Any:
        return self.new.get(ROW_KEYS.get(self.table, "id"))

    def matches(self, table: str, event: str) -> bool:
        return self.table == table and event in (ALL, self.type)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=d["table"],
            type=d["type"],
            new=d["new"],
            old=d.get("old"),
            commit_ts=float(d["commit_ts"]),
        )


def ticket_updates(numbers: Iterable[int], old_status: str, new_status: str,
                   pending_at: Optional[float], commit_ts: float
                   ) -> List[ChangeEvent]:
    return [
        ChangeEvent(
            table="tickets",
            type=UPDATE,
            old={"ticket_number": n, "status": old_status},
            new={"ticket_number": n, "status": new_status,
                 "pending_at": pending_at},
            commit_ts=commit_ts,
        )
        for n in sorted(numbers)
    ]


class LiveTable:
    """
    Client-side view of a table kept current from a change stream.

    Events are merged last-write-wins per row key: an event whose commit_ts is
    older than the last one applied to that row is dropped, so out of order
    delivery across rows (or replays) cannot roll a row back.
    """

    def __init__(self, table: str, rows: Iterable[Dict[str, Any]] = ()):
        self.table = table
        self.key_col = ROW_KEYS.get(table, "id")
        self.rows: Dict[Any, Dict[str, Any]] = {}
        self._seen: Dict[Any, float] = {}
        for r in rows:
            self.rows[r[self.key_col]] = dict(r)

    def apply(self, ev: ChangeEvent) -> bool:
        if ev.table != self.table:
            return False
        key = ev.key
        if ev.commit_ts < self._seen.get(key, float("-inf")):
            return False
        self._seen[key] = ev.commit_ts
        row = self.rows.setdefault(key, {})
        row.update(ev.new)
        return True

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        return self.rows.get(key)

    def count_by(self, col: str) -> Dict[Any, int]:
        out: Dict[Any, int] = {}
        for r in self.rows.values():
            out[r.get(col)] = out.get(r.get(col), 0) + 1
        return out
