from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

ARRIVAL_STATES = ("YES", "NO", "UNKNOWN")


def utc_now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def map_arrival_confirmation(value: Any) -> str:
    normalised = str(value or "").strip().upper()
    if normalised in ("YES", "DA"):
        return "YES"
    if normalised in ("NO", "NE"):
        return "NO"
    return "UNKNOWN"


@dataclass
class GuestRecord:
    """One invitee row as loaded from the remote table.

    The two timestamps follow the check-in and gift flags: ``check_in_time``
    is set iff the guest or the companion is checked in, ``farewell_time`` is
    set iff the gift was handed out. Use :meth:`with_check_in` and
    :meth:`with_gift` to derive a new state so the invariants hold.
    """

    id: str
    department: str = ""
    responsible: str = ""
    company: str = ""
    guest: str = ""
    plus_one: Optional[str] = None
    arrival_confirmation: str = "UNKNOWN"
    guest_check_in: bool = False
    plus_one_check_in: bool = False
    check_in_time: Optional[str] = None
    farewell_gift: bool = False
    farewell_time: Optional[str] = None

    @property
    def arrived(self) -> int:
        return int(self.guest_check_in) + int(self.plus_one_check_in)

    @property
    def invited(self) -> int:
        return 1 + (1 if self.plus_one else 0)

    def with_check_in(
        self,
        guest: Optional[bool] = None,
        companion: Optional[bool] = None,
        now: Optional[str] = None,
    ) -> "GuestRecord":
        guest_value = self.guest_check_in if guest is None else bool(guest)
        companion_value = self.plus_one_check_in if companion is None else bool(companion)
        if guest_value or companion_value:
            check_in_time = self.check_in_time or now or utc_now_iso()
        else:
            check_in_time = None
        return replace(
            self,
            guest_check_in=guest_value,
            plus_one_check_in=companion_value,
            check_in_time=check_in_time,
        )

    def with_gift(self, value: bool, now: Optional[str] = None) -> "GuestRecord":
        if value:
            farewell_time = self.farewell_time or now or utc_now_iso()
        else:
            farewell_time = None
        return replace(self, farewell_gift=bool(value), farewell_time=farewell_time)

    def timestamps_consistent(self) -> bool:
        checked_in = self.guest_check_in or self.plus_one_check_in
        return (self.check_in_time is not None) == checked_in and (
            self.farewell_time is not None
        ) == self.farewell_gift

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "GuestRecord":
        return cls(
            id=str(payload.get("id") or ""),
            department=payload.get("pmzDepartment") or "",
            responsible=payload.get("pmzResponsible") or "",
            company=payload.get("company") or "",
            guest=payload.get("guest") or "",
            plus_one=payload.get("plusOne") or None,
            arrival_confirmation=map_arrival_confirmation(payload.get("arrivalConfirmation")),
            guest_check_in=bool(payload.get("guestCheckIn")),
            plus_one_check_in=bool(payload.get("plusOneCheckIn")),
            check_in_time=payload.get("checkInTime") or None,
            farewell_gift=bool(payload.get("farewellGift")),
            farewell_time=payload.get("farewellTime") or None,
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pmzDepartment": self.department,
            "pmzResponsible": self.responsible,
            "company": self.company,
            "guest": self.guest,
            "plusOne": self.plus_one,
            "arrivalConfirmation": self.arrival_confirmation,
            "guestCheckIn": self.guest_check_in,
            "plusOneCheckIn": self.plus_one_check_in,
            "checkInTime": self.check_in_time,
            "farewellGift": self.farewell_gift,
            "farewellTime": self.farewell_time,
        }


@dataclass(frozen=True)
class MetricsDelta:
    arrived: int = 0
    gifts: int = 0

    @classmethod
    def between(cls, previous: GuestRecord, current: GuestRecord) -> "MetricsDelta":
        return cls(
            arrived=current.arrived - previous.arrived,
            gifts=int(current.farewell_gift) - int(previous.farewell_gift),
        )

    def __bool__(self) -> bool:
        return bool(self.arrived or self.gifts)


@dataclass
class GuestListMetrics:
    arrived_total: int = 0
    gifts_given: int = 0
    total_invited: int = 0

    def apply(self, delta: MetricsDelta) -> None:
        self.arrived_total = max(self.arrived_total + delta.arrived, 0)
        self.gifts_given = max(self.gifts_given + delta.gifts, 0)

    @classmethod
    def from_records(cls, records: List[GuestRecord]) -> "GuestListMetrics":
        metrics = cls()
        for record in records:
            metrics.arrived_total += record.arrived
            metrics.gifts_given += int(record.farewell_gift)
            metrics.total_invited += record.invited
        return metrics

    @classmethod
    def from_api(cls, payload: Dict[str, Any] | None) -> "GuestListMetrics":
        payload = payload or {}
        return cls(
            arrived_total=int(payload.get("arrivedTotal") or 0),
            gifts_given=int(payload.get("giftsGiven") or 0),
            total_invited=int(payload.get("totalInvited") or 0),
        )

    def to_api(self) -> Dict[str, int]:
        return {
            "arrivedTotal": self.arrived_total,
            "giftsGiven": self.gifts_given,
            "totalInvited": self.total_invited,
        }


@dataclass
class BreakdownEntry:
    label: str
    invited: int = 0
    arrived: int = 0


@dataclass
class GuestListPage:
    records: List[GuestRecord]
    cursor: Optional[str] = None
    limit: int = 100
    total: int = 0
    metrics: Optional[GuestListMetrics] = None
    departments: List[str] = field(default_factory=list)
    responsibles: List[str] = field(default_factory=list)
    breakdowns: Dict[str, List[BreakdownEntry]] = field(default_factory=dict)

    @property
    def is_last(self) -> bool:
        return not self.cursor

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "GuestListPage":
        breakdowns: Dict[str, List[BreakdownEntry]] = {}
        raw_breakdowns = payload.get("breakdowns")
        if isinstance(raw_breakdowns, dict):
            for key, items in raw_breakdowns.items():
                if not isinstance(items, list):
                    continue
                breakdowns[key] = [
                    BreakdownEntry(
                        label=str(item.get("label") or ""),
                        invited=int(item.get("invited") or 0),
                        arrived=int(item.get("arrived") or 0),
                    )
                    for item in items
                    if isinstance(item, dict)
                ]
        return cls(
            records=[GuestRecord.from_api(row) for row in payload.get("records") or [] if isinstance(row, dict)],
            cursor=payload.get("offset") or None,
            limit=int(payload.get("limit") or 100),
            total=int(payload.get("total") or 0),
            metrics=GuestListMetrics.from_api(payload.get("metrics")),
            departments=list(payload.get("departments") or []),
            responsibles=list(payload.get("responsibles") or []),
            breakdowns=breakdowns,
        )


@dataclass
class QueueItem:
    """A write request persisted for replay once connectivity returns."""

    id: str
    url: str
    method: str
    headers: Dict[str, str]
    body: str
    enqueued_at: str
    retries: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "enqueuedAt": self.enqueued_at,
            "retries": self.retries,
        }

    @classmethod
    def from_json(cls, row: Dict[str, Any]) -> "QueueItem":
        if not isinstance(row.get("id"), str) or not isinstance(row.get("url"), str):
            raise ValueError("Queue item is missing id or url")
        headers = row.get("headers") if isinstance(row.get("headers"), dict) else {}
        return cls(
            id=row["id"],
            url=row["url"],
            method=str(row.get("method") or "POST").upper(),
            headers={str(key): str(value) for key, value in headers.items()},
            body=str(row.get("body") or ""),
            enqueued_at=str(row.get("enqueuedAt") or ""),
            retries=int(row.get("retries") or 0),
        )
