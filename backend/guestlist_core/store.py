from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from .aliases import FieldAliasResolver
from .config import DEFAULT_PAGE_SIZE, StoreSettings
from .errors import RecordNotFoundError, RemoteStoreError
from .gateway import RemoteGateway
from .models import (
    BreakdownEntry,
    GuestListMetrics,
    GuestListPage,
    GuestRecord,
    map_arrival_confirmation,
)

logger = logging.getLogger(__name__)

METADATA_CACHE_TTL = 60.0
# Airtable refuses pageSize values above 100.
REMOTE_MAX_PAGE_SIZE = 100
SEARCH_FIELDS = ("guest", "plusOne", "responsible", "company")


@dataclass
class ListMetadata:
    timestamp: float
    total: int
    metrics: GuestListMetrics
    departments: List[str] = field(default_factory=list)
    responsibles: List[str] = field(default_factory=list)
    breakdowns: Dict[str, List[BreakdownEntry]] = field(default_factory=dict)


def _escape_formula_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GuestStore:
    """Guest list access on top of the remote table.

    All physical field names go through the alias resolver, so a renamed
    column only needs a new alias entry. Aggregate metadata (totals, filter
    options, breakdowns) needs a full scan and is cached for a minute; every
    write drops the cache.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        resolver: FieldAliasResolver | None = None,
        settings: StoreSettings | None = None,
        metadata_ttl: float = METADATA_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.resolver = resolver or FieldAliasResolver(gateway)
        self.settings = settings
        self.metadata_ttl = metadata_ttl
        self._clock = clock
        self._metadata: ListMetadata | None = None

    @classmethod
    def from_settings(
        cls, settings: StoreSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "GuestStore":
        gateway = RemoteGateway.for_remote_store(settings, transport=transport)
        return cls(gateway, settings=settings)

    async def aclose(self) -> None:
        await self.gateway.aclose()

    # ------------------------------------------------------------------
    # Mapping helpers

    def map_record(self, record: Dict[str, Any]) -> GuestRecord:
        fields = record.get("fields") if isinstance(record.get("fields"), dict) else {}
        read = self.resolver.read

        def text(logical: str) -> str:
            value = read(fields, logical)
            return value if isinstance(value, str) else ""

        def flag(logical: str) -> bool:
            value = read(fields, logical)
            return value if isinstance(value, bool) else False

        plus_one = text("plusOne")
        return GuestRecord(
            id=str(record.get("id") or ""),
            department=text("department"),
            responsible=text("responsible"),
            company=text("company"),
            guest=text("guest"),
            plus_one=plus_one or None,
            arrival_confirmation=map_arrival_confirmation(read(fields, "arrivalConfirmation")),
            guest_check_in=flag("guestCheckIn"),
            plus_one_check_in=flag("plusOneCheckIn"),
            check_in_time=text("checkInTime") or None,
            farewell_gift=flag("farewellGift"),
            farewell_time=text("farewellTime") or None,
        )

    def build_filter_formula(self, q: str = "", department: str = "", responsible: str = "") -> str | None:
        clauses: List[str] = []
        name = self.resolver.physical_name

        if q:
            escaped = _escape_formula_value(q.lower())
            targets = ",".join(f"FIND('{escaped}', LOWER({{{name(logical)}}}))" for logical in SEARCH_FIELDS)
            clauses.append(f"OR({targets})")
        if department:
            clauses.append(f"{{{name('department')}}} = '{_escape_formula_value(department)}'")
        if responsible:
            clauses.append(f"{{{name('responsible')}}} = '{_escape_formula_value(responsible)}'")

        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return f"AND({','.join(clauses)})"

    # ------------------------------------------------------------------
    # Reads

    async def list_guests(
        self,
        q: str = "",
        department: str = "",
        responsible: str = "",
        limit: int = DEFAULT_PAGE_SIZE,
        offset: str = "",
    ) -> GuestListPage:
        page_size = max(1, min(int(limit), REMOTE_MAX_PAGE_SIZE))
        params: Dict[str, Any] = {"pageSize": str(page_size)}
        if offset:
            params["offset"] = offset
        formula = self.build_filter_formula(q.strip(), department.strip(), responsible.strip())
        if formula:
            params["filterByFormula"] = formula

        payload = await self.gateway.request_json("GET", "", params=params)
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            raise RemoteStoreError("Unexpected payload from remote guest list")

        metadata = await self.metadata()
        return GuestListPage(
            records=[self.map_record(row) for row in payload["records"] if isinstance(row, dict)],
            cursor=payload.get("offset") or None,
            limit=page_size,
            total=metadata.total,
            metrics=metadata.metrics,
            departments=metadata.departments,
            responsibles=metadata.responsibles,
            breakdowns=metadata.breakdowns,
        )

    async def fetch_record(self, record_id: str) -> GuestRecord:
        try:
            payload = await self.gateway.request_json("GET", quote(record_id, safe=""))
        except RemoteStoreError as exc:
            if exc.status_code == 404:
                raise RecordNotFoundError(f"Guest record {record_id} not found") from exc
            raise
        if not isinstance(payload, dict):
            raise RemoteStoreError(f"Unexpected payload for guest record {record_id}")
        return self.map_record(payload)

    async def metadata(self) -> ListMetadata:
        cached = self._metadata
        if cached is not None and self._clock() - cached.timestamp < self.metadata_ttl:
            return cached

        records = [self.map_record(row) for row in await self._fetch_all_records()]
        departments: Dict[str, BreakdownEntry] = {}
        responsibles: Dict[str, BreakdownEntry] = {}

        for record in records:
            for label, bucket in ((record.department, departments), (record.responsible, responsibles)):
                if not label:
                    continue
                entry = bucket.setdefault(label, BreakdownEntry(label=label))
                entry.invited += record.invited
                entry.arrived += record.arrived

        def ordered(bucket: Dict[str, BreakdownEntry]) -> List[BreakdownEntry]:
            return sorted(bucket.values(), key=lambda item: item.label.casefold())

        self._metadata = ListMetadata(
            timestamp=self._clock(),
            total=len(records),
            metrics=GuestListMetrics.from_records(records),
            departments=[entry.label for entry in ordered(departments)],
            responsibles=[entry.label for entry in ordered(responsibles)],
            breakdowns={
                "byDepartment": ordered(departments),
                "byResponsible": ordered(responsibles),
            },
        )
        return self._metadata

    def clear_metadata_cache(self) -> None:
        self._metadata = None

    async def _fetch_all_records(self) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        offset: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"pageSize": str(REMOTE_MAX_PAGE_SIZE)}
            if offset:
                params["offset"] = offset
            payload = await self.gateway.request_json("GET", "", params=params)
            if not isinstance(payload, dict):
                raise RemoteStoreError("Unexpected payload from remote guest list")
            results.extend(row for row in payload.get("records") or [] if isinstance(row, dict))
            offset = payload.get("offset")
            if not offset:
                return results

    # ------------------------------------------------------------------
    # Writes

    async def create_guest(self, payload: Dict[str, Any]) -> str:
        guest = str(payload.get("guest") or "").strip()
        if not guest:
            raise ValueError("Guest name is required")

        fields: Dict[str, Any] = {"guest": guest}
        for logical in ("company", "department", "responsible", "plusOne"):
            value = str(payload.get(logical) or "").strip()
            if value:
                fields[logical] = value

        record = await self.resolver.write(fields)
        self.clear_metadata_cache()
        logger.info("Created guest record %s", record.get("id"))
        return str(record["id"])

    async def toggle_check_in(self, record_id: str, guest: bool, plus_one: bool) -> GuestRecord:
        previous = await self.fetch_record(record_id)
        updated = previous.with_check_in(guest=guest, companion=plus_one)
        record = await self.resolver.write(
            {
                "guestCheckIn": updated.guest_check_in,
                "plusOneCheckIn": updated.plus_one_check_in,
                "checkInTime": updated.check_in_time,
            },
            record_id=record_id,
        )
        self.clear_metadata_cache()
        return self.map_record(record)

    async def toggle_gift(self, record_id: str, value: bool) -> GuestRecord:
        # Only an existing hand-out time needs preserving, so unsetting skips the read.
        previous = await self.fetch_record(record_id) if value else GuestRecord(id=record_id)
        updated = previous.with_gift(value)
        record = await self.resolver.write(
            {"farewellGift": updated.farewell_gift, "farewellTime": updated.farewell_time},
            record_id=record_id,
        )
        self.clear_metadata_cache()
        return self.map_record(record)

    async def update_companion(self, record_id: str, name: Optional[str]) -> GuestRecord:
        cleaned = (name or "").strip()
        record = await self.resolver.write({"plusOne": cleaned or None}, record_id=record_id)
        self.clear_metadata_cache()
        return self.map_record(record)
