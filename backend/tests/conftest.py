from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from guestlist_core.aliases import FIELD_ALIASES
from guestlist_core.config import StoreSettings
from guestlist_core.gateway import RemoteGateway
from guestlist_core.models import GuestListMetrics, GuestRecord
from guestlist_core.store import GuestStore

TABLE_PATH_PARTS = 3  # v0 / base / table

DEFAULT_FIELDS = {names[0] for names in FIELD_ALIASES.values()}


class FakeAirtable:
    """In-memory stand-in for one Airtable table, served through ``httpx.MockTransport``."""

    def __init__(self, known_fields: Optional[set[str]] = None) -> None:
        self.known_fields = set(DEFAULT_FIELDS if known_fields is None else known_fields)
        self.records: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.queued_failures: List[httpx.Response] = []
        self._counter = 0

    def add(self, fields: Dict[str, Any], record_id: Optional[str] = None) -> str:
        self._counter += 1
        record_id = record_id or f"rec{self._counter:04d}"
        self.records[record_id] = dict(fields)
        return record_id

    def fields(self, record_id: str) -> Dict[str, Any]:
        return self.records[record_id]

    def fail_next(self, status_code: int, payload: Any) -> None:
        self.queued_failures.append(httpx.Response(status_code, json=payload))

    def requests_for(self, method: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.method == method]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued_failures:
            return self.queued_failures.pop(0)

        parts = request.url.path.strip("/").split("/")
        record_id = parts[TABLE_PATH_PARTS] if len(parts) > TABLE_PATH_PARTS else None

        if request.method == "GET" and record_id is None:
            return self._list(request)
        if request.method == "GET":
            if record_id not in self.records:
                return httpx.Response(404, json={"error": "NOT_FOUND"})
            return httpx.Response(200, json=self._record(record_id))

        body = json.loads(request.content or b"{}")
        fields = body.get("fields") or {}
        for name in fields:
            if name not in self.known_fields:
                return httpx.Response(
                    422,
                    json={
                        "error": {
                            "type": "UNKNOWN_FIELD_NAME",
                            "message": f'Unknown field name: "{name}"',
                        }
                    },
                )

        if request.method == "POST" and record_id is None:
            new_id = self.add({key: value for key, value in fields.items() if value is not None})
            return httpx.Response(200, json=self._record(new_id))
        if request.method == "PATCH" and record_id is not None:
            if record_id not in self.records:
                return httpx.Response(404, json={"error": "NOT_FOUND"})
            current = self.records[record_id]
            for key, value in fields.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            return httpx.Response(200, json=self._record(record_id))
        return httpx.Response(405, json={"error": "METHOD_NOT_ALLOWED"})

    def _list(self, request: httpx.Request) -> httpx.Response:
        page_size = int(request.url.params.get("pageSize", "100"))
        start = int(request.url.params.get("offset") or 0)
        ids = list(self.records)
        end = start + page_size
        payload: Dict[str, Any] = {"records": [self._record(record_id) for record_id in ids[start:end]]}
        if end < len(ids):
            payload["offset"] = str(end)
        return httpx.Response(200, json=payload)

    def _record(self, record_id: str) -> Dict[str, Any]:
        return {"id": record_id, "createdTime": "2025-01-01T00:00:00.000Z", "fields": dict(self.records[record_id])}


class FakeCheckInApi:
    """Minimal check-in API used by client-side tests; every response can be held back."""

    def __init__(self, records: List[GuestRecord]) -> None:
        self.records: Dict[str, GuestRecord] = {record.id: record for record in records}
        self.requests: List[httpx.Request] = []
        self.write_bodies: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_writes_with: Optional[int] = None
        self.offline = False

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("network is down", request=request)
        if self.gate is not None:
            await self.gate.wait()

        if request.method == "GET" and request.url.path == "/guests":
            return self._list(request)

        body = json.loads(request.content or b"{}")
        self.write_bodies.append(body)
        if self.fail_writes_with is not None:
            return httpx.Response(self.fail_writes_with, json={"detail": "remote failure"})
        record = self.records[body["recordId"]]
        if request.url.path == "/checkin":
            record = record.with_check_in(guest=body["guest"], companion=body["plusOne"])
        elif request.url.path == "/gift":
            record = record.with_gift(body["value"])
        else:
            return httpx.Response(404, json={"detail": "Not Found"})
        self.records[record.id] = record
        return httpx.Response(200, json=record.to_api())

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        rows = list(self.records.values())
        query = params.get("q", "").lower()
        if query:
            rows = [record for record in rows if query in record.guest.lower()]
        limit = int(params.get("limit", "100"))
        start = int(params.get("offset") or 0)
        end = start + limit
        metrics = GuestListMetrics.from_records(list(self.records.values()))
        payload = {
            "records": [record.to_api() for record in rows[start:end]],
            "offset": str(end) if end < len(rows) else None,
            "limit": limit,
            "total": len(rows),
            "metrics": metrics.to_api(),
        }
        return httpx.Response(200, json=payload)


class SwitchableTransport(httpx.AsyncBaseTransport):
    """Wraps another transport and simulates losing the network."""

    def __init__(self, inner: httpx.AsyncBaseTransport) -> None:
        self.inner = inner
        self.online = True

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("network is down", request=request)
        return await self.inner.handle_async_request(request)


def make_guest(record_id: str, guest: str, **overrides: Any) -> GuestRecord:
    return GuestRecord(id=record_id, guest=guest, **overrides)


@pytest.fixture
def airtable() -> FakeAirtable:
    return FakeAirtable()


@pytest.fixture
def store_settings() -> StoreSettings:
    return StoreSettings(base_id="appTEST", table_name="Final list", api_key="test-key")


@pytest.fixture
def guest_store(airtable: FakeAirtable, store_settings: StoreSettings) -> GuestStore:
    return GuestStore.from_settings(store_settings, transport=airtable.transport())


@pytest.fixture
def table_gateway(airtable: FakeAirtable, store_settings: StoreSettings) -> RemoteGateway:
    return RemoteGateway.for_remote_store(store_settings, transport=airtable.transport())
