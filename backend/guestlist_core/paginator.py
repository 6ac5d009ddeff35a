from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import DEFAULT_PAGE_SIZE
from .errors import RemoteStoreError
from .gateway import RemoteGateway
from .models import GuestListMetrics, GuestListPage, GuestRecord, MetricsDelta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListFilters:
    q: str = ""
    department: str = ""
    responsible: str = ""

    def to_params(self) -> Dict[str, str]:
        params = {
            "q": self.q.strip(),
            "department": self.department.strip(),
            "responsible": self.responsible.strip(),
        }
        return {key: value for key, value in params.items() if value}


class ListPaginator:
    """The loaded window of guest records, one page at a time.

    Pages are fetched with the server's continuation cursor and appended in
    order. Changing filters or revalidating throws the window away and
    starts again from the first page; a fetch that was started for an
    older window is allowed to finish but its result is dropped. Aggregate
    metrics live on the first page only and are adjusted with deltas.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        page_size: int = DEFAULT_PAGE_SIZE,
        filters: ListFilters | None = None,
        path: str = "/guests",
    ) -> None:
        self.gateway = gateway
        self.page_size = page_size
        self.filters = filters or ListFilters()
        self.path = path
        self.pages: List[GuestListPage] = []
        self.generation = 0
        self.version = 0

    @property
    def records(self) -> List[GuestRecord]:
        return [record for page in self.pages for record in page.records]

    @property
    def metrics(self) -> GuestListMetrics | None:
        return self.pages[0].metrics if self.pages else None

    @property
    def cursor(self) -> str | None:
        return self.pages[-1].cursor if self.pages else None

    @property
    def has_more(self) -> bool:
        return not self.pages or bool(self.pages[-1].cursor)

    def get(self, record_id: str) -> GuestRecord | None:
        for page in self.pages:
            for record in page.records:
                if record.id == record_id:
                    return record
        return None

    async def load_page(
        self, cursor: str | None = None, filters: ListFilters | None = None
    ) -> GuestListPage | None:
        """Fetch one page and merge it into the window.

        Without a cursor the window restarts from the first page. Returns
        ``None`` when the window was reset while the request was in flight.
        """

        if cursor is None or (filters is not None and filters != self.filters):
            self._reset(filters)
            cursor = None

        generation = self.generation
        params = {**self.filters.to_params(), "limit": str(self.page_size)}
        if cursor:
            params["offset"] = cursor

        payload = await self.gateway.request_json("GET", self.path, params=params)
        if generation != self.generation:
            logger.debug("Discarding guest page from superseded fetch generation %d", generation)
            return None
        if not isinstance(payload, dict):
            raise RemoteStoreError("Unexpected guest list payload")

        page = GuestListPage.from_api(payload)
        self._merge(page)
        return page

    async def load_next_page(self) -> GuestListPage | None:
        if not self.pages:
            return await self.load_page()
        if not self.has_more:
            return None
        return await self.load_page(self.cursor)

    async def load_all(self) -> List[GuestRecord]:
        while self.has_more:
            page = await self.load_next_page()
            if page is None:
                break
        return self.records

    async def set_filters(self, filters: ListFilters) -> GuestListPage | None:
        return await self.load_page(None, filters)

    async def revalidate(self) -> GuestListPage | None:
        logger.info("Revalidating guest list window from the first page")
        return await self.load_page(None)

    def replace_record(self, record: GuestRecord) -> bool:
        for page in self.pages:
            for index, existing in enumerate(page.records):
                if existing.id == record.id:
                    page.records[index] = record
                    self._touch()
                    return True
        return False

    def apply_delta(self, record_id: str, delta: MetricsDelta) -> None:
        metrics = self.metrics
        if metrics is None or not delta:
            return
        logger.debug("Applying metrics delta %s for %s", delta, record_id)
        metrics.apply(delta)
        self._touch()

    def _reset(self, filters: ListFilters | None) -> None:
        if filters is not None:
            self.filters = filters
        self.generation += 1
        self.pages = []
        self._touch()

    def _merge(self, page: GuestListPage) -> None:
        seen = {record.id for record in self.records}
        unique: List[GuestRecord] = []
        for record in page.records:
            if record.id in seen:
                continue
            seen.add(record.id)
            unique.append(record)
        page.records = unique
        if self.pages:
            page.metrics = None
        self.pages.append(page)
        self._touch()

    def _touch(self) -> None:
        self.version += 1
