from __future__ import annotations

import logging
from typing import Callable, List, Optional

import httpx

from .config import ClientSettings
from .coordinator import MutationCoordinator
from .errors import RemoteStoreError
from .gateway import RemoteGateway, extract_error_detail
from .models import GuestListPage, GuestRecord, QueueItem
from .paginator import ListFilters, ListPaginator
from .retry_queue import DrainResult, DurableRetryQueue, QueueStore
from .search import WindowSearch

logger = logging.getLogger(__name__)


class CheckInClient:
    """One operator session: the loaded window, its search index and the write path."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_drop: Optional[Callable[[QueueItem], None]] = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        self.gateway = RemoteGateway.for_checkin_api(self.settings, transport=transport)
        self.queue = DurableRetryQueue(
            self.gateway,
            QueueStore(self.settings.data_dir),
            max_retries=self.settings.max_retries,
            on_drop=on_drop,
        )
        self.paginator = ListPaginator(self.gateway, page_size=self.settings.page_size)
        self.search_index = WindowSearch(self.paginator)
        self.coordinator = MutationCoordinator(self.paginator, self.queue, on_error=on_error)

    async def start(self) -> Optional[DrainResult]:
        """Replay anything left from a previous session, then load the first page."""

        result = await self.queue.start()
        await self.paginator.load_page()
        return result

    async def login(self, role: str, pin: str) -> None:
        response = await self.gateway.request("POST", "/auth/login", json={"role": role, "pin": pin})
        if response.status_code == 401:
            raise PermissionError("Invalid PIN")
        if not response.is_success:
            raise RemoteStoreError(
                f"Login failed with status {response.status_code}",
                status_code=response.status_code,
                detail=extract_error_detail(response),
            )

    async def create_guest(
        self,
        guest: str,
        company: str | None = None,
        department: str | None = None,
        responsible: str | None = None,
        plus_one: str | None = None,
    ) -> str:
        if not (guest or "").strip():
            raise ValueError("Guest name is required")
        body = {
            "guest": guest.strip(),
            "company": company,
            "department": department,
            "responsible": responsible,
            "plusOne": plus_one,
        }
        response = await self.gateway.request(
            "POST", "/guests", json={key: value for key, value in body.items() if value}
        )
        if response.status_code == 400:
            raise ValueError(extract_error_detail(response) or "Guest could not be created")
        if not response.is_success:
            raise RemoteStoreError(
                f"Creating guest failed with status {response.status_code}",
                status_code=response.status_code,
                detail=extract_error_detail(response),
            )
        record_id = str(response.json()["id"])
        logger.info("Created guest %s", record_id)
        return record_id

    async def load_more(self) -> GuestListPage | None:
        return await self.paginator.load_next_page()

    async def set_filters(
        self, q: str = "", department: str = "", responsible: str = ""
    ) -> GuestListPage | None:
        return await self.paginator.set_filters(ListFilters(q=q, department=department, responsible=responsible))

    def search(self, query: str) -> List[GuestRecord]:
        return self.search_index.search(query)

    def toggle_check_in(self, record: GuestRecord, guest: bool | None = None, companion: bool | None = None):
        return self.coordinator.toggle_check_in(record, guest=guest, companion=companion)

    def toggle_gift(self, record: GuestRecord, value: bool):
        return self.coordinator.toggle_gift(record, value)

    def set_online(self, online: bool):
        return self.queue.set_online(online)

    async def aclose(self) -> None:
        await self.coordinator.wait_idle()
        await self.queue.wait_idle()
        await self.gateway.aclose()

    async def __aenter__(self) -> "CheckInClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
