from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

import httpx

from .models import GuestRecord, MetricsDelta, utc_now_iso
from .paginator import ListPaginator
from .retry_queue import DurableRetryQueue

logger = logging.getLogger(__name__)


class MutationCoordinator:
    """Optimistic check-in and gift updates for the loaded guest window.

    A toggle is applied to the window (and the metrics) as soon as it is
    issued; the returned task performs the write. Writes for one record run
    strictly one after another in issue order, and each one computes its
    optimistic state from the record as the window currently shows it, so
    an earlier unconfirmed toggle is never lost. A confirmed write replaces
    the record with the server copy; a queued write keeps the optimistic
    copy; anything else is reported through ``on_error`` and the window is
    reloaded from the first page.
    """

    def __init__(
        self,
        paginator: ListPaginator,
        queue: DurableRetryQueue,
        on_error: Optional[Callable[[str], None]] = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.paginator = paginator
        self.queue = queue
        self.gateway = queue.gateway
        self.on_error = on_error
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    def toggle_check_in(
        self,
        record: GuestRecord,
        guest: Optional[bool] = None,
        companion: Optional[bool] = None,
    ) -> asyncio.Task:
        if guest is None and companion is None:
            raise ValueError("Nothing to update")
        current = self.paginator.get(record.id) or record
        optimistic = current.with_check_in(guest=guest, companion=companion, now=self.clock())
        body = {
            "recordId": record.id,
            "guest": optimistic.guest_check_in,
            "plusOne": optimistic.plus_one_check_in,
        }
        return self._mutate(current, optimistic, "/checkin", body)

    def toggle_gift(self, record: GuestRecord, value: bool) -> asyncio.Task:
        current = self.paginator.get(record.id) or record
        optimistic = current.with_gift(value, now=self.clock())
        return self._mutate(current, optimistic, "/gift", {"recordId": record.id, "value": bool(value)})

    def pending(self, record_id: str) -> int:
        return self._pending.get(record_id, 0)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _mutate(
        self,
        current: GuestRecord,
        optimistic: GuestRecord,
        path: str,
        body: Dict[str, Any],
    ) -> asyncio.Task:
        record_id = optimistic.id
        self.paginator.replace_record(optimistic)
        self.paginator.apply_delta(record_id, MetricsDelta.between(current, optimistic))
        self._pending[record_id] = self._pending.get(record_id, 0) + 1

        request = self.gateway.build_request("POST", path, json=body)
        lock = self._locks.setdefault(record_id, asyncio.Lock())
        task = asyncio.get_running_loop().create_task(self._write(record_id, lock, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _write(self, record_id: str, lock: asyncio.Lock, request: httpx.Request) -> None:
        try:
            async with lock:
                await self._send_and_reconcile(record_id, request)
        finally:
            remaining = self._pending.get(record_id, 1) - 1
            if remaining > 0:
                self._pending[record_id] = remaining
            else:
                self._pending.pop(record_id, None)
                self._locks.pop(record_id, None)

    async def _send_and_reconcile(self, record_id: str, request: httpx.Request) -> None:
        try:
            result = await self.queue.send(request)
        except (httpx.HTTPError, RuntimeError, OSError) as exc:
            await self._fail(record_id, f"Update failed: {exc}")
            return

        if result.queued:
            logger.info("Update for %s queued until the connection returns", record_id)
            return

        response = result.response
        if response is None or not response.is_success:
            status = response.status_code if response is not None else "no response"
            await self._fail(record_id, f"Server rejected the update ({status})")
            return

        try:
            payload = response.json()
        except ValueError:
            await self._fail(record_id, "Server returned an unreadable record")
            return
        if not isinstance(payload, dict) or payload.get("id") != record_id:
            await self._fail(record_id, "Server returned an unexpected record")
            return

        self._reconcile(GuestRecord.from_api(payload))

    def _reconcile(self, authoritative: GuestRecord) -> None:
        record_id = authoritative.id
        if self._pending.get(record_id, 0) > 1:
            # A newer toggle for this record is still on its way; its answer wins.
            logger.debug("Deferring reconciliation of %s to the newest pending update", record_id)
            return
        current = self.paginator.get(record_id)
        if current is None:
            return
        self.paginator.apply_delta(record_id, MetricsDelta.between(current, authoritative))
        self.paginator.replace_record(authoritative)

    async def _fail(self, record_id: str, message: str) -> None:
        logger.warning("Update for %s failed: %s", record_id, message)
        if self.on_error is not None:
            self.on_error(message)
        try:
            await self.paginator.revalidate()
        except (httpx.HTTPError, RuntimeError) as exc:
            # The window is already empty, so nothing optimistic survives.
            logger.warning("Revalidation after failed update did not complete: %s", exc)
            if self.on_error is not None:
                self.on_error(f"Reload failed: {exc}")
