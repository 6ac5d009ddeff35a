from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Set

import httpx

from .config import DEFAULT_MAX_RETRIES
from .gateway import RemoteGateway
from .models import QueueItem, utc_now_iso

logger = logging.getLogger(__name__)

QUEUE_NAMESPACE = "guestlist-offline"
QUEUE_KEY = "offlineQueue"
# Recomputed by httpx on replay; cookies come back from the client jar.
_TRANSIENT_HEADERS = {"content-length", "transfer-encoding", "host", "cookie"}


class DrainState(enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"


@dataclass
class SendResult:
    response: Optional[httpx.Response] = None
    item: Optional[QueueItem] = None

    @property
    def queued(self) -> bool:
        return self.item is not None


@dataclass
class DrainResult:
    delivered: List[QueueItem] = field(default_factory=list)
    requeued: List[QueueItem] = field(default_factory=list)
    dropped: List[QueueItem] = field(default_factory=list)
    added_meanwhile: List[QueueItem] = field(default_factory=list)


class QueueStore:
    """Persists queue items as one JSON list under a fixed namespace directory."""

    def __init__(self, data_dir: Path) -> None:
        self.path = Path(data_dir) / QUEUE_NAMESPACE / f"{QUEUE_KEY}.json"

    async def load(self) -> List[QueueItem]:
        return await asyncio.to_thread(self._read)

    async def save(self, items: List[QueueItem]) -> None:
        await asyncio.to_thread(self._write, [item.to_json() for item in items])

    def _read(self) -> List[QueueItem]:
        try:
            if not self.path.exists():
                return []
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to an empty queue for %s due to read error: %s", self.path, exc)
            return []

        if not isinstance(data, list):
            logger.warning("Ignoring queue file %s: expected a list, got %s", self.path, type(data).__name__)
            return []

        items: List[QueueItem] = []
        for row in data:
            if not isinstance(row, dict):
                continue
            try:
                items.append(QueueItem.from_json(row))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed queue entry: %s", exc)
        return items

    def _write(self, rows: List[dict[str, Any]]) -> None:
        if not rows:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove queue file %s: %s", self.path, exc)
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                json.dump(rows, handle, indent=2, sort_keys=True)
        except OSError as exc:
            raise RuntimeError(f"Failed to write offline queue {self.path}") from exc


class DurableRetryQueue:
    """Send writes directly, and park them on disk when the network is down.

    ``send`` never raises for connectivity problems: the request is stored,
    reported as queued and the queue marks itself offline until
    ``set_online(True)`` or ``start``. While anything is parked, new writes
    are parked behind it. ``drain`` replays stored requests in order, stops
    at the first item that fails and only one drain runs at a time. A
    replayed item that keeps failing is dropped once it has failed
    ``max_retries`` times; drops are logged, returned in the drain result
    and passed to ``on_drop``.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        store: QueueStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        on_drop: Optional[Callable[[QueueItem], None]] = None,
        online: bool = True,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.gateway = gateway
        self.store = store
        self.max_retries = max_retries
        self.on_drop = on_drop
        self.online = online
        self.state = DrainState.IDLE
        self._store_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def send(self, request: httpx.Request) -> SendResult:
        # Parked writes go out first so replay order matches issue order.
        if self.state is DrainState.DRAINING or await self.has_pending():
            item = await self.enqueue(request)
            logger.info("Queued %s %s behind earlier offline writes as %s", request.method, request.url, item.id)
            if self.online:
                self._schedule_drain()
            return SendResult(item=item)
        try:
            response = await self.gateway.send(request)
        except httpx.TransportError as exc:
            item = await self.enqueue(request)
            self.online = False
            logger.warning(
                "Network failure for %s %s (%s); queued as %s", request.method, request.url, exc, item.id
            )
            return SendResult(item=item)
        return SendResult(response=response)

    async def enqueue(self, request: httpx.Request) -> QueueItem:
        item = QueueItem(
            id=str(uuid.uuid4()),
            url=str(request.url),
            method=request.method,
            headers={
                key: value for key, value in request.headers.items() if key.lower() not in _TRANSIENT_HEADERS
            },
            body=request.content.decode("utf-8"),
            enqueued_at=utc_now_iso(),
        )
        async with self._store_lock:
            items = await self.store.load()
            items.append(item)
            await self.store.save(items)
        return item

    async def start(self) -> Optional[DrainResult]:
        return await self.drain()

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        was_online = self.online
        self.online = online
        if online and not was_online:
            logger.info("Connectivity restored; draining offline queue")
            return self._schedule_drain()
        return None

    async def drain(self) -> Optional[DrainResult]:
        """Replay stored requests; returns ``None`` when another drain is running."""

        if self.state is DrainState.DRAINING:
            return None
        self.state = DrainState.DRAINING
        try:
            result = await self._drain()
        finally:
            self.state = DrainState.IDLE
        if result.added_meanwhile and self.online:
            self._schedule_drain()
        return result

    async def _drain(self) -> DrainResult:
        result = DrainResult()
        async with self._store_lock:
            snapshot = await self.store.load()
        if not snapshot:
            return result

        for index, item in enumerate(snapshot):
            if await self._replay(item):
                result.delivered.append(item)
                continue
            item.retries += 1
            if item.retries >= self.max_retries:
                result.dropped.append(item)
                logger.warning(
                    "Dropping queued %s %s after %d failed attempts (queued at %s)",
                    item.method,
                    item.url,
                    item.retries,
                    item.enqueued_at,
                )
                if self.on_drop is not None:
                    self.on_drop(item)
            else:
                # Later writes stay behind the one that failed.
                result.requeued.append(item)
                result.requeued.extend(snapshot[index + 1 :])
                break

        processed = {item.id for item in snapshot}
        async with self._store_lock:
            result.added_meanwhile = [item for item in await self.store.load() if item.id not in processed]
            await self.store.save(result.requeued + result.added_meanwhile)

        logger.info(
            "Offline queue drained: %d delivered, %d requeued, %d dropped",
            len(result.delivered),
            len(result.requeued),
            len(result.dropped),
        )
        return result

    async def _replay(self, item: QueueItem) -> bool:
        request = self.gateway.build_request(
            item.method, item.url, headers=item.headers, content=item.body.encode("utf-8")
        )
        try:
            response = await self.gateway.send(request)
        except httpx.TransportError as exc:
            self.online = False
            logger.info("Replay of %s failed: %s", item.id, exc)
            return False
        if response.is_success:
            return True
        logger.info("Replay of %s answered %s", item.id, response.status_code)
        return False

    async def pending(self) -> List[QueueItem]:
        async with self._store_lock:
            return await self.store.load()

    async def has_pending(self) -> bool:
        return bool(await self.pending())

    async def clear(self) -> None:
        async with self._store_lock:
            await self.store.save([])

    async def wait_idle(self) -> None:
        """Wait for drains scheduled in the background to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule_drain(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
