"""CLI helper for replaying check-in writes left in the local offline queue."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import List

import httpx

from guestlist_core.config import ClientSettings
from guestlist_core.errors import ConfigurationError
from guestlist_core.gateway import RemoteGateway
from guestlist_core.models import QueueItem
from guestlist_core.retry_queue import DrainResult, DurableRetryQueue, QueueStore


def _format_items(name: str, items: List[QueueItem]) -> str:
    lines = [f"{name}: {len(items)}"]
    for item in items:
        lines.append(f"  - {item.method} {item.url} (queued {item.enqueued_at}, {item.retries} failures)")
    return "\n".join(lines)


async def drain(settings: ClientSettings, transport: httpx.AsyncBaseTransport | None = None) -> tuple[DrainResult, int]:
    async with RemoteGateway.for_checkin_api(settings, transport=transport) as gateway:
        queue = DurableRetryQueue(gateway, QueueStore(settings.data_dir), max_retries=settings.max_retries)
        result = await queue.drain() or DrainResult()
        remaining = len(await queue.pending())
    return result, remaining


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        settings = ClientSettings.from_env()
        result, remaining = asyncio.run(drain(settings))
    except (ConfigurationError, RuntimeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(f"Delivered: {len(result.delivered)}")
    print(_format_items("Still queued", result.requeued))
    print(_format_items("Dropped", result.dropped))
    print(f"Remaining in queue: {remaining}")

    return 1 if result.dropped or remaining else 0


if __name__ == "__main__":
    raise SystemExit(main())
