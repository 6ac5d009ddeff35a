"""Synchronisation layer between check-in operators and the shared guest table."""

from .aliases import FIELD_ALIASES, FieldAliasResolver
from .client import CheckInClient
from .coordinator import MutationCoordinator
from .gateway import RemoteGateway
from .models import GuestListMetrics, GuestListPage, GuestRecord, MetricsDelta, QueueItem
from .paginator import ListFilters, ListPaginator
from .retry_queue import DurableRetryQueue, QueueStore
from .search import SearchIndex, WindowSearch, normalize_text
from .store import GuestStore

__all__ = [
    "FIELD_ALIASES",
    "CheckInClient",
    "DurableRetryQueue",
    "FieldAliasResolver",
    "GuestListMetrics",
    "GuestListPage",
    "GuestRecord",
    "GuestStore",
    "ListFilters",
    "ListPaginator",
    "MetricsDelta",
    "MutationCoordinator",
    "QueueItem",
    "QueueStore",
    "RemoteGateway",
    "SearchIndex",
    "WindowSearch",
    "normalize_text",
]
