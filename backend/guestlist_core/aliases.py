from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from .errors import ConfigurationError, RemoteStoreError, SchemaMismatchError, UnknownFieldError
from .gateway import RemoteGateway

logger = logging.getLogger(__name__)

# Physical column labels in the guest table, tried in order. The first label
# is the one the base was configured with; the rest cover known renames.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "department": ("PMZ Deparment", "PMZ Department"),
    "responsible": ("PMZ Responsible",),
    "company": ("Company",),
    "guest": ("Guest",),
    "plusOne": ("Plus one", "Plus One"),
    "arrivalConfirmation": ("Arrival Confirmation",),
    "guestCheckIn": ("Guest CheckIn", "Guest Check-In", "Guest Check In"),
    "plusOneCheckIn": ("Plus one CheckIn", "Plus One CheckIn", "Plus one Check-In"),
    "checkInTime": ("CheckIn Time", "Check-In Time", "Check In Time"),
    "farewellGift": ("Farewell gift", "Farewell Gift"),
    "farewellTime": ("Farewell time", "Farewell Time"),
}


def validate_aliases(aliases: Mapping[str, Sequence[str]]) -> Dict[str, Tuple[str, ...]]:
    """Return a cleaned copy of ``aliases``; every logical field needs one label."""

    if not aliases:
        raise ConfigurationError("Field alias table is empty")

    cleaned: Dict[str, Tuple[str, ...]] = {}
    for logical, names in aliases.items():
        if isinstance(names, str):
            names = (names,)
        labels: List[str] = []
        for name in names or ():
            label = (name or "").strip()
            if label and label not in labels:
                labels.append(label)
        if not labels:
            raise ConfigurationError(f"Logical field '{logical}' has no physical field name")
        cleaned[logical] = tuple(labels)
    return cleaned


class FieldAliasResolver:
    """Maps logical guest fields onto whatever labels the remote table uses.

    Writes probe alias combinations until the remote store stops answering
    with an unknown-field error. The combination that worked is remembered
    and tried first next time. Reads take the first alias that carries a
    non-empty value.
    """

    def __init__(self, gateway: RemoteGateway, aliases: Mapping[str, Sequence[str]] = FIELD_ALIASES) -> None:
        self.gateway = gateway
        self.aliases = validate_aliases(aliases)
        self._accepted: Dict[str, str] = {}

    def candidates(self, logical: str) -> Tuple[str, ...]:
        try:
            names = self.aliases[logical]
        except KeyError as exc:
            raise ValueError(f"Unknown logical field '{logical}'") from exc
        accepted = self._accepted.get(logical)
        if accepted:
            return (accepted,) + tuple(name for name in names if name != accepted)
        return names

    def physical_name(self, logical: str) -> str:
        return self.candidates(logical)[0]

    def read(self, fields: Mapping[str, Any], logical: str, default: Any = None) -> Any:
        for name in self.candidates(logical):
            value = fields.get(name)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return default

    async def write(self, logical_fields: Mapping[str, Any], record_id: Optional[str] = None) -> Dict[str, Any]:
        """PATCH ``record_id`` (or create a record) and return the remote record JSON."""

        if not logical_fields:
            raise ValueError("Nothing to update")

        logical_names = list(logical_fields)
        candidate_lists = [self.candidates(name) for name in logical_names]
        rejected: set[str] = set()
        attempts: List[UnknownFieldError] = []

        for combination in itertools.product(*candidate_lists):
            if rejected.intersection(combination):
                continue
            fields = {
                physical: logical_fields[logical]
                for logical, physical in zip(logical_names, combination)
            }
            try:
                record = await self._submit(fields, record_id)
            except UnknownFieldError as exc:
                attempts.append(exc)
                if exc.field_name and exc.field_name in combination:
                    rejected.add(exc.field_name)
                logger.info(
                    "Remote table rejected field %s; retrying with the next alias",
                    exc.field_name or "(unnamed)",
                )
                continue

            for logical, physical in zip(logical_names, combination):
                self._accepted[logical] = physical
            return record

        logger.error("No alias combination accepted for fields %s", ", ".join(logical_names))
        raise SchemaMismatchError(logical_names, attempts)

    async def _submit(self, fields: Dict[str, Any], record_id: Optional[str]) -> Dict[str, Any]:
        if record_id:
            payload = await self.gateway.request_json("PATCH", quote(record_id, safe=""), json={"fields": fields})
        else:
            payload = await self.gateway.request_json("POST", "", json={"fields": fields})
        if not isinstance(payload, dict) or "id" not in payload:
            raise RemoteStoreError("Remote store returned an unexpected record payload")
        return payload
