from __future__ import annotations

import json

import pytest

from conftest import FakeAirtable
from guestlist_core.aliases import FieldAliasResolver, validate_aliases
from guestlist_core.errors import ConfigurationError, RemoteStoreError, SchemaMismatchError


@pytest.mark.asyncio
async def test_write_falls_back_to_second_alias_without_duplicating(airtable: FakeAirtable, table_gateway):
    airtable.known_fields = {"Guest", "Guest Check-In"}
    record_id = airtable.add({"Guest": "Ana"})
    resolver = FieldAliasResolver(table_gateway, {"guestCheckIn": ("Guest CheckIn", "Guest Check-In")})

    record = await resolver.write({"guestCheckIn": True}, record_id=record_id)

    assert record["id"] == record_id
    assert record["fields"]["Guest Check-In"] is True
    patches = airtable.requests_for("PATCH")
    assert [list(json.loads(request.content)["fields"]) for request in patches] == [
        ["Guest CheckIn"],
        ["Guest Check-In"],
    ]
    assert airtable.requests_for("POST") == []
    assert len(airtable.records) == 1


@pytest.mark.asyncio
async def test_accepted_alias_is_tried_first_next_time(airtable: FakeAirtable, table_gateway):
    airtable.known_fields = {"Guest Check-In"}
    record_id = airtable.add({})
    resolver = FieldAliasResolver(table_gateway, {"guestCheckIn": ("Guest CheckIn", "Guest Check-In")})

    await resolver.write({"guestCheckIn": True}, record_id=record_id)
    airtable.requests.clear()
    await resolver.write({"guestCheckIn": False}, record_id=record_id)

    assert len(airtable.requests_for("PATCH")) == 1
    assert resolver.physical_name("guestCheckIn") == "Guest Check-In"


@pytest.mark.asyncio
async def test_combinations_with_a_rejected_label_are_skipped(airtable: FakeAirtable, table_gateway):
    airtable.known_fields = {"Guest Check-In", "Check-In Time"}
    record_id = airtable.add({})
    resolver = FieldAliasResolver(
        table_gateway,
        {
            "guestCheckIn": ("Guest CheckIn", "Guest Check-In"),
            "checkInTime": ("CheckIn Time", "Check-In Time"),
        },
    )

    await resolver.write({"guestCheckIn": True, "checkInTime": "2025-06-01T18:00:00.000Z"}, record_id=record_id)

    assert len(airtable.requests_for("PATCH")) == 3
    assert airtable.fields(record_id) == {"Guest Check-In": True, "Check-In Time": "2025-06-01T18:00:00.000Z"}


@pytest.mark.asyncio
async def test_exhausted_aliases_raise_schema_mismatch(airtable: FakeAirtable, table_gateway):
    airtable.known_fields = {"Guest"}
    record_id = airtable.add({"Guest": "Ana"})
    resolver = FieldAliasResolver(table_gateway, {"farewellGift": ("Farewell gift", "Farewell Gift")})

    with pytest.raises(SchemaMismatchError) as excinfo:
        await resolver.write({"farewellGift": True}, record_id=record_id)

    assert excinfo.value.logical_fields == ["farewellGift"]
    assert [attempt.field_name for attempt in excinfo.value.attempts] == ["Farewell gift", "Farewell Gift"]


@pytest.mark.asyncio
async def test_other_errors_stop_probing(airtable: FakeAirtable, table_gateway):
    record_id = airtable.add({"Guest": "Ana"})
    airtable.fail_next(403, {"error": {"type": "INVALID_PERMISSIONS", "message": "Not allowed"}})
    resolver = FieldAliasResolver(table_gateway, {"guestCheckIn": ("Guest CheckIn", "Guest Check-In")})

    with pytest.raises(RemoteStoreError) as excinfo:
        await resolver.write({"guestCheckIn": True}, record_id=record_id)

    assert not isinstance(excinfo.value, SchemaMismatchError)
    assert excinfo.value.status_code == 403
    assert excinfo.value.detail == "Not allowed"
    assert len(airtable.requests) == 1


@pytest.mark.asyncio
async def test_write_without_record_id_creates(airtable: FakeAirtable, table_gateway):
    resolver = FieldAliasResolver(table_gateway)
    record = await resolver.write({"guest": "Ana Perić"})
    assert airtable.fields(record["id"]) == {"Guest": "Ana Perić"}


@pytest.mark.asyncio
async def test_empty_write_is_rejected(table_gateway):
    with pytest.raises(ValueError):
        await FieldAliasResolver(table_gateway).write({})


def test_read_takes_first_non_blank_alias(table_gateway):
    resolver = FieldAliasResolver(table_gateway)
    fields = {"PMZ Deparment": "  ", "PMZ Department": "Sales"}
    assert resolver.read(fields, "department") == "Sales"
    assert resolver.read({}, "department", "") == ""


def test_unknown_logical_field(table_gateway):
    with pytest.raises(ValueError):
        FieldAliasResolver(table_gateway).candidates("shoeSize")


def test_validate_aliases_rejects_unusable_tables():
    with pytest.raises(ConfigurationError):
        validate_aliases({})
    with pytest.raises(ConfigurationError):
        validate_aliases({"guest": ("", "  ")})

    assert validate_aliases({"guest": "Guest", "company": (" Company ", "Company")}) == {
        "guest": ("Guest",),
        "company": ("Company",),
    }
