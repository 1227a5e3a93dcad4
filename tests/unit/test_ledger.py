"""
Tests for colmgr.repository.ledger module.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from colmgr.exceptions import RepositoryError
from colmgr.repository.entities import STATUS, SchemaEntity, SchemaEntityType
from colmgr.repository.ledger import (
    COUNTER_FAMILY,
    ENTITY_FAMILY,
    MAX_RECORD_ATTEMPTS,
    REPOSITORY_TABLE,
    ChangeLedger,
    entity_row_key,
    parse_entity_row_key,
)
from colmgr.store.base import Put


TABLE = SchemaEntityType.TABLE
TABLE_PATH = ("ns", "orders")


@pytest.fixture
async def ledger(store):
    ledger = ChangeLedger(store, "tester", max_versions=10)
    await ledger.install()
    return ledger


class TestRowKeys:
    """Test repository row key encoding."""

    def test_round_trip(self):
        path = ("ns", "t", "cf", "col")
        key = entity_row_key(SchemaEntityType.COLUMN_AUDITOR, path)
        assert key.startswith(b"A")
        assert parse_entity_row_key(key) == (SchemaEntityType.COLUMN_AUDITOR, path)

    def test_qualifier_with_separator(self):
        path = ("ns", "t", "cf", "a\x00b")
        key = entity_row_key(SchemaEntityType.COLUMN_AUDITOR, path)
        assert parse_entity_row_key(key)[1] == path


class TestChangeLedger:
    """Test ChangeLedger recording and queries."""

    @pytest.mark.asyncio
    async def test_install_creates_structures(self, store, ledger):
        descriptor = await store.get_table(REPOSITORY_TABLE)
        assert descriptor.get_family(ENTITY_FAMILY).max_versions == 10
        assert descriptor.get_family(COUNTER_FAMILY).max_versions == 1
        assert await ledger.install() is False

    @pytest.mark.asyncio
    async def test_install_applies_configured_max_versions(self, store, ledger):
        reopened = ChangeLedger(store, "tester", max_versions=25)
        await reopened.install()
        assert await reopened.get_max_versions() == 25

    @pytest.mark.asyncio
    async def test_record_and_latest(self, ledger):
        event = await ledger.record(TABLE, TABLE_PATH, "Value__VERSIONS", "3")
        assert event.attribute_value == "3"
        assert event.user_name == "tester"
        assert event.namespace == "ns" and event.table == "orders"

        latest = await ledger.latest(TABLE, TABLE_PATH, "Value__VERSIONS")
        assert latest == event

    @pytest.mark.asyncio
    async def test_unchanged_value_is_not_recorded(self, ledger):
        await ledger.record(TABLE, TABLE_PATH, STATUS, "A")
        assert await ledger.record(TABLE, TABLE_PATH, STATUS, "A") is None
        assert await ledger.record(TABLE, ("ns", "other"), STATUS, None) is None
        assert len(await ledger.events(TABLE, TABLE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_removal_is_recorded(self, ledger):
        await ledger.record(TABLE, TABLE_PATH, "Configuration__owner", "ops")
        removal = await ledger.record(TABLE, TABLE_PATH, "Configuration__owner", None)
        assert removal.attribute_value is None

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, ledger):
        with patch("colmgr.repository.ledger.current_millis", return_value=1000):
            events = [
                await ledger.record(TABLE, TABLE_PATH, "Value__k", str(i)) for i in range(5)
            ]
        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(set(timestamps))

    @pytest.mark.asyncio
    async def test_concurrent_ledgers_keep_every_event(self, store, ledger):
        other = ChangeLedger(store, "other", max_versions=10)
        with patch("colmgr.repository.ledger.current_millis", return_value=1000):
            first, second = await asyncio.gather(
                ledger.record(TABLE, TABLE_PATH, "Value__k", "from-tester"),
                other.record(TABLE, TABLE_PATH, "Value__k", "from-other"),
            )

        assert first.timestamp != second.timestamp
        events = await ledger.events(TABLE, TABLE_PATH, attribute_name="Value__k")
        assert sorted((e.attribute_value, e.user_name) for e in events) == [
            ("from-other", "other"),
            ("from-tester", "tester"),
        ]
        latest = await other.latest(TABLE, TABLE_PATH, "Value__k")
        assert latest.timestamp == max(first.timestamp, second.timestamp)

    @pytest.mark.asyncio
    async def test_record_gives_up_when_always_outraced(self, store, ledger):
        with patch.object(store, "check_and_put", AsyncMock(return_value=False)) as check_and_put:
            with pytest.raises(RepositoryError):
                await ledger.record(TABLE, TABLE_PATH, "Value__k", "v")
        assert check_and_put.await_count == MAX_RECORD_ATTEMPTS
        assert await ledger.latest(TABLE, TABLE_PATH, "Value__k") is None

    @pytest.mark.asyncio
    async def test_retention_boundary(self, store):
        n = 10
        ledger = ChangeLedger(store, "tester", max_versions=n)
        await ledger.install()
        for i in range(1, n + 6):
            await ledger.record(TABLE, TABLE_PATH, "Value__k", f"value-{i}")

        events = await ledger.events(TABLE, TABLE_PATH, attribute_name="Value__k")
        assert len(events) == n
        assert events[0].attribute_value == "value-6"
        assert events[-1].attribute_value == f"value-{n + 5}"

    @pytest.mark.asyncio
    async def test_set_max_versions_changes_retention(self, ledger):
        await ledger.set_max_versions(2)
        for i in range(4):
            await ledger.record(TABLE, TABLE_PATH, "Value__k", str(i))
        events = await ledger.events(TABLE, TABLE_PATH)
        assert [e.attribute_value for e in events] == ["2", "3"]
        with pytest.raises(ValueError):
            await ledger.set_max_versions(0)

    @pytest.mark.asyncio
    async def test_events_with_children(self, ledger):
        await ledger.record(SchemaEntityType.NAMESPACE, ("ns",), STATUS, "A")
        await ledger.record(TABLE, TABLE_PATH, STATUS, "A")
        await ledger.record(SchemaEntityType.COLUMN_FAMILY, TABLE_PATH + ("cf",), STATUS, "A")
        await ledger.record(TABLE, ("ns", "orders2"), STATUS, "A")

        own = await ledger.events(TABLE, TABLE_PATH)
        assert [e.path for e in own] == [TABLE_PATH]
        nested = await ledger.events(TABLE, TABLE_PATH, include_children=True)
        assert [e.path for e in nested] == [TABLE_PATH, TABLE_PATH + ("cf",)]
        everything = await ledger.events()
        assert len(everything) == 4

    @pytest.mark.asyncio
    async def test_counters(self, ledger):
        path = ("ns", "orders", "cf", "col")
        auditor = SchemaEntityType.COLUMN_AUDITOR
        assert await ledger.increment_counter(auditor, path, "_CellOccurrences", 3) == 3
        assert await ledger.increment_counter(auditor, path, "_CellOccurrences", 2) == 5

    @pytest.mark.asyncio
    async def test_record_entity_and_load_model(self, ledger):
        entity = SchemaEntity(
            SchemaEntityType.COLUMN_FAMILY, "cf", {STATUS: "A", "VERSIONS": "3"}, {"owner": "ops"}
        )
        events = await ledger.record_entity(SchemaEntityType.COLUMN_FAMILY, TABLE_PATH + ("cf",), entity)
        assert len(events) == 3

        model = await ledger.load_model()
        loaded = model.find(SchemaEntityType.COLUMN_FAMILY, TABLE_PATH + ("cf",))
        assert loaded == entity
        assert model.find(TABLE, TABLE_PATH) is not None

    @pytest.mark.asyncio
    async def test_load_model_drops_removed_attributes(self, ledger):
        await ledger.record(TABLE, TABLE_PATH, "Value__k", "v")
        await ledger.record(TABLE, TABLE_PATH, "Value__k", None)
        model = await ledger.load_model()
        assert model.find(TABLE, TABLE_PATH).values == {}

    @pytest.mark.asyncio
    async def test_corrupt_envelope(self, store, ledger):
        await store.put(
            REPOSITORY_TABLE,
            Put(entity_row_key(TABLE, TABLE_PATH)).add_column(ENTITY_FAMILY, b"Value__k", b"\xff"),
        )
        with pytest.raises(RepositoryError):
            await ledger.latest(TABLE, TABLE_PATH, "Value__k")

    @pytest.mark.asyncio
    async def test_uninstall(self, store, ledger):
        await ledger.uninstall()
        assert not await store.table_exists(REPOSITORY_TABLE)
        with pytest.raises(RepositoryError):
            await ledger.get_max_versions()
