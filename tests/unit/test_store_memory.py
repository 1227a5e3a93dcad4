"""
Tests for colmgr.store.memory and colmgr.store.multiplexer modules.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from colmgr.exceptions import (
    NamespaceExistsError,
    NamespaceNotFoundError,
    StoreError,
    TableExistsError,
    TableNotFoundError,
)
from colmgr.store.base import (
    FamilyDescriptor,
    NamespaceDescriptor,
    Put,
    TableDescriptor,
    TableName,
    decode_long,
    encode_long,
)
from colmgr.store.memory import InMemoryColumnStore
from colmgr.store.multiplexer import QueueingMultiplexer
from tests.conftest import create_table


class TestValueTypes:
    """Test store value types."""

    def test_table_name_parsing(self):
        assert TableName.value_of("ns:t") == TableName("ns", "t")
        assert TableName.value_of("t") == TableName("default", "t")
        assert TableName("default", "t").name_as_string == "t"
        assert TableName("ns", "t").name_as_string == "ns:t"

    def test_counter_encoding(self):
        assert encode_long(1) == b"\x00" * 7 + b"\x01"
        assert decode_long(encode_long(-42)) == -42
        with pytest.raises(ValueError):
            decode_long(b"\x01")

    def test_put_families_in_first_seen_order(self):
        put = Put(b"r").add_column("b", b"q", b"1").add_column("a", b"q", b"2").add_column("b", b"x", b"3")
        assert put.families == ["b", "a"]
        assert len(put.cells_for_family("b")) == 2

    def test_family_max_versions(self):
        family = FamilyDescriptor("cf")
        assert family.max_versions == 1
        family.max_versions = 5
        assert family.values["VERSIONS"] == "5"
        with pytest.raises(ValueError):
            family.max_versions = 0


class TestInMemoryColumnStore:
    """Test the in-memory store backend."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        await create_table(store, "ns:t", "cf")
        await store.put("ns:t", Put(b"row1").add_column("cf", b"q", b"value"))

        result = await store.get("ns:t", b"row1")
        assert result.value("cf", b"q") == b"value"
        assert (await store.get("ns:t", b"missing")).is_empty

    @pytest.mark.asyncio
    async def test_versions_trimmed_on_insert(self, store):
        await create_table(store, "ns:t", "cf", versions=3)
        for i in range(5):
            await store.put("ns:t", Put(b"r").add_column("cf", b"q", str(i).encode(), i + 1))

        result = await store.get("ns:t", b"r", max_versions=10)
        assert [c.value for c in result.versions("cf", b"q")] == [b"4", b"3", b"2"]

    @pytest.mark.asyncio
    async def test_same_timestamp_replaces_version(self, store):
        await create_table(store, "ns:t", "cf", versions=3)
        await store.put("ns:t", Put(b"r").add_column("cf", b"q", b"a", 100))
        await store.put("ns:t", Put(b"r").add_column("cf", b"q", b"b", 100))

        result = await store.get("ns:t", b"r", max_versions=3)
        assert [c.value for c in result.versions("cf", b"q")] == [b"b"]

    @pytest.mark.asyncio
    async def test_put_to_unknown_family_is_all_or_nothing(self, store):
        await create_table(store, "ns:t", "cf")
        put = Put(b"r").add_column("cf", b"q", b"1").add_column("nope", b"q", b"2")
        with pytest.raises(StoreError):
            await store.put("ns:t", put)
        assert (await store.get("ns:t", b"r")).is_empty

    @pytest.mark.asyncio
    async def test_get_filters(self, store):
        await create_table(store, "ns:t", "a", "b")
        await store.put(
            "ns:t",
            Put(b"r").add_column("a", b"x", b"1").add_column("a", b"y", b"2").add_column("b", b"z", b"3"),
        )

        by_family = await store.get("ns:t", b"r", families=["b"])
        assert by_family.columns() == [("b", b"z")]
        by_column = await store.get("ns:t", b"r", columns=[("a", b"y")])
        assert by_column.columns() == [("a", b"y")]

    @pytest.mark.asyncio
    async def test_scan_range_and_limit(self, store):
        await create_table(store, "ns:t", "cf")
        for row in (b"a", b"b", b"c", b"d"):
            await store.put("ns:t", Put(row).add_column("cf", b"q", row))

        rows = [r.row async for r in store.scan("ns:t", start_row=b"b", stop_row=b"d")]
        assert rows == [b"b", b"c"]
        limited = [r.row async for r in store.scan("ns:t", limit=1)]
        assert limited == [b"a"]

    @pytest.mark.asyncio
    async def test_delete_granularity(self, store):
        await create_table(store, "ns:t", "a", "b")
        put = Put(b"r").add_column("a", b"x", b"1").add_column("a", b"y", b"2").add_column("b", b"z", b"3")
        await store.put("ns:t", put)

        await store.delete("ns:t", b"r", "a", b"x")
        assert (await store.get("ns:t", b"r")).columns() == [("a", b"y"), ("b", b"z")]
        await store.delete("ns:t", b"r", "a")
        assert (await store.get("ns:t", b"r")).columns() == [("b", b"z")]
        await store.delete("ns:t", b"r")
        assert (await store.get("ns:t", b"r")).is_empty

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_atomic(self, store):
        await create_table(store, "ns:t", "cf")
        totals = await asyncio.gather(
            *(store.increment("ns:t", b"r", "cf", b"n") for _ in range(50))
        )
        assert sorted(totals) == list(range(1, 51))
        assert decode_long((await store.get("ns:t", b"r")).value("cf", b"n")) == 50

    @pytest.mark.asyncio
    async def test_check_and_put(self, store):
        await create_table(store, "ns:t", "cf")
        first = Put(b"r").add_column("cf", b"q", b"v1")
        assert await store.check_and_put("ns:t", b"r", "cf", b"q", None, first) is True
        assert await store.check_and_put("ns:t", b"r", "cf", b"q", None, first) is False

        second = Put(b"r").add_column("cf", b"q", b"v2")
        assert await store.check_and_put("ns:t", b"r", "cf", b"q", b"v1", second) is True
        assert (await store.get("ns:t", b"r")).value("cf", b"q") == b"v2"

        with pytest.raises(StoreError):
            await store.check_and_put("ns:t", b"r", "cf", b"q", b"v2", Put(b"other"))

    @pytest.mark.asyncio
    async def test_namespace_administration(self, store):
        await store.create_namespace(NamespaceDescriptor("ns", {"owner": "ops"}))
        with pytest.raises(NamespaceExistsError):
            await store.create_namespace(NamespaceDescriptor("ns"))
        assert (await store.get_namespace("ns")).configuration == {"owner": "ops"}
        assert [ns.name for ns in await store.list_namespaces()] == ["default", "ns"]

        await create_table(store, "ns:t", "cf")
        with pytest.raises(StoreError, match="not empty"):
            await store.delete_namespace("ns")
        await store.delete_table("ns:t")
        await store.delete_namespace("ns")
        with pytest.raises(NamespaceNotFoundError):
            await store.modify_namespace(NamespaceDescriptor("ns"))

    @pytest.mark.asyncio
    async def test_table_administration(self, store):
        with pytest.raises(NamespaceNotFoundError):
            await store.create_table(TableDescriptor("nowhere:t").add_family(FamilyDescriptor("cf")))
        await create_table(store, "ns:t", "a", "b")
        with pytest.raises(TableExistsError):
            await create_table(store, "ns:t", "a")
        with pytest.raises(StoreError):
            await store.create_table(TableDescriptor("ns:empty"))

        await store.put("ns:t", Put(b"r").add_column("a", b"x", b"1").add_column("b", b"y", b"2"))
        descriptor = await store.get_table("ns:t")
        descriptor.remove_family("b")
        await store.modify_table(descriptor)
        assert (await store.get("ns:t", b"r")).columns() == [("a", b"x")]

        await store.truncate_table("ns:t")
        assert (await store.get("ns:t", b"r")).is_empty
        assert [t.name for t in await store.list_tables("ns")] == [TableName("ns", "t")]

        await store.delete_table("ns:t")
        with pytest.raises(TableNotFoundError):
            await store.get("ns:t", b"r")

    @pytest.mark.asyncio
    async def test_descriptors_are_copies(self, store):
        await create_table(store, "ns:t", "cf")
        descriptor = await store.get_table("ns:t")
        descriptor.values["changed"] = "yes"
        assert "changed" not in (await store.get_table("ns:t")).values


class TestQueueingMultiplexer:
    """Test the queue-backed multiplexer."""

    @pytest.mark.asyncio
    async def test_queued_puts_are_applied(self, store):
        await create_table(store, "ns:t", "cf")
        multiplexer = store.create_multiplexer()

        assert await multiplexer.put("ns:t", Put(b"r1").add_column("cf", b"q", b"1")) is True
        assert await multiplexer.put_all("ns:t", [Put(b"r2").add_column("cf", b"q", b"2")]) == []
        await multiplexer.flush()

        assert (await store.get("ns:t", b"r1")).value("cf", b"q") == b"1"
        assert (await store.get("ns:t", b"r2")).value("cf", b"q") == b"2"
        assert multiplexer.applied_count == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_full_queue_refuses_puts(self):
        backend = AsyncMock()
        multiplexer = QueueingMultiplexer(backend, queue_size=1)

        puts = [Put(b"r%d" % i).add_column("cf", b"q", b"v") for i in range(3)]
        failed = await multiplexer.put_all("ns:t", puts)
        assert failed == puts[1:]
        await multiplexer.close()

    @pytest.mark.asyncio
    async def test_failed_puts_are_retried_then_dropped(self):
        backend = AsyncMock()
        backend.put.side_effect = StoreError("unavailable")
        multiplexer = QueueingMultiplexer(backend, queue_size=10)

        assert await multiplexer.put("ns:t", Put(b"r").add_column("cf", b"q", b"v"), retry=2)
        await multiplexer.flush()

        assert backend.put.await_count == 3
        assert multiplexer.failed_count == 1
        await multiplexer.close()

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_draining(self, caplog):
        backend = AsyncMock()
        backend.put.side_effect = [ValueError("bad cell"), None]
        multiplexer = QueueingMultiplexer(backend, queue_size=10)

        assert await multiplexer.put("ns:t", Put(b"r1").add_column("cf", b"q", b"v"))
        assert await multiplexer.put("ns:t", Put(b"r2").add_column("cf", b"q", b"v"))
        with caplog.at_level(logging.ERROR, logger="colmgr.store.multiplexer"):
            await asyncio.wait_for(multiplexer.flush(), timeout=1)

        assert multiplexer.failed_count == 1
        assert multiplexer.applied_count == 1
        assert "Unexpected failure applying queued put for ns:t" in caplog.text
        await multiplexer.close()
