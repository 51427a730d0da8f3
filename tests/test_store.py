"""Tests for the in-memory document store and fixture loading."""

from __future__ import annotations

import json

import pytest

from carebot.services.store import DocumentNotFoundError, InMemoryDocumentStore, load_fixtures


@pytest.mark.asyncio
class TestInMemoryDocumentStore:
    async def test_set_and_get_round_trip_is_a_copy(self):
        store = InMemoryDocumentStore()
        data = {"name": "Acme", "tags": ["a"]}
        await store.set("organizations", "Acme", data)
        data["tags"].append("mutated")
        doc = await store.get("organizations", "Acme")
        assert doc.id == "Acme"
        assert doc.data == {"name": "Acme", "tags": ["a"]}

    async def test_get_missing_returns_none(self):
        assert await InMemoryDocumentStore().get("contacts", "nope") is None

    async def test_update_merges_fields(self):
        store = InMemoryDocumentStore()
        await store.set("contacts", "c1", {"name": "A", "registered": False})
        await store.update("contacts", "c1", {"registered": True})
        doc = await store.get("contacts", "c1")
        assert doc.data == {"name": "A", "registered": True}

    async def test_update_missing_raises(self):
        with pytest.raises(DocumentNotFoundError):
            await InMemoryDocumentStore().update("contacts", "nope", {"x": 1})

    async def test_add_generates_unique_ids(self):
        store = InMemoryDocumentStore()
        first = await store.add("chat", {"n": 1})
        second = await store.add("chat", {"n": 2})
        assert first != second

    async def test_create_if_absent_only_creates_once(self):
        store = InMemoryDocumentStore()
        doc, created = await store.create_if_absent("contacts", "Acme:1", {"name": "first"})
        assert created is True
        doc, created = await store.create_if_absent("contacts", "Acme:1", {"name": "second"})
        assert created is False
        assert doc.data["name"] == "first"

    async def test_query_filters_orders_and_limits(self):
        store = InMemoryDocumentStore()
        await store.set("n", "a", {"tenant": "X", "ts": 3})
        await store.set("n", "b", {"tenant": "X", "ts": 1})
        await store.set("n", "c", {"tenant": "Y", "ts": 2})
        docs = await store.query("n", {"tenant": "X"}, order_by="ts", descending=True, limit=1)
        assert [d.id for d in docs] == ["a"]

    async def test_none_filter_matches_missing_field(self):
        store = InMemoryDocumentStore()
        await store.set("contacts", "legacy", {"phone": "1"})
        await store.set("contacts", "new", {"phone": "2", "tenant_id": "Acme"})
        docs = await store.query("contacts", {"tenant_id": None})
        assert [d.id for d in docs] == ["legacy"]


@pytest.mark.asyncio
class TestLoadFixtures:
    async def test_loads_mapping_with_and_without_ids(self):
        store = InMemoryDocumentStore()
        written = await load_fixtures(
            store,
            {"organizations": [{"id": "Acme", "name": "Acme"}], "doctors": [{"name": "Dr. A"}]},
        )
        assert written == 2
        assert (await store.get("organizations", "Acme")).data == {"name": "Acme"}
        assert len(await store.query("doctors")) == 1

    async def test_loads_json_file(self, tmp_path):
        path = tmp_path / "seed.json"
        path.write_text(json.dumps({"organizations": [{"id": "T", "name": "T"}]}), encoding="utf-8")
        store = InMemoryDocumentStore()
        assert await load_fixtures(store, path) == 1
