"""Tests for contacts, patients, transcripts and per-contact serialisation."""

from __future__ import annotations

import asyncio

import pytest
from helpers import make_org

from carebot.models import Direction, NotificationEvent, Patient
from carebot.services.contacts import (
    CONTACTS,
    KeyedLocks,
    contact_key,
    truncate_body,
)
from carebot.services.notifications import notifications_collection


class TestTruncateBody:
    def test_short_bodies_are_untouched(self):
        assert truncate_body("hello") == "hello"
        assert truncate_body("x" * 300) == "x" * 300

    def test_long_bodies_are_cut_and_marked(self):
        stored = truncate_body("x" * 301)
        assert stored == "x" * 300 + "...(truncated)"


@pytest.mark.asyncio
class TestGetOrCreate:
    async def test_first_contact_creates_everything_once(self, contacts, messenger, notifications, org):
        contact, created = await contacts.get_or_create("1555", org, "Jane Doe")

        assert created is True
        assert contact.id == contact_key("Acme", "1555")
        assert contact.tenant_id == "Acme"
        assert contact.registered is False
        messenger.send_template.assert_awaited_once_with(
            org, "1555", "welcome", header_params=["Acme Health"], body_params=["Acme Health", "Jane Doe"],
        )
        [note] = await notifications.list("Acme")
        assert note.event is NotificationEvent.NEW_USER
        assert note.message == "New user Jane Doe created an account"
        [patient] = await contacts.patients(contact)
        assert (patient.name, patient.relation) == ("Jane Doe", "Self")

    async def test_second_contact_only_refreshes_last_seen(self, contacts, messenger, notifications, org):
        first, _ = await contacts.get_or_create("1555", org, "Jane Doe")
        again, created = await contacts.get_or_create("1555", org, "Jane Doe")

        assert created is False
        assert again.id == first.id
        assert again.last_seen > first.last_seen
        assert messenger.send_template.await_count == 1
        assert len(await notifications.list("Acme")) == 1

    async def test_concurrent_first_messages_create_one_contact(self, contacts, messenger, store, org):
        results = await asyncio.gather(
            *(contacts.get_or_create("1555", org, "Jane Doe") for _ in range(5)),
        )

        assert sum(created for _, created in results) == 1
        assert len(await store.query(CONTACTS)) == 1
        assert messenger.send_template.await_count == 1
        assert len(await store.query(notifications_collection("Acme"))) == 1

    async def test_same_phone_in_two_tenants_is_two_contacts(self, contacts, org):
        a, _ = await contacts.get_or_create("1555", org, "Jane")
        b, created = await contacts.get_or_create("1555", make_org("Beta"), "Jane")

        assert created is True
        assert a.id != b.id
        assert len(await contacts.find_across_tenants("1555")) == 2

    async def test_find_reads_legacy_auto_id_contacts(self, contacts, store):
        await store.set(CONTACTS, "legacy-1", {"phone": "1555", "tenant_id": "Acme", "name": "Old"})
        contact = await contacts.find("1555", "Acme")
        assert contact.id == "legacy-1"


@pytest.mark.asyncio
class TestTranscriptAndPatients:
    async def test_transcript_stores_truncated_bodies_in_order(self, contacts, org):
        contact, _ = await contacts.get_or_create("1555", org, "Jane")
        await contacts.append_transcript(contact, Direction.INBOUND, "1555", "Acme", "text", "y" * 400)
        await contacts.append_transcript(contact, Direction.OUTBOUND, "Acme", "1555", "text", "ok")

        inbound, outbound = await contacts.transcript(contact)

        assert inbound.body.endswith("...(truncated)")
        assert len(inbound.body) == 300 + len("...(truncated)")
        assert outbound.direction is Direction.OUTBOUND

    async def test_save_history_persists_turns(self, contacts, org):
        contact, _ = await contacts.get_or_create("1555", org, "Jane")
        turns = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        await contacts.save_history(contact, turns)

        assert (await contacts.find("1555", "Acme")).history == turns

    async def test_find_patient_is_exact_name_match(self, contacts, org):
        contact, _ = await contacts.get_or_create("1555", org, "Jane")
        await contacts.add_patient(contact, Patient(name="Tom", relation="Son"))

        assert (await contacts.find_patient(contact, "Tom")).relation == "Son"
        assert await contacts.find_patient(contact, "tom") is None


@pytest.mark.asyncio
class TestMaintenance:
    async def test_backfill_legacy_fields(self, contacts, store):
        await store.set(CONTACTS, "old-1", {"phone": "1"})
        await store.set(CONTACTS, "old-2", {"phone": "2", "tenant_id": "Beta", "registered": False})

        counts = await contacts.backfill_legacy("Acme")

        assert counts == {"tenant_id": 1, "last_seen": 1, "registered": 1}
        old1 = (await store.get(CONTACTS, "old-1")).data
        assert old1["tenant_id"] == "Acme"
        assert old1["registered"] is True
        assert (await store.get(CONTACTS, "old-2")).data["registered"] is False

    async def test_registration_status(self, contacts, org):
        jane, _ = await contacts.get_or_create("1", org, "Jane")
        await contacts.get_or_create("2", org, "John")
        await contacts.update(jane, registered=True)

        status = await contacts.registration_status("Acme")

        assert status["total"] == 2
        assert status["registered"] == 1
        assert [c["name"] for c in status["unregistered_contacts"]] == ["John"]


@pytest.mark.asyncio
class TestKeyedLocks:
    async def test_same_key_runs_in_arrival_order(self):
        locks = KeyedLocks()
        order = []

        async def work(i):
            async with locks.hold("k"):
                order.append(f"start-{i}")
                await asyncio.sleep(0)
                order.append(f"end-{i}")

        await asyncio.gather(*(work(i) for i in range(3)))

        assert order == ["start-0", "end-0", "start-1", "end-1", "start-2", "end-2"]
        assert len(locks) == 0

    async def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                await inside.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold("b"):
            inside.set()
        await task
        assert len(locks) == 0
