"""Shared test fixtures for the CareBot test suite."""

from __future__ import annotations

import asyncio
import os
from unittest.mock import create_autospec, patch

import pytest
from helpers import StepClock, make_llm, make_org, org_document


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
    os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test-verify-token")
    os.environ.setdefault("DEFAULT_TENANT_ID", "Test")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def store():
    from carebot.services.store import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture
def org():
    return make_org()


@pytest.fixture
def messenger():
    """WhatsApp client double: every send succeeds."""
    from carebot.services.whatsapp_client import WhatsAppClient

    client = create_autospec(WhatsAppClient, instance=True)
    client.send_text.return_value = True
    client.send_template.return_value = True
    client.send_flow.return_value = True
    client.fetch_media.return_value = None
    client.check_phone_number.return_value = 200
    return client


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def notifications(store, clock):
    from carebot.services.notifications import NotificationEmitter

    return NotificationEmitter(store, clock=clock)


@pytest.fixture
def contacts(store, messenger, notifications, clock):
    from carebot.services.contacts import ContactManager

    return ContactManager(store, messenger, notifications, clock=clock)


@pytest.fixture
def flows(store, messenger, contacts, clock):
    from carebot.tools.flows import FlowHandlers

    return FlowHandlers(store, messenger, contacts, clock=clock)


# ── HTTP app ─────────────────────────────────────────────────────────


@pytest.fixture
def bot_llm():
    """Router model double; replies in free text unless a test changes it."""
    return make_llm("Hello from the bot")


@pytest.fixture
def api_services(messenger, bot_llm):
    """Service graph over an in-memory store seeded with Acme (active) and Test (inactive)."""
    from carebot.bootstrap import create_services
    from carebot.services.media import MediaUploader
    from carebot.services.store import InMemoryDocumentStore, load_fixtures

    with (
        patch("carebot.agent._build_llm", return_value=bot_llm),
        patch("carebot.services.knowledge._build_knowledge_llm", return_value=make_llm("Open 9 to 6.")),
        patch("carebot.tools.triage._build_classifier_llm", return_value=make_llm("General Physician")),
    ):
        services = create_services(
            InMemoryDocumentStore(), messenger=messenger, uploader=MediaUploader(""),
        )
    asyncio.run(
        load_fixtures(
            services.store,
            {
                "organizations": [
                    org_document(make_org("Acme")),
                    org_document(make_org("Test", billing_active=False)),
                ],
            },
        )
    )
    return services


@pytest.fixture
def client(api_services):
    from fastapi.testclient import TestClient

    from carebot.server import app

    app.state.services = api_services
    yield TestClient(app)
    del app.state.services
