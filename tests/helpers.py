"""Builders shared by the test modules (imported as ``helpers``)."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from langchain_core.messages import AIMessage


def make_org(tenant_id: str = "Acme", **overrides):
    from carebot.models import Organization

    fields = {
        "tenant_id": tenant_id,
        "name": f"{tenant_id} Health",
        "whatsapp_token": f"token-{tenant_id}",
        "whatsapp_phone_id": f"PID-{tenant_id}",
        "billing_active": True,
    }
    fields.update(overrides)
    return Organization(**fields)


def org_document(org) -> dict:
    """Organization as stored: the tenant id is the document id."""
    return {"id": org.tenant_id, **org.to_document()}


def make_llm(content: str = "", tool_calls: list | None = None, invalid_tool_calls: list | None = None):
    """Mock chat model whose ``ainvoke`` returns a fixed AIMessage."""
    message = AIMessage(
        content=content,
        tool_calls=tool_calls or [],
        invalid_tool_calls=invalid_tool_calls or [],
    )
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=message)
    return llm


def tool_call(name: str, args: dict) -> dict:
    return {"name": name, "args": args, "id": f"call-{name}", "type": "tool_call"}


def webhook_body(
    text: str | None = "Hello there",
    *,
    phone: str = "15551234567",
    name: str = "Jane Doe",
    phone_number_id: str = "PID-Acme",
    message: dict | None = None,
) -> dict:
    """Minimal WhatsApp Cloud API delivery with one message."""
    if message is None:
        message = {"from": phone, "id": "wamid.1", "type": "text", "text": {"body": text}}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "contacts": [{"wa_id": phone, "profile": {"name": name}}],
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


def form_message(form: dict | str, *, phone: str = "15551234567") -> dict:
    raw = form if isinstance(form, str) else json.dumps(form)
    return {
        "from": phone,
        "id": "wamid.form",
        "type": "interactive",
        "interactive": {"type": "nfm_reply", "nfm_reply": {"response_json": raw, "name": "flow"}},
    }


class StepClock:
    """Deterministic clock: each call advances one second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


