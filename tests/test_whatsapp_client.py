"""Tests for the WhatsApp Cloud API client and its payload builders."""

from __future__ import annotations

import json

import httpx
import pytest
from helpers import make_org

from carebot.services.whatsapp_client import (
    MAX_RETRIES,
    WhatsAppAPIError,
    WhatsAppClient,
    flow_payload,
    template_payload,
    text_payload,
)

BASE = "https://graph.test/v21.0"


class Recorder:
    """MockTransport handler returning queued responses and keeping requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(recorder: Recorder) -> WhatsAppClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return WhatsAppClient(BASE, http=http, backoff_seconds=0)


# ── Payload builders ─────────────────────────────────────────────────


class TestPayloads:
    def test_text(self):
        assert text_payload("1555", "hi") == {
            "messaging_product": "whatsapp",
            "to": "1555",
            "type": "text",
            "text": {"body": "hi"},
        }

    def test_template_components(self):
        payload = template_payload("1555", "welcome", header_params=["Acme"], body_params=["Acme", "Jane"])

        template = payload["template"]
        assert template["language"] == {"code": "en", "policy": "deterministic"}
        header, body, button = template["components"]
        assert header["parameters"] == [{"type": "text", "text": "Acme"}]
        assert [p["text"] for p in body["parameters"]] == ["Acme", "Jane"]
        assert button == {"type": "button", "sub_type": "FLOW", "index": 0, "parameters": []}

    def test_flow_addressed_by_id_or_name(self):
        by_id = flow_payload(
            "1555", flow_token="123456", header="h", body="b", footer="f", cta="Go", flow_id="FLOW-1",
        )
        by_name = flow_payload(
            "1555", flow_token="123456", header="h", body="b", footer="f", cta="Go", flow_name="Appointment",
        )

        params = by_id["interactive"]["action"]["parameters"]
        assert params["flow_id"] == "FLOW-1"
        assert params["flow_action"] == "data_exchange"
        assert params["flow_token"] == "123456"
        assert "flow_name" not in params
        assert by_name["interactive"]["action"]["parameters"]["flow_name"] == "Appointment"


# ── Client ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestSend:
    async def test_send_text_uses_tenant_credentials(self):
        recorder = Recorder(httpx.Response(200, json={"messages": [{"id": "wamid.x"}]}))
        client = _client(recorder)

        assert await client.send_text(make_org("Acme"), "1555", "hello") is True

        [request] = recorder.requests
        assert str(request.url) == f"{BASE}/PID-Acme/messages"
        assert request.headers["Authorization"] == "Bearer token-Acme"
        assert json.loads(request.content)["text"] == {"body": "hello"}

    async def test_retries_server_errors_then_succeeds(self):
        recorder = Recorder(httpx.Response(503), httpx.Response(502), httpx.Response(200, json={}))
        client = _client(recorder)

        assert await client.send_text(make_org(), "1555", "hello") is True
        assert len(recorder.requests) == 3

    async def test_retries_timeouts(self):
        recorder = Recorder(httpx.ReadTimeout("slow"), httpx.Response(200, json={}))
        client = _client(recorder)

        assert await client.send_text(make_org(), "1555", "hello") is True
        assert len(recorder.requests) == 2

    async def test_gives_up_after_max_retries(self):
        recorder = Recorder(httpx.Response(500))
        client = _client(recorder)

        assert await client.send_text(make_org(), "1555", "hello") is False
        assert len(recorder.requests) == MAX_RETRIES

    async def test_client_errors_are_not_retried(self):
        recorder = Recorder(httpx.Response(400, json={"error": {"message": "bad"}}))
        client = _client(recorder)

        assert await client.send_text(make_org(), "1555", "hello") is False
        assert len(recorder.requests) == 1

    async def test_missing_credentials_skip_the_call(self):
        recorder = Recorder(httpx.Response(200))
        client = _client(recorder)

        assert await client.send_text(make_org(whatsapp_token=""), "1555", "hello") is False
        assert recorder.requests == []

    async def test_request_raises_api_error_with_status(self):
        client = _client(Recorder(httpx.Response(401)))

        with pytest.raises(WhatsAppAPIError) as exc_info:
            await client._request("GET", f"{BASE}/x", token="t", operation="GET /x")
        assert exc_info.value.status_code == 401


@pytest.mark.asyncio
class TestMedia:
    async def test_fetch_media_follows_metadata_url(self):
        recorder = Recorder(
            httpx.Response(200, json={"url": "https://cdn.test/m1", "mime_type": "image/jpeg"}),
            httpx.Response(200, content=b"\xff\xd8jpeg"),
        )
        client = _client(recorder)

        media = await client.fetch_media(make_org(), "m1")

        assert media.content == b"\xff\xd8jpeg"
        assert media.mime_type == "image/jpeg"
        assert [str(r.url) for r in recorder.requests] == [f"{BASE}/m1", "https://cdn.test/m1"]

    async def test_fetch_media_failure_returns_none(self):
        client = _client(Recorder(httpx.Response(404)))
        assert await client.fetch_media(make_org(), "m1") is None

    async def test_check_phone_number_reports_status(self):
        assert await _client(Recorder(httpx.Response(200, json={}))).check_phone_number(make_org()) == 200
        assert await _client(Recorder(httpx.Response(401))).check_phone_number(make_org()) == 401
