"""Tests for the CLI's delivery builder and console messenger."""

from __future__ import annotations

import pytest
from helpers import make_org

from carebot.main import CLI_PHONE, ConsoleWhatsAppClient, build_delivery


class TestBuildDelivery:
    def test_text_message(self):
        payload = build_delivery(make_org(), "Jane", "hello")

        assert payload.phone_number_id == "PID-Acme"
        assert payload.contact_name == "Jane"
        assert payload.message.from_ == CLI_PHONE
        assert payload.message.text.body == "hello"

    def test_form_command(self):
        payload = build_delivery(make_org(), "Jane", '/form {"screen_0_Full_Name_0": "Jane"}')

        reply = payload.message.interactive
        assert reply.type == "nfm_reply"
        assert reply.nfm_reply.response_json == '{"screen_0_Full_Name_0": "Jane"}'


@pytest.mark.asyncio
class TestConsoleWhatsAppClient:
    async def test_text_is_printed(self, capsys):
        client = ConsoleWhatsAppClient()
        try:
            assert await client.send_text(make_org(), CLI_PHONE, "Hi Jane") is True
        finally:
            await client.aclose()
        assert "Acme Health: Hi Jane" in capsys.readouterr().out

    async def test_flow_is_summarised(self, capsys):
        client = ConsoleWhatsAppClient()
        try:
            await client.send_flow(
                make_org(), CLI_PHONE, flow_token="123456", header="h", body="b", footer="f", cta="Book",
            )
        finally:
            await client.aclose()
        assert "sent a form: Book (flow token 123456)" in capsys.readouterr().out
