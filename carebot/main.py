"""CLI entry point: chat with one tenant's assistant from the terminal.

Messages typed here go through the same webhook processing as real
deliveries; outbound WhatsApp messages are printed instead of sent.

Usage:
    uv run python -m carebot.main --tenant Acme --seed fixtures.json
    uv run python -m carebot.main --tenant Acme --seed fixtures.json --debug

Commands inside the chat:
    /form {"screen_0_Full_Name_0": "..."}   submit a form reply as JSON
    quit                                    exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
from dotenv import load_dotenv

from carebot.api.schemas import WebhookPayload
from carebot.bootstrap import create_services
from carebot.config import HTTP_TIMEOUT_SECONDS
from carebot.models import Organization
from carebot.services.store import load_fixtures
from carebot.services.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

CLI_PHONE = "15550000000"
FORM_COMMAND = "/form "


class ConsoleWhatsAppClient(WhatsAppClient):
    """Prints outbound messages instead of calling the Graph API."""

    async def _post_message(self, org: Organization, payload: dict[str, Any]) -> bool:
        kind = payload.get("type")
        if kind == "text":
            print(f"\n{org.display_name}: {payload['text']['body']}\n")
        elif kind == "template":
            print(f"\n[{org.display_name} sent the '{payload['template']['name']}' template]\n")
        elif kind == "interactive":
            parameters = payload["interactive"]["action"]["parameters"]
            print(
                f"\n[{org.display_name} sent a form: {parameters['flow_cta']} "
                f"(flow token {parameters['flow_token']})]\n"
            )
        else:
            print(f"\n[{org.display_name} sent a {kind} message]\n")
        return True


def _configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("carebot").setLevel(logging.DEBUG if debug else logging.INFO)


def build_delivery(org: Organization, name: str, text: str) -> WebhookPayload:
    """Wrap console input in a webhook envelope addressed to *org*."""
    message: dict[str, Any] = {"from": CLI_PHONE, "id": "cli", "type": "text"}
    if text.startswith(FORM_COMMAND):
        message["type"] = "interactive"
        message["interactive"] = {
            "type": "nfm_reply",
            "nfm_reply": {"response_json": text[len(FORM_COMMAND):].strip()},
        }
    else:
        message["text"] = {"body": text}
    return WebhookPayload.model_validate(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "changes": [
                        {
                            "value": {
                                "metadata": {"phone_number_id": org.whatsapp_phone_id},
                                "contacts": [{"wa_id": CLI_PHONE, "profile": {"name": name}}],
                                "messages": [message],
                            }
                        }
                    ]
                }
            ],
        }
    )


async def chat(tenant_id: str, seed: Path | None, name: str) -> None:
    http = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    services = create_services(messenger=ConsoleWhatsAppClient(http=http), http=http)
    try:
        if seed is not None:
            await load_fixtures(services.store, seed)
        org = await services.tenants.get_config(tenant_id)
        if org is None:
            print(f"Tenant {tenant_id!r} not found. Seed it with --seed.")
            return
        if not org.whatsapp_token:
            # The console client never calls the API but sends require credentials
            org = org.model_copy(
                update={"whatsapp_token": "console", "whatsapp_phone_id": org.whatsapp_phone_id or "console"},
            )

        print("\n" + "=" * 60)
        print(f"  {org.display_name} - WhatsApp assistant (CLI)")
        print("=" * 60)
        print("  Type a message and press Enter. 'quit' exits.")
        print("=" * 60 + "\n")

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            await services.processor.process(org, build_delivery(org, name, user_input))
    finally:
        await services.aclose()


def main():
    parser = argparse.ArgumentParser(description="CareBot CLI chat")
    parser.add_argument("--tenant", required=True, help="Tenant (organization) id")
    parser.add_argument("--seed", type=Path, help="JSON fixtures to load into the store")
    parser.add_argument("--name", default="CLI User", help="Display name for the chatting contact")
    parser.add_argument("--debug", action="store_true", help="Show debug logging")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)
    asyncio.run(chat(args.tenant, args.seed, args.name))


if __name__ == "__main__":
    main()
