"""Async client for the WhatsApp Cloud (Graph) API with retry logic.

One client instance serves every tenant: credentials are taken from the
``Organization`` passed to each call, so a message is always sent with the
token and phone-number id of the tenant that owns the conversation.

Send methods return ``True``/``False`` instead of raising, because a failed
reply must never fail webhook processing; the failure is logged and counted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from carebot.config import GRAPH_API_BASE_URL, HTTP_TIMEOUT_SECONDS
from carebot.models import Organization
from carebot.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0

TEMPLATE_LANGUAGE = {"code": "en", "policy": "deterministic"}


class WhatsAppAPIError(Exception):
    """Raised when a Graph API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class MediaDownload:
    content: bytes
    mime_type: str


# ── Payload builders ────────────────────────────────────────────────


def text_payload(to: str, body: str) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body},
    }


def template_payload(
    to: str,
    name: str,
    *,
    header_params: list[str] | None = None,
    body_params: list[str] | None = None,
    flow_button: bool = True,
) -> dict[str, Any]:
    """Template message; the flow button is always the first button."""
    components: list[dict[str, Any]] = []
    if header_params:
        components.append(
            {"type": "header", "parameters": [{"type": "text", "text": p} for p in header_params]}
        )
    if body_params:
        components.append(
            {"type": "body", "parameters": [{"type": "text", "text": p} for p in body_params]}
        )
    if flow_button:
        components.append({"type": "button", "sub_type": "FLOW", "index": 0, "parameters": []})
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "template",
        "template": {"name": name, "language": dict(TEMPLATE_LANGUAGE), "components": components},
    }


def flow_payload(
    to: str,
    *,
    flow_token: str,
    header: str,
    body: str,
    footer: str,
    cta: str,
    flow_id: str = "",
    flow_name: str = "",
) -> dict[str, Any]:
    """Interactive flow message in ``data_exchange`` mode.

    The flow is addressed by id when one is configured, else by name.
    """
    parameters = {
        "flow_message_version": "3",
        "flow_action": "data_exchange",
        "flow_token": flow_token,
        "flow_cta": cta,
    }
    if flow_id:
        parameters["flow_id"] = flow_id
    else:
        parameters["flow_name"] = flow_name
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "interactive",
        "interactive": {
            "type": "flow",
            "header": {"type": "text", "text": header},
            "body": {"text": body},
            "footer": {"text": footer},
            "action": {
                "name": "flow",
                "parameters": parameters,
            },
        },
    }


# ── Client ──────────────────────────────────────────────────────────


class WhatsAppClient:
    """Graph API wrapper with exponential-backoff retries on timeouts,
    connection errors and 5xx responses.  4xx responses are not retried."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ):
        self._base_url = (base_url or GRAPH_API_BASE_URL).rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._backoff_seconds = backoff_seconds

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retries."""
        headers = {"Authorization": f"Bearer {token}"}
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                async with metrics.timed("whatsapp", operation):
                    response = await self._http.request(method, url, headers=headers, json=json_body)
                    if response.status_code >= 400:
                        raise WhatsAppAPIError(
                            f"Graph API error {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Graph API %s attempt %d/%d failed (%s)",
                    operation, attempt, MAX_RETRIES, type(exc).__name__,
                )
            except WhatsAppAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Graph API %s server error on attempt %d/%d", operation, attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

        raise WhatsAppAPIError(
            f"Graph API {operation} failed after {MAX_RETRIES} attempts: {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    async def _post_message(self, org: Organization, payload: dict[str, Any]) -> bool:
        if not org.whatsapp_token or not org.whatsapp_phone_id:
            logger.error("Tenant %s has no WhatsApp credentials; message dropped", org.tenant_id)
            return False
        url = f"{self._base_url}/{org.whatsapp_phone_id}/messages"
        try:
            await self._request(
                "POST", url, token=org.whatsapp_token, operation="POST /messages", json_body=payload,
            )
        except (WhatsAppAPIError, httpx.HTTPError) as exc:
            logger.error(
                "Send %s to %s failed for tenant=%s: %s",
                payload.get("type"), payload.get("to"), org.tenant_id, exc,
            )
            return False
        logger.debug("Sent %s to %s for tenant=%s", payload.get("type"), payload.get("to"), org.tenant_id)
        return True

    # ── Outbound messages ────────────────────────────────────────────

    async def send_text(self, org: Organization, to: str, body: str) -> bool:
        return await self._post_message(org, text_payload(to, body))

    async def send_template(
        self,
        org: Organization,
        to: str,
        name: str,
        *,
        header_params: list[str] | None = None,
        body_params: list[str] | None = None,
    ) -> bool:
        payload = template_payload(to, name, header_params=header_params, body_params=body_params)
        return await self._post_message(org, payload)

    async def send_flow(
        self,
        org: Organization,
        to: str,
        *,
        flow_token: str,
        header: str,
        body: str,
        footer: str,
        cta: str,
        flow_id: str = "",
        flow_name: str = "",
    ) -> bool:
        payload = flow_payload(
            to,
            flow_token=flow_token,
            header=header,
            body=body,
            footer=footer,
            cta=cta,
            flow_id=flow_id,
            flow_name=flow_name,
        )
        return await self._post_message(org, payload)

    # ── Media and diagnostics ────────────────────────────────────────

    async def fetch_media(self, org: Organization, media_id: str) -> MediaDownload | None:
        """Resolve *media_id* to its download URL and fetch the bytes."""
        try:
            meta = await self._request(
                "GET", f"{self._base_url}/{media_id}",
                token=org.whatsapp_token, operation="GET /media",
            )
            meta_json = meta.json()
            url = meta_json.get("url")
            if not url:
                logger.error("Media %s metadata has no url", media_id)
                return None
            download = await self._request(
                "GET", url, token=org.whatsapp_token, operation="GET media content",
            )
        except (WhatsAppAPIError, httpx.HTTPError) as exc:
            logger.error("Media %s download failed for tenant=%s: %s", media_id, org.tenant_id, exc)
            return None
        mime_type = meta_json.get("mime_type") or download.headers.get(
            "content-type", "application/octet-stream",
        )
        return MediaDownload(content=download.content, mime_type=mime_type)

    async def check_phone_number(self, org: Organization) -> int | None:
        """Probe the tenant's phone-number object; returns the HTTP status."""
        try:
            response = await self._request(
                "GET", f"{self._base_url}/{org.whatsapp_phone_id}",
                token=org.whatsapp_token, operation="GET /phone_number",
            )
        except WhatsAppAPIError as exc:
            return exc.status_code
        except httpx.HTTPError as exc:
            logger.warning("Connectivity probe for tenant=%s failed: %s", org.tenant_id, exc)
            return None
        return response.status_code

    async def aclose(self) -> None:
        await self._http.aclose()
