"""Per-tenant knowledge documents and question answering over them.

Loading order for a tenant's document (first success wins and is cached
until an explicit reload):

  1. the organization's ``knowledge_url``
  2. ``<KNOWLEDGE_DIR>/<knowledge_file>`` or ``knowledgebase_<tenant_id>.txt``
  3. ``<KNOWLEDGE_DIR>/knowledgebase.txt``

Answering first tries a case-insensitive line match and asks the model to
summarise only the matching lines; without matches the whole document is
searched.  Model answers that amount to "nothing relevant" are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from carebot.config import (
    ANTHROPIC_API_KEY,
    FAST_MODEL_NAME,
    HTTP_TIMEOUT_SECONDS,
    KNOWLEDGE_DIR,
    LLM_TIMEOUT_SECONDS,
)
from carebot.models import Organization
from carebot.prompts import KNOWLEDGE_SEARCH_PROMPT, KNOWLEDGE_SUMMARY_PROMPT
from carebot.services.cache import Cache, NoExpiry
from carebot.services.metrics import metrics
from carebot.services.tenants import TenantResolver

logger = logging.getLogger(__name__)

SHARED_KNOWLEDGE_FILE = "knowledgebase.txt"
NO_INFO_MARKERS = ("no relevant info", "no relevant information", "nothing relevant")
MIN_ANSWER_LENGTH = 4

_CK_KNOWLEDGE = "knowledge:"


def no_knowledge_text(org_name: str) -> str:
    return f"No knowledge base available for {org_name}."


def no_answer_text(org_name: str) -> str:
    return f"No direct info found in the knowledge base. Please ask more about {org_name}!"


def matching_lines(document: str, query: str) -> list[str]:
    """Non-empty lines containing *query*, compared case-insensitively."""
    needle = query.lower().strip()
    return [line.strip() for line in document.splitlines() if line.strip() and needle in line.lower()]


def is_no_info(answer: str) -> bool:
    lowered = answer.strip().lower()
    return len(lowered) < MIN_ANSWER_LENGTH or any(marker in lowered for marker in NO_INFO_MARKERS)


def _build_knowledge_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=512,
    )


class KnowledgeStore:
    def __init__(
        self,
        tenants: TenantResolver,
        cache: Cache | None = None,
        *,
        knowledge_dir: Path = KNOWLEDGE_DIR,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._tenants = tenants
        self._cache = cache or Cache(NoExpiry())
        self._dir = knowledge_dir
        self._http = http or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._llm = _build_knowledge_llm()

    # ── Loading ──────────────────────────────────────────────────────

    async def load(self, org: Organization) -> str | None:
        """Return the tenant's document text, or ``None`` if no source has one."""
        cached = self._cache.get(f"{_CK_KNOWLEDGE}{org.tenant_id}")
        if cached is not None:
            return cached

        text = await self._fetch_url(org) if org.knowledge_url else None
        if text is None:
            text = self._read_local(org)
        if text is None:
            logger.warning("No knowledge document found for tenant=%s", org.tenant_id)
            return None

        self._cache.put(f"{_CK_KNOWLEDGE}{org.tenant_id}", text)
        return text

    async def _fetch_url(self, org: Organization) -> str | None:
        try:
            async with metrics.timed("knowledge", "GET document"):
                response = await self._http.get(org.knowledge_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Knowledge URL for tenant=%s failed: %s", org.tenant_id, exc)
            return None
        logger.info("Loaded knowledge for tenant=%s from URL", org.tenant_id)
        return response.text

    def _read_local(self, org: Organization) -> str | None:
        tenant_file = org.knowledge_file or f"knowledgebase_{org.tenant_id}.txt"
        for name in (tenant_file, SHARED_KNOWLEDGE_FILE):
            path = self._dir / name
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            logger.info("Loaded knowledge for tenant=%s from %s", org.tenant_id, path.name)
            return text
        return None

    async def reload(self, tenant_id: str) -> bool:
        """Drop and re-load one tenant's document.  ``False`` if unavailable."""
        self.clear(tenant_id)
        org = await self._tenants.get_config(tenant_id)
        if org is None:
            return False
        return await self.load(org) is not None

    def clear(self, tenant_id: str | None = None) -> int:
        if tenant_id is None:
            return self._cache.invalidate_prefix(_CK_KNOWLEDGE)
        return int(self._cache.invalidate(f"{_CK_KNOWLEDGE}{tenant_id}"))

    @property
    def cached_count(self) -> int:
        return self._cache.entry_count

    # ── Answering ────────────────────────────────────────────────────

    async def lookup(self, query: str, org: Organization) -> str:
        document = await self.load(org)
        if document is None:
            return no_knowledge_text(org.display_name)

        lines = matching_lines(document, query)
        if lines:
            answer = await self._ask(
                KNOWLEDGE_SUMMARY_PROMPT.format(
                    org_name=org.display_name, query=query, lines="\n".join(lines),
                ),
                "summarise_matches",
            )
            # Without a usable summary the matched lines are the answer
            return answer or "\n".join(lines)

        answer = await self._ask(
            KNOWLEDGE_SEARCH_PROMPT.format(
                org_name=org.display_name, query=query, document=document,
            ),
            "search_document",
        )
        return answer or no_answer_text(org.display_name)

    async def _ask(self, prompt: str, operation: str) -> str:
        """Run one prompt; ``""`` for failures and no-information answers."""
        try:
            async with metrics.timed("anthropic", operation):
                response = await asyncio.wait_for(
                    self._llm.ainvoke([HumanMessage(content=prompt)]),
                    timeout=LLM_TIMEOUT_SECONDS,
                )
        except Exception as exc:
            logger.warning("Knowledge %s failed: %s", operation, exc)
            return ""
        answer = str(response.content).strip()
        return "" if is_no_info(answer) else answer

    async def aclose(self) -> None:
        await self._http.aclose()
