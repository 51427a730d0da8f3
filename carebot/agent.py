"""LangGraph intent router for tenant conversations.

Architecture:
  A small StateGraph decides, per user message, whether the model picked
  one of five intent functions or answered in free text:

    1. **chatbot**  — Claude with the intent catalog bound as tools.  The
                      first tool call (if any) is decoded into a closed
                      ``Intent`` value.
    2. **dispatch** — runs the handler for the decoded intent and records
                      its return value as the assistant turn.
    3. **respond**  — records the model's own text as the assistant turn
                      and unwraps ``{"reply": ...}`` JSON for the user.

  Routing:
    chatbot → (intent?)    → dispatch → END
    chatbot → (no intent?) → respond  → END

  Memory:
    No checkpointer.  The ordered turn list is stored on the contact and
    passed in on every call, so history survives restarts and lives with
    the tenant's data.  Per-call collaborators (organization, handlers)
    travel in ``config["configurable"]["turn"]``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from carebot.config import ANTHROPIC_API_KEY, LLM_TIMEOUT_SECONDS, MODEL_NAME
from carebot.models import Organization
from carebot.prompts import get_router_system_prompt
from carebot.services.knowledge import KnowledgeStore
from carebot.services.metrics import metrics
from carebot.tools.flows import FlowHandlers
from carebot.tools.triage import SymptomTriage

logger = logging.getLogger(__name__)

ARGUMENT_ERROR_REPLY = "Error parsing function arguments."
FALLBACK_REPLY = "Sorry, I'm having trouble answering right now. Please try again in a moment."

# Non-system turns sent to the model; the stored history keeps everything
HISTORY_WINDOW = 40


def out_of_scope_reply(org: Organization) -> str:
    return f"Kindly only ask anything related to {org.display_name}."


# ── Intent catalog ───────────────────────────────────────────────────


def _tool(name: str, description: str, argument: str, argument_doc: str, **extra: Any) -> dict:
    return {
        "name": name,
        "description": description,
        "input_schema": {
            "type": "object",
            "properties": {argument: {"type": "string", "description": argument_doc, **extra}},
            "required": [argument],
        },
    }


INTENT_TOOLS: list[dict[str, Any]] = [
    _tool(
        "appointment_flow",
        "Book a new appointment, or reschedule or cancel an existing one.",
        "action",
        "What the user wants to do with an appointment.",
        enum=["new", "reschedule", "cancel"],
    ),
    _tool(
        "support_flow",
        "Open a support ticket for complaints, problems or issues with the organization.",
        "department",
        "Department the issue concerns, if the user mentioned one.",
    ),
    _tool(
        "knowledge_lookup",
        "Answer questions about the organization: services, timings, prices, location, doctors, policies.",
        "user_query",
        "The user's question, in their words.",
    ),
    _tool(
        "small_talk",
        "Respond to greetings, thanks and casual conversation.",
        "user_message",
        "The user's message.",
    ),
    _tool(
        "symptom_assessment",
        "Suggest a specialty and matching doctors for symptoms the user describes.",
        "user_symptom",
        "The symptoms as described by the user.",
    ),
]


# ── Intents ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AppointmentIntent:
    action: str


@dataclass(frozen=True)
class SupportIntent:
    department: str


@dataclass(frozen=True)
class KnowledgeIntent:
    query: str


@dataclass(frozen=True)
class SmallTalkIntent:
    message: str


@dataclass(frozen=True)
class SymptomIntent:
    symptom: str


@dataclass(frozen=True)
class MalformedIntent:
    """A known function whose arguments could not be decoded."""

    name: str
    detail: str


@dataclass(frozen=True)
class UnrecognizedIntent:
    name: str


Intent = Union[
    AppointmentIntent,
    SupportIntent,
    KnowledgeIntent,
    SmallTalkIntent,
    SymptomIntent,
    MalformedIntent,
    UnrecognizedIntent,
]

_INTENT_ARGUMENTS = {
    "appointment_flow": (AppointmentIntent, "action"),
    "support_flow": (SupportIntent, "department"),
    "knowledge_lookup": (KnowledgeIntent, "user_query"),
    "small_talk": (SmallTalkIntent, "user_message"),
    "symptom_assessment": (SymptomIntent, "user_symptom"),
}


def decode_intent(name: str, arguments: dict[str, Any] | str | None) -> Intent:
    """Turn a function call into an ``Intent``.  Never raises."""
    if name not in _INTENT_ARGUMENTS:
        return UnrecognizedIntent(name)
    intent_cls, field = _INTENT_ARGUMENTS[name]
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            return MalformedIntent(name, exc.msg)
    if not isinstance(arguments, dict):
        return MalformedIntent(name, "arguments are not an object")
    value = arguments.get(field)
    if not isinstance(value, str):
        return MalformedIntent(name, f"missing string argument {field!r}")
    return intent_cls(value)


# ── Turns ────────────────────────────────────────────────────────────


def with_system_turn(turns: list[dict[str, str]], org: Organization) -> list[dict[str, str]]:
    """Prepend the tenant's system turn unless the history already has one."""
    if any(turn.get("role") == "system" for turn in turns):
        return list(turns)
    return [{"role": "system", "content": get_router_system_prompt(org.display_name)}, *turns]


def to_model_messages(turns: list[dict[str, str]]) -> list[AnyMessage]:
    system = [SystemMessage(content=t["content"]) for t in turns if t["role"] == "system"][:1]
    window = [t for t in turns if t["role"] != "system"][-HISTORY_WINDOW:]
    # The model expects the conversation to open with a user turn
    while window and window[0]["role"] != "user":
        window.pop(0)
    messages: list[AnyMessage] = list(system)
    for turn in window:
        if turn["role"] == "user":
            messages.append(HumanMessage(content=turn["content"]))
        else:
            messages.append(AIMessage(content=turn["content"]))
    return messages


def message_text(message: AIMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "") for block in content if isinstance(block, dict) and block.get("type") == "text"
    )


def unwrap_reply(text: str) -> str:
    """``'{"reply": "Hi"}'`` → ``"Hi"``; anything else is returned unchanged."""
    stripped = text.strip()
    if not stripped.startswith("{"):
        return text
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return text
    if isinstance(data, dict) and isinstance(data.get("reply"), str):
        return data["reply"]
    return text


# ── State schema ─────────────────────────────────────────────────────


class RouterState(TypedDict):
    """``turns`` is the full history including the new user turn; nodes
    return it with the assistant turn appended.  ``draft`` holds the
    model's free text when it did not pick an intent."""

    turns: list[dict[str, str]]
    intent: Intent | None
    draft: str
    reply: str


@dataclass
class TurnContext:
    org: Organization
    phone: str
    flows: FlowHandlers
    knowledge: KnowledgeStore
    triage: SymptomTriage


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm():
    """Claude with the intent catalog bound as tools."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=1024,
    )
    return llm.bind_tools(INTENT_TOOLS)


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node():
    llm_with_tools = _build_llm()

    async def chatbot_node(state: RouterState) -> dict:
        try:
            async with metrics.timed("anthropic", "route_intent"):
                response = await asyncio.wait_for(
                    llm_with_tools.ainvoke(to_model_messages(state["turns"])),
                    timeout=LLM_TIMEOUT_SECONDS,
                )
        except Exception as exc:
            logger.warning("Intent routing call failed, using fallback reply: %s", exc)
            return {"intent": None, "draft": FALLBACK_REPLY}

        if response.tool_calls:
            call = response.tool_calls[0]
            if len(response.tool_calls) > 1:
                logger.info("Model returned %d tool calls; using %s", len(response.tool_calls), call["name"])
            intent = decode_intent(call["name"], call.get("args"))
        elif response.invalid_tool_calls:
            call = response.invalid_tool_calls[0]
            intent = MalformedIntent(call.get("name") or "", call.get("error") or "invalid arguments")
        else:
            intent = None
        logger.debug("Router picked intent=%r", intent)
        return {"intent": intent, "draft": message_text(response)}

    return chatbot_node


async def dispatch_intent(intent: Intent, ctx: TurnContext) -> str:
    if isinstance(intent, AppointmentIntent):
        return await ctx.flows.appointment_flow(intent.action, ctx.org, ctx.phone)
    if isinstance(intent, SupportIntent):
        return await ctx.flows.support_flow(intent.department, ctx.org, ctx.phone)
    if isinstance(intent, KnowledgeIntent):
        return await ctx.knowledge.lookup(intent.query, ctx.org)
    if isinstance(intent, SmallTalkIntent):
        return ctx.flows.small_talk(intent.message, ctx.org)
    if isinstance(intent, SymptomIntent):
        return await ctx.triage.assess(intent.symptom, ctx.org.tenant_id)
    if isinstance(intent, MalformedIntent):
        logger.warning("Malformed %s call: %s", intent.name, intent.detail)
        return ARGUMENT_ERROR_REPLY
    logger.warning("Model called unknown function %r", intent.name)
    return out_of_scope_reply(ctx.org)


async def dispatch_node(state: RouterState, config: RunnableConfig) -> dict:
    ctx: TurnContext = config["configurable"]["turn"]
    reply = await dispatch_intent(state["intent"], ctx)
    return {"reply": reply, "turns": [*state["turns"], {"role": "assistant", "content": reply}]}


def respond_node(state: RouterState) -> dict:
    draft = state["draft"] or FALLBACK_REPLY
    return {
        "reply": unwrap_reply(draft),
        "turns": [*state["turns"], {"role": "assistant", "content": draft}],
    }


def route_after_chatbot(state: RouterState) -> str:
    return "dispatch" if state.get("intent") is not None else "respond"


# ── Graph assembly ───────────────────────────────────────────────────


def create_intent_router_graph():
    graph = StateGraph(RouterState)
    graph.add_node("chatbot", _make_chatbot_node())
    graph.add_node("dispatch", dispatch_node)
    graph.add_node("respond", respond_node)

    graph.set_entry_point("chatbot")
    graph.add_conditional_edges(
        "chatbot", route_after_chatbot, {"dispatch": "dispatch", "respond": "respond"},
    )
    graph.add_edge("dispatch", END)
    graph.add_edge("respond", END)

    compiled = graph.compile()
    logger.debug("Intent router compiled — model: %s, intents: %d", MODEL_NAME, len(INTENT_TOOLS))
    return compiled


@dataclass
class RouterResult:
    reply: str
    turns: list[dict[str, str]]
    intent: Intent | None


class IntentRouter:
    """Runs one user message through the graph and returns the updated turns."""

    def __init__(self) -> None:
        self._graph = create_intent_router_graph()

    async def respond(
        self, user_text: str, history: list[dict[str, str]], ctx: TurnContext
    ) -> RouterResult:
        turns = [*with_system_turn(history, ctx.org), {"role": "user", "content": user_text}]
        state = await self._graph.ainvoke(
            {"turns": turns, "intent": None, "draft": "", "reply": ""},
            config={"configurable": {"turn": ctx}},
        )
        return RouterResult(state["reply"], state["turns"], state.get("intent"))
