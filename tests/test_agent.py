"""Tests for the intent router.

Covers:
  - Decoding function calls into intents
  - History handling (system turn, window, JSON reply unwrapping)
  - The chatbot node with a mocked model
  - End-to-end graph runs dispatching to mocked handlers
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from helpers import make_llm, make_org, tool_call

from carebot.agent import (
    ARGUMENT_ERROR_REPLY,
    FALLBACK_REPLY,
    HISTORY_WINDOW,
    INTENT_TOOLS,
    AppointmentIntent,
    IntentRouter,
    KnowledgeIntent,
    MalformedIntent,
    SymptomIntent,
    TurnContext,
    UnrecognizedIntent,
    _make_chatbot_node,
    decode_intent,
    dispatch_intent,
    out_of_scope_reply,
    route_after_chatbot,
    to_model_messages,
    unwrap_reply,
    with_system_turn,
)


def _context(org=None) -> TurnContext:
    flows = MagicMock()
    flows.appointment_flow = AsyncMock(return_value="Appointment form sent.")
    flows.support_flow = AsyncMock(return_value="Support form sent.")
    flows.small_talk = MagicMock(return_value="Hello!")
    knowledge = MagicMock()
    knowledge.lookup = AsyncMock(return_value="We open at 9am.")
    triage = MagicMock()
    triage.assess = AsyncMock(return_value="See a Cardiologist.")
    return TurnContext(org or make_org(), "1555", flows, knowledge, triage)


# ── Intent decoding ──────────────────────────────────────────────────


class TestDecodeIntent:
    def test_catalog_has_five_functions(self):
        assert [t["name"] for t in INTENT_TOOLS] == [
            "appointment_flow",
            "support_flow",
            "knowledge_lookup",
            "small_talk",
            "symptom_assessment",
        ]

    def test_decodes_dict_arguments(self):
        assert decode_intent("appointment_flow", {"action": "new"}) == AppointmentIntent("new")

    def test_decodes_json_string_arguments(self):
        assert decode_intent("knowledge_lookup", '{"user_query": "hours?"}') == KnowledgeIntent("hours?")

    def test_bad_json_is_malformed(self):
        intent = decode_intent("symptom_assessment", "{not json")
        assert isinstance(intent, MalformedIntent)
        assert intent.name == "symptom_assessment"

    def test_missing_argument_is_malformed(self):
        assert isinstance(decode_intent("small_talk", {}), MalformedIntent)

    def test_unknown_function(self):
        assert decode_intent("order_pizza", {"size": "L"}) == UnrecognizedIntent("order_pizza")


# ── Turns ────────────────────────────────────────────────────────────


class TestTurns:
    def test_system_turn_added_once(self):
        org = make_org()
        turns = with_system_turn([], org)
        assert turns[0]["role"] == "system"
        assert "Acme Health's Chatbot" in turns[0]["content"]
        assert with_system_turn(turns, org) == turns

    def test_model_messages_keep_system_and_window(self):
        turns = [{"role": "system", "content": "sys"}]
        for i in range(HISTORY_WINDOW):
            turns.append({"role": "user", "content": f"u{i}"})
            turns.append({"role": "assistant", "content": f"a{i}"})
        turns.append({"role": "user", "content": "latest"})

        messages = to_model_messages(turns)

        assert messages[0].content == "sys"
        assert messages[1].type == "human"
        assert messages[-1].content == "latest"
        assert len(messages) <= HISTORY_WINDOW + 1

    @pytest.mark.parametrize(
        "text,expected",
        [
            ('{"reply": "Hi there"}', "Hi there"),
            ('  {"reply": "Padded"} ', "Padded"),
            ('{"other": 1}', '{"other": 1}'),
            ("{broken", "{broken"),
            ("plain text", "plain text"),
        ],
    )
    def test_unwrap_reply(self, text, expected):
        assert unwrap_reply(text) == expected


# ── Chatbot node ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestChatbotNode:
    @patch("carebot.agent._build_llm")
    async def test_first_tool_call_wins(self, mock_build):
        mock_build.return_value = make_llm(
            tool_calls=[
                tool_call("symptom_assessment", {"user_symptom": "chest pain"}),
                tool_call("small_talk", {"user_message": "hi"}),
            ],
        )
        node = _make_chatbot_node()

        result = await node({"turns": [{"role": "user", "content": "chest pain"}]})

        assert result["intent"] == SymptomIntent("chest pain")

    @patch("carebot.agent._build_llm")
    async def test_plain_text_has_no_intent(self, mock_build):
        mock_build.return_value = make_llm("Happy to help!")
        node = _make_chatbot_node()

        result = await node({"turns": [{"role": "user", "content": "thanks"}]})

        assert result == {"intent": None, "draft": "Happy to help!"}
        assert route_after_chatbot(result) == "respond"

    @patch("carebot.agent._build_llm")
    async def test_invalid_tool_call_is_malformed(self, mock_build):
        mock_build.return_value = make_llm(
            invalid_tool_calls=[
                {"name": "appointment_flow", "args": "{oops", "id": "c1", "error": "bad json", "type": "invalid_tool_call"},
            ],
        )
        node = _make_chatbot_node()

        result = await node({"turns": [{"role": "user", "content": "book"}]})

        assert result["intent"] == MalformedIntent("appointment_flow", "bad json")
        assert route_after_chatbot(result) == "dispatch"

    @patch("carebot.agent._build_llm")
    async def test_model_error_falls_back(self, mock_build):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("overloaded"))
        mock_build.return_value = llm
        node = _make_chatbot_node()

        result = await node({"turns": [{"role": "user", "content": "hi"}]})

        assert result == {"intent": None, "draft": FALLBACK_REPLY}


# ── Dispatch ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestDispatch:
    async def test_appointment_goes_to_flows(self):
        ctx = _context()
        assert await dispatch_intent(AppointmentIntent("new"), ctx) == "Appointment form sent."
        ctx.flows.appointment_flow.assert_awaited_once_with("new", ctx.org, "1555")

    async def test_symptoms_use_tenant(self):
        ctx = _context()
        await dispatch_intent(SymptomIntent("rash"), ctx)
        ctx.triage.assess.assert_awaited_once_with("rash", "Acme")

    async def test_malformed_and_unknown(self):
        ctx = _context()
        assert await dispatch_intent(MalformedIntent("small_talk", "x"), ctx) == ARGUMENT_ERROR_REPLY
        assert await dispatch_intent(UnrecognizedIntent("nope"), ctx) == out_of_scope_reply(ctx.org)
        assert out_of_scope_reply(ctx.org) == "Kindly only ask anything related to Acme Health."


# ── End to end ───────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestIntentRouter:
    @patch("carebot.agent._build_llm")
    async def test_intent_reply_is_recorded_as_assistant_turn(self, mock_build):
        mock_build.return_value = make_llm(tool_calls=[tool_call("knowledge_lookup", {"user_query": "hours"})])
        router = IntentRouter()
        ctx = _context()

        result = await router.respond("When do you open?", [], ctx)

        assert result.reply == "We open at 9am."
        assert result.intent == KnowledgeIntent("hours")
        assert [t["role"] for t in result.turns] == ["system", "user", "assistant"]
        assert result.turns[-1]["content"] == "We open at 9am."
        ctx.knowledge.lookup.assert_awaited_once_with("hours", ctx.org)

    @patch("carebot.agent._build_llm")
    async def test_free_text_reply_is_unwrapped_for_the_user(self, mock_build):
        mock_build.return_value = make_llm('{"reply": "Anytime!"}')
        router = IntentRouter()
        history = [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello!"},
        ]

        result = await router.respond("thanks", history, _context())

        assert result.reply == "Anytime!"
        assert result.intent is None
        assert len(result.turns) == 5
        assert result.turns[-1] == {"role": "assistant", "content": '{"reply": "Anytime!"}'}

    @patch("carebot.agent._build_llm")
    async def test_model_outage_still_replies(self, mock_build):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=TimeoutError())
        mock_build.return_value = llm
        router = IntentRouter()

        result = await router.respond("hello?", [], _context())

        assert result.reply == FALLBACK_REPLY
