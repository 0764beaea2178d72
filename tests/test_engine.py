import json
from unittest.mock import AsyncMock

import pytest

from frontdesk.booking import AppointmentMaterializer
from frontdesk.decision import CLOSE_CALL_PROMPT, EMERGENCY_PROMPT
from frontdesk.engine import BOOKING_FAILURE_PROMPT, FATAL_PROMPT
from frontdesk.errors import LLMError
from frontdesk.knowledge import CLARIFY_PROMPT
from frontdesk.runtime_config import RuntimeConfig

from conftest import decision_json

READY_EXTRACTED = {
    "contact": {"name": "John Smith", "phone": "512-555-1234"},
    "location": {"address_line1": "12 Elm St", "city": "Phoenix", "postal_code": "85001"},
    "problem": {"summary": "AC not cooling", "category": "repair"},
    "scheduling": {"preferred_date": "2026-10-20", "preferred_window": "morning"},
}


class TestProcessCallerTurn:
    @pytest.mark.asyncio
    async def test_wrong_number_with_llm_down_closes_call(self, make_engine, llm, store):
        llm.complete.side_effect = LLMError("connection refused")
        engine = make_engine()

        result = await engine.process_caller_turn("acme", "call_1", "caller", "Sorry, wrong number")

        assert result.decision.action == "close_call"
        assert result.next_prompt == "Thank you for your call. Have a great day!"
        assert result.next_prompt == CLOSE_CALL_PROMPT
        ctx = await store.load("call_1")
        assert [t.role for t in ctx.transcript] == ["caller", "agent"]
        assert ctx.current_intent == ""

    @pytest.mark.asyncio
    async def test_emergency_behind_wrong_number_with_llm_down_stays_on_line(self, make_engine, llm, store):
        llm.complete.side_effect = LLMError("connection refused")
        engine = make_engine()

        result = await engine.process_caller_turn(
            "acme", "call_1", "caller", "Hello, who is this? I smell gas in my kitchen"
        )

        assert result.decision.action == "ask_question"
        assert result.next_prompt == EMERGENCY_PROMPT
        assert result.decision.source == "fallback"
        ctx = await store.load("call_1")
        assert ctx.extracted.problem.urgency == "emergency"
        assert ctx.current_intent == "emergency"

    @pytest.mark.asyncio
    async def test_non_string_intent_from_model_keeps_turn(self, make_engine, llm, store):
        llm.complete.return_value = decision_json(
            "ask_question", "What's your name?", updated_intent=["booking"]
        )
        engine = make_engine()

        result = await engine.process_caller_turn("acme", "call_1", "caller", "I need a repair")

        assert result.next_prompt == "What's your name?"
        assert result.next_prompt != FATAL_PROMPT
        assert result.decision.source == "llm"
        ctx = await store.load("call_1")
        assert [t.role for t in ctx.transcript] == ["caller", "agent"]

    @pytest.mark.asyncio
    async def test_fields_from_separate_turns_accumulate(self, make_engine, llm, store):
        llm.complete.side_effect = [
            decision_json("ask_question", "Thanks John. What city are you in?",
                          updates={"extracted": {"contact": {"name": "John"}}}),
            decision_json("ask_question", "Got it. What's the street address?",
                          updates={"extracted": {"location": {"city": "Phoenix"}}}),
        ]
        engine = make_engine()

        await engine.process_caller_turn("acme", "call_1", "caller", "My name is John")
        await engine.process_caller_turn("acme", "call_1", "caller", "I'm in Phoenix")

        ctx = await store.load("call_1")
        assert ctx.extracted.contact.name == "John"
        assert ctx.extracted.location.city == "Phoenix"
        assert len(ctx.transcript) == 4

    @pytest.mark.asyncio
    async def test_low_confidence_knowledge_asks_to_clarify(self, make_engine, llm, store):
        llm.complete.side_effect = [
            decision_json("answer_with_knowledge", "Let me check on that.",
                          knowledge_query="how long have you been in business"),
            json.dumps({"answer": "Maybe since the nineties?", "confidence": 0.3}),
        ]
        engine = make_engine()

        result = await engine.process_caller_turn("acme", "call_1", "caller", "How long have you been in business?")

        assert result.decision.action == "clarify_intent"
        assert result.next_prompt == CLARIFY_PROMPT
        ctx = await store.load("call_1")
        assert [e.action for e in ctx.tier_trace] == ["answer_with_knowledge", "knowledge_search"]

    @pytest.mark.asyncio
    async def test_scenario_answer_is_reshaped(self, make_engine, llm):
        llm.complete.side_effect = [
            decision_json("answer_with_knowledge", "One moment.", knowledge_query="what are your hours"),
            "We're open eight to five, Monday through Friday.",
        ]
        engine = make_engine()
        result = await engine.process_caller_turn("acme", "call_1", "caller", "What are your hours?")
        assert result.decision.action == "answer_with_knowledge"
        assert result.decision.knowledge_tier == 1
        assert result.next_prompt == "We're open eight to five, Monday through Friday."

    @pytest.mark.asyncio
    async def test_booking_creates_appointment_and_confirms(self, make_engine, llm, repository, store):
        llm.complete.return_value = decision_json(
            "initiate_booking", "Let me get that booked for you.",
            updates={"extracted": READY_EXTRACTED, "flags": {"ready_to_book": True}},
        )
        engine = make_engine()

        result = await engine.process_caller_turn("acme", "call_1", "caller", "Yes, please book it")

        assert result.decision.action == "initiate_booking"
        assert result.appointment_id
        assert result.next_prompt.startswith("Perfect! ACME Heating & Air has you scheduled for Tuesday, October 20 morning.")
        assert "12 Elm St" in result.next_prompt
        appt = repository.appointments[result.appointment_id]
        assert appt.booking_rule_applied["rule_id"] == "r-weekday"

        ctx = await store.load("call_1")
        assert ctx.appointment_id == result.appointment_id
        assert ctx.ready_to_book is True
        assert ctx.current_intent == "booking"

    @pytest.mark.asyncio
    async def test_repeated_booking_turn_creates_one_appointment(self, make_engine, llm, repository):
        llm.complete.return_value = decision_json(
            "initiate_booking", "Booking now.", updates={"extracted": READY_EXTRACTED},
        )
        engine = make_engine()
        first = await engine.process_caller_turn("acme", "call_1", "caller", "book it")
        second = await engine.process_caller_turn("acme", "call_1", "caller", "book it please")
        assert first.appointment_id == second.appointment_id
        assert len(repository.appointments) == 1

    @pytest.mark.asyncio
    async def test_booking_blocked_until_checklist_complete(self, make_engine, llm, repository):
        partial = {k: v for k, v in READY_EXTRACTED.items() if k != "scheduling"}
        llm.complete.return_value = decision_json(
            "initiate_booking", "Booking now.", updates={"extracted": partial, "flags": {"ready_to_book": True}},
        )
        engine = make_engine()
        result = await engine.process_caller_turn("acme", "call_1", "caller", "book it")
        assert result.decision.action == "ask_question"
        assert result.decision.ready_to_book is False
        assert repository.appointments == {}

    @pytest.mark.asyncio
    async def test_booking_failure_escalates(self, make_engine, llm, store):
        llm.complete.return_value = decision_json(
            "initiate_booking", "Booking now.", updates={"extracted": READY_EXTRACTED},
        )
        failing = AsyncMock()
        failing.find_appointment_by_call.side_effect = ConnectionError("backend down")
        engine = make_engine()
        engine.materializer = AppointmentMaterializer(failing)

        result = await engine.process_caller_turn("acme", "call_1", "caller", "book it")

        assert result.decision.action == "escalate_to_human"
        assert result.next_prompt == BOOKING_FAILURE_PROMPT
        assert result.appointment_id == ""
        ctx = await store.load("call_1")
        assert ctx.tier_trace[-1].action == "booking_failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_safe_prompt(self, make_engine):
        engine = make_engine()
        engine.config_loader = AsyncMock()
        engine.config_loader.load.side_effect = RuntimeError("config service exploded")

        result = await engine.process_caller_turn("acme", "call_1", "caller", "hello")

        assert result.next_prompt == FATAL_PROMPT
        assert result.decision.action == "ask_question"
        assert result.decision.source == "error"

    @pytest.mark.asyncio
    async def test_orchestrator_disabled(self, make_engine, llm, store):
        engine = make_engine(RuntimeConfig(company_id="acme", orchestrator_enabled=False))
        result = await engine.process_caller_turn("acme", "call_1", "caller", "hello")
        assert result.next_prompt is None
        assert result.decision.action == "no_op"
        llm.complete.assert_not_awaited()
        assert await store.load("call_1") is None

    @pytest.mark.asyncio
    async def test_agent_speech_is_recorded_only(self, make_engine, llm, store):
        engine = make_engine()
        result = await engine.process_caller_turn("acme", "call_1", "agent", "Thanks for calling ACME!")
        assert result.next_prompt is None
        assert result.decision.action == "no_op"
        llm.complete.assert_not_awaited()
        ctx = await store.load("call_1")
        assert ctx.transcript[0].role == "agent"

    @pytest.mark.asyncio
    async def test_context_store_down_still_answers(self, make_engine, llm, fake_redis):
        fake_redis.fail = True
        llm.complete.return_value = decision_json("ask_question", "How can I help?")
        engine = make_engine()
        result = await engine.process_caller_turn("acme", "call_1", "caller", "hi there")
        assert result.next_prompt == "How can I help?"

    @pytest.mark.asyncio
    async def test_filler_words_and_synonyms_cleaned_before_model(self, make_engine, llm):
        llm.complete.return_value = decision_json("ask_question", "What's going on with it?")
        engine = make_engine()
        await engine.process_caller_turn("acme", "call_1", "caller", "um my ac is uh not working")
        user_prompt = llm.complete.call_args.args[1]
        assert "my air conditioner is not working" in user_prompt

    @pytest.mark.asyncio
    async def test_turn_trace_recorded(self, make_engine, llm, recorder, monkeypatch):
        payloads = []
        monkeypatch.setattr(recorder, "record_turn", payloads.append)
        llm.complete.return_value = decision_json("ask_question", "What's the address?")
        engine = make_engine()

        await engine.process_caller_turn("acme", "call_1", "caller", "I need a technician")

        assert len(payloads) == 1
        payload = payloads[0]
        assert payload["call_id"] == "call_1"
        assert payload["config_version"] == 3
        assert payload["intel"]["intent"] == "booking"
        assert payload["output"]["next_prompt"] == "What's the address?"
        assert "total_ms" in payload["performance"]


class TestCallLifecycle:
    @pytest.mark.asyncio
    async def test_init_and_finalize_without_trace_sink_keeps_context(self, make_engine, llm, store):
        llm.complete.return_value = decision_json("ask_question", "How can I help?")
        engine = make_engine()

        ctx = await engine.init_call_context("call_9", "acme", "HVAC", 3)
        assert ctx.config_version == 3
        await engine.process_caller_turn("acme", "call_9", "caller", "hi")

        result = await engine.finalize_call("call_9", started_at=ctx.created_at, ended_at=ctx.created_at + 42)
        assert result.found is True
        assert result.archived is False
        assert await store.load("call_9") is not None

    @pytest.mark.asyncio
    async def test_finalize_unknown_call(self, make_engine):
        result = await make_engine().finalize_call("nope", 0, 0)
        assert result.found is False
