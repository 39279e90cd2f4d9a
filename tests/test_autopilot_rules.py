"""
Tests: Autopilot RULES transition and conversation state.

Covers intent keywords, follow-up questions per intent, budget handover,
the absorbing handover node, greetings and required-slot collection,
company-name extraction and defensive state parsing.
"""

import pytest

from app.services.autopilot_rules import (
    DEFAULT_COMPANY_NAME,
    NODE_HANDOVER,
    NODE_Q1,
    AutopilotState,
    TransitionContext,
    classify_slot_value,
    detect_intent,
    extract_company_name,
    is_greeting,
    next_missing_slot,
    rules_transition,
)

CTX = TransitionContext(max_questions=3, company_name="AcmeDental", first_name="Ioana")


@pytest.mark.parametrize("text,intent", [
    ("1", "pricing"),
    ("Cat e pretul?", "pricing"),
    ("what's the PRICE", "pricing"),
    ("2", "booking"),
    ("vreau o programare", "booking"),
    ("salut", "other"),
    ("", "other"),
])
def test_detect_intent(text, intent):
    assert detect_intent(text) == intent


def test_q1_pricing_asks_follow_up():
    transition = rules_transition(AutopilotState(), "pret", CTX)
    assert transition.node == "pricing_details"
    assert transition.answers_update == {"intent": "pricing"}
    assert transition.question_index == 1
    assert transition.terminal is False
    assert transition.text.startswith("Multumim, Ioana! ")
    assert "AcmeDental" in transition.text


def test_q1_booking_follow_up():
    transition = rules_transition(AutopilotState(), "2", CTX)
    assert transition.node == "booking_details"
    assert transition.intent == "booking"


def test_slot_answer_is_stored_under_node_key():
    state = AutopilotState(node="pricing_details", answers={"intent": "pricing"}, question_index=1)
    transition = rules_transition(state, "detartraj", CTX)
    assert transition.answers_update == {"service": "detartraj"}
    assert transition.node == "details"
    assert transition.intent == "pricing"
    assert "AcmeDental" in transition.text


def test_generic_node_stores_indexed_answer():
    state = AutopilotState(node="details", answers={}, question_index=1)
    transition = rules_transition(state, "ceva", CTX)
    assert transition.answers_update == {"q1_answer": "ceva"}


def test_budget_exhausted_hands_over():
    state = AutopilotState(node="details", answers={"intent": "other"}, question_index=2)
    transition = rules_transition(state, "da", CTX)
    assert transition.node == NODE_HANDOVER
    assert transition.terminal is True
    assert transition.question_index == 3
    assert transition.text == "Multumesc! Te conectez cu un coleg de la AcmeDental."


def test_single_question_budget_hands_over_from_q1():
    transition = rules_transition(AutopilotState(), "pret", TransitionContext(max_questions=1))
    assert transition.terminal is True
    assert transition.answers_update == {"intent": "pricing"}
    assert DEFAULT_COMPANY_NAME in transition.text


def test_handover_is_absorbing():
    state = AutopilotState(node=NODE_HANDOVER, answers={"intent": "booking"}, question_index=3)
    transition = rules_transition(state, "mai e cineva?", CTX)
    assert transition.node == NODE_HANDOVER
    assert transition.terminal is False
    assert transition.question_index == 3
    assert transition.answers_update == {}


# ── Greetings & slot collection ───────────────────────────────────────────────

SLOTS_CTX = TransitionContext(
    max_questions=6, company_name="AcmeDental", first_name="Ioana", required_slots=["name", "phone"],
)


@pytest.mark.parametrize("text,kind", [
    ("Ion", "name"),
    ("Ana Maria", "name"),
    ("Ștefan", "name"),
    ("0722 123 456", "phone"),
    ("+40 (722) 123-456", "phone"),
    ("ion@example.com", "email"),
    ("da", None),
    ("vreau detartraj pentru doi dinti", None),
    ("123", None),
    ("serviciu detartraj", None),
    ("", None),
])
def test_classify_slot_value(text, kind):
    assert classify_slot_value(text) == kind


@pytest.mark.parametrize("text,expected", [
    ("Salut", True),
    ("buna ziua!", True),
    ("Hello!", True),
    ("salutare pret", False),
    ("pret", False),
])
def test_is_greeting(text, expected):
    assert is_greeting(text) is expected


def test_greeting_at_q1_keeps_waiting_for_intent():
    transition = rules_transition(AutopilotState(), "Buna!", CTX)
    assert transition.node == NODE_Q1
    assert transition.answers_update == {}
    assert transition.question_index == 1
    assert transition.text == "Salut! Cu ce te poate ajuta AcmeDental?"


def test_phone_at_q1_is_stored_not_read_as_menu_choice():
    transition = rules_transition(AutopilotState(), "0722123456", CTX)
    assert transition.answers_update == {"intent": "other", "phone": "0722123456"}


def test_required_slots_are_asked_after_intent():
    transition = rules_transition(AutopilotState(), "pret", SLOTS_CTX)
    assert transition.node == "collect_name"
    assert transition.answers_update == {"intent": "pricing"}
    assert "Cum te numesti" in transition.text
    assert "AcmeDental" in transition.text


def test_slot_reply_fills_asked_slot_and_asks_next():
    state = AutopilotState(node="collect_name", answers={"intent": "pricing"}, question_index=1)
    transition = rules_transition(state, "Ion", SLOTS_CTX)
    assert transition.answers_update == {"name": "Ion"}
    assert transition.node == "collect_phone"
    assert transition.text.startswith("Multumim, Ion! ")


def test_reply_not_matching_asked_slot_is_kept_and_slot_asked_again():
    state = AutopilotState(node="collect_name", answers={"intent": "pricing"}, question_index=1)
    transition = rules_transition(state, "vreau detartraj pentru doi dinti", SLOTS_CTX)
    assert transition.answers_update == {"q1_answer": "vreau detartraj pentru doi dinti"}
    assert transition.node == "collect_name"


def test_phone_sent_early_fills_phone_slot():
    state = AutopilotState(node="collect_name", answers={"intent": "pricing"}, question_index=1)
    transition = rules_transition(state, "0722123456", SLOTS_CTX)
    assert transition.answers_update == {"phone": "0722123456"}
    assert transition.node == "collect_name"


def test_all_required_slots_filled_hands_over():
    state = AutopilotState(node="collect_phone", answers={"intent": "other", "name": "Ion"}, question_index=2)
    transition = rules_transition(state, "0722123456", SLOTS_CTX)
    assert transition.terminal is True
    assert transition.node == NODE_HANDOVER
    assert transition.question_index == 3
    assert transition.text == "Multumesc! Te conectez cu un coleg de la AcmeDental."


def test_free_text_slot_accepts_any_reply():
    ctx = TransitionContext(max_questions=5, company_name="AcmeDental", required_slots=["service"])
    state = AutopilotState(node="collect_service", answers={"intent": "pricing"}, question_index=1)
    transition = rules_transition(state, "albire dentara", ctx)
    assert transition.answers_update == {"service": "albire dentara"}
    assert transition.terminal is True


def test_next_missing_slot():
    assert next_missing_slot({"name": "Ion", "phone": "  "}, ["name", "phone"]) == "phone"
    assert next_missing_slot({"name": "Ion"}, []) is None


# ── Company name extraction ───────────────────────────────────────────────────


@pytest.mark.parametrize("prompt,name", [
    ("Esti asistent virtual pentru AcmeDental. Raspunde scurt.", "AcmeDental"),
    ("You work for Bright Smile Clinic", "Bright Smile Clinic"),
    ("brand: Zenit", "Zenit"),
    ("company_name = 'Nova'", "Nova"),
    ("fara nume aici", DEFAULT_COMPANY_NAME),
    (None, DEFAULT_COMPANY_NAME),
])
def test_extract_company_name(prompt, name):
    assert extract_company_name(prompt) == name


# ── State parsing ─────────────────────────────────────────────────────────────


def test_state_parse_defaults_malformed_fields():
    state = AutopilotState.parse({"node": "  ", "answers": {"a": "x", "b": 3}, "questionIndex": "2"})
    assert state == AutopilotState(node=NODE_Q1, answers={"a": "x"}, question_index=0)


def test_state_parse_non_dict():
    assert AutopilotState.parse(None) == AutopilotState()
    assert AutopilotState.parse([1, 2]) == AutopilotState()


def test_state_round_trip_keys():
    state = AutopilotState(node="details", answers={"intent": "other"}, question_index=2)
    assert state.to_json() == {"node": "details", "answers": {"intent": "other"}, "questionIndex": 2}
    assert AutopilotState.parse(state.to_json()) == state
