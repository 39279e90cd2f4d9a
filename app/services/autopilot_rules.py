"""
Lead SLA Platform
Autopilot conversation state and RULES transition.

Shared by the RULES scenario mode and by the AI planner's deterministic
fallback, so both produce the same on-brand conversation:

    q1 ──intent──▶ pricing_details / booking_details / details ──▶ details ...
     │                                                          │
     └──────────── question budget exhausted ──────────────────▶ handover

With required slots (``qualification_criteria.requiredSlots``) the follow-up
nodes become ``collect_<slot>`` questions until every slot is filled.

``handover`` is absorbing: further replies only get an acknowledgement.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

NODE_Q1 = "q1"
NODE_HANDOVER = "handover"
NODE_DETAILS = "details"
NODE_COLLECT_PREFIX = "collect_"

DEFAULT_COMPANY_NAME = "echipa noastra"

INTENT_PRICING = "pricing"
INTENT_BOOKING = "booking"
INTENT_OTHER = "other"

_PRICING_KEYWORDS = ("1", "pret", "preț", "cost", "price", "tarif")
_BOOKING_KEYWORDS = ("2", "program", "booking", "calendar", "intalnire")

# intent → (follow-up node, question)
_FOLLOW_UPS = {
    INTENT_PRICING: ("pricing_details", "Pentru ce serviciu {company} doresti informatii de pret?"),
    INTENT_BOOKING: ("booking_details", "Ce zi si interval orar ti se potrivesc pentru o discutie cu {company}?"),
    INTENT_OTHER: (NODE_DETAILS, "Spune-ne pe scurt cu ce te poate ajuta {company}."),
}

# node → answer key the reply is stored under
_SLOT_BY_NODE = {
    "pricing_details": "service",
    "booking_details": "preferredTime",
}

_GREETING_RE = re.compile(r"^(?:salut|buna|bună|hi|hello|hey|ciao|servus)(?:\s|$)")
_PHONE_RE = re.compile(r"^[\d+\s\-()]{7,}$")
_NAME_WORD_RE = re.compile(r"^[^\W\d_]+$")
_NOT_NAMES = {
    "da", "nu", "ok", "okay", "yes", "no", "mersi", "multumesc", "bine", "sigur", "poate",
    "salut", "buna", "hello", "hi", "hey",
}

_TYPED_SLOTS = ("name", "phone", "email")
_SLOT_QUESTIONS = {
    "name": "Cum te numesti, ca sa te poata contacta {company}?",
    "phone": "La ce numar de telefon te poate suna un coleg de la {company}?",
    "email": "La ce adresa de email iti poate scrie {company}?",
    "preferredTime": "Ce zi si interval orar ti se potrivesc pentru o discutie cu {company}?",
}
_SERVICE_QUESTIONS = {
    INTENT_PRICING: "Pentru ce serviciu {company} doresti informatii de pret?",
    INTENT_BOOKING: "Pentru ce serviciu de la {company} vrei programarea?",
}

_COMPANY_PATTERNS = (
    re.compile(r"(?:pentru|for)\s+[\"']?([A-Z][A-Za-z0-9 &.]+)", re.IGNORECASE),
    re.compile(r"(?:companie|company|brand)\s*[:=]\s*[\"']?([A-Za-z0-9 &.]+)", re.IGNORECASE),
    re.compile(r"company_name\s*=\s*[\"']?([A-Za-z0-9 &.]+)", re.IGNORECASE),
)


@dataclass
class AutopilotState:
    """Typed view over ``AutopilotRun.state_json``."""

    node: str = NODE_Q1
    answers: dict[str, str] = field(default_factory=dict)
    question_index: int = 0

    @classmethod
    def parse(cls, raw) -> "AutopilotState":
        """Read stored state, defaulting any missing or malformed field."""
        if not isinstance(raw, dict):
            return cls()

        node = raw.get("node")
        node = node.strip() if isinstance(node, str) and node.strip() else NODE_Q1

        answers = {}
        raw_answers = raw.get("answers")
        if isinstance(raw_answers, dict):
            for key, value in raw_answers.items():
                if isinstance(key, str) and isinstance(value, str):
                    answers[key] = value

        index = raw.get("questionIndex")
        if isinstance(index, bool) or not isinstance(index, (int, float)):
            index = 0
        index = max(0, int(index))

        return cls(node=node, answers=answers, question_index=index)

    def to_json(self) -> dict:
        return {"node": self.node, "answers": dict(self.answers), "questionIndex": self.question_index}


@dataclass
class Transition:
    """Outcome of one inbound reply."""

    text: str
    node: str
    answers_update: dict[str, str]
    question_index: int
    terminal: bool
    intent: str | None = None
    fallback_used: bool = False
    ai_meta: dict | None = None
    prompt_preview: str | None = None


@dataclass
class TransitionContext:
    """Scenario-derived inputs shared by every transition strategy."""

    max_questions: int
    company_name: str = DEFAULT_COMPANY_NAME
    first_name: str | None = None
    required_slots: list[str] = field(default_factory=list)
    planner: object | None = None
    planner_input: object | None = None


def detect_intent(text: str) -> str:
    lower = (text or "").strip().lower()
    if any(word in lower for word in _PRICING_KEYWORDS):
        return INTENT_PRICING
    if any(word in lower for word in _BOOKING_KEYWORDS):
        return INTENT_BOOKING
    return INTENT_OTHER


def extract_company_name(prompt: str | None) -> str:
    """Best-effort brand name from free prompt text; DEFAULT_COMPANY_NAME otherwise."""
    text = prompt or ""
    for pattern in _COMPANY_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        name = match.group(1).split(". ", 1)[0].strip(" .")
        if name:
            return name
    return DEFAULT_COMPANY_NAME


def is_greeting(text: str) -> bool:
    return bool(_GREETING_RE.match((text or "").strip().lower().rstrip("!.?, ")))


def classify_slot_value(text: str) -> str | None:
    """Slot kind (email, phone or name) of a reply that is just a contact value."""
    value = (text or "").strip()
    if not value:
        return None
    if "@" in value and " " not in value and len(value) <= 80:
        return "email"
    if _PHONE_RE.match(value) and sum(ch.isdigit() for ch in value) >= 7:
        return "phone"
    words = value.split()
    if (
        len(words) <= 2
        and len(value) <= 40
        and all(_NAME_WORD_RE.match(w) for w in words)
        and words[0][0].isupper()
        and value.lower() not in _NOT_NAMES
    ):
        return "name"
    return None


def _filled(answers: dict, slot: str) -> bool:
    value = answers.get(slot)
    return isinstance(value, str) and bool(value.strip())


def next_missing_slot(answers: dict, required_slots) -> str | None:
    for slot in required_slots or ():
        if not _filled(answers, slot):
            return slot
    return None


def _slot_for_reply(answers: dict, text: str, required_slots) -> str | None:
    """Required slot this reply fills, or None."""
    missing = next_missing_slot(answers, required_slots)
    if missing is None or not text:
        return None
    kind = classify_slot_value(text)
    if missing not in _TYPED_SLOTS or kind == missing:
        return missing
    # e.g. a phone number sent while the name was asked for
    if kind in required_slots and not _filled(answers, kind):
        return kind
    return None


def _slot_question(slot: str, intent: str | None, company: str) -> str:
    if slot == "service":
        template = _SERVICE_QUESTIONS.get(intent, "Spune-ne pe scurt cu ce te poate ajuta {company}.")
    else:
        template = _SLOT_QUESTIONS.get(slot, "Ne mai poti spune " + slot + "? Ajuta echipa {company}.")
    return template.format(company=company)


def handover_text(company: str) -> str:
    return f"Multumesc! Te conectez cu un coleg de la {company}."


def _thanks(first_name: str | None) -> str:
    name = (first_name or "").strip()
    return f"Multumim, {name}! " if name else "Multumim! "


def rules_transition(state: AutopilotState, reply: str, context: TransitionContext) -> Transition:
    """Deterministic keyword-driven transition.

    With ``context.required_slots`` the conversation also collects those
    slots in order: each reply fills the slot that was asked for when it
    looks like a value of that kind, and the next missing slot is asked for.
    Once every required slot is filled the lead is handed over.
    """
    text = (reply or "").strip()
    company = context.company_name or DEFAULT_COMPANY_NAME
    required = [s for s in context.required_slots or () if isinstance(s, str) and s.strip()]

    if state.node == NODE_HANDOVER:
        return Transition(
            text="Un agent te va contacta in curand.",
            node=NODE_HANDOVER,
            answers_update={},
            question_index=state.question_index,
            terminal=False,
            intent=state.answers.get("intent"),
        )

    next_index = state.question_index + 1
    answers_update: dict[str, str] = {}
    greeted = False

    if state.node == NODE_Q1:
        kind = classify_slot_value(text)
        intent = INTENT_OTHER if kind in ("phone", "email") else detect_intent(text)
        if intent == INTENT_OTHER and is_greeting(text):
            greeted = True
            intent = state.answers.get("intent")
        else:
            answers_update["intent"] = intent
            if intent == INTENT_OTHER and kind is not None and not _filled(state.answers, kind):
                answers_update[kind] = text
    else:
        intent = state.answers.get("intent") or INTENT_OTHER
        slot = _slot_for_reply(state.answers, text, required)
        if slot is None:
            slot = _SLOT_BY_NODE.get(state.node, f"q{state.question_index}_answer")
        answers_update[slot] = text

    merged = {**state.answers, **answers_update}
    missing = next_missing_slot(merged, required)
    slots_complete = bool(required) and missing is None

    if next_index >= context.max_questions or slots_complete:
        return Transition(
            text=handover_text(company),
            node=NODE_HANDOVER,
            answers_update=answers_update,
            question_index=next_index,
            terminal=True,
            intent=intent,
        )

    thanks = _thanks(merged.get("name") or context.first_name)
    if greeted:
        node = NODE_Q1
        message = f"Salut! Cu ce te poate ajuta {company}?"
    elif missing is not None:
        node = f"{NODE_COLLECT_PREFIX}{missing}"
        message = thanks + _slot_question(missing, intent, company)
    elif state.node == NODE_Q1:
        node, question = _FOLLOW_UPS[intent]
        message = thanks + question.format(company=company)
    else:
        node = NODE_DETAILS
        message = thanks + f"Mai ai si alte detalii care ar ajuta echipa {company}?"

    return Transition(
        text=message,
        node=node,
        answers_update=answers_update,
        question_index=next_index,
        terminal=False,
        intent=intent,
    )
