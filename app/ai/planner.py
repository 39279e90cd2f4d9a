"""
Lead SLA Platform
AI Planner: next autopilot message for AI-mode scenarios.

Flow:
    1. Build a two-message prompt (system: JSON contract, question budget,
       resolved tenant script; user: lead info, counters, answers, recent
       outbound texts and timeline, the verbatim reply).
    2. Call the chat-completion gateway (bounded by AUTOPILOT_AI_TIMEOUT).
    3. Extract and validate the JSON plan with a pydantic model.
    4. On any failure fall back to the deterministic RULES transition.

Telemetry:
    call failure          → fallback, no ``ai_meta``
    bad / invalid JSON    → fallback, ``ai_meta.jsonValid = False``
    valid plan            → ``ai_meta.jsonValid = True``

The question budget is enforced here as well as in the engine: once
``question_index + 1 >= max_questions`` the plan always hands over.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Literal

from flask import current_app, has_app_context
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.ai.gateway import LLMGateway
from app.ai.prompt_builder import build_scenario_prompt
from app.services.autopilot_rules import (
    NODE_Q1,
    AutopilotState,
    TransitionContext,
    extract_company_name,
    rules_transition,
)

logger = logging.getLogger(__name__)


# ── Contract ──────────────────────────────────────────────────────────────────

class AiPlanResponse(BaseModel):
    """Strict JSON contract the model must return."""

    model_config = ConfigDict(strict=True, extra="ignore")

    nextText: str = Field(min_length=1, max_length=600)
    intent: Literal["pricing", "booking", "other"]
    answers: dict[str, str] = Field(default_factory=dict)
    shouldHandover: bool
    handoverReason: str | None = None


@dataclass
class PlannerInput:
    ai_prompt: str
    max_questions: int
    question_index: int
    reply_text: str
    first_name: str | None = None
    current_answers: dict[str, str] = field(default_factory=dict)
    scenario_context: dict = field(default_factory=dict)
    lead_context: dict = field(default_factory=dict)
    recent_events: list[dict] = field(default_factory=list)
    recent_outbound_texts: list[str] = field(default_factory=list)
    required_slots: list[str] = field(default_factory=list)

    def resolved_prompt(self) -> str:
        ctx = self.scenario_context or {}
        return build_scenario_prompt(
            self.ai_prompt,
            max_questions=self.max_questions,
            agent_name=ctx.get("agent_name"),
            company_name=ctx.get("company_name"),
            company_description=ctx.get("company_description"),
            offer_summary=ctx.get("offer_summary"),
            calendar_link_raw=ctx.get("calendar_link_raw"),
            lead_name=self.first_name,
        )


@dataclass
class PlannerOutput:
    next_message: str
    should_handover: bool
    intent: str | None
    answers_update: dict[str, str]
    fallback_used: bool
    ai_meta: dict | None = None


# ── Prompt ────────────────────────────────────────────────────────────────────

def build_messages(data: PlannerInput) -> list[dict]:
    remaining = data.max_questions - data.question_index - 1

    if data.required_slots:
        slots_rule = (
            f"- Collect these required fields: {', '.join(data.required_slots)}. "
            'Store each in "answers". Set shouldHandover=true ONLY when ALL are collected.'
        )
    else:
        slots_rule = (
            "- Do not invent company facts. Store name, phone, email, service, "
            "preferredTime in answers when the lead provides them."
        )

    system_parts = [
        "You are an AI assistant in a WhatsApp chat. Reply with ONLY valid JSON, no markdown, no backticks.",
        "",
        "JSON schema:",
        '{ "nextText": "string (max 600 chars, Romanian)", "intent": "pricing"|"booking"|"other", '
        '"answers": {}, "shouldHandover": boolean, "handoverReason": null }',
        "",
        "Rules:",
        "- One short message only (max 2-3 sentences). End with EXACTLY one question.",
        f"- You have {remaining} question(s) left before handover. "
        "If remainingQuestions <= 0 or the intent is unclear, set shouldHandover=true.",
        "- Language: Romanian. Friendly, natural tone.",
        slots_rule,
        "",
        "Company context:",
        data.resolved_prompt(),
    ]

    user_parts = []
    lead = data.lead_context or {}
    if data.first_name or any(lead.values()):
        user_parts.append("Lead info:")
        if data.first_name:
            user_parts.append(f"  Name: {data.first_name}")
        for label, key in (("Phone", "phone"), ("Email", "email"), ("Source", "source")):
            if lead.get(key):
                user_parts.append(f"  {label}: {lead[key]}")
        user_parts.append("")

    user_parts.append(
        f"Conversation state: questionIndex={data.question_index}, maxQuestions={data.max_questions}"
    )
    user_parts.append(f"Collected so far: {json.dumps(data.current_answers, ensure_ascii=False)}")

    if data.recent_outbound_texts:
        user_parts.append("")
        user_parts.append("Recent outbound messages (our side):")
        for text in data.recent_outbound_texts[-5:]:
            user_parts.append(f"  > {text}")

    if data.recent_events:
        user_parts.append("")
        user_parts.append("Recent timeline:")
        for evt in data.recent_events[-10:]:
            text = evt.get("text")
            user_parts.append(f"  [{evt.get('eventType')}] {text}" if text else f"  [{evt.get('eventType')}]")

    user_parts.append("")
    user_parts.append(f'Lead just replied: "{data.reply_text}"')
    user_parts.append("")
    user_parts.append("Respond with ONLY JSON, no other text.")

    return [
        {"role": "system", "content": "\n".join(system_parts)},
        {"role": "user", "content": "\n".join(user_parts)},
    ]


def extract_json(raw: str | None):
    """Parse the response directly, else the span from the first '{' to the last '}'."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        pass

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(raw[start:end + 1])
        except json.JSONDecodeError:
            return None
    return None


# ── Fallback ──────────────────────────────────────────────────────────────────

def rules_fallback(data: PlannerInput) -> PlannerOutput:
    """Deterministic RULES plan branded with the configured or prompt-named company."""
    configured = ((data.scenario_context or {}).get("company_name") or "").strip()
    company = configured or extract_company_name(data.resolved_prompt())
    awaiting_intent = data.question_index == 0 or not data.current_answers.get("intent")
    node = NODE_Q1 if awaiting_intent else f"ai_q{data.question_index + 1}"
    state = AutopilotState(node=node, answers=dict(data.current_answers), question_index=data.question_index)
    transition = rules_transition(
        state,
        data.reply_text,
        TransitionContext(
            max_questions=data.max_questions,
            company_name=company,
            first_name=data.first_name,
            required_slots=list(data.required_slots or []),
        ),
    )
    return PlannerOutput(
        next_message=transition.text,
        should_handover=transition.terminal,
        intent=transition.intent,
        answers_update=transition.answers_update,
        fallback_used=True,
    )


# ── Entry point ───────────────────────────────────────────────────────────────

def build_gateway() -> LLMGateway:
    if has_app_context():
        return LLMGateway(
            model=current_app.config.get("OPENAI_MODEL"),
            timeout=float(current_app.config.get("AUTOPILOT_AI_TIMEOUT", 10)),
        )
    return LLMGateway()


def plan_next_message(data: PlannerInput, gateway=None) -> PlannerOutput:
    """Produce the next autopilot message; never raises for AI failures."""
    messages = build_messages(data)

    try:
        result = (gateway or build_gateway()).chat(messages)
    except Exception as exc:
        logger.warning("AI planner call failed, using rules fallback: %s", exc)
        return rules_fallback(data)

    model = result.get("model") or "unknown"
    latency_ms = int(result.get("latency_ms") or 0)

    parsed = extract_json(result.get("content"))
    try:
        if parsed is None:
            raise ValueError("no JSON object in response")
        plan = AiPlanResponse.model_validate(parsed)
    except (ValidationError, ValueError) as exc:
        logger.warning("AI planner returned invalid JSON, using rules fallback: %s", exc)
        output = rules_fallback(data)
        output.ai_meta = {"model": model, "latencyMs": latency_ms, "jsonValid": False}
        return output

    must_handover = data.question_index + 1 >= data.max_questions
    answers = dict(plan.answers)
    if plan.handoverReason:
        answers["handoverReason"] = plan.handoverReason

    return PlannerOutput(
        next_message=plan.nextText,
        should_handover=plan.shouldHandover or must_handover,
        intent=plan.intent,
        answers_update=answers,
        fallback_used=False,
        ai_meta={"model": model, "latencyMs": latency_ms, "jsonValid": True},
    )
