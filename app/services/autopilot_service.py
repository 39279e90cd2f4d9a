"""
Lead SLA Platform
Autopilot Conversation Engine.

Drives a per-lead conversation that qualifies the lead and hands it over to a
human agent. Two strategies share one signature, selected by scenario mode:

    RULES → app.services.autopilot_rules.rules_transition (keyword intents)
    AI    → ai_transition (app.ai.planner with a deterministic RULES fallback)

Reply processing (``process_reply``):
    1. Read the run, resolve the scenario (self-healing default when missing,
       committed on its own) and gather planner context.
    2. Compute the transition. No row lock is held during the
       chat-completion call.
    3. Lock the run (``FOR UPDATE``). If it changed while planning, recompute
       against the locked state. Persist events, state and outbound message,
       then commit once.

Handover also starts the flow's handover SLA stage and notifies the agent.
"""

from __future__ import annotations

import copy
import enum
import logging
from datetime import datetime, timezone
from functools import partial

from sqlalchemy import select

from app.ai.planner import PlannerInput, plan_next_message
from app.ai.prompt_builder import build_prompt_for_scenario, prompt_preview
from app.core.exceptions import NotFoundError
from app.models import db
from app.models.autopilot import RUN_ACTIVE, RUN_HANDED_OVER, AutopilotRun, AutopilotScenario
from app.models.lead import (
    EVENT_AUTOPILOT_AI_PLANNED,
    EVENT_AUTOPILOT_HANDOVER,
    EVENT_AUTOPILOT_INBOUND,
    EVENT_AUTOPILOT_STARTED,
    EVENT_HANDOVER_NOTIFIED,
    EVENT_MESSAGE_BLOCKED,
    EVENT_MESSAGE_QUEUED,
    EventLog,
    Lead,
    OutboundMessage,
)
from app.models.sla import StageInstance
from app.services import scenario_service, sla_service
from app.services.autopilot_rules import (
    DEFAULT_COMPANY_NAME,
    NODE_HANDOVER,
    AutopilotState,
    Transition,
    TransitionContext,
    extract_company_name,
    rules_transition,
)
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)

WELCOME_STEP = "welcome"
HANDOVER_STAGE_KEY = "handover"
HANDOVER_ACK_TEXT = "Un agent te va contacta in curand."
RECENT_EVENTS_LIMIT = 10
RECENT_OUTBOUND_LIMIT = 5


class ScenarioMode(str, enum.Enum):
    RULES = "RULES"
    AI = "AI"


# ═════════════════════════════════════════════════════════════════════════════
# Transition strategies
# ═════════════════════════════════════════════════════════════════════════════


def ai_transition(state: AutopilotState, reply: str, context: TransitionContext) -> Transition:
    """Planner-driven transition; the question budget is enforced here too."""
    if state.node == NODE_HANDOVER:
        return Transition(
            text=HANDOVER_ACK_TEXT,
            node=NODE_HANDOVER,
            answers_update={},
            question_index=state.question_index,
            terminal=False,
            intent=state.answers.get("intent"),
        )

    planner = context.planner or plan_next_message
    result = planner(context.planner_input)

    next_index = state.question_index + 1
    terminal = result.should_handover or next_index >= context.max_questions

    answers_update = dict(result.answers_update)
    if result.intent and not state.answers.get("intent"):
        answers_update["intent"] = result.intent

    return Transition(
        text=result.next_message,
        node=NODE_HANDOVER if terminal else f"ai_q{next_index + 1}",
        answers_update=answers_update,
        question_index=next_index,
        terminal=terminal,
        intent=answers_update.get("intent") or state.answers.get("intent"),
        fallback_used=result.fallback_used,
        ai_meta=result.ai_meta,
    )


STRATEGIES = {
    ScenarioMode.RULES: rules_transition,
    ScenarioMode.AI: ai_transition,
}


def scenario_mode(scenario: AutopilotScenario) -> ScenarioMode:
    try:
        return ScenarioMode(scenario.mode)
    except ValueError:
        logger.warning("Unknown scenario mode, using RULES", extra={"scenario_id": scenario.id, "mode": scenario.mode})
        return ScenarioMode.RULES


def resolve_company_name(scenario: AutopilotScenario) -> str:
    """Configured company name; AI scenarios fall back to the name found in their prompt."""
    name = (scenario.company_name or "").strip()
    if name:
        return name
    if scenario_mode(scenario) is ScenarioMode.AI:
        return extract_company_name(build_prompt_for_scenario(scenario))
    return DEFAULT_COMPANY_NAME


def apply_required_slots(state: AutopilotState, transition: Transition, required_slots: list[str]) -> Transition:
    """Force handover once every required slot holds a non-blank answer."""
    if not required_slots or transition.terminal or state.node == NODE_HANDOVER:
        return transition
    merged = {**state.answers, **transition.answers_update}
    if all(isinstance(merged.get(slot), str) and merged[slot].strip() for slot in required_slots):
        transition.node = NODE_HANDOVER
        transition.terminal = True
    return transition


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _event(lead: Lead, event_type: str, payload: dict, now: datetime) -> EventLog:
    event = EventLog(
        workspace_id=lead.workspace_id,
        lead_id=lead.id,
        event_type=event_type,
        payload=payload,
        occurred_at=now,
    )
    db.session.add(event)
    return event


def resolve_phone(lead: Lead) -> str:
    """Identity phone first, then the lead's own phone field."""
    identity_phone = lead.identity.phone if lead.identity is not None else None
    return (identity_phone or "").strip() or (lead.phone or "").strip()


def _lock_run(lead_id: int) -> AutopilotRun | None:
    stmt = select(AutopilotRun).where(AutopilotRun.lead_id == lead_id).with_for_update()
    return db.session.execute(stmt).scalar_one_or_none()


def _resolve_scenario(run: AutopilotRun) -> AutopilotScenario:
    scenario = scenario_service.get_scenario(run.workspace_id, run.scenario_id)
    if scenario is not None:
        return scenario
    scenario = scenario_service.ensure_default_scenario(run.workspace_id)
    logger.info(
        "Autopilot run re-pointed to default scenario",
        extra={"lead_id": run.lead_id, "previous_scenario_id": run.scenario_id, "scenario_id": scenario.id},
    )
    return scenario


def _recent_timeline(lead_id: int) -> tuple[list[dict], list[str]]:
    events = db.session.execute(
        select(EventLog)
        .where(EventLog.lead_id == lead_id)
        .order_by(EventLog.occurred_at.desc(), EventLog.id.desc())
        .limit(RECENT_EVENTS_LIMIT)
    ).scalars().all()
    outbound = db.session.execute(
        select(OutboundMessage.text)
        .where(OutboundMessage.lead_id == lead_id)
        .order_by(OutboundMessage.created_at.desc(), OutboundMessage.id.desc())
        .limit(RECENT_OUTBOUND_LIMIT)
    ).scalars().all()

    timeline = []
    for evt in reversed(events):
        text = (evt.payload or {}).get("text")
        timeline.append({"eventType": evt.event_type, "text": text if isinstance(text, str) else None})
    return timeline, [t for t in reversed(outbound) if t]


def _planner_input(scenario: AutopilotScenario, lead: Lead, state: AutopilotState, text: str) -> PlannerInput:
    recent_events, recent_outbound = _recent_timeline(lead.id)
    return PlannerInput(
        ai_prompt=scenario.ai_prompt,
        max_questions=scenario.max_questions,
        question_index=state.question_index,
        reply_text=text,
        first_name=lead.first_name,
        current_answers=dict(state.answers),
        scenario_context={
            "agent_name": scenario.agent_name,
            "company_name": scenario.company_name,
            "company_description": scenario.company_description,
            "offer_summary": scenario.offer_summary,
            "calendar_link_raw": scenario.calendar_link_raw,
        },
        lead_context={
            "phone": resolve_phone(lead) or None,
            "email": lead.email,
            "source": lead.source,
            "externalId": lead.external_id,
        },
        recent_events=recent_events,
        recent_outbound_texts=recent_outbound,
        required_slots=scenario.required_slots,
    )


def _queue_message(lead: Lead, to_phone: str, text: str) -> OutboundMessage:
    message = OutboundMessage(
        workspace_id=lead.workspace_id,
        lead_id=lead.id,
        channel="WHATSAPP",
        to_phone=to_phone,
        text=text,
        status="QUEUED",
    )
    db.session.add(message)
    db.session.flush()
    return message


def resolve_flow_id_for_lead(lead: Lead) -> int | None:
    """Flow of the lead's latest stage, else the workspace's resolved flow."""
    latest = db.session.execute(
        select(StageInstance.flow_id)
        .where(StageInstance.lead_id == lead.id)
        .order_by(StageInstance.started_at.desc(), StageInstance.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is not None:
        return latest
    return sla_service.resolve_workspace_flow_id(lead.workspace_id)


def pick_handover_stage_key(definitions) -> str | None:
    if any(d.key == HANDOVER_STAGE_KEY for d in definitions):
        return HANDOVER_STAGE_KEY
    ordered = sla_service.get_ordered_stage_definitions(definitions)
    return ordered[1].key if len(ordered) > 1 else None


def start_handover_stage_if_needed(lead: Lead, now: datetime) -> dict | None:
    flow_id = resolve_flow_id_for_lead(lead)
    if flow_id is None:
        return None
    stage_key = pick_handover_stage_key(sla_service.list_flow_stage_definitions(flow_id))
    if stage_key is None:
        return None

    running = sla_service.get_running_stage(lead.id, stage_key)
    if running is not None and running.flow_id == flow_id:
        return {"started": False, "flowId": flow_id, "stageKey": stage_key}

    sla_service.start_stage(lead.id, flow_id, stage_key, started_at=now, commit=False)
    return {"started": True, "flowId": flow_id, "stageKey": stage_key}


def _notify_handover(lead: Lead, scenario: AutopilotScenario, last_text: str, now: datetime) -> int | None:
    user_id = scenario.handover_user_id or lead.owner_user_id
    if user_id is None:
        logger.info("Handover without an agent to notify", extra={"lead_id": lead.id, "scenario_id": scenario.id})
        return None

    name = " ".join(p for p in (lead.first_name, lead.last_name) if p) or f"Lead #{lead.id}"
    NotificationService.create(
        workspace_id=lead.workspace_id,
        user_id=user_id,
        type="HANDOVER",
        title=f"Autopilot handover: {name}",
        body=f'Ultimul mesaj: "{last_text}"' if last_text else "",
        entity_type="lead",
        entity_id=lead.id,
        commit=False,
    )
    _event(lead, EVENT_HANDOVER_NOTIFIED, {"userId": user_id, "scenarioId": scenario.id}, now)
    return user_id


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def start_autopilot(workspace_id: int, lead_id: int, *, commit: bool = True) -> AutopilotRun:
    """Create the lead's run on the default scenario and queue the welcome message.

    Idempotent: an existing run is returned untouched.
    """
    existing = db.session.execute(
        select(AutopilotRun).where(AutopilotRun.lead_id == lead_id)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    lead = db.session.get(Lead, lead_id)
    if lead is None or lead.workspace_id != workspace_id:
        raise NotFoundError("Lead", lead_id, workspace_id)

    now = datetime.now(timezone.utc)
    scenario = scenario_service.ensure_default_scenario(workspace_id)
    run = AutopilotRun(
        workspace_id=workspace_id,
        lead_id=lead_id,
        scenario_id=scenario.id,
        status=RUN_ACTIVE,
        current_step=WELCOME_STEP,
        state_json=AutopilotState().to_json(),
    )
    db.session.add(run)
    _event(lead, EVENT_AUTOPILOT_STARTED, {"scenarioId": scenario.id, "mode": scenario.mode}, now)

    company = resolve_company_name(scenario)
    text = (
        f"Salut! Sunt asistentul virtual {company}. "
        "Am primit solicitarea ta si revenim imediat cu urmatorii pasi."
    )
    to_phone = resolve_phone(lead)
    if to_phone:
        message = _queue_message(lead, to_phone, text)
        run.last_outbound_at = now
        _event(lead, EVENT_MESSAGE_QUEUED, {
            "messageId": message.id, "nodeAfter": WELCOME_STEP, "scenarioId": scenario.id, "text": text,
        }, now)
    else:
        _event(lead, EVENT_MESSAGE_BLOCKED, {
            "reason": "missing_phone", "channel": "whatsapp", "scenarioId": scenario.id, "nodeAfter": WELCOME_STEP,
        }, now)

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    logger.info("Autopilot started", extra={"workspace_id": workspace_id, "lead_id": lead_id, "scenario_id": scenario.id})
    return run


def _run_version(run: AutopilotRun) -> tuple:
    return run.status, run.scenario_id, copy.deepcopy(run.state_json)


def _compute_transition(run: AutopilotRun, lead: Lead, scenario: AutopilotScenario, text: str, planner, gateway):
    mode = scenario_mode(scenario)
    state = AutopilotState.parse(run.state_json)
    context = TransitionContext(
        max_questions=scenario.max_questions or 2,
        company_name=resolve_company_name(scenario) or DEFAULT_COMPANY_NAME,
        first_name=lead.first_name,
        required_slots=scenario.required_slots,
    )
    if mode is ScenarioMode.AI:
        context.planner = planner or partial(plan_next_message, gateway=gateway)
        context.planner_input = _planner_input(scenario, lead, state, text)

    transition = STRATEGIES[mode](state, text, context)
    return mode, state, apply_required_slots(state, transition, scenario.required_slots)


def process_reply(lead_id: int, text: str, *, planner=None, gateway=None) -> dict | None:
    """Advance the lead's autopilot conversation with an inbound reply.

    Args:
        lead_id: Lead whose run receives the reply.
        text: Verbatim inbound text.
        planner: Optional ``PlannerInput -> PlannerOutput`` callable (AI mode).
        gateway: Optional chat-completion gateway for the default planner.

    Returns:
        ``{"leadId", "autopilot": {"status", "node", "answers"},
        "queuedMessage", "messageBlocked"?}``, or None when the lead has no run.
    """
    try:
        # ── Prepare and plan (no row lock held) ──
        run = db.session.execute(
            select(AutopilotRun).where(AutopilotRun.lead_id == lead_id)
        ).scalar_one_or_none()
        if run is None:
            return None
        snapshot = _run_version(run)
        scenario = _resolve_scenario(run)
        lead = db.session.get(Lead, lead_id)
        db.session.commit()

        mode, state, transition = _compute_transition(run, lead, scenario, text, planner, gateway)

        # ── Lock and re-check ──
        run = _lock_run(lead_id)
        if run is None:
            return None
        if _run_version(run) != snapshot:
            logger.info("Autopilot run changed while planning, recomputing", extra={"lead_id": lead_id})
            scenario = _resolve_scenario(run)
            mode, state, transition = _compute_transition(run, lead, scenario, text, planner, gateway)
        now = datetime.now(timezone.utc)

        # ── Persist ──
        inbound_payload = {"text": text, "nodeBefore": state.node, "scenarioId": scenario.id, "mode": mode.value}
        if mode is ScenarioMode.AI:
            inbound_payload["fallbackUsed"] = transition.fallback_used
            inbound_payload["aiMeta"] = transition.ai_meta
        _event(lead, EVENT_AUTOPILOT_INBOUND, inbound_payload, now)

        if mode is ScenarioMode.AI:
            meta = transition.ai_meta or {}
            _event(lead, EVENT_AUTOPILOT_AI_PLANNED, {
                "scenarioId": scenario.id,
                "fallbackUsed": transition.fallback_used,
                "jsonValid": meta.get("jsonValid", False),
                "latencyMs": meta.get("latencyMs", 0),
                "model": meta.get("model"),
                "promptPreview": prompt_preview(build_prompt_for_scenario(scenario, lead.first_name)),
            }, now)

        answers = {**state.answers, **transition.answers_update}
        new_state = AutopilotState(node=transition.node, answers=answers, question_index=transition.question_index)
        status = RUN_HANDED_OVER if transition.terminal else run.status

        run.state_json = new_state.to_json()
        run.current_step = transition.node
        run.last_inbound_at = now
        run.status = status
        if run.scenario_id != scenario.id:
            run.scenario_id = scenario.id

        result = {
            "leadId": lead_id,
            "autopilot": {"status": status, "node": transition.node, "answers": answers},
            "queuedMessage": None,
        }

        to_phone = resolve_phone(lead)
        if not to_phone:
            _event(lead, EVENT_MESSAGE_BLOCKED, {
                "reason": "missing_phone",
                "channel": "whatsapp",
                "scenarioId": scenario.id,
                "nodeAfter": transition.node,
            }, now)
            result["messageBlocked"] = True
        else:
            message = _queue_message(lead, to_phone, transition.text)
            run.last_outbound_at = now
            if transition.terminal:
                _event(lead, EVENT_AUTOPILOT_HANDOVER, {
                    "scenarioId": scenario.id, "handoverUserId": scenario.handover_user_id,
                }, now)
            _event(lead, EVENT_MESSAGE_QUEUED, {
                "messageId": message.id, "nodeAfter": transition.node, "scenarioId": scenario.id, "text": transition.text,
            }, now)
            result["queuedMessage"] = {"id": message.id, "text": message.text, "toPhone": to_phone}

        if transition.terminal:
            result["handoverStage"] = start_handover_stage_if_needed(lead, now)
            result["handoverUserId"] = _notify_handover(lead, scenario, text, now)

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Autopilot reply failed", extra={"lead_id": lead_id})
        raise

    logger.info(
        "Autopilot reply processed",
        extra={"lead_id": lead_id, "node": transition.node, "status": status, "mode": mode.value},
    )
    return result
