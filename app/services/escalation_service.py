"""
Lead SLA Platform
Escalation Detector.

Periodic sweep over RUNNING stage instances. For each instance the elapsed
share of its budget is compared against the (flow, stage) escalation rule:

  - reminder       → ``reminder_sent`` event + REMINDER to the current owner
  - reassignment   → routing reassign + ``reassigned`` event + in/out notices
  - manager alert  → ``manager_alert`` event + MANAGER_ALERT to every manager

Idempotency:
  Each tier fires at most once per stage run. "Already fired" means an event
  of that type exists for the lead since ``stage.started_at``; the event log
  is the marker, so repeated or concurrent sweeps are safe.

All tiers are evaluated independently in one pass and the whole sweep is one
transaction.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.flow import EscalationRule
from app.models.lead import (
    EVENT_MANAGER_ALERT,
    EVENT_REASSIGNED,
    EVENT_REMINDER_SENT,
    PROOF_EVENT_TYPES,
    EventLog,
    Lead,
)
from app.models.sla import STAGE_RUNNING, StageInstance
from app.services.business_hours import as_utc
from app.services.notification import NotificationService
from app.services.routing_service import reassign_lead_from_flow_routing

logger = logging.getLogger(__name__)


def compute_elapsed_pct(started_at: datetime, due_at: datetime, now: datetime) -> float:
    """Elapsed share of the stage budget in percent, never negative."""
    total_ms = max(1.0, (as_utc(due_at) - as_utc(started_at)).total_seconds() * 1000)
    elapsed_ms = max(0.0, (as_utc(now) - as_utc(started_at)).total_seconds() * 1000)
    pct = elapsed_ms / total_ms * 100
    if not math.isfinite(pct):
        return 0.0
    return max(0.0, pct)


def _has_event_since(workspace_id: int, lead_id: int, event_types, since: datetime) -> bool:
    types = [event_types] if isinstance(event_types, str) else list(event_types)
    stmt = (
        select(EventLog.id)
        .where(
            EventLog.workspace_id == workspace_id,
            EventLog.lead_id == lead_id,
            EventLog.event_type.in_(types),
            EventLog.occurred_at >= since,
        )
        .limit(1)
    )
    return db.session.execute(stmt).first() is not None


def _event(stage: StageInstance, event_type: str, payload: dict, now: datetime) -> EventLog:
    event = EventLog(
        workspace_id=stage.workspace_id,
        lead_id=stage.lead_id,
        event_type=event_type,
        payload=payload,
        occurred_at=now,
    )
    db.session.add(event)
    return event


def _base_payload(stage: StageInstance, threshold: int, elapsed_pct: float) -> dict:
    return {
        "stageInstanceId": stage.id,
        "flowId": stage.flow_id,
        "stageKey": stage.stage_key,
        "thresholdPct": threshold,
        "elapsedPct": round(elapsed_pct, 2),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Tiers
# ═════════════════════════════════════════════════════════════════════════════


def _create_reminder(stage: StageInstance, lead: Lead, threshold: int, elapsed_pct: float, now: datetime) -> None:
    payload = _base_payload(stage, threshold, elapsed_pct)
    payload["ownerUserId"] = lead.owner_user_id
    _event(stage, EVENT_REMINDER_SENT, payload, now)

    if lead.owner_user_id is None:
        return
    NotificationService.create(
        workspace_id=stage.workspace_id,
        user_id=lead.owner_user_id,
        type="REMINDER",
        title="Reminder SLA",
        body=f"Lead {lead.id} este la {math.floor(elapsed_pct)}% din etapa {stage.stage_key}.",
        entity_id=lead.id,
        commit=False,
    )


def _create_reassignment(stage: StageInstance, threshold: int, elapsed_pct: float, now: datetime) -> dict:
    result = reassign_lead_from_flow_routing(stage.workspace_id, stage.flow_id, stage.lead_id)

    payload = _base_payload(stage, threshold, elapsed_pct)
    payload.update({
        "previousOwnerUserId": result["previousOwnerUserId"],
        "ownerUserId": result["ownerUserId"],
        "method": result["method"],
        "changed": result["changed"],
    })
    _event(stage, EVENT_REASSIGNED, payload, now)

    previous = result["previousOwnerUserId"]
    owner = result["ownerUserId"]
    if previous is not None and previous != owner:
        NotificationService.create(
            workspace_id=stage.workspace_id,
            user_id=previous,
            type="REASSIGNED_OUT",
            title="Lead reasignat",
            body=f"Lead {stage.lead_id} a fost mutat catre alt owner.",
            entity_id=stage.lead_id,
            commit=False,
        )
    if owner is not None:
        NotificationService.create(
            workspace_id=stage.workspace_id,
            user_id=owner,
            type="REASSIGNED_IN",
            title="Lead nou in lucru",
            body=f"Lead {stage.lead_id} a fost asignat catre tine prin escaladare.",
            entity_id=stage.lead_id,
            commit=False,
        )
    return result


def _create_manager_alert(stage: StageInstance, threshold: int, elapsed_pct: float, now: datetime) -> None:
    _event(stage, EVENT_MANAGER_ALERT, _base_payload(stage, threshold, elapsed_pct), now)
    NotificationService.broadcast_to_role(
        workspace_id=stage.workspace_id,
        role="MANAGER",
        type="MANAGER_ALERT",
        title="Alerta manager",
        body=f"Lead {stage.lead_id} a depasit pragul de escaladare in etapa {stage.stage_key}.",
        entity_id=stage.lead_id,
        commit=False,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def run_escalation_sweep(workspace_id: int | None = None, now: datetime | None = None) -> dict:
    """Evaluate every RUNNING stage against its escalation rule.

    Args:
        workspace_id: Limit the sweep to one workspace; None sweeps all.
        now: Evaluation instant (defaults to the current UTC time).

    Returns:
        ``{"reminders": int, "reassignments": int, "managerAlerts": int}``
        counting tiers fired by this call.
    """
    at = as_utc(now) if now is not None else datetime.now(timezone.utc)
    counts = {"reminders": 0, "reassignments": 0, "managerAlerts": 0}

    stmt = select(StageInstance).where(StageInstance.status == STAGE_RUNNING)
    if workspace_id is not None:
        stmt = stmt.where(StageInstance.workspace_id == workspace_id)
    stages = db.session.execute(stmt.order_by(StageInstance.id)).scalars().all()
    if not stages:
        return counts

    flow_ids = {s.flow_id for s in stages}
    rules_stmt = select(EscalationRule).where(
        EscalationRule.enabled == True,  # noqa: E712
        EscalationRule.flow_id.in_(flow_ids),
    )
    rules = {(r.flow_id, r.stage_key): r for r in db.session.execute(rules_stmt).scalars().all()}

    try:
        for stage in stages:
            rule = rules.get((stage.flow_id, stage.stage_key))
            if rule is None:
                continue

            lead = db.session.get(Lead, stage.lead_id)
            if lead is None:
                continue

            started = as_utc(stage.started_at)
            elapsed_pct = compute_elapsed_pct(started, stage.due_at, at)

            remind = rule.remind_at_pct or 0
            if remind > 0 and elapsed_pct >= remind and not _has_event_since(
                stage.workspace_id, stage.lead_id, EVENT_REMINDER_SENT, started,
            ):
                _create_reminder(stage, lead, remind, elapsed_pct, at)
                counts["reminders"] += 1

            reassign = rule.reassign_at_pct or 0
            if (
                reassign > 0
                and elapsed_pct >= reassign
                and not _has_event_since(stage.workspace_id, stage.lead_id, EVENT_REASSIGNED, started)
                and not _has_event_since(stage.workspace_id, stage.lead_id, PROOF_EVENT_TYPES, started)
            ):
                _create_reassignment(stage, reassign, elapsed_pct, at)
                counts["reassignments"] += 1

            alert = rule.manager_alert_at_pct or 0
            if alert > 0 and elapsed_pct >= alert and not _has_event_since(
                stage.workspace_id, stage.lead_id, EVENT_MANAGER_ALERT, started,
            ):
                _create_manager_alert(stage, alert, elapsed_pct, at)
                counts["managerAlerts"] += 1

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Escalation sweep failed", extra={"workspace_id": workspace_id})
        raise

    if any(counts.values()):
        logger.info("Escalation sweep completed", extra={"workspace_id": workspace_id, **counts})
    return counts

