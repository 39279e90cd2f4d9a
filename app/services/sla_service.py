"""
Lead SLA Platform
SLA Stage Engine.

Owns the stage-instance lifecycle for a lead:
  - start: resolve the stage definition and compute the business-hours deadline
  - stop: explicit stop, proof-event stop, or advance to the next stage
  - breach: bulk transition of overdue RUNNING rows (lazy sweep, idempotent)

State machine per (lead, stage): RUNNING → STOPPED | BREACHED. Terminal rows
are never touched again; every query that mutates filters on RUNNING.

Transactions:
  Public functions accept ``commit``. HTTP entry points use the default
  (commit); composite operations such as lead ingestion and autopilot
  handover pass ``commit=False`` and commit once themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update

from app.core.exceptions import NotFoundError, StageDefinitionMissing
from app.models import db
from app.models.flow import Flow, StageDefinition
from app.models.lead import PROOF_TYPE_ALIASES, Lead
from app.models.sla import (
    STAGE_BREACHED,
    STAGE_RUNNING,
    STAGE_STOPPED,
    STOP_REASON_DEADLINE,
    StageInstance,
)
from app.models.workspace import WorkspaceSettings
from app.services.business_hours import as_utc, compute_due_at, get_workspace_business_hours

logger = logging.getLogger(__name__)

STAGE_ORDER = (
    "first_touch",
    "handover",
    "qualification",
    "next_step_scheduled",
    "follow_up_closure",
)


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _now(value: datetime | None) -> datetime:
    return as_utc(value) if value is not None else datetime.now(timezone.utc)


def _finish(commit: bool) -> None:
    if commit:
        db.session.commit()
    else:
        db.session.flush()


def _get_lead(lead_id: int) -> Lead:
    lead = db.session.get(Lead, lead_id)
    if lead is None:
        raise NotFoundError("Lead", lead_id)
    return lead


def get_stage_definition(flow_id: int, stage_key: str) -> StageDefinition | None:
    stmt = select(StageDefinition).where(
        StageDefinition.flow_id == flow_id,
        StageDefinition.key == stage_key,
    )
    return db.session.execute(stmt).scalar_one_or_none()


def canonicalize_proof_type(value: str | None) -> str:
    """Map channel-specific proof names onto the canonical proof types."""
    key = (value or "").strip().lower()
    return PROOF_TYPE_ALIASES.get(key, key)


def get_ordered_stage_definitions(definitions: list[StageDefinition]) -> list[StageDefinition]:
    """Canonical pipeline order first, unknown keys after it alphabetically."""
    rank = {key: idx for idx, key in enumerate(STAGE_ORDER)}
    return sorted(definitions, key=lambda d: (rank.get(d.key, len(STAGE_ORDER)), d.key))


def pick_initial_stage_key(definitions: list[StageDefinition]) -> str | None:
    ordered = get_ordered_stage_definitions(definitions)
    return ordered[0].key if ordered else None


def list_flow_stage_definitions(flow_id: int) -> list[StageDefinition]:
    stmt = select(StageDefinition).where(StageDefinition.flow_id == flow_id)
    return get_ordered_stage_definitions(list(db.session.execute(stmt).scalars().all()))


def resolve_workspace_flow_id(workspace_id: int) -> int | None:
    """Default flow from settings, else the most recently updated active flow, else the oldest flow."""
    settings = db.session.execute(
        select(WorkspaceSettings).where(WorkspaceSettings.workspace_id == workspace_id)
    ).scalar_one_or_none()
    if settings is not None and settings.default_flow_id is not None:
        return settings.default_flow_id

    active = db.session.execute(
        select(Flow.id)
        .where(Flow.workspace_id == workspace_id, Flow.is_active == True)  # noqa: E712
        .order_by(Flow.updated_at.desc(), Flow.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if active is not None:
        return active

    return db.session.execute(
        select(Flow.id)
        .where(Flow.workspace_id == workspace_id)
        .order_by(Flow.created_at.asc(), Flow.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def get_running_stage(lead_id: int, stage_key: str | None = None) -> StageInstance | None:
    """Latest-started RUNNING instance for the lead (optionally one stage)."""
    stmt = select(StageInstance).where(
        StageInstance.lead_id == lead_id,
        StageInstance.status == STAGE_RUNNING,
    )
    if stage_key is not None:
        stmt = stmt.where(StageInstance.stage_key == stage_key)
    stmt = stmt.order_by(StageInstance.started_at.desc(), StageInstance.id.desc()).limit(1)
    return db.session.execute(stmt).scalars().first()


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def start_stage(
    lead_id: int,
    flow_id: int,
    stage_key: str,
    started_at: datetime | None = None,
    *,
    commit: bool = True,
) -> StageInstance:
    """Persist a new RUNNING instance with a business-hours-aware deadline.

    The caller guarantees no other RUNNING instance exists for (lead, stage);
    this function does not dedupe.

    Raises:
        NotFoundError: lead does not exist.
        StageDefinitionMissing: no definition for (flow_id, stage_key).
    """
    lead = _get_lead(lead_id)
    definition = get_stage_definition(flow_id, stage_key)
    if definition is None:
        raise StageDefinitionMissing(flow_id, stage_key)

    start = _now(started_at)
    workspace_hours = get_workspace_business_hours(lead.workspace_id)
    effective = workspace_hours.with_enabled(
        workspace_hours.business_hours_enabled and bool(definition.business_hours_enabled)
    )
    due_at = compute_due_at(start, definition.target_minutes, effective)

    instance = StageInstance(
        workspace_id=lead.workspace_id,
        lead_id=lead.id,
        flow_id=flow_id,
        stage_key=stage_key,
        started_at=start,
        due_at=due_at,
        status=STAGE_RUNNING,
    )
    db.session.add(instance)
    _finish(commit)
    logger.info(
        "SLA stage started",
        extra={"workspace_id": lead.workspace_id, "lead_id": lead.id, "flow_id": flow_id, "stage_key": stage_key},
    )
    return instance


def _stop(instance: StageInstance, reason: str, proof_event_id: int | None, stopped_at: datetime) -> None:
    instance.status = STAGE_STOPPED
    instance.stopped_at = stopped_at
    instance.stop_reason = reason
    instance.proof_event_id = proof_event_id


def stop_stage(
    lead_id: int,
    flow_id: int,
    stage_key: str,
    proof_event_id: int | None,
    reason: str,
    stopped_at: datetime | None = None,
    *,
    commit: bool = True,
) -> StageInstance | None:
    """Stop the most recently started RUNNING instance of (lead, flow, stage).

    Returns None without writing anything when nothing is running; stop calls
    can race with stages that were already stopped or breached.
    """
    stmt = (
        select(StageInstance)
        .where(
            StageInstance.lead_id == lead_id,
            StageInstance.flow_id == flow_id,
            StageInstance.stage_key == stage_key,
            StageInstance.status == STAGE_RUNNING,
        )
        .order_by(StageInstance.started_at.desc(), StageInstance.id.desc())
        .limit(1)
    )
    instance = db.session.execute(stmt).scalars().first()
    if instance is None:
        return None

    _stop(instance, reason, proof_event_id, _now(stopped_at))
    _finish(commit)
    logger.info(
        "SLA stage stopped",
        extra={"lead_id": lead_id, "stage_key": stage_key, "reason": reason},
    )
    return instance


def advance_stage(
    lead_id: int,
    to_stage_key: str,
    now: datetime | None = None,
    *,
    commit: bool = True,
) -> dict | None:
    """Stop the lead's current RUNNING stage and start ``to_stage_key`` on the same flow.

    Returns:
        ``{"stopped": StageInstance, "started": StageInstance}`` or None when
        nothing is running.
    """
    current = get_running_stage(lead_id)
    if current is None:
        return None
    if get_stage_definition(current.flow_id, to_stage_key) is None:
        raise StageDefinitionMissing(current.flow_id, to_stage_key)

    at = _now(now)
    _stop(current, f"advanced_to_{to_stage_key}", None, at)
    started = start_stage(lead_id, current.flow_id, to_stage_key, started_at=at, commit=False)
    _finish(commit)
    return {"stopped": current, "started": started}


def detect_breaches(
    workspace_id: int | None = None,
    now: datetime | None = None,
    *,
    commit: bool = True,
) -> int:
    """Bulk-transition overdue RUNNING instances to BREACHED.

    Only RUNNING rows match, so repeated calls never touch a row twice.

    Returns:
        Number of rows transitioned by this call.
    """
    at = _now(now)
    stmt = (
        update(StageInstance)
        .where(
            StageInstance.status == STAGE_RUNNING,
            StageInstance.due_at < at,
        )
        .values(status=STAGE_BREACHED, breached_at=at, stop_reason=STOP_REASON_DEADLINE)
        .execution_options(synchronize_session="fetch")
    )
    if workspace_id is not None:
        stmt = stmt.where(StageInstance.workspace_id == workspace_id)

    count = db.session.execute(stmt).rowcount or 0
    _finish(commit)
    if count:
        logger.info("SLA breaches detected", extra={"workspace_id": workspace_id, "count": count})
    return count


def stop_current_stage_if_proof_qualifies(
    lead_id: int,
    proof_event_type: str,
    proof_event_id: int | None,
    *,
    commit: bool = True,
) -> StageInstance | None:
    """Stop the lead's earliest RUNNING stage if its definition accepts this proof."""
    stmt = (
        select(StageInstance)
        .where(StageInstance.lead_id == lead_id, StageInstance.status == STAGE_RUNNING)
        .order_by(StageInstance.started_at.asc(), StageInstance.id.asc())
        .limit(1)
    )
    instance = db.session.execute(stmt).scalars().first()
    if instance is None:
        return None

    definition = get_stage_definition(instance.flow_id, instance.stage_key)
    if definition is None:
        return None

    accepted = {canonicalize_proof_type(t) for t in (definition.stop_on_proof_types or [])}
    proof_type = canonicalize_proof_type(proof_event_type)
    if proof_type not in accepted:
        return None

    _stop(instance, f"proof:{proof_type}", proof_event_id, datetime.now(timezone.utc))
    _finish(commit)
    logger.info(
        "SLA stage stopped by proof",
        extra={"lead_id": lead_id, "stage_key": instance.stage_key, "event_type": proof_type},
    )
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# Read model
# ═════════════════════════════════════════════════════════════════════════════


def get_lead_sla_state(lead_id: int, now: datetime | None = None) -> dict:
    """Current stage, due/overdue flag and full stage history for one lead."""
    lead = _get_lead(lead_id)
    at = _now(now)

    stmt = (
        select(StageInstance)
        .where(StageInstance.lead_id == lead.id)
        .order_by(StageInstance.started_at.asc(), StageInstance.id.asc())
    )
    history = db.session.execute(stmt).scalars().all()

    current = None
    running = [s for s in history if s.status == STAGE_RUNNING]
    if running:
        inst = running[-1]
        due = as_utc(inst.due_at)
        current = {
            **inst.to_dict(),
            "overdue": due < at,
            "remaining_minutes": round((due - at).total_seconds() / 60, 1),
        }

    return {
        "leadId": lead.id,
        "ownerUserId": lead.owner_user_id,
        "current": current,
        "history": [s.to_dict() for s in history],
    }
