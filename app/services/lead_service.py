"""
Lead SLA Platform
Lead Ingestion & Proof Service.

create_lead runs the whole intake in one transaction:
    normalize → dedupe on (source_type, external_id) → identity →
    ``lead_received`` → owner from flow routing → initial SLA stage →
    autopilot start (welcome message)

add_proof_event records an agent action (message sent, call, meeting, ...)
and stops the lead's current stage when its definition accepts that proof.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.flow import Flow
from app.models.lead import (
    EVENT_LEAD_RECEIVED,
    LEAD_SOURCE_TYPES,
    PROOF_EVENT_TYPES,
    EventLog,
    Lead,
    LeadIdentity,
)
from app.services import autopilot_service, routing_service, sla_service

logger = logging.getLogger(__name__)


def _text(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def get_lead(lead_id: int, workspace_id: int | None = None) -> Lead:
    lead = db.session.get(Lead, lead_id)
    if lead is None or (workspace_id is not None and lead.workspace_id != workspace_id):
        raise NotFoundError("Lead", lead_id, workspace_id)
    return lead


def _find_duplicate(workspace_id: int, source_type: str, external_id: str | None) -> Lead | None:
    if external_id is None:
        return None
    stmt = select(Lead).where(
        Lead.workspace_id == workspace_id,
        Lead.source_type == source_type,
        Lead.external_id == external_id,
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _resolve_flow(workspace_id: int, flow_id) -> int | None:
    if flow_id is None:
        return sla_service.resolve_workspace_flow_id(workspace_id)
    flow = db.session.get(Flow, flow_id)
    if flow is None or flow.workspace_id != workspace_id:
        raise NotFoundError("Flow", flow_id, workspace_id)
    return flow.id


def create_lead(workspace_id: int, data: dict) -> dict:
    """Ingest a lead.

    Args:
        workspace_id: Owning workspace.
        data: ``externalId``, ``sourceType``, ``firstName``, ``lastName``,
            ``name``, ``email``, ``phone``, ``company``, ``source``, ``meta``,
            ``flowId`` and ``startAutopilot`` (default True).

    Returns:
        ``{"leadId", "ownerUserId", "stage", "autopilot", "deduped"}``.

    Raises:
        ValidationError: unknown ``sourceType``.
        NotFoundError: ``flowId`` not in the workspace.
    """
    source_type = (_text(data.get("sourceType")) or "WEBHOOK").upper()
    if source_type not in LEAD_SOURCE_TYPES:
        raise ValidationError("Invalid sourceType", {"sourceType": sorted(LEAD_SOURCE_TYPES)})

    external_id = _text(data.get("externalId"))
    duplicate = _find_duplicate(workspace_id, source_type, external_id)
    if duplicate is not None:
        logger.info("Duplicate lead ignored", extra={"workspace_id": workspace_id, "lead_id": duplicate.id})
        return {
            "leadId": duplicate.id,
            "ownerUserId": duplicate.owner_user_id,
            "stage": None,
            "autopilot": None,
            "deduped": True,
        }

    name = _text(data.get("name"))
    first_name = _text(data.get("firstName")) or (name.split()[0] if name else None)
    email = _text(data.get("email"))
    email = email.lower() if email else None
    phone = _text(data.get("phone"))
    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}

    try:
        flow_id = _resolve_flow(workspace_id, data.get("flowId"))

        lead = Lead(
            workspace_id=workspace_id,
            source_type=source_type,
            external_id=external_id,
            status="NEW",
            first_name=first_name,
            last_name=_text(data.get("lastName")),
            email=email,
            phone=phone,
            source=_text(data.get("source")),
        )
        db.session.add(lead)
        db.session.flush()

        company = _text(data.get("company"))
        if name or email or phone or company or meta:
            db.session.add(LeadIdentity(
                lead_id=lead.id, name=name, email=email, phone=phone, company=company, meta=meta,
            ))

        db.session.add(EventLog(
            workspace_id=workspace_id,
            lead_id=lead.id,
            event_type=EVENT_LEAD_RECEIVED,
            payload={"sourceType": source_type, "externalId": external_id, "metadata": meta},
        ))
        db.session.flush()

        stage = None
        if flow_id is not None:
            routing_service.assign_lead_from_flow_routing(workspace_id, flow_id, lead.id)
            initial_key = sla_service.pick_initial_stage_key(sla_service.list_flow_stage_definitions(flow_id))
            if initial_key is not None:
                instance = sla_service.start_stage(lead.id, flow_id, initial_key, commit=False)
                stage = {"stageKey": instance.stage_key, "dueAt": instance.due_at.isoformat()}

        run = None
        if data.get("startAutopilot", True):
            run = autopilot_service.start_autopilot(workspace_id, lead.id, commit=False)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Lead ingested",
        extra={"workspace_id": workspace_id, "lead_id": lead.id, "flow_id": flow_id, "owner_user_id": lead.owner_user_id},
    )
    return {
        "leadId": lead.id,
        "ownerUserId": lead.owner_user_id,
        "stage": stage,
        "autopilot": run.to_dict() if run is not None else None,
        "deduped": False,
    }


def add_proof_event(lead_id: int, event_type: str, payload: dict | None = None) -> dict:
    """Record a proof event and stop the current stage if it qualifies.

    Raises:
        NotFoundError: lead does not exist.
        ValidationError: ``event_type`` is not a proof type.
    """
    lead = get_lead(lead_id)
    proof_type = sla_service.canonicalize_proof_type(event_type)
    if proof_type not in PROOF_EVENT_TYPES:
        raise ValidationError("Unsupported proof event type", {"type": list(PROOF_EVENT_TYPES)})

    try:
        event = EventLog(
            workspace_id=lead.workspace_id,
            lead_id=lead.id,
            event_type=proof_type,
            payload=payload or {},
        )
        db.session.add(event)
        db.session.flush()
        stopped = sla_service.stop_current_stage_if_proof_qualifies(lead.id, proof_type, event.id, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return {
        "event": event.to_dict(),
        "stoppedStage": stopped.to_dict() if stopped is not None else None,
    }
