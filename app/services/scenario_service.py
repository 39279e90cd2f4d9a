"""
Lead SLA Platform
Autopilot Scenario Service.

  - ensure_default_scenario: keeps exactly one default scenario per workspace
  - scenario templates (qualify_handover, qualify_book, quick_contact)
  - create_scenario_from_template

Default resolution order:
  1. a scenario flagged ``is_default`` (earliest wins; extra flags are cleared)
  2. otherwise the earliest scenario is promoted
  3. otherwise a "Default Qualification" RULES scenario is created

The function only flushes; it runs inside the caller's transaction.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.autopilot import SCENARIO_MODES, SCENARIO_TYPES, AutopilotScenario

logger = logging.getLogger(__name__)

DEFAULT_SCENARIO_NAME = "Default Qualification"

DEFAULT_AUTOPILOT_PROMPT_RO = """OBIECTIV
Esti {agent_name}, reprezentant de vanzari pentru {company_name}. Rolul tau este sa raspunzi rapid si sa programezi o discutie. Poti adapta raspunsurile pe baza a ceea ce spune prospectul, dar NU sari peste pasii scriptului.

CONTEXT COMPANIE
{company_description}

OFERTA (pe scurt, 1-2 propozitii)
{offer_summary}

LINK PROGRAMARE (daca exista)
{calendar_link_raw}

REGULI IMPORTANTE
1) Pastreaza mesajele scurte. Max 2-3 propozitii.
2) Pune EXACT o singura intrebare la finalul fiecarui mesaj.
3) Respecta max {maxQuestions} intrebari de calificare. Dupa aceea faci HANDOVER catre un agent uman.
4) Daca nu ai raspunsul la o intrebare, NU inventa. Spune ca verifici si faci handover.
5) Returneaza DOAR JSON valid, fara alt text.

[SCRIPT]
1) "Buna, {lead_name}! Cu ce te pot ajuta azi: pret, programare sau detalii?"
2) Follow-up in functie de intent:
- pricing: "Perfect. Pentru ce serviciu vrei pret?"
- booking: "Super. Pentru ce zi preferi programarea?"
- other: "Spune-mi pe scurt ce ai nevoie si te ajut imediat."
3) Inchidere (dupa maxQuestions):
"Multumesc! Te conectez cu un coleg pentru pasul urmator."
"""

_COMMON_RULES = """REGULI:
- Tonul este prietenos si natural. Nu folosi liste numerotate sau optiuni de tip meniu.
- Pune cate o singura intrebare pe rand.
- Ai maxim {maxQuestions} intrebari la dispozitie.
- Nu inventa informatii despre companie.
- Raspunde in romana."""

SCENARIO_TEMPLATES = {
    "qualify_handover": {
        "label": "Calificare + Handover",
        "description": "Colecteaza datele esentiale (nume, telefon, serviciu) si transfera lead-ul catre un agent.",
        "scenario_type": "QUALIFY_ONLY",
        "mode": "AI",
        "max_questions": 3,
        "qualification_criteria": {"requiredSlots": ["name", "phone", "service"]},
        "ai_prompt": (
            "Esti {agent_name}, asistent virtual pentru {company_name}.\n\n"
            "Despre companie: {company_description}\n"
            "Oferta curenta: {offer_summary}\n\n"
            "OBIECTIV: Colecteaza numele (\"name\"), telefonul (\"phone\") si serviciul dorit (\"service\").\n"
            "Cand ai toate cele 3 campuri, seteaza shouldHandover=true si confirma.\n\n"
            + _COMMON_RULES
        ),
    },
    "qualify_book": {
        "label": "Calificare + Programare",
        "description": "Colecteaza datele (nume, telefon, email) si trimite link-ul de programare.",
        "scenario_type": "QUALIFY_AND_BOOK",
        "mode": "AI",
        "max_questions": 3,
        "qualification_criteria": {"requiredSlots": ["name", "phone", "email"]},
        "ai_prompt": (
            "Esti {agent_name}, asistent virtual pentru {company_name}.\n\n"
            "Despre companie: {company_description}\n"
            "Oferta curenta: {offer_summary}\n\n"
            "OBIECTIV: Colecteaza numele (\"name\"), telefonul (\"phone\") si emailul (\"email\").\n"
            "Cand ai toate cele 3 campuri, trimite link-ul de programare: {calendar_link_raw}\n"
            "Seteaza shouldHandover=true dupa ce trimiti link-ul.\n\n"
            + _COMMON_RULES
        ),
    },
    "quick_contact": {
        "label": "Contact Rapid",
        "description": "Colecteaza doar numele si telefonul, apoi transfera.",
        "scenario_type": "QUALIFY_ONLY",
        "mode": "AI",
        "max_questions": 2,
        "qualification_criteria": {"requiredSlots": ["name", "phone"]},
        "ai_prompt": (
            "Esti {agent_name}, asistent virtual pentru {company_name}.\n\n"
            "Despre companie: {company_description}\n\n"
            "OBIECTIV: Colecteaza rapid numele (\"name\") si telefonul (\"phone\").\n"
            "Cand ai ambele campuri, seteaza shouldHandover=true si spune ca un coleg il va contacta.\n\n"
            + _COMMON_RULES
        ),
    },
}

_OVERRIDABLE_FIELDS = (
    "name", "agent_name", "company_name", "company_description", "offer_summary",
    "calendar_link_raw", "handover_user_id", "max_questions", "sla_minutes", "language",
)


def _workspace_scenarios(workspace_id: int):
    stmt = (
        select(AutopilotScenario)
        .where(AutopilotScenario.workspace_id == workspace_id)
        .order_by(AutopilotScenario.created_at.asc(), AutopilotScenario.id.asc())
    )
    return db.session.execute(stmt).scalars().all()


def get_scenario(workspace_id: int, scenario_id: int | None) -> AutopilotScenario | None:
    if scenario_id is None:
        return None
    stmt = select(AutopilotScenario).where(
        AutopilotScenario.id == scenario_id,
        AutopilotScenario.workspace_id == workspace_id,
    )
    return db.session.execute(stmt).scalar_one_or_none()


def ensure_default_scenario(workspace_id: int) -> AutopilotScenario:
    """Return the workspace's single default scenario, healing the invariant first."""
    scenarios = _workspace_scenarios(workspace_id)

    defaults = [s for s in scenarios if s.is_default]
    if defaults:
        chosen = defaults[0]
        for extra in defaults[1:]:
            extra.is_default = False
        if len(defaults) > 1:
            logger.warning(
                "Multiple default scenarios; demoted extras",
                extra={"workspace_id": workspace_id, "scenario_id": chosen.id},
            )
            db.session.flush()
        return chosen

    if scenarios:
        chosen = scenarios[0]
        chosen.is_default = True
        db.session.flush()
        logger.info("Promoted earliest scenario to default", extra={"workspace_id": workspace_id, "scenario_id": chosen.id})
        return chosen

    chosen = AutopilotScenario(
        workspace_id=workspace_id,
        name=DEFAULT_SCENARIO_NAME,
        scenario_type="QUALIFY_ONLY",
        mode="RULES",
        max_questions=2,
        sla_minutes=15,
        ai_prompt=DEFAULT_AUTOPILOT_PROMPT_RO,
        is_default=True,
    )
    db.session.add(chosen)
    db.session.flush()
    logger.info("Created seed default scenario", extra={"workspace_id": workspace_id, "scenario_id": chosen.id})
    return chosen


def create_scenario_from_template(workspace_id: int, template_id: str, overrides: dict | None = None) -> AutopilotScenario:
    """Create a scenario pre-filled from one of SCENARIO_TEMPLATES.

    Raises:
        ValidationError: unknown template or invalid override values.
    """
    template = SCENARIO_TEMPLATES.get(template_id)
    if template is None:
        raise ValidationError(f"Unknown scenario template '{template_id}'", {"template_id": sorted(SCENARIO_TEMPLATES)})

    overrides = overrides or {}
    values = {
        "name": template["label"],
        "scenario_type": template["scenario_type"],
        "mode": overrides.get("mode", template["mode"]),
        "max_questions": template["max_questions"],
        "qualification_criteria": dict(template["qualification_criteria"]),
        "ai_prompt": template["ai_prompt"],
    }
    for key in _OVERRIDABLE_FIELDS:
        if key in overrides:
            values[key] = overrides[key]

    if values["mode"] not in SCENARIO_MODES or values["scenario_type"] not in SCENARIO_TYPES:
        raise ValidationError("Invalid scenario mode or type", {"mode": values["mode"]})
    if not isinstance(values["max_questions"], int) or values["max_questions"] < 1:
        raise ValidationError("max_questions must be a positive integer", {"max_questions": values["max_questions"]})

    has_default = any(s.is_default for s in _workspace_scenarios(workspace_id))
    scenario = AutopilotScenario(workspace_id=workspace_id, is_default=not has_default, **values)
    db.session.add(scenario)
    db.session.commit()
    logger.info("Scenario created from template", extra={"workspace_id": workspace_id, "template_id": template_id})
    return scenario
