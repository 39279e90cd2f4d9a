"""
Lead SLA Platform
Prompt Builder.

Replaces ``{variable}`` placeholders in a scenario's AI prompt. Missing values
become empty strings so placeholder text never reaches the model.
"""

VARIABLE_MAP = {
    "{agent_name}": "agent_name",
    "{company_name}": "company_name",
    "{company_description}": "company_description",
    "{offer_summary}": "offer_summary",
    "{calendar_link_raw}": "calendar_link_raw",
    "{lead_name}": "lead_name",
}


def build_scenario_prompt(ai_prompt: str | None, *, max_questions: int, **values) -> str:
    """Resolve a prompt template.

    Args:
        ai_prompt: Template text with ``{variable}`` placeholders.
        max_questions: Always substituted for ``{maxQuestions}``.
        **values: agent_name, company_name, company_description,
            offer_summary, calendar_link_raw, lead_name.
    """
    result = ai_prompt or ""
    for placeholder, key in VARIABLE_MAP.items():
        value = values.get(key)
        value = value.strip() if isinstance(value, str) else ""
        result = result.replace(placeholder, value)
    return result.replace("{maxQuestions}", str(max_questions))


def build_prompt_for_scenario(scenario, lead_name: str | None = None) -> str:
    return build_scenario_prompt(
        scenario.ai_prompt,
        max_questions=scenario.max_questions,
        agent_name=scenario.agent_name,
        company_name=scenario.company_name,
        company_description=scenario.company_description,
        offer_summary=scenario.offer_summary,
        calendar_link_raw=scenario.calendar_link_raw,
        lead_name=lead_name,
    )


def prompt_preview(resolved_prompt: str, max_len: int = 300) -> str:
    """First ``max_len`` characters of a resolved prompt for the event log."""
    if len(resolved_prompt) <= max_len:
        return resolved_prompt
    return resolved_prompt[:max_len] + "..."
