"""
Lead SLA Platform
AI module.

Submodules:
    - gateway: LLM Gateway (provider selection, local stub, latency capture)
    - prompt_builder: scenario prompt placeholder substitution
    - planner: next-message planning with schema validation and RULES fallback
"""
