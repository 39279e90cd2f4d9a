"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, StageDefinitionMissing

    raise NotFoundError(resource="Lead", resource_id=42)
    raise StageDefinitionMissing(flow_id=3, stage_key="handover")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for both genuinely missing records and cross-workspace lookups, so
    the response never confirms that a record exists in another workspace.

    Args:
        resource: Human-readable model/entity name (e.g. "Lead", "Flow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        workspace_id: Optional scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        workspace_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.workspace_id = workspace_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if workspace_id is not None:
            msg += f" (workspace={workspace_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StageDefinitionMissing(Exception):
    """Raised when a stage is started for a (flow, stage) pair with no definition.

    This is a configuration integrity problem upstream, not a user error:
    callers must not swallow it. Maps to HTTP 409.
    """

    def __init__(self, flow_id: int, stage_key: str) -> None:
        self.flow_id = flow_id
        self.stage_key = stage_key
        super().__init__(f"Stage definition '{stage_key}' missing for flow id={flow_id}")
