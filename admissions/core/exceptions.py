"""
Infrastructure exception types.

Expected rejections (invalid workflow graphs, illegal transitions, missing
permissions, conflicts) are returned as values by the service layer and are
never raised. Exceptions here signal infrastructure failure only; blueprints
register handlers against them once and get consistent HTTP responses.

Usage:
    from admissions.core.exceptions import StorageError

    raise StorageError("advance_application", application_id=42) from exc
"""


class StorageError(Exception):
    """Raised when a persistence operation fails after the session was rolled back.

    The engine performs no retry: retrying a transition append must be paired
    with the idempotence of "current stage + transition id", which only the
    caller can decide.

    Maps to HTTP 500 (ERR_DATABASE).

    Args:
        operation: Service operation that failed (e.g. "advance_application").
        application_id: Optional application the operation targeted.
        workflow_id: Optional workflow the operation targeted.
    """

    def __init__(
        self,
        operation: str,
        application_id: int | None = None,
        workflow_id: int | None = None,
    ) -> None:
        self.operation = operation
        self.application_id = application_id
        self.workflow_id = workflow_id
        msg = f"Storage failure during {operation}"
        if application_id is not None:
            msg += f" (application={application_id})"
        if workflow_id is not None:
            msg += f" (workflow={workflow_id})"
        super().__init__(msg)
