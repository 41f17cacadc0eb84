"""Standardised API error responses.

Usage
-----
    from admissions.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Application not found")
    return api_error(E.VALIDATION_REQUIRED, "transition_id is required")
    return api_error(E.WORKFLOW_INVALID, "Workflow is invalid", details=result.to_dict())
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Workflow graph validation – HTTP 422
    WORKFLOW_INVALID = "ERR_WORKFLOW_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Transition rejections
    ILLEGAL_TRANSITION = "ERR_ILLEGAL_TRANSITION"
    CONDITION_NOT_MET = "ERR_CONDITION_NOT_MET"
    PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    ALREADY_TERMINAL = "ERR_ALREADY_TERMINAL"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_ORPHANED = "ERR_CONFLICT_ORPHANED"
    CONFLICT_INCOMPATIBLE = "ERR_CONFLICT_INCOMPATIBLE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.WORKFLOW_INVALID: 422,
    E.NOT_FOUND: 404,
    E.ILLEGAL_TRANSITION: 409,
    E.CONDITION_NOT_MET: 422,
    E.PERMISSION_DENIED: 403,
    E.ALREADY_TERMINAL: 409,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_ORPHANED: 409,
    E.CONFLICT_INCOMPATIBLE: 409,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def status_for(code: str) -> int:
    return _DEFAULT_STATUS.get(code, 400)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (validation issues, failing conditions, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or status_for(code)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
