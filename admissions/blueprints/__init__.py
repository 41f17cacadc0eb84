"""
Admissions Workflow Engine
Shared request helpers for the blueprints.
"""

from flask import request

from admissions.utils.errors import api_error


def current_actor():
    """Acting user from the ``X-User`` header (authentication is upstream)."""
    actor = (request.headers.get("X-User") or "").strip()
    return actor or None


def service_error(err):
    """Turn a ServiceError value into the standard JSON error response."""
    return api_error(err.code, err.message, details=err.details or None)


def int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")
