"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in admissions/__init__.py with no default limits; this module
applies granular limits per route category.

Usage:
    from admissions.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Application endpoints: WORKFLOW_ADVANCE_RATE_LIMIT (default 60/minute)
        - Workflow / role admin: 60/minute
        - Health check:          exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    advance_limit = app.config.get("WORKFLOW_ADVANCE_RATE_LIMIT") or WRITE_LIMIT
    bp = app.blueprints.get("application")
    if bp:
        limiter.limit(advance_limit)(bp)

    for bp_name in ("workflow", "role"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — applications: %s, admin: %s",
        advance_limit, WRITE_LIMIT,
    )
