"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in labops/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from labops.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Project / workpackage endpoints: 200/minute (todo toggles are chatty)
        - Funding endpoints:               60/minute
        - Audit trail:                     200/minute
        - Health check:                    exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("projects")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("funding")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.debug("Rate limits applied: projects=%s funding=%s", READ_LIMIT, WRITE_LIMIT)
