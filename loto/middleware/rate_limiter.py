"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in loto/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from loto.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

PERMIT_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Permit endpoints: 60/minute (configurable via PERMIT_RATE_LIMIT)
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    permit_limit = app.config.get("PERMIT_RATE_LIMIT", PERMIT_LIMIT)
    bp = app.blueprints.get("loto_work_permit")
    if bp:
        limiter.limit(permit_limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — permits: %s, health: exempt", permit_limit)
