"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in uathub/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from uathub.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

PORTAL_LIMIT = "120/minute"
INTERNAL_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Token portals and invite links:  120/minute
        - Internal API:   300/minute
        - Health check:   exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for name in ("portal", "invite"):
        bp = app.blueprints.get(name)
        if bp:
            limiter.limit(PORTAL_LIMIT)(bp)

    bp = app.blueprints.get("uat")
    if bp:
        limiter.limit(INTERNAL_LIMIT)(bp)

    health = app.view_functions.get("health")
    if health:
        limiter.exempt(health)

    app.logger.info("Rate limiter configured: portal=%s internal=%s",
                    PORTAL_LIMIT, INTERNAL_LIMIT)
