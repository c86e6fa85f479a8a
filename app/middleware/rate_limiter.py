"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Public secure-link endpoints: RATELIMIT_PUBLIC (default 30/minute)
        - Internal write endpoints:     RATELIMIT_WRITE  (default 120/minute)
        - Health check:                 exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    public_limit = app.config.get("RATELIMIT_PUBLIC", "30 per minute")
    write_limit = app.config.get("RATELIMIT_WRITE", "120 per minute")

    # Unauthenticated token holders: strict limit
    bp = app.blueprints.get("public")
    if bp:
        limiter.limit(public_limit)(bp)

    # Internal mutation routes: moderate limit on writes only
    for bp_name in ("commitments", "change_requests", "settings"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(
                write_limit,
                methods=["POST", "PUT", "PATCH", "DELETE"],
            )(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: public=%s, write=%s", public_limit, write_limit,
    )
