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

# Blueprints whose routes move stages, record decisions or create entities.
WRITE_BLUEPRINTS = ("entities", "approvals", "conversions")

# Read-only blueprints
READ_BLUEPRINTS = ("workflows", "audit", "notifications")

READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow write blueprints: WORKFLOW_WRITE_LIMIT (default 120/minute)
        - Read blueprints:           300/minute
        - Health check:              exempt

    Rate limiting is disabled in testing mode or when RATELIMIT_ENABLED is off.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    write_limit = app.config.get("WORKFLOW_WRITE_LIMIT", "120/minute")
    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit)(bp)

    for bp_name in READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — write: %s, read: %s", write_limit, READ_LIMIT)
