"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in floorflow/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from floorflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

# blueprint name -> limit (per remote IP)
BLUEPRINT_LIMITS = {
    "pipeline": "60/minute",
    "generation": "120/minute",    # Generator callbacks arrive in bursts per batch
    "qa_feedback": "60/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow / action endpoints:  60/minute
        - Generation unit endpoints:    120/minute
        - QA feedback endpoints:        60/minute
        - Health check:                 exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: %s",
                    ", ".join(f"{k}={v}" for k, v in BLUEPRINT_LIMITS.items()))
