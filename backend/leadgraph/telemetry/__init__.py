"""
Telemetry Module
================

Observability for the identity and attribution engine.

Components:
- sentry.py: Error tracking for the API and the ARQ worker

Logging itself is plain `logging.getLogger(__name__)` with `[TAG]` prefixes;
this package only adds the Sentry side.

Usage:
    from leadgraph.telemetry import init_observability, capture_exception

    init_observability()
"""

from leadgraph.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
