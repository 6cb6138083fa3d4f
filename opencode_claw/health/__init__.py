"""Health HTTP server."""

from opencode_claw.health.app import create_health_app

__all__ = ["create_health_app"]
