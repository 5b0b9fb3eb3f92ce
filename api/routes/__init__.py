"""API Routes Package."""

from api.routes import health, webhooks, flows, connectors

__all__ = [
    "health",
    "webhooks",
    "flows",
    "connectors",
]
