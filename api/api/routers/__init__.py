"""API router modules for the identity service."""

from __future__ import annotations

from api.routers import auth, billing, health, webhooks

__all__ = [
    "auth",
    "billing",
    "health",
    "webhooks",
]
