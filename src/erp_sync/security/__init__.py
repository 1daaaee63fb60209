"""Inbound authentication for agents (bcrypt bearer tokens) and admins (API key)."""

from .auth import require_admin, authenticate_agent, bearer_token

__all__ = ["require_admin", "authenticate_agent", "bearer_token"]
