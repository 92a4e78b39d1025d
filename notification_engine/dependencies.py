"""Shared FastAPI dependencies."""

from fastapi import Request

from .notifications.engine import NotificationEngine


def get_engine(request: Request) -> NotificationEngine:
    """Get the notification engine built during startup from app state."""
    return request.app.state.engine
