# backend/bookingcore/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_auth_context
from .database import get_db, get_session_factory
from .services import get_booking_service, get_clock

__all__ = [
    # Auth
    "get_auth_context",
    # Database
    "get_db",
    "get_session_factory",
    # Services
    "get_booking_service",
    "get_clock",
]
