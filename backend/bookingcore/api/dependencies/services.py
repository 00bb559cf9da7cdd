# backend/bookingcore/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.clock import Clock, SystemClock
from ...services.booking_service import BookingService
from .database import get_db

_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def get_booking_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> BookingService:
    """
    Get booking service instance.

    Args:
        db: Database session
        clock: Source of transition timestamps

    Returns:
        BookingService instance
    """
    return BookingService(db, clock=clock)
