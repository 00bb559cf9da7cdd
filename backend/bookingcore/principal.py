"""Authenticated caller context supplied by the surrounding application."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .core.enums import ParticipantRole
from .core.exceptions import UnauthorizedException


@dataclass(frozen=True)
class AuthContext:
    """Identity and role of the caller performing a booking operation."""

    user_id: str
    role: ParticipantRole
    display_name: Optional[str] = None

    def require_identity(self) -> str:
        """Return the caller's id, failing when the identity is empty."""
        user_id = (self.user_id or "").strip()
        if not user_id:
            raise UnauthorizedException("An authenticated identity is required", code="UNAUTHENTICATED")
        return user_id

