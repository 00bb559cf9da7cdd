# backend/bookingcore/api/dependencies/auth.py
"""
Caller identity dependency.

Authentication happens upstream; the gateway forwards the verified caller as
``X-User-Id``, ``X-User-Role`` (``client`` or ``coach``) and optionally
``X-User-Name``.
"""

from typing import Optional

from fastapi import Header

from ...core.enums import ParticipantRole
from ...core.exceptions import UnauthorizedException, ValidationException
from ...principal import AuthContext


def get_auth_context(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> AuthContext:
    """Build the caller's ``AuthContext`` from the forwarded identity headers."""
    if not x_user_id or not x_user_id.strip() or not x_user_role:
        raise UnauthorizedException(
            "An authenticated identity is required", code="UNAUTHENTICATED"
        ).to_http_exception()
    try:
        role = ParticipantRole(x_user_role.strip().lower())
    except ValueError:
        raise ValidationException(
            f"Unknown participant role: {x_user_role}",
            code="INVALID_ROLE",
            details={"allowed": [r.value for r in ParticipantRole]},
        ).to_http_exception() from None
    return AuthContext(user_id=x_user_id.strip(), role=role, display_name=x_user_name or None)
