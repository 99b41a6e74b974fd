"""Security modules."""
from echoes_billing.core.security.session_auth import (
    SessionAuthVerifier,
    require_admin,
    require_session,
)

__all__ = [
    "SessionAuthVerifier",
    "require_admin",
    "require_session",
]
