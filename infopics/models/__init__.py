from infopics.models.auth import (
    AuthSession,
    AuthSignonEvent,
    PendingSignup,
    SourceKind,
    User,
)

__all__ = [
    "AuthSession",
    "AuthSignonEvent",
    "PendingSignup",
    "SourceKind",
    "User",
]
