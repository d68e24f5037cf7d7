from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import MutableMapping

from infopics.config import DEFAULT_PROFILE_IMAGE
from infopics.models.auth import PendingSignup, SourceKind


class OnboardingStage(str, Enum):
    ANONYMOUS = "ANONYMOUS"
    AWAITING_CREDENTIALS_CHOICE = "AWAITING_CREDENTIALS_CHOICE"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    AUTHENTICATED = "AUTHENTICATED"


@dataclass(frozen=True)
class TempUser:
    """Display-only preview of an in-progress signup. Never holds a credential."""

    email: str
    username: str | None = None
    profile_image_ref: str = DEFAULT_PROFILE_IMAGE
    external_identity_id: str | None = None
    source_kind: str = SourceKind.LOCAL.value
    display_name: str | None = None

    @classmethod
    def from_pending(cls, record: PendingSignup) -> "TempUser":
        return cls(
            email=record.email,
            username=record.username,
            profile_image_ref=record.profile_image_ref or DEFAULT_PROFILE_IMAGE,
            external_identity_id=record.external_identity_id,
            source_kind=record.source_kind,
            display_name=record.display_name,
        )

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: object) -> "TempUser | None":
        if not isinstance(raw, dict):
            return None
        email = raw.get("email")
        if not isinstance(email, str) or not email:
            return None

        def _opt(name: str) -> str | None:
            value = raw.get(name)
            return value if isinstance(value, str) and value else None

        source_kind = raw.get("source_kind")
        if source_kind not in (SourceKind.LOCAL.value, SourceKind.EXTERNAL.value):
            source_kind = SourceKind.LOCAL.value
        return cls(
            email=email,
            username=_opt("username"),
            profile_image_ref=_opt("profile_image_ref") or DEFAULT_PROFILE_IMAGE,
            external_identity_id=_opt("external_identity_id"),
            source_kind=source_kind,
            display_name=_opt("display_name"),
        )


@dataclass(frozen=True)
class SessionOnboardingState:
    stage: OnboardingStage = OnboardingStage.ANONYMOUS
    temp_user: TempUser | None = None
    pending_id: str | None = None
    post_login_redirect: str | None = None
    attach_intent: bool = False
    # Only set when no durable pending record backs the code.
    verification_code: str | None = None

    def with_changes(self, **changes: object) -> "SessionOnboardingState":
        return replace(self, **changes)

    def cleared(self) -> "SessionOnboardingState":
        """Drop everything onboarding-related but keep where to go after login."""
        return SessionOnboardingState(post_login_redirect=self.post_login_redirect)

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "temp_user": self.temp_user.to_dict() if self.temp_user else None,
            "pending_id": self.pending_id,
            "post_login_redirect": self.post_login_redirect,
            "attach_intent": self.attach_intent,
            "verification_code": self.verification_code,
        }

    @classmethod
    def from_dict(cls, raw: object) -> "SessionOnboardingState":
        if not isinstance(raw, dict):
            return cls()
        try:
            stage = OnboardingStage(raw.get("stage"))
        except ValueError:
            stage = OnboardingStage.ANONYMOUS
        pending_id = raw.get("pending_id")
        redirect_to = raw.get("post_login_redirect")
        code = raw.get("verification_code")
        return cls(
            stage=stage,
            temp_user=TempUser.from_dict(raw.get("temp_user")),
            pending_id=pending_id if isinstance(pending_id, str) and pending_id else None,
            post_login_redirect=redirect_to if isinstance(redirect_to, str) and redirect_to else None,
            attach_intent=raw.get("attach_intent") is True,
            verification_code=code if isinstance(code, str) and code else None,
        )


class SessionStateStore:
    """Reads and writes onboarding state under one key of a session mapping."""

    KEY = "onboarding"

    def __init__(self, session_mapping: MutableMapping[str, object]) -> None:
        self._session = session_mapping

    def load(self) -> SessionOnboardingState:
        return SessionOnboardingState.from_dict(self._session.get(self.KEY))

    def save(self, state: SessionOnboardingState) -> None:
        if state == SessionOnboardingState():
            self._session.pop(self.KEY, None)
        else:
            self._session[self.KEY] = state.to_dict()
        if hasattr(self._session, "modified"):
            self._session.modified = True

    def clear(self) -> None:
        self.save(SessionOnboardingState())
