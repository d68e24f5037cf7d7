from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from infopics.config import DEFAULT_PROFILE_IMAGE
from infopics.errors import OnboardingError, UpstreamError
from infopics.models.auth import User
from infopics.services.credentials import CredentialStore, is_email_like, normalize_email


@dataclass(frozen=True)
class ExternalProfile:
    subject: str
    email: str
    display_name: str | None = None
    picture: str | None = None


def _first_str(*values: object) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_list_value(items: object) -> object:
    if isinstance(items, list) and items:
        head = items[0]
        if isinstance(head, dict):
            return head.get("value")
        return head
    return None


def normalize_external_profile(payload: dict[str, object]) -> ExternalProfile:
    """Map id-token claims, userinfo JSON or a passport-style profile to one shape.

    Accepts ``sub``/``id``/``googleId`` for the subject, ``email`` or
    ``emails[0].value``, ``name``/``displayName`` and
    ``picture``/``profilePic``/``imageUrl``/``photos[0].value``.
    """
    if not isinstance(payload, dict):
        raise UpstreamError("Google returned an unexpected profile.")
    raw_json = payload.get("_json")
    nested = raw_json if isinstance(raw_json, dict) else {}

    subject = _first_str(payload.get("sub"), payload.get("id"), payload.get("googleId"))
    email = _first_str(
        payload.get("email"), _first_list_value(payload.get("emails")), nested.get("email")
    )
    if subject is None:
        raise UpstreamError("Google profile is missing an account id.")
    if email is None:
        raise UpstreamError("Google profile has no email address.")
    email = normalize_email(email)
    if not is_email_like(email):
        raise UpstreamError("Google profile has an invalid email address.")

    return ExternalProfile(
        subject=subject,
        email=email,
        display_name=_first_str(payload.get("name"), payload.get("displayName")),
        picture=_first_str(
            payload.get("picture"),
            payload.get("profilePic"),
            payload.get("imageUrl"),
            _first_list_value(payload.get("photos")),
            nested.get("picture"),
        ),
    )


class ResolutionKind(str, Enum):
    LOGGED_IN = "LOGGED_IN"
    NEEDS_ONBOARDING = "NEEDS_ONBOARDING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class OnboardingPreview:
    email: str
    external_identity_id: str
    profile_image_ref: str = DEFAULT_PROFILE_IMAGE
    display_name: str | None = None
    existing_account: bool = False


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    user: User | None = None
    preview: OnboardingPreview | None = None
    error: OnboardingError | None = field(default=None, compare=False)
    linked: bool = False


class ExternalIdentityResolver:
    def __init__(self, *, credentials: CredentialStore, auto_link_by_email: bool = False) -> None:
        self.credentials = credentials
        self.auto_link_by_email = auto_link_by_email

    def resolve(
        self,
        profile: ExternalProfile,
        *,
        current_user: User | None = None,
        attach_intent: bool = False,
    ) -> Resolution:
        if attach_intent and current_user is not None:
            try:
                user = self.credentials.attach_external_identity(
                    current_user, profile.subject, profile.picture
                )
            except OnboardingError as exc:
                return Resolution(kind=ResolutionKind.ERROR, error=exc)
            return Resolution(kind=ResolutionKind.LOGGED_IN, user=user, linked=True)

        known = self.credentials.find_by_external_id(profile.subject)
        if known is not None:
            return Resolution(kind=ResolutionKind.LOGGED_IN, user=known)

        owners = self.credentials.find_all_by_email(profile.email)
        if owners and self.auto_link_by_email:
            unlinked = [u for u in owners if not u.external_identity_id]
            if len(owners) == 1 and len(unlinked) == 1:
                try:
                    user = self.credentials.attach_external_identity(
                        unlinked[0], profile.subject, profile.picture
                    )
                except OnboardingError as exc:
                    return Resolution(kind=ResolutionKind.ERROR, error=exc)
                return Resolution(kind=ResolutionKind.LOGGED_IN, user=user, linked=True)

        return Resolution(
            kind=ResolutionKind.NEEDS_ONBOARDING,
            preview=OnboardingPreview(
                email=profile.email,
                external_identity_id=profile.subject,
                profile_image_ref=profile.picture or DEFAULT_PROFILE_IMAGE,
                display_name=profile.display_name,
                existing_account=bool(owners),
            ),
        )
