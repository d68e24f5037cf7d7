from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

from flask import current_app

from infopics.errors import (
    AuthError,
    ConflictError,
    DuplicateEmail,
    DuplicateUsername,
    NotFoundError,
    OnboardingError,
    ValidationError,
)
from infopics.extensions import db
from infopics.models.auth import PendingSignup, SourceKind, User
from infopics.services.credentials import CredentialStore, is_email_like, normalize_email
from infopics.services.identity import ExternalIdentityResolver, ExternalProfile, ResolutionKind
from infopics.services.pending import PendingSignupStore
from infopics.services.session_state import OnboardingStage, SessionOnboardingState, TempUser
from infopics.services.sessions import record_signon_event
from infopics.services.verification import VerificationCodeEngine

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 6
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

DEFAULT_LANDING_PATH = "/account"
WELCOME_NEW = "Account created. Welcome to InfoPics!"
WELCOME_BACK = "Welcome back to InfoPics!"
LOGGED_OUT = "You are logged out!"


def validate_username(raw: object) -> str:
    name = raw.strip() if isinstance(raw, str) else ""
    if len(name) < USERNAME_MIN_LENGTH:
        raise ValidationError(
            f"Username must be at least {USERNAME_MIN_LENGTH} characters."
        )
    if len(name) > USERNAME_MAX_LENGTH:
        raise ValidationError(f"Username must be at most {USERNAME_MAX_LENGTH} characters.")
    if not _USERNAME_RE.match(name):
        raise ValidationError(
            "Username may only contain letters, numbers, dots, dashes and underscores."
        )
    return name


def validate_email(raw: object) -> str:
    email = normalize_email(raw) if isinstance(raw, str) else ""
    if not is_email_like(email):
        raise ValidationError("Please enter a valid email address.")
    return email


def validate_password(raw: object) -> str:
    if not isinstance(raw, str) or len(raw) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters."
        )
    return raw


@dataclass(frozen=True)
class Transition:
    """Outcome of one onboarding step.

    ``state`` is what the caller must persist to the session. ``stage`` is where the
    browser stands after the step; for ``AUTHENTICATED`` the persisted state is
    already cleared, because the login session now carries the user.
    """

    stage: OnboardingStage
    state: SessionOnboardingState
    user: User | None = None
    error: OnboardingError | None = None
    notice: str | None = None
    warning: str | None = None
    redirect_to: str | None = None

    @property
    def rejected(self) -> bool:
        return self.error is not None


class OnboardingOrchestrator:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        pending: PendingSignupStore,
        resolver: ExternalIdentityResolver,
        codes: VerificationCodeEngine,
        enforce_unique_email: bool = False,
        instant_external_accounts: bool = False,
        default_landing: str = DEFAULT_LANDING_PATH,
    ) -> None:
        self.credentials = credentials
        self.pending = pending
        self.resolver = resolver
        self.codes = codes
        self.enforce_unique_email = enforce_unique_email
        self.instant_external_accounts = instant_external_accounts
        self.default_landing = default_landing

    # Local signup

    def begin_local_signup(
        self, state: SessionOnboardingState, *, username: str, email: str, password: str
    ) -> Transition:
        try:
            username = validate_username(username)
            email = validate_email(email)
            password = validate_password(password)
        except ValidationError as exc:
            return self._reject(state, exc)

        if self.credentials.find_by_username(username) is not None:
            return self._reject(state, DuplicateUsername())
        if self.enforce_unique_email and self.credentials.find_by_email(email) is not None:
            return self._reject(state, DuplicateEmail())

        record = self.pending.upsert_by_email(
            email,
            {
                "username": username,
                "credential_preview": self.credentials.hasher.hash(password),
                "source_kind": SourceKind.LOCAL,
            },
        )
        db.session.commit()
        new_state = self._staged(state, record, OnboardingStage.AWAITING_VERIFICATION)
        return self._issue(new_state, record, redirect_to="/verify")

    # External signup

    def begin_external_signup(
        self,
        state: SessionOnboardingState,
        profile: ExternalProfile,
        *,
        current_user: User | None = None,
    ) -> Transition:
        resolution = self.resolver.resolve(
            profile, current_user=current_user, attach_intent=state.attach_intent
        )
        # Attach-intent is single use.
        state = state.with_changes(attach_intent=False)

        if resolution.kind is ResolutionKind.ERROR:
            stage = (
                OnboardingStage.AUTHENTICATED
                if current_user is not None
                else OnboardingStage.ANONYMOUS
            )
            return self._reject(
                state,
                resolution.error or OnboardingError(),
                stage=stage,
                redirect_to=self.default_landing if current_user is not None else "/signup",
            )

        if resolution.kind is ResolutionKind.LOGGED_IN:
            user = resolution.user
            record_signon_event(
                user_id=user.id, provider="google", action="link" if resolution.linked else "login"
            )
            db.session.commit()
            current_app.logger.info(
                "Google sign-in for user %s (%s).", user.id, "linked" if resolution.linked else "login"
            )
            return Transition(
                stage=OnboardingStage.AUTHENTICATED,
                state=SessionOnboardingState(),
                user=user,
                notice="Google account linked." if resolution.linked else WELCOME_BACK,
                redirect_to=state.post_login_redirect or self.default_landing,
            )

        preview = resolution.preview
        if preview.existing_account and self.enforce_unique_email:
            return self._reject(
                state.cleared(),
                DuplicateEmail(
                    "An account with this email already exists. Please log in, then link "
                    "Google from your account page."
                ),
                redirect_to="/login",
            )

        record = self.pending.upsert_by_email(
            preview.email,
            {
                "external_identity_id": preview.external_identity_id,
                "profile_image_ref": preview.profile_image_ref,
                "display_name": preview.display_name,
                "source_kind": SourceKind.EXTERNAL,
            },
        )
        db.session.commit()
        new_state = self._staged(state, record, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)
        transition = self._issue(new_state, record, redirect_to="/create-account")
        if preview.existing_account:
            return Transition(
                stage=transition.stage,
                state=transition.state,
                notice=(
                    "An InfoPics account already uses this email. Choose a new username to "
                    "create another account, or log in and link Google from your account page."
                ),
                warning=transition.warning,
                redirect_to=transition.redirect_to,
            )
        return transition

    def choose_username(
        self,
        state: SessionOnboardingState,
        *,
        username: str,
        password: str | None = None,
    ) -> Transition:
        record = self.pending.find_by_id(state.pending_id)
        if record is None:
            return self._restart(state)

        stage = OnboardingStage.AWAITING_CREDENTIALS_CHOICE
        try:
            username = validate_username(username)
            if password:
                validate_password(password)
        except ValidationError as exc:
            return self._reject(state.with_changes(stage=stage), exc)

        # No reservation: uniqueness is checked again when the account is created.
        if self.credentials.find_by_username(username) is not None:
            return self._reject(state.with_changes(stage=stage), DuplicateUsername())

        if password:
            credential = self.credentials.hasher.hash(password)
        elif record.credential_preview:
            credential = record.credential_preview
        elif record.source_kind == SourceKind.EXTERNAL.value:
            # Google stays the practical way in; this password is never shown.
            credential = self.credentials.hasher.hash(secrets.token_urlsafe(32))
        else:
            return self._reject(
                state.with_changes(stage=stage),
                ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters."),
            )

        record = self.pending.update(record.id, username=username, credential_preview=credential)
        db.session.commit()
        new_state = self._staged(state, record, OnboardingStage.AWAITING_VERIFICATION)
        if self.instant_external_accounts and record.source_kind == SourceKind.EXTERNAL.value:
            return self._finalize(new_state, record)
        return Transition(
            stage=OnboardingStage.AWAITING_VERIFICATION,
            state=new_state,
            notice="Almost done. Enter the code we emailed you to finish creating your account.",
            redirect_to="/verify",
        )

    # Verification

    def submit_code(self, state: SessionOnboardingState, *, code: str) -> Transition:
        if state.pending_id:
            record = self.pending.find_by_id(state.pending_id)
            if record is None:
                return self._restart(state)
        else:
            record = self.pending.find_by_code(code)
            if record is None:
                return self._reject(
                    state, ValidationError("Invalid verification code. Please try again.")
                )

        if not self.codes.check(record.id, code):
            return self._reject(
                state, ValidationError("Invalid verification code. Please try again.")
            )

        if not record.username or not record.credential_preview:
            return self._reject(
                self._staged(state, record, OnboardingStage.AWAITING_CREDENTIALS_CHOICE),
                ValidationError("Choose a username to finish creating your account."),
                redirect_to="/create-account",
            )
        return self._finalize(state, record)

    def resend(self, state: SessionOnboardingState) -> Transition:
        record = self.pending.find_by_id(state.pending_id)
        if record is None:
            return self._restart(state)
        stage = state.stage
        if stage not in (
            OnboardingStage.AWAITING_CREDENTIALS_CHOICE,
            OnboardingStage.AWAITING_VERIFICATION,
        ):
            stage = OnboardingStage.AWAITING_VERIFICATION
        return self._issue(state.with_changes(stage=stage), record, redirect_to="/verify")

    # Sessions

    def login(
        self, state: SessionOnboardingState, *, identifier: str, password: str
    ) -> Transition:
        user = self.credentials.verify_credential(identifier or "", password or "")
        if user is None:
            return self._reject(state, AuthError())
        record_signon_event(user_id=user.id, provider="local", action="login")
        db.session.commit()
        return Transition(
            stage=OnboardingStage.AUTHENTICATED,
            state=SessionOnboardingState(),
            user=user,
            notice=WELCOME_BACK,
            redirect_to=state.post_login_redirect or self.default_landing,
        )

    def logout(self, state: SessionOnboardingState) -> Transition:
        return Transition(
            stage=OnboardingStage.ANONYMOUS,
            state=SessionOnboardingState(),
            notice=LOGGED_OUT,
            redirect_to="/login",
        )

    def cancel(self, state: SessionOnboardingState) -> Transition:
        if state.pending_id:
            self.pending.delete_by_id(state.pending_id)
            db.session.commit()
        return Transition(
            stage=OnboardingStage.ANONYMOUS,
            state=state.cleared(),
            notice="Signup cancelled.",
            redirect_to="/signup",
        )

    # Internals

    def _finalize(self, state: SessionOnboardingState, record: PendingSignup) -> Transition:
        pending_id = record.id
        provider = "google" if record.source_kind == SourceKind.EXTERNAL.value else "local"
        data = {
            "username": record.username,
            "email": record.email,
            "external_identity_id": record.external_identity_id,
            "profile_image_ref": record.profile_image_ref,
            "verified": True,
        }
        try:
            user = self.credentials.create(data, credential_hash=record.credential_preview)
        except DuplicateUsername as exc:
            # The pending record survives; the user picks another name.
            return self._reject(
                state.with_changes(stage=OnboardingStage.AWAITING_CREDENTIALS_CHOICE),
                exc,
                redirect_to="/create-account",
            )
        except ConflictError as exc:
            return self._reject(state.cleared(), exc, redirect_to="/login")

        self.pending.delete_by_id(pending_id)
        record_signon_event(user_id=user.id, provider=provider, action="register")
        db.session.commit()
        current_app.logger.info("Created account %s (%s signup).", user.id, provider)
        return Transition(
            stage=OnboardingStage.AUTHENTICATED,
            state=SessionOnboardingState(),
            user=user,
            notice=WELCOME_NEW,
            redirect_to=state.post_login_redirect or self.default_landing,
        )

    def _issue(
        self, state: SessionOnboardingState, record: PendingSignup, *, redirect_to: str
    ) -> Transition:
        issued = self.codes.issue(record.id)
        db.session.commit()
        if issued.delivered:
            return Transition(
                stage=state.stage,
                state=state,
                notice=f"We sent a verification code to {record.email}.",
                redirect_to=redirect_to,
            )
        return Transition(
            stage=state.stage,
            state=state,
            warning="We couldn't send the verification email. Please try resending the code.",
            redirect_to=redirect_to,
        )

    @staticmethod
    def _staged(
        state: SessionOnboardingState, record: PendingSignup, stage: OnboardingStage
    ) -> SessionOnboardingState:
        return state.with_changes(
            stage=stage,
            temp_user=TempUser.from_pending(record),
            pending_id=record.id,
            verification_code=None,
        )

    def _restart(self, state: SessionOnboardingState) -> Transition:
        return self._reject(state.cleared(), NotFoundError(), redirect_to="/signup")

    def _reject(
        self,
        state: SessionOnboardingState,
        error: OnboardingError,
        *,
        stage: OnboardingStage | None = None,
        redirect_to: str | None = None,
    ) -> Transition:
        current_app.logger.info(
            "Onboarding step rejected (%s): %s", type(error).__name__, error.message
        )
        return Transition(
            stage=stage or state.stage,
            state=state,
            error=error,
            redirect_to=redirect_to,
        )
