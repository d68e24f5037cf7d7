from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from flask import current_app

from infopics.errors import NotFoundError, UpstreamError

if TYPE_CHECKING:
    from infopics.services.mailer import Mailer
    from infopics.services.pending import PendingSignupStore
    from infopics.services.session_state import SessionOnboardingState

VERIFICATION_SUBJECT = "Verify your InfoPics account"


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def check_code(expected: str | None, submitted: str | None) -> bool:
    if not expected or not isinstance(submitted, str):
        return False
    candidate = submitted.strip()
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


@dataclass(frozen=True)
class IssuedCode:
    code: str
    delivered: bool
    # Updated session state, only when the code lives in the session.
    state: "SessionOnboardingState | None" = None


class VerificationCodeEngine:
    """Issues one-time codes against a pending signup (or the session) and checks them.

    Delivery failures are logged and reported through ``IssuedCode.delivered``; they
    never abort the signup, the user can ask for a resend.
    """

    def __init__(self, *, pending: "PendingSignupStore", mailer: "Mailer") -> None:
        self.pending = pending
        self.mailer = mailer

    def issue(self, ref: "str | SessionOnboardingState") -> IssuedCode:
        if isinstance(ref, str):
            record = self.pending.refresh_code(ref)
            return IssuedCode(
                code=record.code, delivered=self._dispatch(record.email, record.code, record.id)
            )

        state = ref
        if state.pending_id:
            record = self.pending.refresh_code(state.pending_id)
            return IssuedCode(
                code=record.code,
                delivered=self._dispatch(record.email, record.code, record.id),
                state=state,
            )
        if state.temp_user is None:
            raise NotFoundError()
        code = generate_code()
        new_state = state.with_changes(verification_code=code)
        delivered = self._dispatch(state.temp_user.email, code, None)
        return IssuedCode(code=code, delivered=delivered, state=new_state)

    def check(self, ref: "str | SessionOnboardingState", submitted: str) -> bool:
        if isinstance(ref, str):
            record = self.pending.find_by_id(ref)
            return record is not None and check_code(record.code, submitted)
        if ref.pending_id:
            record = self.pending.find_by_id(ref.pending_id)
            return record is not None and check_code(record.code, submitted)
        return check_code(ref.verification_code, submitted)

    def _dispatch(self, email: str, code: str, pending_id: str | None) -> bool:
        label = pending_id or "session-only signup"
        try:
            self.mailer.send(
                email,
                VERIFICATION_SUBJECT,
                f"Your verification code is: {code}",
                f"<p>Your verification code is: <strong>{code}</strong></p>",
            )
        except UpstreamError as exc:
            current_app.logger.error("Verification email for %s failed: %s", label, exc.message)
            return False
        except Exception:
            current_app.logger.exception("Verification email for %s failed.", label)
            return False
        return True
