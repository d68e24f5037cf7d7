from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from infopics.config import DEFAULT_PROFILE_IMAGE, PENDING_SIGNUP_TTL_SECONDS
from infopics.errors import NotFoundError
from infopics.extensions import db
from infopics.models.auth import PendingSignup, SourceKind
from infopics.services.credentials import normalize_email
from infopics.services.verification import generate_code

_UPDATABLE_FIELDS = (
    "username",
    "credential_preview",
    "external_identity_id",
    "profile_image_ref",
    "display_name",
    "source_kind",
)


class PendingSignupStore:
    """Provisional signups keyed by email, invisible once older than the TTL."""

    def __init__(self, *, ttl_seconds: int = PENDING_SIGNUP_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds

    def _cutoff(self) -> datetime:
        return datetime.utcnow() - timedelta(seconds=self.ttl_seconds)

    def _live(self):
        return PendingSignup.query.filter(PendingSignup.created_at > self._cutoff())

    def find_by_id(self, pending_id: str | None) -> PendingSignup | None:
        if not pending_id:
            return None
        return self._live().filter(PendingSignup.id == pending_id).first()

    def find_by_email(self, email: str) -> PendingSignup | None:
        return self._live().filter(PendingSignup.email == normalize_email(email)).first()

    def find_by_code(self, code: str) -> PendingSignup | None:
        code = (code or "").strip()
        if not code:
            return None
        # Codes are not unique; the newest live record wins.
        return (
            self._live()
            .filter(PendingSignup.code == code)
            .order_by(PendingSignup.created_at.desc())
            .first()
        )

    def upsert_by_email(self, email: str, payload: dict[str, object]) -> PendingSignup:
        email = normalize_email(email)
        self.purge_expired()
        record = PendingSignup.query.filter_by(email=email).first()
        if record is None:
            record = PendingSignup(email=email)
            db.session.add(record)
        self._apply(record, payload)
        try:
            db.session.flush()
        except IntegrityError:
            # Another request inserted the same email first; last attempt wins.
            db.session.rollback()
            record = PendingSignup.query.filter_by(email=email).first()
            if record is None:
                raise
            self._apply(record, payload)
            db.session.flush()
        return record

    def refresh_code(self, pending_id: str) -> PendingSignup:
        record = self.find_by_id(pending_id)
        if record is None:
            raise NotFoundError()
        record.code = generate_code()
        db.session.flush()
        return record

    def update(self, pending_id: str, **fields: object) -> PendingSignup:
        record = self.find_by_id(pending_id)
        if record is None:
            raise NotFoundError()
        for name, value in fields.items():
            if name not in _UPDATABLE_FIELDS:
                raise TypeError(f"Unknown pending signup field: {name}")
            setattr(record, name, value)
        db.session.flush()
        return record

    def delete_by_id(self, pending_id: str) -> bool:
        deleted = PendingSignup.query.filter_by(id=pending_id).delete(synchronize_session=False)
        db.session.flush()
        return bool(deleted)

    def purge_expired(self) -> int:
        removed = PendingSignup.query.filter(PendingSignup.created_at <= self._cutoff()).delete(
            synchronize_session=False
        )
        db.session.flush()
        return int(removed or 0)

    @staticmethod
    def _apply(record: PendingSignup, payload: dict[str, object]) -> None:
        record.username = payload.get("username") or None
        record.credential_preview = payload.get("credential_preview") or None
        record.external_identity_id = payload.get("external_identity_id") or None
        record.profile_image_ref = payload.get("profile_image_ref") or DEFAULT_PROFILE_IMAGE
        record.display_name = payload.get("display_name") or None
        record.source_kind = SourceKind(payload["source_kind"]).value
        record.code = generate_code()
        record.created_at = datetime.utcnow()
