from __future__ import annotations

from werkzeug.security import check_password_hash, generate_password_hash
from sqlalchemy.exc import IntegrityError

from infopics.config import DEFAULT_PROFILE_IMAGE
from infopics.errors import ConflictError, DuplicateEmail, DuplicateUsername, IdentityConflict
from infopics.extensions import db
from infopics.models.auth import User

_DUMMY_PASSWORD_HASH = generate_password_hash("infopics_dummy_password")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_email_like(value: str) -> bool:
    if not value or value.strip() != value:
        return False
    if " " in value:
        return False
    if value.count("@") != 1:
        return False
    local, domain = value.split("@", 1)
    if not local or not domain:
        return False
    if "." not in domain:
        return False
    if domain.startswith(".") or domain.endswith("."):
        return False
    return True


class PasswordHasher:
    def hash(self, raw: str) -> str:
        return generate_password_hash(raw)

    def compare(self, raw: str, opaque: str | None) -> bool:
        if not opaque:
            return False
        return check_password_hash(opaque, raw)


class CredentialStore:
    """Canonical user records.

    Uniqueness of usernames, external identities and (optionally) emails is left to
    the database; integrity errors raised by a flush are translated into the
    matching ``ConflictError`` subclass.
    """

    def __init__(
        self, *, hasher: PasswordHasher | None = None, enforce_unique_email: bool = False
    ) -> None:
        self.hasher = hasher or PasswordHasher()
        self.enforce_unique_email = enforce_unique_email

    def get(self, user_id: str) -> User | None:
        return db.session.get(User, user_id)

    def find_by_username(self, username: str) -> User | None:
        name = username.strip()
        if not name:
            return None
        return User.query.filter_by(username=name).first()

    def find_by_email(self, email: str) -> User | None:
        matches = self.find_all_by_email(email)
        return matches[0] if matches else None

    def find_all_by_email(self, email: str) -> list[User]:
        normalized = normalize_email(email)
        if not normalized:
            return []
        return User.query.filter_by(email=normalized).order_by(User.created_at.asc()).all()

    def find_by_external_id(self, external_id: str) -> User | None:
        if not external_id:
            return None
        return User.query.filter_by(external_identity_id=external_id).first()

    def create(
        self,
        data: dict[str, object],
        raw_credential: str | None = None,
        *,
        credential_hash: str | None = None,
    ) -> User:
        if (raw_credential is None) == (credential_hash is None):
            raise ValueError("Pass exactly one of raw_credential or credential_hash.")
        email = normalize_email(str(data["email"]))
        user = User(
            username=str(data["username"]).strip(),
            email=email,
            email_key=email if self.enforce_unique_email else None,
            password_hash=credential_hash or self.hasher.hash(raw_credential or ""),
            external_identity_id=data.get("external_identity_id") or None,
            profile_image_ref=data.get("profile_image_ref") or DEFAULT_PROFILE_IMAGE,
            verified=bool(data.get("verified", False)),
        )
        db.session.add(user)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise self._conflict_for(
                username=user.username,
                email=email,
                external_id=user.external_identity_id,
            ) from exc
        return user

    def attach_external_identity(
        self, user: User, external_id: str, profile_image_ref: str | None = None
    ) -> User:
        if user.external_identity_id == external_id:
            return user
        if user.external_identity_id:
            raise IdentityConflict(
                "Your account is already linked to a different Google account."
            )
        owner = self.find_by_external_id(external_id)
        if owner is not None and owner.id != user.id:
            raise IdentityConflict("This Google account is already linked to another user.")
        user.external_identity_id = external_id
        if profile_image_ref and user.profile_image_ref in (None, "", DEFAULT_PROFILE_IMAGE):
            user.profile_image_ref = profile_image_ref
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise IdentityConflict(
                "This Google account is already linked to another user."
            ) from exc
        return user

    def verify_credential(self, identifier: str, raw_credential: str) -> User | None:
        ident = identifier.strip() if isinstance(identifier, str) else ""
        if "@" in ident:
            candidates = self.find_all_by_email(ident)
        else:
            user = self.find_by_username(ident) if ident else None
            candidates = [user] if user is not None else []
        checks = 0
        for candidate in candidates:
            if not candidate.password_hash:
                continue
            checks += 1
            if self.hasher.compare(raw_credential or "", candidate.password_hash):
                return candidate
        if checks == 0:
            # Keep the miss path as slow as a real comparison.
            self.hasher.compare(raw_credential or "", _DUMMY_PASSWORD_HASH)
        return None

    def _conflict_for(
        self, *, username: str, email: str, external_id: str | None
    ) -> ConflictError:
        if self.find_by_username(username) is not None:
            return DuplicateUsername()
        if self.enforce_unique_email and User.query.filter_by(email_key=email).first():
            return DuplicateEmail()
        if external_id and self.find_by_external_id(external_id) is not None:
            return IdentityConflict(
                "This Google account is already linked to an InfoPics account. "
                "Please sign in with Google."
            )
        return ConflictError()
