from __future__ import annotations

import hashlib
import hmac
import random
import secrets
import time
from datetime import datetime, timedelta

from flask import abort, current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from infopics.extensions import db
from infopics.models.auth import AuthSession, AuthSignonEvent, User

SESSION_COOKIE_NAME = "infopics_session"


def request_ip_address() -> str | None:
    # X-Forwarded-For is trivially spoofable unless a trusted proxy sets it.
    if current_app.config.get("TRUST_PROXY_HEADERS"):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if isinstance(forwarded_for, str) and forwarded_for.strip():
            first = forwarded_for.split(",", 1)[0].strip()
            return first or None
    remote = request.remote_addr
    return remote.strip() if isinstance(remote, str) and remote.strip() else None


def request_user_agent() -> str | None:
    ua = request.headers.get("User-Agent")
    if not isinstance(ua, str):
        return None
    ua = ua.strip()
    if not ua:
        return None
    return ua[:512]


def auth_enumeration_delay() -> None:
    if current_app.config.get("AUTH_ENUMERATION_DELAY"):
        time.sleep(random.uniform(0.15, 0.35))


def safe_next_path(value: str | None) -> str | None:
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if not value.startswith("/"):
        return None
    if value.startswith("//") or "\\" in value:
        return None
    return value


def session_token_hash(token: str) -> str:
    secret = current_app.config.get("SECRET_KEY")
    if not isinstance(secret, str) or not secret.strip():
        abort(503, description="Auth is not configured (missing AUTH_SECRET_KEY).")
    digest = hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def issue_session_token(user_id: str) -> str:
    token = secrets.token_urlsafe(48)
    now = datetime.utcnow()
    max_age = int(current_app.config["LOGIN_SESSION_MAX_AGE_SECONDS"])
    db.session.add(
        AuthSession(
            user_id=user_id,
            token_hash=session_token_hash(token),
            created_at=now,
            expires_at=now + timedelta(seconds=max_age),
            ip_address=request_ip_address(),
            user_agent=request_user_agent(),
        )
    )
    db.session.commit()
    return token


def load_session_user(token: str | None) -> User | None:
    if not token:
        return None
    try:
        row = (
            AuthSession.query.filter_by(token_hash=session_token_hash(token))
            .filter(AuthSession.revoked_at.is_(None))
            .first()
        )
    except SQLAlchemyError:
        db.session.rollback()
        abort(503, description="The account service is unavailable right now.")
    if row is None or row.expires_at <= datetime.utcnow():
        return None
    return db.session.get(User, row.user_id)


def revoke_session_token(token: str | None) -> None:
    if not token:
        return
    try:
        AuthSession.query.filter_by(token_hash=session_token_hash(token)).update(
            {"revoked_at": datetime.utcnow()}, synchronize_session=False
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Could not revoke login session.")


def record_signon_event(*, user_id: str, provider: str, action: str) -> None:
    in_request = has_request_context()
    db.session.add(
        AuthSignonEvent(
            user_id=user_id,
            provider=provider,
            action=action,
            ip_address=request_ip_address() if in_request else None,
            user_agent=request_user_agent() if in_request else None,
        )
    )
