from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from infopics.config import DEFAULT_PROFILE_IMAGE
from infopics.extensions import db


class SourceKind(str, Enum):
    LOCAL = "LOCAL"
    EXTERNAL = "EXTERNAL"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = db.Column(db.String(30), unique=True, index=True, nullable=False)
    email = db.Column(db.String(320), index=True, nullable=False)
    # Mirrors `email` only while unique emails are enforced; NULLs never collide.
    email_key = db.Column(db.String(320), unique=True, nullable=True)
    password_hash = db.Column(db.Text, nullable=True)
    external_identity_id = db.Column(db.String(255), unique=True, index=True, nullable=True)
    profile_image_ref = db.Column(
        db.String(1024), nullable=False, default=DEFAULT_PROFILE_IMAGE
    )
    verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class PendingSignup(db.Model):
    __tablename__ = "pending_signups"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(320), unique=True, index=True, nullable=False)
    username = db.Column(db.String(30), nullable=True)
    credential_preview = db.Column(db.Text, nullable=True)
    external_identity_id = db.Column(db.String(255), index=True, nullable=True)
    profile_image_ref = db.Column(
        db.String(1024), nullable=False, default=DEFAULT_PROFILE_IMAGE
    )
    display_name = db.Column(db.String(255), nullable=True)
    code = db.Column(db.String(6), index=True, nullable=False)
    source_kind = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, index=True, nullable=False, default=datetime.utcnow)


class AuthSession(db.Model):
    __tablename__ = "auth_sessions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), index=True, nullable=False)
    token_hash = db.Column(db.String(64), unique=True, index=True, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime, nullable=True)
    last_used_at = db.Column(db.DateTime, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)


class AuthSignonEvent(db.Model):
    __tablename__ = "auth_signon_events"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), index=True, nullable=False)
    provider = db.Column(db.String(32), nullable=False)  # "local" | "google"
    action = db.Column(db.String(32), nullable=False)  # "register" | "login" | "link"
    occurred_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
