from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load env vars from `infopics/.env` regardless of the process working directory.
load_dotenv(dotenv_path=Path(__file__).with_name(".env"))
# Also allow a repo/root `.env` (or process env) to supply values without overriding.
load_dotenv()

DEFAULT_PROFILE_IMAGE = "/images/default-avatar.png"
PENDING_SIGNUP_TTL_SECONDS = 60 * 60
LOGIN_SESSION_MAX_AGE_SECONDS = 60 * 60 * 24 * 7


def _env_str(name: str) -> str | None:
    raw = os.environ.get(name)
    raw = raw.strip() if isinstance(raw, str) else ""
    return raw or None


def _env_flag(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _env_positive_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid {name} (expected a positive integer).") from None
    if value <= 0:
        raise RuntimeError(f"Invalid {name} (expected a positive integer).")
    return value


def normalize_database_uri(uri: str) -> str:
    normalized = uri.strip()
    if normalized.startswith("postgres://"):
        normalized = f"postgresql://{normalized[len('postgres://'):]}"
    if normalized.startswith("postgresql://") and "connect_timeout=" not in normalized:
        joiner = "&" if "?" in normalized else "?"
        normalized = f"{normalized}{joiner}connect_timeout=5"
    return normalized


def _database_uri() -> str:
    raw = _env_str("DATABASE_URI") or _env_str("DATABASE_URL")
    if raw is None:
        return f"sqlite:///{Path(__file__).with_name('infopics_dev.sqlite')}"
    return normalize_database_uri(raw)


def _cookie_samesite() -> str:
    raw = os.environ.get("SESSION_COOKIE_SAMESITE", "").strip().lower()
    if raw in ("lax", "strict", "none"):
        return raw.capitalize()
    return "Lax"


def _public_base_url() -> str | None:
    base = _env_str("PUBLIC_BASE_URL")
    return base.rstrip("/") if base else None


def load_config() -> dict[str, object]:
    samesite = _cookie_samesite()
    secure = _env_flag("SESSION_COOKIE_SECURE")
    if samesite == "None" and not secure:
        raise RuntimeError("SESSION_COOKIE_SAMESITE=None requires SESSION_COOKIE_SECURE=1.")
    return {
        "SECRET_KEY": _env_str("AUTH_SECRET_KEY") or _env_str("SECRET_KEY"),
        "SQLALCHEMY_DATABASE_URI": _database_uri(),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": samesite,
        "SESSION_COOKIE_SECURE": secure,
        "LOG_LEVEL": (_env_str("LOG_LEVEL") or "INFO").upper(),
        "CSRF_ENABLED": _env_flag("CSRF_ENABLED", default=True),
        "TRUST_PROXY_HEADERS": _env_flag("TRUST_PROXY_HEADERS"),
        "AUTH_ENUMERATION_DELAY": _env_flag("AUTH_ENUMERATION_DELAY", default=True),
        "PUBLIC_BASE_URL": _public_base_url(),
        # Onboarding policy.
        "ENFORCE_UNIQUE_EMAIL": _env_flag("ENFORCE_UNIQUE_EMAIL"),
        "AUTO_LINK_EXTERNAL_BY_EMAIL": _env_flag("AUTO_LINK_EXTERNAL_BY_EMAIL"),
        "EXTERNAL_INSTANT_ACCOUNT": _env_flag("EXTERNAL_INSTANT_ACCOUNT"),
        "PENDING_SIGNUP_TTL_SECONDS": _env_positive_int(
            "PENDING_SIGNUP_TTL_SECONDS", default=PENDING_SIGNUP_TTL_SECONDS
        ),
        "LOGIN_SESSION_MAX_AGE_SECONDS": _env_positive_int(
            "LOGIN_SESSION_MAX_AGE_SECONDS", default=LOGIN_SESSION_MAX_AGE_SECONDS
        ),
        # Google OAuth.
        "GOOGLE_OAUTH_CLIENT_ID": _env_str("GOOGLE_OAUTH_CLIENT_ID"),
        "GOOGLE_OAUTH_CLIENT_SECRET": _env_str("GOOGLE_OAUTH_CLIENT_SECRET"),
        # Mail.
        "RESEND_API_KEY": _env_str("RESEND_API_KEY"),
        "RESEND_FROM_EMAIL": _env_str("RESEND_FROM_EMAIL"),
        "MAIL_SEND_ATTEMPTS": _env_positive_int("MAIL_SEND_ATTEMPTS", default=2),
        "MAIL_SEND_TIMEOUT_SECONDS": _env_positive_int("MAIL_SEND_TIMEOUT_SECONDS", default=15),
        # Profile pictures.
        "AVATAR_CACHE_TTL_SECONDS": _env_positive_int("AVATAR_CACHE_TTL_SECONDS", default=60 * 60),
    }
