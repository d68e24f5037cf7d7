from __future__ import annotations

import logging
import os
import secrets
from datetime import timedelta

import click
from flask import Flask, abort, request, session
from flask.helpers import get_debug_flag
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import InternalServerError

from infopics.config import load_config
from infopics.extensions import db
from infopics.routes.auth import register_auth_routes
from infopics.services.avatars import AvatarProxy
from infopics.services.credentials import CredentialStore
from infopics.services.identity import ExternalIdentityResolver
from infopics.services.mailer import Mailer, build_mailer
from infopics.services.onboarding import OnboardingOrchestrator
from infopics.services.pending import PendingSignupStore
from infopics.services.verification import VerificationCodeEngine

_CSRF_SESSION_KEY = "csrf_token"
_EXPECTED_TABLES = {"users", "pending_signups", "auth_sessions", "auth_signon_events"}


def _csrf_token() -> str:
    token = session.get(_CSRF_SESSION_KEY)
    if not isinstance(token, str) or not token:
        token = secrets.token_urlsafe(32)
        session[_CSRF_SESSION_KEY] = token
    return token


def _build_onboarding(app: Flask, mailer: Mailer | None) -> OnboardingOrchestrator:
    credentials = CredentialStore(enforce_unique_email=bool(app.config["ENFORCE_UNIQUE_EMAIL"]))
    pending = PendingSignupStore(ttl_seconds=int(app.config["PENDING_SIGNUP_TTL_SECONDS"]))
    return OnboardingOrchestrator(
        credentials=credentials,
        pending=pending,
        resolver=ExternalIdentityResolver(
            credentials=credentials,
            auto_link_by_email=bool(app.config["AUTO_LINK_EXTERNAL_BY_EMAIL"]),
        ),
        codes=VerificationCodeEngine(pending=pending, mailer=mailer or build_mailer(app.config)),
        enforce_unique_email=bool(app.config["ENFORCE_UNIQUE_EMAIL"]),
        instant_external_accounts=bool(app.config["EXTERNAL_INSTANT_ACCOUNT"]),
    )


def create_app(
    config_overrides: dict[str, object] | None = None, *, mailer: Mailer | None = None
) -> Flask:
    app = Flask(__name__)
    app.config.update(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    if not app.config.get("SECRET_KEY"):
        if not (get_debug_flag() or app.testing):
            raise RuntimeError("AUTH_SECRET_KEY (or SECRET_KEY) must be set.")
        app.config["SECRET_KEY"] = secrets.token_urlsafe(32)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(
        seconds=int(app.config["LOGIN_SESSION_MAX_AGE_SECONDS"])
    )
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")), logging.INFO))

    db.init_app(app)
    app.extensions["infopics.onboarding"] = _build_onboarding(app, mailer)
    app.extensions["infopics.avatars"] = AvatarProxy(
        ttl_seconds=int(app.config["AVATAR_CACHE_TTL_SECONDS"])
    )
    register_auth_routes(app)
    app.jinja_env.globals["csrf_token"] = _csrf_token

    @app.before_request
    def _csrf_guard():
        session.permanent = True
        if not app.config.get("CSRF_ENABLED"):
            return None
        if request.method in ("GET", "HEAD", "OPTIONS"):
            return None
        expected = session.get(_CSRF_SESSION_KEY)
        submitted = request.form.get("csrf_token") or request.headers.get("X-CSRF-Token")
        if (
            not isinstance(expected, str)
            or not isinstance(submitted, str)
            or not expected
            or not secrets.compare_digest(expected, submitted)
        ):
            abort(403, description="Missing or invalid CSRF token.")
        return None

    @app.after_request
    def _set_security_headers(response):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        response.headers.setdefault(
            "Content-Security-Policy",
            "default-src 'self'; img-src 'self' https: data:; frame-ancestors 'none'; base-uri 'none'",
        )
        if app.config.get("SESSION_COOKIE_SECURE"):
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=15552000; includeSubDomains",
            )
        return response

    @app.errorhandler(InternalServerError)
    def _handle_internal_server_error(err: InternalServerError):
        app.logger.exception("Unhandled exception: %s", err.original_exception or err)
        return err

    @app.cli.command("init-db")
    def init_db():
        """Create the InfoPics tables in the configured database."""
        with app.app_context():
            try:
                db.create_all()
                existing = set(inspect(db.engine).get_table_names())
            except SQLAlchemyError as exc:
                raise click.ClickException(f"Database initialization failed: {exc}") from exc
        missing = sorted(_EXPECTED_TABLES - existing)
        if missing:
            raise click.ClickException(
                f"Database initialization failed (missing tables: {', '.join(missing)})."
            )
        click.echo("Database initialized.")

    @app.cli.command("purge-pending")
    def purge_pending():
        """Delete pending signups older than PENDING_SIGNUP_TTL_SECONDS."""
        with app.app_context():
            try:
                removed = app.extensions["infopics.onboarding"].pending.purge_expired()
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise click.ClickException(f"Purge failed: {exc}") from exc
        click.echo(f"Removed {removed} expired pending signup(s).")

    return app


def create_test_app(
    config_overrides: dict[str, object] | None = None, *, mailer: Mailer | None = None
) -> Flask:
    config: dict[str, object] = {
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "CSRF_ENABLED": False,
        "AUTH_ENUMERATION_DELAY": False,
        "SESSION_COOKIE_SECURE": False,
    }
    config.update(config_overrides or {})
    app = create_app(config, mailer=mailer)
    with app.app_context():
        db.create_all()
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    create_app().run(debug=get_debug_flag(), port=port)
