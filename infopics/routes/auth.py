from __future__ import annotations

import secrets
from functools import wraps

from flask import (
    Blueprint,
    abort,
    current_app,
    flash,
    g,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from marshmallow import Schema
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from infopics.errors import NotFoundError, OnboardingError, UpstreamError, ValidationError
from infopics.extensions import db
from infopics.models.auth import User
from infopics.schemas.auth import (
    CreateAccountFormSchema,
    LoginFormSchema,
    SignupFormSchema,
    VerifyFormSchema,
)
from infopics.services.google import (
    OAUTH_COOKIE_MAX_AGE,
    OAUTH_COOKIE_NAME,
    GoogleOAuthClient,
    load_oauth_cookie,
    oauth_cookie_serializer,
    pkce_pair,
)
from infopics.services.avatars import is_remote_image_ref
from infopics.services.identity import normalize_external_profile
from infopics.services.onboarding import OnboardingOrchestrator, Transition
from infopics.services.session_state import SessionStateStore, TempUser
from infopics.services.sessions import (
    SESSION_COOKIE_NAME,
    auth_enumeration_delay,
    issue_session_token,
    load_session_user,
    revoke_session_token,
    safe_next_path,
)

_DB_UNAVAILABLE = "The account service is unavailable right now. Please try again shortly."
_GOOGLE_CALLBACK_PATH = "/auth/google/callback"


def _orchestrator() -> OnboardingOrchestrator:
    return current_app.extensions["infopics.onboarding"]


def _state_store() -> SessionStateStore:
    return SessionStateStore(session)


def _session_cookie_token() -> str | None:
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    return raw.strip() if isinstance(raw, str) and raw.strip() else None


def current_user() -> User | None:
    if "current_user" not in g:
        g.current_user = load_session_user(_session_cookie_token())
    return g.current_user


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            store = _state_store()
            state = store.load()
            target = safe_next_path(request.full_path.rstrip("?"))
            store.save(state.with_changes(post_login_redirect=target))
            flash("you must be logged in", "error")
            return redirect(url_for("auth.login"))
        return view(*args, **kwargs)

    return wrapped


def _load_form(schema: Schema) -> dict[str, object]:
    try:
        return schema.load(request.form.to_dict())
    except SchemaValidationError as err:
        fields = ", ".join(sorted(err.messages)) if isinstance(err.messages, dict) else ""
        raise ValidationError(f"Please fill in the required fields ({fields}).") from err


def _google_client() -> GoogleOAuthClient | None:
    client = current_app.extensions.get("infopics.google")
    if client is not None:
        return client
    client_id = current_app.config.get("GOOGLE_OAUTH_CLIENT_ID")
    client_secret = current_app.config.get("GOOGLE_OAUTH_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    base = current_app.config.get("PUBLIC_BASE_URL")
    if base:
        redirect_uri = f"{base}{_GOOGLE_CALLBACK_PATH}"
    else:
        redirect_uri = url_for("auth.google_callback", _external=True)
    client = GoogleOAuthClient(
        client_id=client_id, client_secret=client_secret, redirect_uri=redirect_uri
    )
    current_app.extensions["infopics.google"] = client
    return client


def _set_login_cookie(resp, token: str) -> None:
    resp.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=int(current_app.config["LOGIN_SESSION_MAX_AGE_SECONDS"]),
        httponly=True,
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE") or "Lax",
        path="/",
    )


def _clear_login_cookie(resp) -> None:
    resp.delete_cookie(
        SESSION_COOKIE_NAME,
        path="/",
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE") or "Lax",
    )


def _run_step(step, *args, **kwargs) -> Transition:
    try:
        return step(*args, **kwargs)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Database error during %s.", step.__name__)
        abort(503, description=_DB_UNAVAILABLE)


def _respond(transition: Transition, *, template: str | None = None, **context):
    """Persist the new onboarding state and turn a transition into a response."""
    _state_store().save(transition.state)
    if transition.notice:
        flash(transition.notice, "success")
    if transition.warning:
        flash(transition.warning, "warning")

    error = transition.error
    if error is not None:
        flash(error.message, "error")
        if template is not None and transition.redirect_to is None:
            return make_response(render_template(template, **context), error.code)
        return redirect(transition.redirect_to or url_for("auth.signup"))

    resp = redirect(transition.redirect_to or url_for("auth.account"))
    if transition.user is not None:
        previous = _session_cookie_token()
        if previous:
            revoke_session_token(previous)
        try:
            token = issue_session_token(transition.user.id)
        except SQLAlchemyError:
            db.session.rollback()
            abort(503, description=_DB_UNAVAILABLE)
        _set_login_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _reject_form(error: OnboardingError, template: str, **context):
    flash(error.message, "error")
    return make_response(render_template(template, **context), error.code)


def _restart_signup():
    _state_store().clear()
    flash(NotFoundError.default_message, "error")
    return redirect(url_for("auth.signup"))


def _current_pending_preview() -> TempUser | None:
    state = _state_store().load()
    try:
        record = _orchestrator().pending.find_by_id(state.pending_id)
    except SQLAlchemyError:
        db.session.rollback()
        abort(503, description=_DB_UNAVAILABLE)
    if record is None:
        return None
    # The durable record wins over whatever the session remembers.
    return TempUser.from_pending(record)


def register_auth_routes(app) -> Blueprint:
    auth_blp = Blueprint("auth", __name__)

    @auth_blp.route("/", methods=["GET"])
    def index():
        if current_user() is not None:
            return redirect(url_for("auth.account"))
        return redirect(url_for("auth.signup"))

    @auth_blp.route("/signup", methods=["GET"])
    def signup():
        if current_user() is not None:
            return redirect(url_for("auth.account"))
        return render_template("signup.html", form={})

    @auth_blp.route("/signup", methods=["POST"])
    def signup_submit():
        form = {k: v for k, v in request.form.items() if k in ("username", "email")}
        try:
            data = _load_form(SignupFormSchema())
        except ValidationError as exc:
            return _reject_form(exc, "signup.html", form=form)
        transition = _run_step(
            _orchestrator().begin_local_signup,
            _state_store().load(),
            username=data["username"],
            email=data["email"],
            password=data["password"],
        )
        return _respond(transition, template="signup.html", form=form)

    @auth_blp.route("/signup/cancel", methods=["POST"])
    def signup_cancel():
        transition = _run_step(_orchestrator().cancel, _state_store().load())
        return _respond(transition)

    @auth_blp.route("/auth/google", methods=["GET"])
    def google_start():
        client = _google_client()
        if client is None:
            abort(404)
        secret_key = current_app.config.get("SECRET_KEY")
        if not secret_key:
            abort(503, description="Auth is not configured (missing AUTH_SECRET_KEY).")

        state = secrets.token_urlsafe(32)
        code_verifier, code_challenge = pkce_pair()
        nonce = secrets.token_urlsafe(32)
        cookie_payload = {"state": state, "code_verifier": code_verifier, "nonce": nonce}

        resp = redirect(
            client.authorization_url(state=state, code_challenge=code_challenge, nonce=nonce)
        )
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(
            OAUTH_COOKIE_NAME,
            oauth_cookie_serializer(secret_key).dumps(cookie_payload),
            max_age=OAUTH_COOKIE_MAX_AGE,
            httponly=True,
            secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
            # The callback is a cross-site top-level navigation from Google.
            samesite="Lax",
            path=_GOOGLE_CALLBACK_PATH,
        )
        return resp

    @auth_blp.route("/auth/google/link", methods=["GET"])
    @login_required
    def google_link():
        store = _state_store()
        store.save(store.load().with_changes(attach_intent=True))
        return redirect(url_for("auth.google_start"))

    @auth_blp.route(_GOOGLE_CALLBACK_PATH, methods=["GET"])
    def google_callback():
        client = _google_client()
        if client is None:
            abort(404)

        def _fail(message: str):
            store = _state_store()
            store.save(store.load().with_changes(attach_intent=False))
            flash(message, "error")
            resp = redirect(url_for("auth.signup"))
            resp.delete_cookie(OAUTH_COOKIE_NAME, path=_GOOGLE_CALLBACK_PATH)
            return resp

        error = request.args.get("error")
        if isinstance(error, str) and error.strip():
            current_app.logger.info("Google sign-in returned error=%s.", error)
            return _fail("Something went wrong with Google login.")

        state_param = request.args.get("state")
        code = request.args.get("code")
        cookie_payload = load_oauth_cookie(
            current_app.config.get("SECRET_KEY") or "", request.cookies.get(OAUTH_COOKIE_NAME)
        )
        expected_state = cookie_payload.get("state") if cookie_payload else None
        code_verifier = cookie_payload.get("code_verifier") if cookie_payload else None
        nonce = cookie_payload.get("nonce") if cookie_payload else None
        if (
            not isinstance(state_param, str)
            or not isinstance(code, str)
            or not code.strip()
            or not isinstance(expected_state, str)
            or not isinstance(code_verifier, str)
            or not secrets.compare_digest(expected_state, state_param)
        ):
            return _fail("Google sign-in expired. Please try again.")

        try:
            claims = client.fetch_profile(
                code=code, code_verifier=code_verifier, nonce=nonce if isinstance(nonce, str) else None
            )
            profile = normalize_external_profile(claims)
        except UpstreamError as exc:
            current_app.logger.warning("Google sign-in failed: %s", exc.message)
            return _fail(exc.message)

        transition = _run_step(
            _orchestrator().begin_external_signup,
            _state_store().load(),
            profile,
            current_user=current_user(),
        )
        resp = _respond(transition)
        resp.delete_cookie(OAUTH_COOKIE_NAME, path=_GOOGLE_CALLBACK_PATH)
        return resp

    @auth_blp.route("/create-account", methods=["GET"])
    def create_account():
        preview = _current_pending_preview()
        if preview is None:
            return _restart_signup()
        return render_template("create_account.html", temp_user=preview, form={})

    @auth_blp.route("/create-account", methods=["POST"])
    def create_account_submit():
        form = {"username": request.form.get("username", "")}
        try:
            data = _load_form(CreateAccountFormSchema())
        except ValidationError as exc:
            return _reject_form(
                exc, "create_account.html", temp_user=_current_pending_preview(), form=form
            )
        transition = _run_step(
            _orchestrator().choose_username,
            _state_store().load(),
            username=data["username"],
            password=data.get("password") or None,
        )
        return _respond(
            transition,
            template="create_account.html",
            temp_user=transition.state.temp_user,
            form=form,
        )

    @auth_blp.route("/verify", methods=["GET"])
    def verify():
        state = _state_store().load()
        return render_template("verify.html", temp_user=state.temp_user)

    @auth_blp.route("/verify", methods=["POST"])
    def verify_submit():
        state = _state_store().load()
        try:
            data = _load_form(VerifyFormSchema())
        except ValidationError as exc:
            return _reject_form(exc, "verify.html", temp_user=state.temp_user)
        transition = _run_step(_orchestrator().submit_code, state, code=data["code"])
        return _respond(transition, template="verify.html", temp_user=state.temp_user)

    @auth_blp.route("/verify/resend", methods=["POST"])
    def verify_resend():
        transition = _run_step(_orchestrator().resend, _state_store().load())
        return _respond(transition)

    @auth_blp.route("/login", methods=["GET"])
    def login():
        if current_user() is not None:
            return redirect(url_for("auth.account"))
        return render_template("login.html", form={})

    @auth_blp.route("/login", methods=["POST"])
    def login_submit():
        try:
            data = _load_form(LoginFormSchema())
        except ValidationError as exc:
            return _reject_form(exc, "login.html", form={})
        identifier = data.get("identifier") or data.get("username") or ""
        form = {"identifier": identifier}
        transition = _run_step(
            _orchestrator().login,
            _state_store().load(),
            identifier=identifier,
            password=data["password"],
        )
        if transition.rejected:
            auth_enumeration_delay()
        return _respond(transition, template="login.html", form=form)

    @auth_blp.route("/logout", methods=["GET"])
    def logout():
        revoke_session_token(_session_cookie_token())
        transition = _orchestrator().logout(_state_store().load())
        resp = _respond(transition)
        _clear_login_cookie(resp)
        return resp

    @auth_blp.route("/account", methods=["GET"])
    @login_required
    def account():
        return render_template("account.html", user=current_user())

    @auth_blp.route("/avatar/<user_id>", methods=["GET"])
    def avatar(user_id: str):
        try:
            user = db.session.get(User, user_id)
        except SQLAlchemyError:
            db.session.rollback()
            abort(503, description=_DB_UNAVAILABLE)
        ref = user.profile_image_ref if user is not None else None
        if not ref:
            abort(404)
        if not is_remote_image_ref(ref):
            local_path = safe_next_path(ref)
            if local_path is None:
                abort(404)
            return redirect(local_path)

        image = current_app.extensions["infopics.avatars"].fetch(ref)
        if image is None:
            # Empty body lets the page fall back to its placeholder.
            return make_response("", 204)
        resp = make_response(image.body)
        resp.headers["Content-Type"] = image.content_type
        resp.headers["Cache-Control"] = image.cache_control
        return resp

    @auth_blp.route("/health", methods=["GET"])
    def health():
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            db.session.rollback()
            abort(503, description=_DB_UNAVAILABLE)
        resp = make_response(jsonify({"status": "ok"}))
        resp.headers["Cache-Control"] = "no-store"
        return resp

    app.register_blueprint(auth_blp)
    return auth_blp
