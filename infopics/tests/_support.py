import os
import re
import tempfile
from urllib.parse import urlencode

os.environ.setdefault("AUTH_SECRET_KEY", "test-auth-secret")
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("RESEND_FROM_EMAIL", None)

from infopics.app import create_test_app  # noqa: E402
from infopics.errors import UpstreamError  # noqa: E402
from infopics.extensions import db  # noqa: E402
from infopics.services.mailer import DeliveryReceipt  # noqa: E402

_CODE_RE = re.compile(r"\b(\d{6})\b")


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[dict[str, str | None]] = []
        self.fail = False

    def send(self, to_address, subject, body_text, body_html=None):
        if self.fail:
            raise UpstreamError("We couldn't send the verification email. Please try resending the code.")
        self.sent.append(
            {"to": to_address, "subject": subject, "text": body_text, "html": body_html}
        )
        return DeliveryReceipt(message_id=f"test-{len(self.sent)}", provider="test")

    def last_code(self, to_address: str | None = None) -> str:
        for message in reversed(self.sent):
            if to_address is None or message["to"] == to_address:
                match = _CODE_RE.search(message["text"] or "")
                if match:
                    return match.group(1)
        raise AssertionError(f"No verification code was mailed to {to_address or 'anyone'}.")


class FakeGoogleClient:
    def __init__(self, claims: dict[str, object] | None = None) -> None:
        self.claims = claims or {}
        self.error: UpstreamError | None = None
        self.exchanges: list[dict[str, str | None]] = []

    def authorization_url(self, *, state, code_challenge, nonce):
        query = urlencode({"state": state, "code_challenge": code_challenge, "nonce": nonce})
        return f"https://accounts.example.test/auth?{query}"

    def fetch_profile(self, *, code, code_verifier, nonce):
        self.exchanges.append({"code": code, "code_verifier": code_verifier, "nonce": nonce})
        if self.error is not None:
            raise self.error
        return dict(self.claims)


class AppHarness:
    """Fresh app + temporary SQLite file per test."""

    def __init__(self, **config_overrides: object) -> None:
        temp = tempfile.NamedTemporaryFile(prefix="infopics_", suffix=".sqlite", delete=False)
        temp.close()
        self.db_path = temp.name
        self.mailer = RecordingMailer()
        overrides: dict[str, object] = {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp.name}"}
        overrides.update(config_overrides)
        self.app = create_test_app(config_overrides=overrides, mailer=self.mailer)
        self.onboarding = self.app.extensions["infopics.onboarding"]

    def close(self) -> None:
        with self.app.app_context():
            db.session.remove()
            db.engine.dispose()
        try:
            os.unlink(self.db_path)
        except OSError:
            pass
