from __future__ import annotations

import base64
import hashlib
import json
import secrets
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import jwt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientError

from infopics.errors import UpstreamError

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

OAUTH_COOKIE_NAME = "infopics_google_oauth"
OAUTH_COOKIE_MAX_AGE = 60 * 10
_OAUTH_COOKIE_SALT = "infopics-google-oauth-cookie"


def pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def oauth_cookie_serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=secret_key, salt=_OAUTH_COOKIE_SALT)


def load_oauth_cookie(secret_key: str, raw: str | None) -> dict[str, object] | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        payload = oauth_cookie_serializer(secret_key).loads(raw, max_age=OAUTH_COOKIE_MAX_AGE)
    except (BadSignature, SignatureExpired):
        return None
    return payload if isinstance(payload, dict) else None


class GoogleOAuthClient:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        jwk_client: PyJWKClient | None = None,
        timeout: int = 15,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._jwk_client = jwk_client

    @property
    def jwk_client(self) -> PyJWKClient:
        if self._jwk_client is None:
            self._jwk_client = PyJWKClient(GOOGLE_CERTS_URL)
        return self._jwk_client

    def authorization_url(self, *, state: str, code_challenge: str, nonce: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "prompt": "select_account",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "nonce": nonce,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, *, code: str, code_verifier: str) -> dict[str, object]:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        }
        req = Request(
            GOOGLE_TOKEN_URL,
            data=urlencode(data).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            try:
                err_payload = json.loads(raw)
            except json.JSONDecodeError:
                err_payload = None
            if isinstance(err_payload, dict) and isinstance(err_payload.get("error"), str):
                raise UpstreamError(f"Google sign-in failed ({err_payload['error']}).") from e
            raise UpstreamError(f"Google sign-in failed (HTTP {e.code}).") from e
        except URLError as e:
            raise UpstreamError("Google sign-in failed (network error).") from e
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UpstreamError("Google sign-in failed (invalid response).") from e
        return payload if isinstance(payload, dict) else {}

    def verify_id_token(self, id_token: str, *, expected_nonce: str | None = None) -> dict[str, object]:
        """Return the verified claims of a Google id token."""
        try:
            signing_key = self.jwk_client.get_signing_key_from_jwt(id_token).key
            claims = jwt.decode(
                id_token,
                signing_key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=GOOGLE_ISSUERS,
                leeway=60,
            )
        except PyJWKClientError as e:
            raise UpstreamError("Google sign-in is temporarily unavailable.") from e
        except InvalidTokenError as e:
            raise UpstreamError("Invalid Google credential.") from e

        if claims.get("email_verified") is not True:
            raise UpstreamError("Google email is not verified.")
        if expected_nonce:
            nonce = claims.get("nonce")
            if not isinstance(nonce, str) or not secrets.compare_digest(nonce, expected_nonce):
                raise UpstreamError("Google token nonce mismatch.")
        return claims

    def fetch_profile(self, *, code: str, code_verifier: str, nonce: str | None) -> dict[str, object]:
        tokens = self.exchange_code(code=code, code_verifier=code_verifier)
        id_token = tokens.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            raise UpstreamError("Google sign-in failed (missing id_token).")
        return self.verify_id_token(id_token, expected_nonce=nonce)
