from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Mapping, Protocol
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from flask import current_app

from infopics.errors import UpstreamError

RESEND_EMAILS_URL = "https://api.resend.com/emails"
_DELIVERY_FAILED = "We couldn't send the verification email. Please try resending the code."


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str | None
    provider: str


class Mailer(Protocol):
    def send(
        self,
        to_address: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
    ) -> DeliveryReceipt: ...


class ResendMailer:
    def __init__(self, *, api_key: str, from_email: str, attempts: int = 2, timeout: int = 15) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.attempts = max(1, attempts)
        self.timeout = timeout

    def _request(self, payload: dict[str, object]) -> Request:
        return Request(
            RESEND_EMAILS_URL,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )

    def send(
        self,
        to_address: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
    ) -> DeliveryReceipt:
        payload: dict[str, object] = {
            "from": self.from_email,
            "to": [to_address],
            "subject": subject,
            "text": body_text,
            # Prevent Gmail conversation threading from collapsing repeated codes behind "...".
            "headers": {"X-Entity-Ref-ID": uuid.uuid4().hex},
        }
        if body_html:
            payload["html"] = body_html

        for attempt in range(1, self.attempts + 1):
            try:
                with urlopen(self._request(payload), timeout=self.timeout) as resp:
                    raw = resp.read().decode("utf-8")
            except HTTPError as e:
                try:
                    details = e.read().decode("utf-8", errors="replace")
                except OSError:
                    details = ""
                current_app.logger.error(
                    "Resend email failed (HTTP %s, attempt %s/%s): %s",
                    e.code,
                    attempt,
                    self.attempts,
                    details,
                )
                if 400 <= e.code < 500 and e.code != 429:
                    break
            except OSError as e:  # URLError, timeouts and dropped connections
                current_app.logger.error(
                    "Resend email failed (network error, attempt %s/%s): %s",
                    attempt,
                    self.attempts,
                    e,
                )
            else:
                try:
                    body = json.loads(raw) if raw else {}
                except json.JSONDecodeError:
                    body = {}
                message_id = body.get("id") if isinstance(body, dict) else None
                return DeliveryReceipt(
                    message_id=message_id if isinstance(message_id, str) else None,
                    provider="resend",
                )
        raise UpstreamError(_DELIVERY_FAILED)


class LoggingMailer:
    """Development mailer: writes the message to the application log instead of sending it."""

    def send(
        self,
        to_address: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
    ) -> DeliveryReceipt:
        current_app.logger.info("Email to %s (%s): %s", to_address, subject, body_text)
        return DeliveryReceipt(message_id=None, provider="log")


def build_mailer(config: Mapping[str, object]) -> Mailer:
    api_key = config.get("RESEND_API_KEY")
    sender = config.get("RESEND_FROM_EMAIL")
    if api_key and sender:
        return ResendMailer(
            api_key=str(api_key),
            from_email=str(sender),
            attempts=int(config.get("MAIL_SEND_ATTEMPTS") or 2),
            timeout=int(config.get("MAIL_SEND_TIMEOUT_SECONDS") or 15),
        )
    return LoggingMailer()
