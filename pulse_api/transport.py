"""Outbound mail transports.

``send`` returns a provider message id on acceptance. It raises
``TransportFailure`` when this one message was refused and
``TransportUnavailable`` when the provider cannot take any message.
"""

from __future__ import annotations

import logging
import smtplib
import uuid
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Optional

import requests

from . import config
from .errors import TransportFailure, TransportUnavailable

logger = logging.getLogger("pulse.transport")


@dataclass
class OutboundMessage:
    to: str
    subject: str
    html: str
    text: str
    from_email: str
    from_name: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


class MailTransport:
    name = "base"

    def send(self, msg: OutboundMessage) -> str:
        raise NotImplementedError


class LogTransport(MailTransport):
    """Accepts everything and only logs it; for development."""

    name = "log"

    def send(self, msg: OutboundMessage) -> str:
        mid = f"log-{uuid.uuid4().hex}"
        logger.info("email to %s: %s", msg.to, msg.subject)
        return mid


class SmtpTransport(MailTransport):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        timeout: float = 15,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, msg: OutboundMessage) -> EmailMessage:
        em = EmailMessage()
        em["From"] = formataddr((msg.from_name, msg.from_email)) if msg.from_name else msg.from_email
        em["To"] = msg.to
        em["Subject"] = msg.subject
        for k, v in msg.headers.items():
            em[k] = v
        em.set_content(msg.text or "")
        if msg.html:
            em.add_alternative(msg.html, subtype="html")
        return em

    def send(self, msg: OutboundMessage) -> str:
        em = self._build(msg)
        mid = f"<{uuid.uuid4().hex}@{self.host}>"
        em["Message-ID"] = mid
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(em)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPDataError) as e:
            raise TransportFailure(f"{type(e).__name__}: {e}") from e
        except smtplib.SMTPAuthenticationError as e:
            raise TransportUnavailable(f"SMTP authentication failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            # connection refused, DNS failure, dropped session
            raise TransportUnavailable(f"{type(e).__name__}: {e}") from e
        return mid


class HttpApiTransport(MailTransport):
    """JSON-over-HTTP provider (one POST per message)."""

    name = "http"

    def __init__(self, url: str, api_key: str, timeout: float = 15):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, msg: OutboundMessage) -> str:
        try:
            r = requests.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "from": {"email": msg.from_email, "name": msg.from_name},
                    "to": [{"email": msg.to}],
                    "subject": msg.subject,
                    "html": msg.html,
                    "text": msg.text,
                    "headers": msg.headers,
                },
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransportUnavailable(f"{type(e).__name__}: {str(e)[:300]}") from e

        if r.status_code in (401, 403) or r.status_code >= 500:
            raise TransportUnavailable(f"Mail API returned {r.status_code}")
        data = _json_object(r)
        if r.status_code >= 400:
            err = data.get("error") or r.text[:300]
            raise TransportFailure(f"Mail API rejected message ({r.status_code}): {err}")
        return str(data.get("id") or data.get("message_id") or f"http-{uuid.uuid4().hex}")


def _json_object(r) -> Dict[str, Any]:
    # providers answer with objects, arrays or plain text
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def get_transport() -> MailTransport:
    kind = (config.MAIL_TRANSPORT or "log").lower()
    if kind == "smtp":
        return SmtpTransport(
            config.SMTP_HOST,
            config.SMTP_PORT,
            config.SMTP_USER or None,
            config.SMTP_PASS or None,
            use_tls=config.SMTP_USE_TLS,
        )
    if kind == "http":
        if not config.MAIL_API_URL:
            raise TransportUnavailable("MAIL_API_URL not set")
        return HttpApiTransport(config.MAIL_API_URL, config.MAIL_API_KEY, timeout=config.MAIL_API_TIMEOUT)
    return LogTransport()
