import os
import threading

# Keep the background scheduler and real mail providers out of tests
os.environ.setdefault("SCHEDULER_INTERVAL_SECS", "0")
os.environ.setdefault("MAIL_TRANSPORT", "log")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from pulse_api import campaigns, config, db, transport  # noqa: E402
from pulse_api.errors import TransportFailure, TransportUnavailable  # noqa: E402

AUTH = {"Authorization": "Bearer test-token"}


class RecordingTransport(transport.MailTransport):
    """In-memory transport; refuses addresses in ``refuse`` and fails all when ``down``."""

    name = "recording"

    def __init__(self, refuse=(), down=False, down_after=None):
        self.refuse = set(refuse)
        self.down = down
        self.down_after = down_after
        self.sent = []
        self.calls = 0
        self._lock = threading.Lock()

    def send(self, msg):
        with self._lock:
            self.calls += 1
            if self.down or (self.down_after is not None and len(self.sent) >= self.down_after):
                raise TransportUnavailable("provider unreachable")
            if msg.to in self.refuse:
                raise TransportFailure(f"550 mailbox unavailable: {msg.to}")
            self.sent.append(msg)
            return f"msg-{len(self.sent)}"


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "pulse_test.db"))
    monkeypatch.setattr(config, "API_TOKEN", "test-token")
    monkeypatch.setattr(config, "SEND_RETRY_ATTEMPTS", 0)
    monkeypatch.setattr(config, "SEND_RETRY_BACKOFF", 0.0)
    monkeypatch.setattr(config, "SEND_RATE_PER_SEC", 0.0)
    db.init_db()
    yield
    campaigns._active.clear()


@pytest.fixture
def mailer(monkeypatch):
    m = RecordingTransport()
    monkeypatch.setattr(transport, "get_transport", lambda: m)
    return m


@pytest.fixture
def client():
    from pulse_api.main import app

    return TestClient(app)


def make_campaign(n=3, **kwargs):
    recipients = [{"email": f"user{i}@example.com", "first_name": f"User{i}"} for i in range(n)]
    return campaigns.create_campaign(
        kwargs.pop("name", "Spring launch"),
        kwargs.pop("subject", "Hello {{first_name}}"),
        html_content=kwargs.pop("html_content", "<p>Hi {{first_name}}</p>"),
        recipients=recipients,
        **kwargs,
    )


def make_sent_campaign(n=3, mailer=None):
    c = make_campaign(n)
    campaigns.send_campaign(c["id"], mailer=mailer or RecordingTransport(), background=False)
    return campaigns.get_campaign(c["id"], with_recipients=True)
