from datetime import datetime, timedelta, timezone

import pytest

from conftest import RecordingTransport, make_campaign
from pulse_api import analytics, campaigns, config, ledger
from pulse_api.errors import InvalidState, NotFound, ValidationError


def _future(hours=1):
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


def _log_types(campaign_id):
    return [e["type"] for e in campaigns.list_log(campaign_id)["events"]]


def test_create_campaign_starts_as_draft():
    c = make_campaign(2)
    assert c["status"] == "draft"
    assert c["recipient_count"] == 2
    assert len(c["recipients"]) == 2
    assert c["sent_at"] is None


def test_create_campaign_validation():
    with pytest.raises(ValidationError):
        campaigns.create_campaign("", "Subject", html_content="<p>x</p>")
    with pytest.raises(ValidationError):
        campaigns.create_campaign("Name", "Subject")
    with pytest.raises(ValidationError):
        campaigns.create_campaign("Name", "Subject", html_content="x", from_email="bad")
    with pytest.raises(ValidationError):
        campaigns.create_campaign("Name", "Subject", html_content="x", recipients=[{"email": "bad"}])
    assert campaigns.list_campaigns()["items"] == []


def test_create_with_schedule():
    c = make_campaign(1, scheduled_at=_future())
    assert c["status"] == "scheduled"
    assert c["scheduled_at"]


def test_schedule_requires_future_and_is_noop_when_scheduled():
    c = make_campaign(1)
    with pytest.raises(ValidationError):
        campaigns.schedule_campaign(c["id"], "2001-01-01T00:00:00Z")
    first = campaigns.schedule_campaign(c["id"], _future(2))
    again = campaigns.schedule_campaign(c["id"], _future(5))
    assert again["status"] == "scheduled"
    assert again["scheduled_at"] == first["scheduled_at"]


def test_schedule_only_from_draft():
    c = make_campaign(1)
    campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)
    with pytest.raises(InvalidState):
        campaigns.schedule_campaign(c["id"], _future())


def test_send_without_recipients_fails():
    c = campaigns.create_campaign("Empty", "Hi", html_content="<p>x</p>")
    with pytest.raises(InvalidState):
        campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)
    assert campaigns.get_campaign_status(c["id"]) == "draft"


def test_send_unknown_campaign():
    with pytest.raises(NotFound):
        campaigns.send_campaign("cp_missing", mailer=RecordingTransport(), background=False)


def test_send_completes_and_cannot_be_repeated():
    m = RecordingTransport()
    c = make_campaign(3)
    campaigns.send_campaign(c["id"], mailer=m, background=False)

    got = campaigns.get_campaign(c["id"], with_recipients=True)
    assert got["status"] == "sent"
    assert got["sent_at"]
    assert {r["status"] for r in got["recipients"]} == {"sent"}
    assert all(r["sent_at"] for r in got["recipients"])
    assert len(m.sent) == 3
    # no delivered event until the provider confirms
    assert got["delivered_count"] == 0

    with pytest.raises(InvalidState):
        campaigns.send_campaign(c["id"], mailer=m, background=False)
    assert "campaign.sent" in _log_types(c["id"])


def test_send_personalises_messages():
    m = RecordingTransport()
    c = make_campaign(1)
    campaigns.send_campaign(c["id"], mailer=m, background=False)
    msg = m.sent[0]
    assert msg.subject == "Hello User0"
    assert msg.html == "<p>Hi User0</p>"
    assert msg.from_email == config.MAIL_FROM
    assert msg.headers["X-Campaign-ID"] == c["id"]


def test_render_substitutes_fields_and_custom_data():
    rec = {"email": "a@example.com", "first_name": "Ann", "custom_data": {"plan": "Pro"}}
    assert campaigns.render("{{ first_name }} on {{plan}}{{ missing }}", rec) == "Ann on Pro"
    assert campaigns.render(None, rec) == ""


def test_render_escapes_values_in_html_only():
    rec = {"email": "a@example.com", "first_name": "<script>alert(1)</script>", "custom_data": {"plan": "A & B"}}
    out = campaigns.render("<p>Hi {{first_name}} ({{ plan }})</p>", rec, html=True)
    assert "<script>" not in out
    assert out == "<p>Hi &lt;script&gt;alert(1)&lt;/script&gt; (A &amp; B)</p>"
    # subjects and plain text go out verbatim
    assert campaigns.render("Hi {{first_name}}", rec) == "Hi <script>alert(1)</script>"


def test_send_escapes_recipient_markup():
    m = RecordingTransport()
    c = campaigns.create_campaign(
        "Launch",
        "Hello {{first_name}}",
        html_content="<p>Hi {{first_name}}</p>",
        recipients=[{"email": "eve@example.com", "first_name": "<b>Eve</b>"}],
    )
    campaigns.send_campaign(c["id"], mailer=m, background=False)
    assert m.sent[0].html == "<p>Hi &lt;b&gt;Eve&lt;/b&gt;</p>"
    assert m.sent[0].subject == "Hello <b>Eve</b>"


def test_broken_template_is_rejected_at_create():
    with pytest.raises(ValidationError):
        campaigns.create_campaign("Launch", "Hi {{ first_name", html_content="<p>x</p>")
    with pytest.raises(ValidationError):
        campaigns.create_campaign("Launch", "Hi", html_content="{% if %}")


def test_partial_failures_still_reach_sent():
    m = RecordingTransport(refuse={"user1@example.com", "user3@example.com"})
    c = make_campaign(5)
    campaigns.send_campaign(c["id"], mailer=m, background=False)

    got = campaigns.get_campaign(c["id"], with_recipients=True)
    assert got["status"] == "sent"
    failed = [r for r in got["recipients"] if r["status"] == "failed"]
    assert sorted(r["email"] for r in failed) == ["user1@example.com", "user3@example.com"]
    assert all("550" in r["bounce_reason"] for r in failed)
    stats = analytics.campaign_stats(c["id"])
    assert stats.sent_count == 3
    assert stats.failed_count == 2
    assert stats.bounced_count == 2


def test_transient_failures_are_retried(monkeypatch):
    monkeypatch.setattr(config, "SEND_RETRY_ATTEMPTS", 2)

    class Flaky(RecordingTransport):
        def send(self, msg):
            if self.calls < 2:
                self.calls += 1
                raise campaigns.TransportFailure("421 try again")
            return super().send(msg)

    m = Flaky()
    c = make_campaign(1)
    campaigns.send_campaign(c["id"], mailer=m, background=False)
    rec = ledger.list_recipients(c["id"])[0]
    assert rec["status"] == "sent"
    assert rec["attempts"] == 3


def test_outage_keeps_campaign_sending_and_retry_resumes(monkeypatch):
    monkeypatch.setattr(config, "SEND_CONCURRENCY", 1)
    m = RecordingTransport(down_after=2)
    c = make_campaign(5)

    campaigns.send_campaign(c["id"], mailer=m, background=False)
    assert campaigns.get_campaign_status(c["id"]) == "sending"
    assert ledger.count_recipients(c["id"], "sent") == 2
    assert ledger.count_recipients(c["id"], "pending") == 3
    assert "send.outage" in _log_types(c["id"])

    m.down_after = None
    campaigns.send_campaign(c["id"], mailer=m, background=False)
    assert campaigns.get_campaign_status(c["id"]) == "sent"
    # already-sent recipients were skipped on the retry
    assert len(m.sent) == 5
    assert len({msg.to for msg in m.sent}) == 5


def test_total_outage_dispatches_nothing():
    c = make_campaign(3)
    campaigns.send_campaign(c["id"], mailer=RecordingTransport(down=True), background=False)
    assert campaigns.get_campaign_status(c["id"]) == "sending"
    assert ledger.count_recipients(c["id"], "pending") == 3


def test_send_refused_while_batch_running():
    c = make_campaign(1)
    assert campaigns._claim(c["id"])
    try:
        with pytest.raises(InvalidState):
            campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)
    finally:
        campaigns._release(c["id"])
    assert campaigns.get_campaign_status(c["id"]) == "draft"


def test_pause_and_resume():
    c = make_campaign(3)
    assert campaigns._transition(c["id"], ("draft",), "sending")
    paused = campaigns.pause_campaign(c["id"])
    assert paused["status"] == "paused"

    # workers skip while paused
    summary = campaigns.dispatch_pending(c["id"], RecordingTransport())
    assert summary["outcome"] == "halted"
    assert summary["skipped"] == 3

    with pytest.raises(InvalidState):
        campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)

    m = RecordingTransport()
    campaigns.resume_campaign(c["id"], mailer=m, background=False)
    assert campaigns.get_campaign_status(c["id"]) == "sent"
    assert len(m.sent) == 3
    types = _log_types(c["id"])
    assert types.index("campaign.paused") < types.index("campaign.resumed")


def test_resume_while_batch_winds_down_still_completes(monkeypatch):
    m = RecordingTransport()
    c = make_campaign(3)
    real_dispatch = campaigns.dispatch_pending
    batches = []

    def paused_mid_batch(campaign_id, mailer):
        batches.append(campaign_id)
        if len(batches) > 1:
            return real_dispatch(campaign_id, mailer)
        campaigns.pause_campaign(campaign_id)
        summary = real_dispatch(campaign_id, mailer)
        # resume lands before this batch has released its claim
        campaigns.resume_campaign(campaign_id, mailer=mailer, background=False)
        return summary

    monkeypatch.setattr(campaigns, "dispatch_pending", paused_mid_batch)
    campaigns.send_campaign(c["id"], mailer=m, background=False)

    assert campaigns.get_campaign_status(c["id"]) == "sent"
    assert ledger.count_recipients(c["id"], "pending") == 0
    assert len(m.sent) == 3
    assert len(batches) == 2
    assert not campaigns._is_active(c["id"])


def test_pause_without_resume_leaves_campaign_paused(monkeypatch):
    monkeypatch.setattr(config, "SEND_CONCURRENCY", 1)
    c = make_campaign(2)

    class PausingTransport(RecordingTransport):
        def send(self, msg):
            campaigns.pause_campaign(c["id"])
            return super().send(msg)

    m = PausingTransport()
    campaigns.send_campaign(c["id"], mailer=m, background=False)
    assert campaigns.get_campaign_status(c["id"]) == "paused"
    assert ledger.count_recipients(c["id"], "pending") >= 1
    assert not campaigns._is_active(c["id"])


def test_unexpected_transport_error_fails_one_recipient():
    class Buggy(RecordingTransport):
        def send(self, msg):
            if msg.to == "user1@example.com":
                raise RuntimeError("provider client bug")
            return super().send(msg)

    m = Buggy()
    c = make_campaign(3)
    campaigns.send_campaign(c["id"], mailer=m, background=False)

    assert campaigns.get_campaign_status(c["id"]) == "sent"
    recs = {r["email"]: r for r in ledger.list_recipients(c["id"])}
    assert recs["user1@example.com"]["status"] == "failed"
    assert "RuntimeError" in recs["user1@example.com"]["bounce_reason"]
    assert recs["user0@example.com"]["status"] == "sent"
    assert len(m.sent) == 2
    assert "send.error" not in _log_types(c["id"])


def test_pause_and_resume_need_the_right_state():
    c = make_campaign(1)
    with pytest.raises(InvalidState):
        campaigns.pause_campaign(c["id"])
    with pytest.raises(InvalidState):
        campaigns.resume_campaign(c["id"], mailer=RecordingTransport(), background=False)


def test_cancel_stops_further_dispatch():
    c = make_campaign(3)
    assert campaigns._transition(c["id"], ("draft",), "sending")
    ledger.mark_dispatched(ledger.list_recipients(c["id"])[0]["id"], True, attempts=1)

    assert campaigns.cancel_campaign(c["id"])["status"] == "cancelled"
    summary = campaigns.dispatch_pending(c["id"], RecordingTransport())
    assert summary["outcome"] == "halted"

    statuses = [r["status"] for r in ledger.list_recipients(c["id"])]
    assert statuses == ["sent", "pending", "pending"]
    # idempotent
    assert campaigns.cancel_campaign(c["id"])["status"] == "cancelled"
    with pytest.raises(InvalidState):
        campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)


def test_sent_campaign_cannot_be_cancelled():
    c = make_campaign(1)
    campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)
    with pytest.raises(InvalidState):
        campaigns.cancel_campaign(c["id"])


def test_dispatch_due_campaigns():
    due = make_campaign(2, scheduled_at=_future(1))
    later = make_campaign(2, scheduled_at=_future(48))
    empty = campaigns.create_campaign("Empty", "Hi", html_content="x", scheduled_at=_future(1))

    m = RecordingTransport()
    started = campaigns.dispatch_due_campaigns(
        now=datetime.now(timezone.utc) + timedelta(hours=2), mailer=m, background=False
    )
    assert started == [due["id"]]
    assert campaigns.get_campaign_status(due["id"]) == "sent"
    assert campaigns.get_campaign_status(later["id"]) == "scheduled"
    assert campaigns.get_campaign_status(empty["id"]) == "scheduled"
    assert "send.skipped" in _log_types(empty["id"])


def test_delete_cascades():
    c = make_campaign(2)
    campaigns.send_campaign(c["id"], mailer=RecordingTransport(), background=False)
    rid = ledger.list_recipients(c["id"])[0]["id"]
    ledger.record_event(rid, "opened")

    campaigns.delete_campaign(c["id"])
    with pytest.raises(NotFound):
        campaigns.get_campaign(c["id"])
    with pytest.raises(NotFound):
        ledger.get_recipient(rid)


def test_delete_refused_while_sending():
    c = make_campaign(1)
    assert campaigns._transition(c["id"], ("draft",), "sending")
    with pytest.raises(InvalidState):
        campaigns.delete_campaign(c["id"])


def test_list_campaigns_pagination_and_filter():
    ids = [make_campaign(1, name=f"C{i}")["id"] for i in range(3)]
    campaigns.send_campaign(ids[0], mailer=RecordingTransport(), background=False)

    page = campaigns.list_campaigns(limit=2)
    assert len(page["items"]) == 2
    assert page["nextCursor"]
    rest = campaigns.list_campaigns(limit=2, cursor=page["nextCursor"])
    assert len(rest["items"]) == 1
    assert rest["nextCursor"] is None
    seen = [i["id"] for i in page["items"] + rest["items"]]
    assert sorted(seen) == sorted(ids)

    sent = campaigns.list_campaigns(status="sent")["items"]
    assert [i["id"] for i in sent] == [ids[0]]
    with pytest.raises(ValidationError):
        campaigns.list_campaigns(status="bogus")
    with pytest.raises(ValidationError):
        campaigns.list_campaigns(cursor="no-separator")


def test_rate_limiter_disabled_is_noop():
    limiter = campaigns.RateLimiter(0)
    limiter.wait()
    assert limiter.interval == 0.0
