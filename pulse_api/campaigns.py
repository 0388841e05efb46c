"""Campaign lifecycle and dispatch.

    draft -> scheduled -> sending -> sent
    sending <-> paused
    draft | scheduled | sending | paused -> cancelled

Status changes are compare-and-set updates (``where status in (...)``) so
concurrent requests cannot both win a transition. Dispatch runs on a bounded
thread pool; a per-recipient failure is recorded on the recipient and the
batch continues. A provider outage stops the batch and leaves the campaign in
``sending``; calling send again resumes with the still-pending recipients.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from jinja2 import Environment, Template, TemplateSyntaxError

from . import analytics, config, ledger, transport
from .db import db, new_id, now_iso, parse_ts, to_iso
from .errors import InvalidState, NotFound, TransportFailure, TransportUnavailable, ValidationError

logger = logging.getLogger("pulse.campaigns")

DRAFT = "draft"
SCHEDULED = "scheduled"
SENDING = "sending"
SENT = "sent"
PAUSED = "paused"
CANCELLED = "cancelled"

STATUSES = (DRAFT, SCHEDULED, SENDING, SENT, PAUSED, CANCELLED)
CANCELLABLE = (DRAFT, SCHEDULED, SENDING, PAUSED)

# campaigns with a dispatch batch running in this process
_active: set = set()
_active_lock = threading.Lock()


def emit_log(campaign_id: str, type_: str, message: str, payload: Optional[Dict[str, Any]] = None):
    conn = db()
    conn.execute(
        "insert into campaign_log (id, campaign_id, time, type, message, payload_json) values (?,?,?,?,?,?)",
        (new_id("lg"), campaign_id, now_iso(), type_, message, json.dumps(payload or {})),
    )
    conn.commit()
    conn.close()


def _log_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "campaign_id": r["campaign_id"],
        "time": r["time"],
        "type": r["type"],
        "message": r["message"],
        "payload": json.loads(r["payload_json"] or "{}"),
    }


def list_log(campaign_id: str, cursor: Optional[str] = None, limit: int = 200) -> Dict[str, Any]:
    """Activity log oldest first; ``cursor`` is the id of the last entry seen."""
    if get_campaign_status(campaign_id) is None:
        raise NotFound("Campaign not found")
    limit = max(1, min(int(limit or 200), 1000))
    conn = db()
    after = 0
    if cursor:
        row = conn.execute(
            "select rowid from campaign_log where id=? and campaign_id=?", (cursor, campaign_id)
        ).fetchone()
        if not row:
            conn.close()
            raise ValidationError("Invalid cursor")
        after = row[0]
    rows = conn.execute(
        "select rowid, * from campaign_log where campaign_id=? and rowid > ? order by rowid asc limit ?",
        (campaign_id, after, limit),
    ).fetchall()
    conn.close()
    events = [_log_row(r) for r in rows]
    return {"events": events, "nextCursor": events[-1]["id"] if events else cursor}


def log_since(campaign_id: str, after_rowid: int = 0) -> List[Tuple[int, Dict[str, Any]]]:
    conn = db()
    rows = conn.execute(
        "select rowid, * from campaign_log where campaign_id=? and rowid > ? order by rowid asc",
        (campaign_id, after_rowid),
    ).fetchall()
    conn.close()
    return [(r["rowid"], _log_row(r)) for r in rows]


def _campaign_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "name": r["name"],
        "subject": r["subject"],
        "html_content": r["html_content"],
        "text_content": r["text_content"],
        "from_email": r["from_email"],
        "from_name": r["from_name"],
        "status": r["status"],
        "scheduled_at": r["scheduled_at"],
        "sent_at": r["sent_at"],
        "created_at": r["created_at"],
        "updated_at": r["updated_at"],
    }


def get_campaign_status(campaign_id: str) -> Optional[str]:
    """Fast status check used by the dispatch workers."""
    conn = db()
    row = conn.execute("select status from campaigns where id=?", (campaign_id,)).fetchone()
    conn.close()
    return row["status"] if row else None


def get_campaign(campaign_id: str, with_recipients: bool = False) -> Dict[str, Any]:
    conn = db()
    row = conn.execute("select * from campaigns where id=?", (campaign_id,)).fetchone()
    conn.close()
    if not row:
        raise NotFound("Campaign not found")
    out = _campaign_row(row)
    out.update(analytics.campaign_stats(campaign_id).counts())
    if with_recipients:
        out["recipients"] = ledger.list_recipients(campaign_id)
    return out


def _parse_cursor(cursor: Optional[str]) -> Optional[Tuple[str, str]]:
    """Cursor format: <created_at>|<id>"""
    if not cursor:
        return None
    if "|" not in cursor:
        raise ValidationError("Invalid cursor")
    created_at, cid = cursor.split("|", 1)
    if not created_at or not cid:
        raise ValidationError("Invalid cursor")
    return created_at, cid


def list_campaigns(limit: int = 50, cursor: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    # newest first
    limit = max(1, min(int(limit or 50), 200))
    statuses = [s.strip() for s in (status or "").split(",") if s.strip()]
    for s in statuses:
        if s not in STATUSES:
            raise ValidationError(f"Invalid status: {s}")

    where = "where 1=1"
    params: List[Any] = []
    if statuses:
        where += " and status in (%s)" % ",".join(["?"] * len(statuses))
        params.extend(statuses)

    cur = _parse_cursor(cursor)
    if cur:
        cur_created, cur_id = cur
        # strictly older than cursor tuple (created_at desc, id desc)
        where += " and (created_at < ? or (created_at = ? and id < ?))"
        params.extend([cur_created, cur_created, cur_id])

    conn = db()
    rows = conn.execute(
        f"select * from campaigns {where} order by created_at desc, id desc limit ?",
        tuple(params + [limit + 1]),
    ).fetchall()
    conn.close()

    sliced = rows[:limit]
    items = []
    for r in sliced:
        item = _campaign_row(r)
        item.update(analytics.campaign_stats(r["id"]).counts())
        items.append(item)

    next_cursor = None
    if len(rows) > limit and sliced:
        last = sliced[-1]
        next_cursor = f"{last['created_at']}|{last['id']}"

    return {"items": items, "nextCursor": next_cursor}


def create_campaign(
    name: str,
    subject: str,
    html_content: Optional[str] = None,
    text_content: Optional[str] = None,
    from_email: Optional[str] = None,
    from_name: Optional[str] = None,
    recipients: Optional[List[Dict[str, Any]]] = None,
    scheduled_at: Optional[str] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    subject = (subject or "").strip()
    if not name:
        raise ValidationError("Campaign name is required")
    if not subject:
        raise ValidationError("Campaign subject is required")
    if not (html_content or text_content):
        raise ValidationError("Campaign needs html_content or text_content")
    if from_email:
        try:
            from_email = validate_email(from_email, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ValidationError(f"Invalid from_email: {e}") from None
    # templates must compile
    _template(subject, False)
    if html_content:
        _template(html_content, True)
    if text_content:
        _template(text_content, False)
    # validate before anything is written
    when = _future(scheduled_at) if scheduled_at else None
    for rec in recipients or []:
        ledger.normalize_email(rec.get("email"))

    cid = new_id("cp")
    created = now_iso()
    conn = db()
    conn.execute(
        "insert into campaigns (id,name,subject,html_content,text_content,from_email,from_name,status,created_at,updated_at) values (?,?,?,?,?,?,?,?,?,?)",
        (cid, name, subject, html_content, text_content, from_email, from_name, DRAFT, created, created),
    )
    conn.commit()
    conn.close()
    emit_log(cid, "campaign.created", "Campaign created")
    logger.info("campaign created", extra={"campaign_id": cid})

    if recipients:
        ledger.add_recipients(cid, recipients)
    if when:
        schedule_campaign(cid, when)
    return get_campaign(cid, with_recipients=True)


def add_recipients(campaign_id: str, recipients: List[Dict[str, Any]]) -> Dict[str, Any]:
    result = ledger.add_recipients(campaign_id, recipients)
    emit_log(
        campaign_id,
        "recipients.added",
        "Recipients added",
        {"added": result["added"], "duplicates": len(result["duplicates"])},
    )
    return result


def delete_campaign(campaign_id: str) -> None:
    status = get_campaign_status(campaign_id)
    if status is None:
        raise NotFound("Campaign not found")
    if status == SENDING or _is_active(campaign_id):
        raise InvalidState("Campaign is sending; pause or cancel it first")
    conn = db()
    # recipients, tracking events and log rows cascade
    conn.execute("delete from campaigns where id=?", (campaign_id,))
    conn.commit()
    conn.close()
    logger.info("campaign deleted", extra={"campaign_id": campaign_id})


def _future(value: str | datetime) -> datetime:
    when = parse_ts(value)
    if when <= datetime.now(timezone.utc):
        raise ValidationError("scheduled_at must be in the future")
    return when


def _transition(campaign_id: str, from_states: Tuple[str, ...], to_state: str, **fields: Any) -> bool:
    sets = ["status=?", "updated_at=?"]
    params: List[Any] = [to_state, now_iso()]
    for k, v in fields.items():
        sets.append(f"{k}=?")
        params.append(v)
    params.append(campaign_id)
    params.extend(from_states)
    conn = db()
    cur = conn.execute(
        f"update campaigns set {', '.join(sets)} where id=? and status in ({','.join(['?'] * len(from_states))})",
        tuple(params),
    )
    conn.commit()
    conn.close()
    return cur.rowcount == 1


def schedule_campaign(campaign_id: str, scheduled_at: str | datetime) -> Dict[str, Any]:
    status = get_campaign_status(campaign_id)
    if status is None:
        raise NotFound("Campaign not found")
    if status == SCHEDULED:
        return get_campaign(campaign_id)
    if status != DRAFT:
        raise InvalidState(f"Only draft campaigns can be scheduled (status={status})")
    when = _future(scheduled_at)
    if not _transition(campaign_id, (DRAFT,), SCHEDULED, scheduled_at=to_iso(when)):
        raise InvalidState("Campaign changed state while scheduling")
    emit_log(campaign_id, "campaign.scheduled", "Campaign scheduled", {"scheduled_at": to_iso(when)})
    return get_campaign(campaign_id)


def _claim(campaign_id: str) -> bool:
    with _active_lock:
        if campaign_id in _active:
            return False
        _active.add(campaign_id)
        return True


def _release(campaign_id: str) -> None:
    with _active_lock:
        _active.discard(campaign_id)


def _is_active(campaign_id: str) -> bool:
    with _active_lock:
        return campaign_id in _active


def send_campaign(
    campaign_id: str,
    mailer: Optional[transport.MailTransport] = None,
    background: bool = True,
) -> Dict[str, Any]:
    """Move a campaign into ``sending`` and queue dispatch of pending recipients.

    Also the retry path after a provider outage: a campaign already in
    ``sending`` with no batch running here picks up where it stopped.
    """
    if not _claim(campaign_id):
        raise InvalidState("Campaign is already sending")
    try:
        status = get_campaign_status(campaign_id)
        if status is None:
            raise NotFound("Campaign not found")
        if status == SENT:
            raise InvalidState("Campaign has already been sent")
        if status == CANCELLED:
            raise InvalidState("Campaign has been cancelled")
        if status == PAUSED:
            raise InvalidState("Campaign is paused; resume it instead")
        if ledger.count_recipients(campaign_id) == 0:
            raise InvalidState("Campaign has no recipients")
        if status != SENDING and not _transition(campaign_id, (DRAFT, SCHEDULED), SENDING):
            raise InvalidState("Campaign changed state while starting send")
    except Exception:
        _release(campaign_id)
        raise

    emit_log(campaign_id, "send.started", "Send started", {"retry": status == SENDING})
    logger.info("send started", extra={"campaign_id": campaign_id})
    _start(campaign_id, mailer, background)
    return get_campaign(campaign_id)


def _start(campaign_id: str, mailer: Optional[transport.MailTransport], background: bool) -> None:
    if background:
        # fire-and-forget thread; the pool inside bounds parallelism
        t = threading.Thread(target=_run, args=(campaign_id, mailer), daemon=True)
        t.start()
    else:
        _run(campaign_id, mailer)


def _run(campaign_id: str, mailer: Optional[transport.MailTransport]) -> None:
    while True:
        halted = False
        try:
            mailer = mailer or transport.get_transport()
            while True:
                summary = dispatch_pending(campaign_id, mailer)
                # a pause/resume during the batch can leave skipped recipients pending
                if summary["outcome"] != "incomplete":
                    break
            halted = summary["outcome"] == "halted"
        except TransportUnavailable as e:
            logger.warning("mail transport unavailable: %s", e.detail, extra={"campaign_id": campaign_id})
            emit_log(campaign_id, "send.outage", "Mail transport unavailable; send again to retry", {"error": e.detail})
        except Exception as e:
            logger.exception("dispatch crashed", extra={"campaign_id": campaign_id})
            emit_log(campaign_id, "send.error", "Dispatch stopped by an internal error", {"error": f"{type(e).__name__}: {e}"})
        finally:
            _release(campaign_id)

        # a resume that landed while this batch was winding down found it still claimed
        if not (
            halted
            and get_campaign_status(campaign_id) == SENDING
            and ledger.count_recipients(campaign_id, ledger.PENDING)
            and _claim(campaign_id)
        ):
            return
        logger.info("picking up resumed campaign", extra={"campaign_id": campaign_id})


_html_env = Environment(autoescape=True)
_text_env = Environment(autoescape=False)  # nosec B701: subject and plain-text bodies


@lru_cache(maxsize=256)
def _template(source: str, html: bool) -> Template:
    env = _html_env if html else _text_env
    try:
        return env.from_string(source)
    except TemplateSyntaxError as e:
        raise ValidationError(f"Invalid template: {e.message}") from None


def render(template: Optional[str], recipient: Dict[str, Any], html: bool = False) -> str:
    """Render a subject or body for one recipient.

    Recipient fields and ``custom_data`` keys are available as variables;
    unknown names render empty. HTML bodies escape the values.
    """
    if not template:
        return ""
    values: Dict[str, Any] = dict(recipient.get("custom_data") or {})
    values.update(
        {
            "email": recipient.get("email") or "",
            "first_name": recipient.get("first_name") or "",
            "last_name": recipient.get("last_name") or "",
        }
    )
    return _template(template, html).render(values)


def build_message(campaign: Dict[str, Any], recipient: Dict[str, Any]) -> transport.OutboundMessage:
    return transport.OutboundMessage(
        to=recipient["email"],
        subject=render(campaign["subject"], recipient),
        html=render(campaign["html_content"], recipient, html=True),
        text=render(campaign["text_content"], recipient),
        from_email=campaign["from_email"] or config.MAIL_FROM,
        from_name=campaign["from_name"] or config.MAIL_FROM_NAME,
        headers={"X-Campaign-ID": campaign["id"], "X-Recipient-ID": recipient["id"]},
    )


class RateLimiter:
    """Spaces calls at least ``1/rate_per_sec`` apart across all workers."""

    def __init__(self, rate_per_sec: float):
        self.interval = 1.0 / rate_per_sec if rate_per_sec > 0 else 0.0
        self._last = 0.0
        self._lock = threading.Lock()

    def wait(self):
        if not self.interval:
            return
        with self._lock:
            elapsed = time.monotonic() - self._last
            if elapsed < self.interval:
                time.sleep(self.interval - elapsed)
            self._last = time.monotonic()


def _dispatch_one(
    campaign: Dict[str, Any],
    recipient_id: str,
    mailer: transport.MailTransport,
    limiter: RateLimiter,
    stop: threading.Event,
) -> str:
    """Send to one recipient; returns sent|failed|skipped."""
    if stop.is_set() or get_campaign_status(campaign["id"]) != SENDING:
        return "skipped"
    rec = ledger.get_recipient(recipient_id)
    if rec["status"] != ledger.PENDING:
        return "skipped"

    try:
        msg = build_message(campaign, rec)
    except Exception as e:
        logger.exception("render failed", extra={"campaign_id": campaign["id"], "recipient_id": recipient_id})
        ledger.mark_dispatched(recipient_id, False, reason=f"Render error: {type(e).__name__}: {e}", attempts=rec["attempts"])
        return "failed"
    retries = max(0, config.SEND_RETRY_ATTEMPTS)
    last_error: Optional[str] = None
    attempts = rec["attempts"]
    for attempt in range(1, retries + 2):
        if stop.is_set():
            return "skipped"
        limiter.wait()
        attempts += 1
        try:
            mid = mailer.send(msg)
        except TransportFailure as e:
            last_error = e.detail
            if attempt <= retries:
                time.sleep(config.SEND_RETRY_BACKOFF * attempt)
            continue
        except TransportUnavailable:
            raise
        except Exception as e:
            # an unexpected transport error fails this recipient only
            logger.exception("dispatch error", extra={"campaign_id": campaign["id"], "recipient_id": recipient_id})
            last_error = f"{type(e).__name__}: {e}"
            break
        ledger.mark_dispatched(recipient_id, True, attempts=attempts, message_id=mid)
        return "sent"

    ledger.mark_dispatched(recipient_id, False, reason=last_error, attempts=attempts)
    logger.info("dispatch failed: %s", last_error, extra={"campaign_id": campaign["id"], "recipient_id": recipient_id})
    return "failed"


def dispatch_pending(campaign_id: str, mailer: transport.MailTransport) -> Dict[str, Any]:
    """Run one dispatch batch over the campaign's pending recipients.

    Raises ``TransportUnavailable`` after stopping the batch on an outage.
    ``outcome`` is ``sent`` when the campaign was completed, ``halted`` when it
    left ``sending`` mid-batch and ``incomplete`` when recipients remain
    pending while still ``sending``.
    """
    campaign = get_campaign(campaign_id)
    pending = ledger.pending_recipient_ids(campaign_id)
    counts = {"sent": 0, "failed": 0, "skipped": 0}
    stop = threading.Event()
    limiter = RateLimiter(config.SEND_RATE_PER_SEC)
    outage: Optional[TransportUnavailable] = None

    with ThreadPoolExecutor(max_workers=max(1, config.SEND_CONCURRENCY)) as ex:
        futures = [ex.submit(_dispatch_one, campaign, rid, mailer, limiter, stop) for rid in pending]
        for fut in as_completed(futures):
            try:
                counts[fut.result()] += 1
            except TransportUnavailable as e:
                outage = outage or e
                stop.set()
                counts["skipped"] += 1

    if outage:
        raise outage

    summary: Dict[str, Any] = {**counts, "outcome": "halted"}
    if get_campaign_status(campaign_id) != SENDING:
        return summary
    if ledger.count_recipients(campaign_id, ledger.PENDING):
        summary["outcome"] = "incomplete"
        return summary

    if _transition(campaign_id, (SENDING,), SENT, sent_at=now_iso()):
        stats = analytics.campaign_stats(campaign_id)
        emit_log(
            campaign_id,
            "campaign.sent",
            "Campaign sent",
            {"sent": stats.sent_count, "failed": stats.failed_count, "recipients": stats.recipient_count},
        )
        logger.info(
            "campaign sent: %d sent, %d failed",
            stats.sent_count,
            stats.failed_count,
            extra={"campaign_id": campaign_id},
        )
        summary["outcome"] = "sent"
    return summary


def pause_campaign(campaign_id: str) -> Dict[str, Any]:
    status = get_campaign_status(campaign_id)
    if status is None:
        raise NotFound("Campaign not found")
    if status == PAUSED:
        return get_campaign(campaign_id)
    if not _transition(campaign_id, (SENDING,), PAUSED):
        raise InvalidState(f"Only a sending campaign can be paused (status={status})")
    emit_log(campaign_id, "campaign.paused", "Campaign paused")
    return get_campaign(campaign_id)


def resume_campaign(
    campaign_id: str,
    mailer: Optional[transport.MailTransport] = None,
    background: bool = True,
) -> Dict[str, Any]:
    status = get_campaign_status(campaign_id)
    if status is None:
        raise NotFound("Campaign not found")
    if not _transition(campaign_id, (PAUSED,), SENDING):
        raise InvalidState(f"Only a paused campaign can be resumed (status={status})")
    emit_log(campaign_id, "campaign.resumed", "Campaign resumed")
    # a batch still winding down from before the pause will pick the rest up
    if _claim(campaign_id):
        _start(campaign_id, mailer, background)
    return get_campaign(campaign_id)


def cancel_campaign(campaign_id: str) -> Dict[str, Any]:
    """Stop further dispatch. Messages already handed to the provider stay as recorded."""
    status = get_campaign_status(campaign_id)
    if status is None:
        raise NotFound("Campaign not found")
    # idempotent
    if status == CANCELLED:
        return get_campaign(campaign_id)
    if not _transition(campaign_id, CANCELLABLE, CANCELLED):
        raise InvalidState(f"Campaign can no longer be cancelled (status={get_campaign_status(campaign_id)})")
    emit_log(campaign_id, "campaign.cancelled", "Campaign cancelled", {"previous_status": status})
    logger.info("campaign cancelled", extra={"campaign_id": campaign_id})
    return get_campaign(campaign_id)


def dispatch_due_campaigns(
    now: Optional[datetime] = None,
    mailer: Optional[transport.MailTransport] = None,
    background: bool = True,
) -> List[str]:
    """Start sending every scheduled campaign whose time has come."""
    cutoff = to_iso(now or datetime.now(timezone.utc))
    conn = db()
    rows = conn.execute(
        "select id from campaigns where status=? and scheduled_at <= ? order by scheduled_at asc",
        (SCHEDULED, cutoff),
    ).fetchall()
    conn.close()

    started = []
    for r in rows:
        try:
            send_campaign(r["id"], mailer=mailer, background=background)
        except InvalidState as e:
            logger.warning("scheduled send skipped: %s", e.detail, extra={"campaign_id": r["id"]})
            emit_log(r["id"], "send.skipped", "Scheduled send skipped", {"error": e.detail})
            continue
        started.append(r["id"])
    return started


class Scheduler:
    """Background poller for scheduled campaigns."""

    def __init__(self, interval_secs: int):
        self.interval_secs = interval_secs
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self.interval_secs <= 0 or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="campaign-scheduler", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval_secs):
            try:
                dispatch_due_campaigns()
            except Exception:
                logger.exception("scheduler tick failed")
