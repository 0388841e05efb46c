"""Recipient ledger: per-recipient status plus the append-only tracking log.

Recipient status is a join-semilattice. Engagement states are ordered
``pending < sent < delivered < opened < clicked`` and combine by ``max``;
``bounced`` and ``failed`` are absorbing. Every writer (dispatch workers and
provider callbacks) goes through :func:`join_status` under a per-recipient
lock, so callbacks may arrive in any order without status ever moving back.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from email_validator import EmailNotValidError, validate_email

from .db import db, new_id, now_iso, parse_ts, to_iso
from .errors import InvalidState, NotFound, ValidationError

logger = logging.getLogger("pulse.ledger")

PENDING = "pending"
SENT = "sent"
DELIVERED = "delivered"
OPENED = "opened"
CLICKED = "clicked"
BOUNCED = "bounced"
FAILED = "failed"

STATUSES = (PENDING, SENT, DELIVERED, OPENED, CLICKED, BOUNCED, FAILED)
RANK = {PENDING: 0, SENT: 1, DELIVERED: 2, OPENED: 3, CLICKED: 4}
ABSORBING = {BOUNCED, FAILED}

EVENT_TYPES = (DELIVERED, OPENED, CLICKED, BOUNCED)
# a second delivered/bounced callback is a provider retry, not a new occurrence
ONCE_PER_RECIPIENT = {DELIVERED, BOUNCED}

# campaign states in which nothing has been dispatched yet
_UNDISPATCHED = {"draft", "scheduled"}

_LOCK_STRIPES = 64
_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]


def _recipient_lock(recipient_id: str) -> threading.Lock:
    return _locks[hash(recipient_id) % _LOCK_STRIPES]


def join_status(current: str, incoming: str) -> str:
    if current in ABSORBING:
        return current
    if incoming == BOUNCED:
        return BOUNCED
    if incoming == FAILED:
        # dispatch failure only counts before the provider confirmed delivery
        return FAILED if RANK[current] < RANK[DELIVERED] else current
    return incoming if RANK[incoming] > RANK[current] else current


def normalize_email(email: Optional[str]) -> str:
    email = (email or "").strip()
    if not email:
        raise ValidationError("Recipient email is required")
    try:
        info = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email {email!r}: {e}") from None
    return info.normalized.lower()


def _recipient_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "campaign_id": r["campaign_id"],
        "email": r["email"],
        "first_name": r["first_name"],
        "last_name": r["last_name"],
        "custom_data": json.loads(r["custom_data_json"] or "{}"),
        "status": r["status"],
        "sent_at": r["sent_at"],
        "opened_at": r["opened_at"],
        "clicked_at": r["clicked_at"],
        "bounce_reason": r["bounce_reason"],
        "attempts": r["attempts"],
        "provider_message_id": r["provider_message_id"],
        "created_at": r["created_at"],
        "updated_at": r["updated_at"],
    }


def _event_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "recipient_id": r["recipient_id"],
        "campaign_id": r["campaign_id"],
        "event_type": r["event_type"],
        "occurred_at": r["occurred_at"],
        "provider_event_id": r["provider_event_id"],
        "payload": json.loads(r["payload_json"] or "{}"),
        "received_at": r["received_at"],
    }


def add_recipients(campaign_id: str, recipients: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Add recipients to a draft campaign.

    E-mails are normalised and de-duplicated against the batch and the
    campaign's existing recipients; the first occurrence wins. Any invalid
    address rejects the whole batch.
    """
    staged: List[Dict[str, Any]] = []
    seen = set()
    duplicates: List[str] = []
    for rec in recipients:
        email = normalize_email(rec.get("email"))
        if email in seen:
            duplicates.append(email)
            continue
        seen.add(email)
        staged.append(
            {
                "email": email,
                "first_name": (rec.get("first_name") or "").strip() or None,
                "last_name": (rec.get("last_name") or "").strip() or None,
                "custom_data": rec.get("custom_data") or {},
            }
        )

    conn = db()
    try:
        # take the write lock before the status check so a concurrent send cannot slip in between
        conn.execute("begin immediate")
        row = conn.execute("select status from campaigns where id=?", (campaign_id,)).fetchone()
        if not row:
            raise NotFound("Campaign not found")
        if row["status"] != "draft":
            raise InvalidState(f"Recipients can only be added to a draft campaign (status={row['status']})")

        existing = {
            r["email"] for r in conn.execute("select email from recipients where campaign_id=?", (campaign_id,)).fetchall()
        }
        added = []
        created = now_iso()
        for rec in staged:
            if rec["email"] in existing:
                duplicates.append(rec["email"])
                continue
            rid = new_id("rc")
            conn.execute(
                "insert into recipients (id,campaign_id,email,first_name,last_name,custom_data_json,status,created_at,updated_at) values (?,?,?,?,?,?,?,?,?)",
                (
                    rid,
                    campaign_id,
                    rec["email"],
                    rec["first_name"],
                    rec["last_name"],
                    json.dumps(rec["custom_data"]),
                    PENDING,
                    created,
                    created,
                ),
            )
            existing.add(rec["email"])
            added.append(rid)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    if duplicates:
        logger.info("dropped %d duplicate recipients", len(duplicates), extra={"campaign_id": campaign_id})
    return {"added": len(added), "duplicates": duplicates, "recipient_ids": added}


def get_recipient(recipient_id: str) -> Dict[str, Any]:
    conn = db()
    row = conn.execute("select * from recipients where id=?", (recipient_id,)).fetchone()
    conn.close()
    if not row:
        raise NotFound("Recipient not found")
    return _recipient_row(row)


def recipient_status(recipient_id: str) -> str:
    return get_recipient(recipient_id)["status"]


def find_recipient(campaign_id: str, email: str) -> Dict[str, Any]:
    try:
        email = normalize_email(email)
    except ValidationError:
        raise NotFound("Recipient not found") from None
    conn = db()
    row = conn.execute(
        "select * from recipients where campaign_id=? and email=?", (campaign_id, email)
    ).fetchone()
    conn.close()
    if not row:
        raise NotFound("Recipient not found")
    return _recipient_row(row)


def find_recipient_by_message_id(message_id: str) -> Dict[str, Any]:
    conn = db()
    row = conn.execute("select * from recipients where provider_message_id=?", (message_id,)).fetchone()
    conn.close()
    if not row:
        raise NotFound("Recipient not found")
    return _recipient_row(row)


def list_recipients(campaign_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "select * from recipients where campaign_id=?"
    params: List[Any] = [campaign_id]
    if status:
        sql += " and status=?"
        params.append(status)
    sql += " order by created_at asc, rowid asc"
    conn = db()
    rows = conn.execute(sql, tuple(params)).fetchall()
    conn.close()
    return [_recipient_row(r) for r in rows]


def pending_recipient_ids(campaign_id: str) -> List[str]:
    conn = db()
    rows = conn.execute(
        "select id from recipients where campaign_id=? and status=? order by created_at asc, rowid asc",
        (campaign_id, PENDING),
    ).fetchall()
    conn.close()
    return [r["id"] for r in rows]


def count_recipients(campaign_id: str, status: Optional[str] = None) -> int:
    conn = db()
    if status:
        row = conn.execute(
            "select count(*) as c from recipients where campaign_id=? and status=?", (campaign_id, status)
        ).fetchone()
    else:
        row = conn.execute("select count(*) as c from recipients where campaign_id=?", (campaign_id,)).fetchone()
    conn.close()
    return row["c"]


def list_events(recipient_id: str) -> List[Dict[str, Any]]:
    get_recipient(recipient_id)
    conn = db()
    rows = conn.execute(
        "select * from tracking_events where recipient_id=? order by occurred_at asc, rowid asc",
        (recipient_id,),
    ).fetchall()
    conn.close()
    return [_event_row(r) for r in rows]


def _earliest(existing: Optional[str], ts: str) -> str:
    return ts if not existing or ts < existing else existing


def mark_dispatched(
    recipient_id: str,
    ok: bool,
    reason: Optional[str] = None,
    attempts: int = 0,
    message_id: Optional[str] = None,
) -> str:
    """Record the outcome of a dispatch attempt; returns the resulting status."""
    with _recipient_lock(recipient_id):
        conn = db()
        try:
            row = conn.execute("select * from recipients where id=?", (recipient_id,)).fetchone()
            if not row:
                raise NotFound("Recipient not found")
            new_status = join_status(row["status"], SENT if ok else FAILED)
            sent_at = row["sent_at"]
            if ok and not sent_at:
                sent_at = now_iso()
            bounce_reason = row["bounce_reason"]
            if new_status == FAILED and not bounce_reason:
                bounce_reason = reason
            conn.execute(
                "update recipients set status=?, sent_at=?, bounce_reason=?, attempts=?, provider_message_id=coalesce(?, provider_message_id), updated_at=? where id=?",
                (new_status, sent_at, bounce_reason, attempts, message_id, now_iso(), recipient_id),
            )
            conn.commit()
        finally:
            conn.close()
    return new_status


def record_event(
    recipient_id: str,
    event_type: str,
    occurred_at: Optional[str | datetime] = None,
    payload: Optional[Dict[str, Any]] = None,
    provider_event_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Append a tracking event and advance the recipient's status.

    Returns the recipient snapshot, the stored event (or ``None`` when the
    callback was a replay) and whether it was recorded.
    """
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Invalid event_type: {event_type}")
    ts = to_iso(parse_ts(occurred_at)) if occurred_at else now_iso()
    payload = payload or {}

    with _recipient_lock(recipient_id):
        conn = db()
        try:
            conn.execute("begin immediate")
            row = conn.execute(
                "select r.*, c.status as campaign_status from recipients r join campaigns c on c.id = r.campaign_id where r.id=?",
                (recipient_id,),
            ).fetchone()
            if not row:
                raise NotFound("Recipient not found")
            if row["campaign_status"] in _UNDISPATCHED:
                raise InvalidState(f"Campaign has not been sent (status={row['campaign_status']})")

            duplicate = False
            if provider_event_id:
                duplicate = (
                    conn.execute(
                        "select 1 from tracking_events where recipient_id=? and provider_event_id=?",
                        (recipient_id, provider_event_id),
                    ).fetchone()
                    is not None
                )
            if not duplicate and event_type in ONCE_PER_RECIPIENT:
                duplicate = (
                    conn.execute(
                        "select 1 from tracking_events where recipient_id=? and event_type=?",
                        (recipient_id, event_type),
                    ).fetchone()
                    is not None
                )
            if duplicate:
                conn.rollback()
                return {"recipient": _recipient_row(row), "event": None, "recorded": False}

            eid = new_id("te")
            conn.execute(
                "insert into tracking_events (id,recipient_id,campaign_id,event_type,occurred_at,provider_event_id,payload_json,received_at) values (?,?,?,?,?,?,?,?)",
                (eid, recipient_id, row["campaign_id"], event_type, ts, provider_event_id, json.dumps(payload), now_iso()),
            )

            new_status = join_status(row["status"], event_type)
            opened_at = row["opened_at"]
            clicked_at = row["clicked_at"]
            bounce_reason = row["bounce_reason"]
            if event_type == OPENED:
                opened_at = _earliest(opened_at, ts)
            elif event_type == CLICKED:
                clicked_at = _earliest(clicked_at, ts)
            elif event_type == BOUNCED and new_status == BOUNCED and not bounce_reason:
                bounce_reason = payload.get("reason") or payload.get("bounce_reason") or "bounced"

            conn.execute(
                "update recipients set status=?, opened_at=?, clicked_at=?, bounce_reason=?, updated_at=? where id=?",
                (new_status, opened_at, clicked_at, bounce_reason, now_iso(), recipient_id),
            )
            conn.commit()
            if new_status != row["status"]:
                logger.debug(
                    "recipient %s -> %s",
                    row["status"],
                    new_status,
                    extra={"campaign_id": row["campaign_id"], "recipient_id": recipient_id},
                )
            ev = conn.execute("select * from tracking_events where id=?", (eid,)).fetchone()
            rec = conn.execute("select * from recipients where id=?", (recipient_id,)).fetchone()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    return {"recipient": _recipient_row(rec), "event": _event_row(ev), "recorded": True}


def record_event_for_email(campaign_id: str, email: str, event_type: str, **kwargs: Any) -> Dict[str, Any]:
    """``record_event`` for providers that only echo back the address."""
    return record_event(find_recipient(campaign_id, email)["id"], event_type, **kwargs)
