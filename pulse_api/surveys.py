from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email

from . import nps
from .db import db, new_id, now_iso
from .errors import InvalidState, NotFound, ValidationError

logger = logging.getLogger("pulse.surveys")


def _survey_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "title": r["title"],
        "description": r["description"],
        "is_active": bool(r["is_active"]),
        "created_at": r["created_at"],
        "updated_at": r["updated_at"],
    }


def _response_row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "survey_id": r["survey_id"],
        "score": r["score"],
        "feedback": r["feedback"],
        "email": r["email"],
        "created_at": r["created_at"],
    }


def create_survey(title: str, description: Optional[str] = None) -> Dict[str, Any]:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Survey title is required")
    sid = new_id("sv")
    created = now_iso()
    conn = db()
    conn.execute(
        "insert into surveys (id,title,description,is_active,created_at,updated_at) values (?,?,?,?,?,?)",
        (sid, title, (description or "").strip() or None, 1, created, created),
    )
    conn.commit()
    conn.close()
    logger.info("survey created %s", sid)
    return get_survey(sid)


def get_survey(survey_id: str) -> Dict[str, Any]:
    conn = db()
    row = conn.execute("select * from surveys where id=?", (survey_id,)).fetchone()
    conn.close()
    if not row:
        raise NotFound("Survey not found")
    return _survey_row(row)


def list_surveys() -> List[Dict[str, Any]]:
    conn = db()
    rows = conn.execute("select * from surveys order by created_at desc, id desc").fetchall()
    conn.close()
    return [_survey_row(r) for r in rows]


def set_survey_active(survey_id: str, is_active: bool) -> Dict[str, Any]:
    get_survey(survey_id)
    conn = db()
    conn.execute(
        "update surveys set is_active=?, updated_at=? where id=?",
        (1 if is_active else 0, now_iso(), survey_id),
    )
    conn.commit()
    conn.close()
    return get_survey(survey_id)


def _check_score(score: Any) -> int:
    # bool is an int subclass; a JSON true must not count as a 1
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Score must be an integer between 0 and 10")
    if score < nps.MIN_SCORE or score > nps.MAX_SCORE:
        raise ValidationError("Score must be an integer between 0 and 10")
    return score


def submit_response(
    survey_id: str,
    score: Any,
    feedback: Optional[str] = None,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    score = _check_score(score)
    survey = get_survey(survey_id)
    if not survey["is_active"]:
        raise InvalidState("Survey is not accepting responses")

    email = (email or "").strip() or None
    if email:
        try:
            email = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ValidationError(f"Invalid email: {e}") from None

    rid = new_id("rs")
    conn = db()
    conn.execute(
        "insert into survey_responses (id,survey_id,score,feedback,email,created_at) values (?,?,?,?,?,?)",
        (rid, survey_id, score, (feedback or "").strip() or None, email, now_iso()),
    )
    conn.commit()
    row = conn.execute("select * from survey_responses where id=?", (rid,)).fetchone()
    conn.close()
    return _response_row(row)


def list_responses(survey_id: str, limit: int = 500) -> List[Dict[str, Any]]:
    get_survey(survey_id)
    limit = max(1, min(int(limit or 500), 5000))
    conn = db()
    rows = conn.execute(
        "select * from survey_responses where survey_id=? order by created_at desc, id desc limit ?",
        (survey_id, limit),
    ).fetchall()
    conn.close()
    return [_response_row(r) for r in rows]


def survey_summary(survey_id: str) -> nps.NpsSummary:
    get_survey(survey_id)
    conn = db()
    rows = conn.execute("select score from survey_responses where survey_id=?", (survey_id,)).fetchall()
    conn.close()
    return nps.summarize(r["score"] for r in rows)


def survey_analytics(survey_id: str) -> Dict[str, Any]:
    return survey_summary(survey_id).as_dict()
