from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

from . import config
from .errors import ValidationError


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    """UTC ISO-8601 with a fixed width, so stored strings sort by time."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Optional[str | datetime]) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        if not value:
            raise ValidationError("Missing timestamp")
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def db() -> sqlite3.Connection:
    # dispatch workers and webhook callbacks write concurrently
    conn = sqlite3.connect(config.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("pragma foreign_keys = on")
    return conn


def init_db():
    conn = db()
    conn.executescript(
        """
        pragma journal_mode = wal;

        create table if not exists surveys (
          id text primary key,
          title text not null,
          description text,
          is_active integer not null default 1,
          created_at text,
          updated_at text
        );

        create table if not exists survey_responses (
          id text primary key,
          survey_id text not null references surveys(id) on delete cascade,
          score integer not null check (score between 0 and 10),
          feedback text,
          email text,
          created_at text
        );
        create index if not exists ix_survey_responses_survey on survey_responses(survey_id, created_at);

        create table if not exists campaigns (
          id text primary key,
          name text not null,
          subject text not null,
          html_content text,
          text_content text,
          from_email text,
          from_name text,
          status text not null,
          scheduled_at text,
          sent_at text,
          created_at text,
          updated_at text
        );

        create table if not exists recipients (
          id text primary key,
          campaign_id text not null references campaigns(id) on delete cascade,
          email text not null,
          first_name text,
          last_name text,
          custom_data_json text,
          status text not null default 'pending',
          sent_at text,
          opened_at text,
          clicked_at text,
          bounce_reason text,
          attempts integer not null default 0,
          provider_message_id text,
          created_at text,
          updated_at text,
          unique (campaign_id, email)
        );
        create index if not exists ix_recipients_campaign_status on recipients(campaign_id, status);
        create index if not exists ix_recipients_message_id on recipients(provider_message_id);

        create table if not exists tracking_events (
          id text primary key,
          recipient_id text not null references recipients(id) on delete cascade,
          campaign_id text not null references campaigns(id) on delete cascade,
          event_type text not null,
          occurred_at text not null,
          provider_event_id text,
          payload_json text,
          received_at text
        );
        create index if not exists ix_tracking_events_campaign on tracking_events(campaign_id, occurred_at);
        create index if not exists ix_tracking_events_recipient on tracking_events(recipient_id);
        create unique index if not exists ux_tracking_events_provider on tracking_events(recipient_id, provider_event_id)
          where provider_event_id is not null;

        create table if not exists campaign_log (
          id text primary key,
          campaign_id text not null references campaigns(id) on delete cascade,
          time text,
          type text,
          message text,
          payload_json text
        );
        create index if not exists ix_campaign_log_campaign on campaign_log(campaign_id, time);
        """
    )
    conn.commit()
    conn.close()
