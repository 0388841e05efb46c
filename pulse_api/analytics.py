"""Engagement aggregation over the recipient ledger and tracking log.

Counters count recipients, not events: three opens by one recipient add one
to ``opened_count``. Engagement implies delivery, so a recipient whose only
event is a click still counts as delivered and opened. Bounced counts both
bounce callbacks and dispatch failures. Timelines count every event.
"""

from __future__ import annotations

from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .db import db, parse_ts
from .errors import NotFound, ValidationError
from .ledger import EVENT_TYPES, STATUSES
from .nps import percent

HourBucket = namedtuple("HourBucket", ["hour", "event_type", "count"])


@dataclass(frozen=True)
class CampaignStats:
    recipient_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    bounced_count: int = 0
    failed_count: int = 0
    pending_count: int = 0

    @staticmethod
    def _ratio(part: int, total: int) -> float:
        return part / total if total else 0.0

    @property
    def delivery_rate(self) -> float:
        return self._ratio(self.delivered_count, self.recipient_count)

    @property
    def open_rate(self) -> float:
        return self._ratio(self.opened_count, self.delivered_count)

    @property
    def click_rate(self) -> float:
        return self._ratio(self.clicked_count, self.delivered_count)

    @property
    def bounce_rate(self) -> float:
        return self._ratio(self.bounced_count, self.recipient_count)

    def counts(self) -> Dict[str, int]:
        return {
            "recipient_count": self.recipient_count,
            "sent_count": self.sent_count,
            "delivered_count": self.delivered_count,
            "opened_count": self.opened_count,
            "clicked_count": self.clicked_count,
            "bounced_count": self.bounced_count,
            "failed_count": self.failed_count,
            "pending_count": self.pending_count,
        }

    def as_dict(self) -> Dict[str, Any]:
        """Counts plus rates as whole percentages, the way the dashboard prints them."""
        return {
            **self.counts(),
            "delivery_rate": percent(self.delivered_count, self.recipient_count),
            "open_rate": percent(self.opened_count, self.delivered_count),
            "click_rate": percent(self.clicked_count, self.delivered_count),
            "bounce_rate": percent(self.bounced_count, self.recipient_count),
            "rates": {
                "delivery": self.delivery_rate,
                "open": self.open_rate,
                "click": self.click_rate,
                "bounce": self.bounce_rate,
            },
        }


def _campaign_header(campaign_id: str) -> Dict[str, Any]:
    conn = db()
    row = conn.execute(
        "select id, status, created_at, sent_at from campaigns where id=?", (campaign_id,)
    ).fetchone()
    conn.close()
    if not row:
        raise NotFound("Campaign not found")
    return dict(row)


def campaign_stats(campaign_id: str) -> CampaignStats:
    _campaign_header(campaign_id)
    conn = db()
    row = conn.execute(
        """
        select
          (select count(*) from recipients where campaign_id=:c) as recipient_count,
          (select count(*) from recipients where campaign_id=:c and sent_at is not null) as sent_count,
          (select count(distinct recipient_id) from tracking_events
             where campaign_id=:c and event_type in ('delivered','opened','clicked')) as delivered_count,
          (select count(distinct recipient_id) from tracking_events
             where campaign_id=:c and event_type in ('opened','clicked')) as opened_count,
          (select count(distinct recipient_id) from tracking_events
             where campaign_id=:c and event_type='clicked') as clicked_count,
          (select count(*) from recipients where campaign_id=:c and status in ('bounced','failed')) as bounced_count,
          (select count(*) from recipients where campaign_id=:c and status='failed') as failed_count,
          (select count(*) from recipients where campaign_id=:c and status='pending') as pending_count
        """,
        {"c": campaign_id},
    ).fetchone()
    conn.close()
    return CampaignStats(**dict(row))


def hour_of(ts: str | datetime) -> datetime:
    return parse_ts(ts).replace(minute=0, second=0, microsecond=0)


class HourlySeries:
    """Hour-bucketed event counts, ascending by hour then event type.

    Each iteration runs a fresh query and streams rows, so the series can be
    walked more than once and always reflects the log at the time of reading.
    Hours without events are absent.
    """

    def __init__(self, campaign_id: str, event_type: Optional[str] = None):
        if event_type is not None and event_type not in EVENT_TYPES:
            raise ValidationError(f"Invalid event_type: {event_type}")
        self.campaign_id = campaign_id
        self.event_type = event_type

    def __iter__(self) -> Iterator[HourBucket]:
        sql = "select event_type, occurred_at from tracking_events where campaign_id=?"
        params: List[Any] = [self.campaign_id]
        if self.event_type:
            sql += " and event_type=?"
            params.append(self.event_type)
        sql += " order by occurred_at asc"

        conn = db()
        try:
            current: Optional[datetime] = None
            counts: Dict[str, int] = {}
            for row in conn.execute(sql, tuple(params)):
                hour = hour_of(row["occurred_at"])
                if hour != current:
                    if current is not None:
                        yield from _flush(current, counts)
                    current = hour
                    counts = {}
                counts[row["event_type"]] = counts.get(row["event_type"], 0) + 1
            if current is not None:
                yield from _flush(current, counts)
        finally:
            conn.close()


def _flush(hour: datetime, counts: Dict[str, int]) -> Iterator[HourBucket]:
    for et in EVENT_TYPES:
        if counts.get(et):
            yield HourBucket(hour, et, counts[et])


def hourly_series(campaign_id: str, event_type: Optional[str] = None) -> HourlySeries:
    _campaign_header(campaign_id)
    return HourlySeries(campaign_id, event_type)


def dense_series(
    points: Iterable[HourBucket],
    start: datetime,
    end: datetime,
    event_type: Optional[str] = None,
) -> List[HourBucket]:
    """Zero-fill a single-type series over ``[start, end]`` hour by hour.

    With ``event_type`` only points of that type are kept; without it the
    type is taken from the first point.
    """
    by_hour: Dict[datetime, int] = {}
    for p in points:
        if event_type is None:
            event_type = p.event_type
        elif p.event_type != event_type:
            continue
        by_hour[p.hour] = by_hour.get(p.hour, 0) + p.count
    hour = hour_of(start)
    last = hour_of(end)
    out = []
    while hour <= last:
        out.append(HourBucket(hour, event_type, by_hour.get(hour, 0)))
        hour += timedelta(hours=1)
    return out


def tracking_timeline(campaign_id: str) -> List[Dict[str, Any]]:
    return [
        {"hour": b.hour.isoformat(), "event_type": b.event_type, "count": b.count}
        for b in hourly_series(campaign_id)
    ]


def status_breakdown(campaign_id: str) -> List[Dict[str, Any]]:
    _campaign_header(campaign_id)
    conn = db()
    rows = conn.execute(
        "select status, count(*) as c from recipients where campaign_id=? group by status",
        (campaign_id,),
    ).fetchall()
    conn.close()
    counts = {r["status"]: r["c"] for r in rows}
    return [{"status": s, "count": counts[s]} for s in STATUSES if counts.get(s)]


def campaign_analytics(campaign_id: str) -> Dict[str, Any]:
    header = _campaign_header(campaign_id)
    stats = campaign_stats(campaign_id)
    return {
        "campaign": {
            "id": header["id"],
            "status": header["status"],
            "created_at": header["created_at"],
            "sent_at": header["sent_at"],
            **stats.as_dict(),
        },
        "tracking_events": tracking_timeline(campaign_id),
        "status_breakdown": status_breakdown(campaign_id),
    }
