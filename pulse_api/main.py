from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from . import analytics, campaigns, config, ledger, surveys
from .db import init_db, now_iso
from .errors import PulseError, ValidationError
from .obs import configure_logging

SERVICE_NAME = "Pulse NPS & Campaign API"

security = HTTPBearer(auto_error=False)


def auth(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if not creds or not creds.credentials or creds.credentials != config.API_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")


class SurveyCreate(BaseModel):
    title: str
    description: Optional[str] = None


class SurveyPatch(BaseModel):
    is_active: bool


class SurveyResponseCreate(BaseModel):
    # checked by the survey store, so a bad score is a 400 like every other validation error
    score: Any
    feedback: Optional[str] = None
    email: Optional[str] = None


class RecipientIn(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    custom_data: Optional[Dict[str, Any]] = None


class CampaignCreate(BaseModel):
    name: str
    subject: str
    html_content: Optional[str] = None
    text_content: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    recipients: List[RecipientIn] = []
    scheduled_at: Optional[str] = None


class RecipientsAdd(BaseModel):
    recipients: List[RecipientIn]


class ScheduleBody(BaseModel):
    scheduled_at: str


class TrackingEventIn(BaseModel):
    event_type: str  # delivered|opened|clicked|bounced
    recipient_id: Optional[str] = None
    message_id: Optional[str] = None
    campaign_id: Optional[str] = None
    email: Optional[str] = None
    timestamp: Optional[str] = None
    provider_event_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


app = FastAPI(title=SERVICE_NAME)

_allow_origins = [o.strip() for o in (config.CORS_ALLOW_ORIGINS or "").split(",") if o.strip()]
if not _allow_origins:
    _allow_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["Content-Type", "X-Next-Cursor"],
)

scheduler = campaigns.Scheduler(config.SCHEDULER_INTERVAL_SECS)


@app.exception_handler(PulseError)
async def _pulse_error(request: Request, exc: PulseError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
def _startup():
    configure_logging(config.LOG_LEVEL)
    init_db()
    scheduler.start()


@app.on_event("shutdown")
def _shutdown():
    scheduler.stop()


@app.get("/api/health")
def health_root():
    return {
        "ok": True,
        "service": SERVICE_NAME,
        "mail_transport": config.MAIL_TRANSPORT,
        "time": now_iso(),
    }


# ---- Surveys ----


@app.get("/api/surveys", dependencies=[Depends(auth)])
def list_surveys():
    return surveys.list_surveys()


@app.post("/api/surveys", status_code=201, dependencies=[Depends(auth)])
def create_survey(body: SurveyCreate):
    return surveys.create_survey(body.title, body.description)


@app.get("/api/surveys/{survey_id}")
def get_survey(survey_id: str):
    # public: the respondent page needs the title and active flag
    return surveys.get_survey(survey_id)


@app.patch("/api/surveys/{survey_id}", dependencies=[Depends(auth)])
def patch_survey(survey_id: str, body: SurveyPatch):
    return surveys.set_survey_active(survey_id, body.is_active)


@app.get("/api/surveys/{survey_id}/responses", dependencies=[Depends(auth)])
def list_survey_responses(survey_id: str, limit: int = 500):
    return surveys.list_responses(survey_id, limit=limit)


@app.post("/api/surveys/{survey_id}/responses", status_code=201)
def submit_survey_response(survey_id: str, body: SurveyResponseCreate):
    return surveys.submit_response(survey_id, body.score, body.feedback, body.email)


@app.get("/api/surveys/{survey_id}/analytics", dependencies=[Depends(auth)])
def survey_analytics(survey_id: str):
    return surveys.survey_analytics(survey_id)


# ---- Campaigns ----


@app.get("/api/campaigns", dependencies=[Depends(auth)])
def list_campaigns(response: Response, limit: int = 50, cursor: Optional[str] = None, status: Optional[str] = None):
    # the dashboard expects a bare array; the next page cursor travels in a header
    page = campaigns.list_campaigns(limit=limit, cursor=cursor, status=status)
    if page["nextCursor"]:
        response.headers["X-Next-Cursor"] = page["nextCursor"]
    return page["items"]


@app.post("/api/campaigns", status_code=201, dependencies=[Depends(auth)])
def create_campaign(body: CampaignCreate):
    return campaigns.create_campaign(
        body.name,
        body.subject,
        html_content=body.html_content,
        text_content=body.text_content,
        from_email=body.from_email,
        from_name=body.from_name,
        recipients=[r.model_dump() for r in body.recipients],
        scheduled_at=body.scheduled_at,
    )


@app.get("/api/campaigns/{campaign_id}", dependencies=[Depends(auth)])
def get_campaign(campaign_id: str):
    return campaigns.get_campaign(campaign_id, with_recipients=True)


@app.delete("/api/campaigns/{campaign_id}", dependencies=[Depends(auth)])
def delete_campaign(campaign_id: str):
    campaigns.delete_campaign(campaign_id)
    return {"message": "Campaign deleted"}


@app.post("/api/campaigns/{campaign_id}/recipients", dependencies=[Depends(auth)])
def add_recipients(campaign_id: str, body: RecipientsAdd):
    return campaigns.add_recipients(campaign_id, [r.model_dump() for r in body.recipients])


@app.get("/api/campaigns/{campaign_id}/recipients", dependencies=[Depends(auth)])
def list_recipients(campaign_id: str, status: Optional[str] = None):
    campaigns.get_campaign(campaign_id)
    if status and status not in ledger.STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    return {"recipients": ledger.list_recipients(campaign_id, status=status)}


@app.post("/api/campaigns/{campaign_id}/schedule", dependencies=[Depends(auth)])
def schedule_campaign(campaign_id: str, body: ScheduleBody):
    return campaigns.schedule_campaign(campaign_id, body.scheduled_at)


@app.post("/api/campaigns/{campaign_id}/send", status_code=202, dependencies=[Depends(auth)])
def send_campaign(campaign_id: str):
    # returns once dispatch is queued; progress shows up in /log and /analytics
    return campaigns.send_campaign(campaign_id)


@app.post("/api/campaigns/{campaign_id}/pause", dependencies=[Depends(auth)])
def pause_campaign(campaign_id: str):
    return campaigns.pause_campaign(campaign_id)


@app.post("/api/campaigns/{campaign_id}/resume", dependencies=[Depends(auth)])
def resume_campaign(campaign_id: str):
    return campaigns.resume_campaign(campaign_id)


@app.post("/api/campaigns/{campaign_id}/cancel", dependencies=[Depends(auth)])
def cancel_campaign(campaign_id: str):
    return campaigns.cancel_campaign(campaign_id)


@app.get("/api/campaigns/{campaign_id}/analytics", dependencies=[Depends(auth)])
def campaign_analytics(campaign_id: str):
    return analytics.campaign_analytics(campaign_id)


@app.get("/api/campaigns/{campaign_id}/log", dependencies=[Depends(auth)])
def poll_log(campaign_id: str, cursor: Optional[str] = None, limit: int = 200):
    return campaigns.list_log(campaign_id, cursor=cursor, limit=limit)


@app.get("/api/campaigns/{campaign_id}/log/stream")
def stream_log(campaign_id: str, creds: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    # SSE auth manually
    if not creds or creds.credentials != config.API_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")
    campaigns.get_campaign(campaign_id)

    async def gen():
        last = 0
        while True:
            for rowid, entry in campaigns.log_since(campaign_id, last):
                last = rowid
                yield {"event": entry["type"], "id": entry["id"], "data": json.dumps(entry)}
            await asyncio.sleep(1)

    return EventSourceResponse(gen())


# ---- Recipients & tracking ----


@app.get("/api/recipients/{recipient_id}", dependencies=[Depends(auth)])
def get_recipient(recipient_id: str):
    return ledger.get_recipient(recipient_id)


@app.get("/api/recipients/{recipient_id}/events", dependencies=[Depends(auth)])
def list_recipient_events(recipient_id: str):
    return {"events": ledger.list_events(recipient_id)}


@app.post("/api/tracking/events", dependencies=[Depends(auth)])
def record_tracking_event(body: TrackingEventIn):
    """Provider callback.

    The recipient is resolved by ``recipient_id``, then by the provider
    ``message_id`` returned at dispatch, then by ``campaign_id`` + ``email``.
    Replays are accepted and reported with ``recorded=false``.
    """
    kwargs = {"occurred_at": body.timestamp, "payload": body.payload, "provider_event_id": body.provider_event_id}
    if body.recipient_id:
        return ledger.record_event(body.recipient_id, body.event_type, **kwargs)
    if body.message_id:
        recipient_id = ledger.find_recipient_by_message_id(body.message_id)["id"]
        return ledger.record_event(recipient_id, body.event_type, **kwargs)
    if body.campaign_id and body.email:
        return ledger.record_event_for_email(body.campaign_id, body.email, body.event_type, **kwargs)
    raise ValidationError("Provide recipient_id, message_id, or campaign_id and email")
