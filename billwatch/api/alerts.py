"""
Alert API Endpoints

Business events come in here from the rest of the platform; contractors read
and resolve the alerts they produce.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from billwatch.models.requests import BusinessEventRequest, ResolveAlertRequest
from billwatch.services.auth import verify_api_key
from billwatch.services.detection import get_alert_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts"], dependencies=[Depends(verify_api_key)])


def _process_event(account_id: str, event_type: str, source_id: str) -> None:
    get_alert_engine().on_business_event(account_id, event_type, source_id)


@router.post("/events", status_code=202)
def submit_business_event(body: BusinessEventRequest, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    """Accept a business event. Detection runs after the response is sent."""
    logger.debug("Queued %s %s for %s", body.event_type, body.source_id, body.account_id)
    background_tasks.add_task(_process_event, body.account_id, body.event_type, body.source_id)
    return {"accepted": True, "event_type": body.event_type, "source_id": body.source_id}


@router.get("")
def list_alerts(account_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    alerts = get_alert_engine().list_open_alerts(account_id)
    return {"account_id": account_id, "count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@router.get("/summary")
def get_alert_summary(account_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    summary = get_alert_engine().alert_summary(account_id)
    return {"account_id": account_id, **summary.to_dict()}


@router.get("/{alert_id}")
def get_alert(alert_id: str) -> Dict[str, Any]:
    engine = get_alert_engine()
    alert = engine.get_alert(alert_id)
    return {
        "alert": alert.to_dict(),
        "events": [e.to_dict() for e in engine.list_alert_events(alert_id)],
    }


@router.post("/{alert_id}/resolve")
def resolve_alert(alert_id: str, body: ResolveAlertRequest) -> Dict[str, Any]:
    alert = get_alert_engine().resolve_alert(alert_id, body.reason, body.note)
    return {"alert": alert.to_dict()}
