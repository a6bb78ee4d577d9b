from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from sensorbridge.db.models import AlertEvent
from sensorbridge.db.session import get_db
from sensorbridge.dependencies import get_alert_manager
from sensorbridge.schemas.alerts import (
    AlertEventPageResponse,
    AlertEventPatchRequest,
    AlertEventResponse,
    AlertEventStatus,
    AlertTransitionRequest,
)
from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
from sensorbridge.services.errors import InvalidTransition, NotFound


router = APIRouter(prefix="/api/alerts", tags=["alerts"])


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": exc.detail, "current_status": exc.current_status},
        )
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/events", response_model=AlertEventPageResponse)
def list_events_endpoint(
    rule_id: int | None = Query(default=None, ge=1),
    status_filter: AlertEventStatus | None = Query(default=None, alias="status"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> AlertEventPageResponse:
    try:
        items, total = manager.list_events(
            db,
            rule_id=rule_id,
            status=status_filter,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
    except ValueError as exc:
        _raise_for(exc)
    return AlertEventPageResponse(
        items=[AlertEventResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=min(limit, manager.page_limit_max),
    )


@router.get("/events/open", response_model=list[AlertEventResponse])
def list_open_events_endpoint(
    channel_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> list[AlertEvent]:
    return manager.list_open_events(db, channel_id=channel_id)


@router.get("/events/{event_id}", response_model=AlertEventResponse)
def get_event_endpoint(
    event_id: int,
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> AlertEvent:
    try:
        return manager.get(db, event_id)
    except NotFound as exc:
        _raise_for(exc)


@router.post("/events/{event_id}/acknowledge", response_model=AlertEventResponse)
def acknowledge_event_endpoint(
    event_id: int,
    payload: AlertTransitionRequest,
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> AlertEvent:
    try:
        return manager.acknowledge(db, event_id, by=payload.by, note=payload.note)
    except (NotFound, InvalidTransition) as exc:
        _raise_for(exc)


@router.post("/events/{event_id}/clear", response_model=AlertEventResponse)
def clear_event_endpoint(
    event_id: int,
    payload: AlertTransitionRequest,
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> AlertEvent:
    try:
        return manager.clear(db, event_id, by=payload.by, note=payload.note)
    except (NotFound, InvalidTransition) as exc:
        _raise_for(exc)


@router.patch("/events/{event_id}", response_model=AlertEventResponse)
def patch_event_endpoint(
    event_id: int,
    payload: AlertEventPatchRequest,
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> AlertEvent:
    try:
        return manager.update(db, event_id, payload.changes())
    except (NotFound, InvalidTransition, ValueError) as exc:
        _raise_for(exc)


@router.delete("/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_event_endpoint(
    event_id: int,
    db: Session = Depends(get_db),
    manager: AlertLifecycleManager = Depends(get_alert_manager),
) -> Response:
    try:
        manager.remove(db, event_id)
    except NotFound as exc:
        _raise_for(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
