from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sensorbridge.api.alerts import router as alerts_router
from sensorbridge.api.catalog import router as catalog_router
from sensorbridge.api.mappings import router as mappings_router
from sensorbridge.core.config import Settings, get_settings
from sensorbridge.core.logging import configure_logging
from sensorbridge.db.models import AlertEvent, DeviceProfile
from sensorbridge.db.session import SessionLocal, check_db_connection, get_db
from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
from sensorbridge.services.mapping_editor import MappingEditorService
from sensorbridge.services.telemetry_ingest import TelemetryIngestService


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    alert_manager = AlertLifecycleManager(settings=settings)
    mapping_editor_service = MappingEditorService(settings=settings)
    ingest_service = TelemetryIngestService(
        settings=settings,
        session_factory=SessionLocal,
        alert_manager=alert_manager,
    )

    app.state.settings = settings
    app.state.alert_manager = alert_manager
    app.state.mapping_editor_service = mapping_editor_service
    app.state.ingest_service = ingest_service
    try:
        yield
    finally:
        ingest_service.close()


app = FastAPI(title="SensorBridge Backend", lifespan=lifespan)
app.include_router(mappings_router)
app.include_router(catalog_router)
app.include_router(alerts_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "sensorbridge"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    counts: dict[str, object] = {"profiles": None, "open_alert_events": None}
    if db_ok:
        counts["profiles"] = db.scalar(select(func.count(DeviceProfile.id)))
        counts["open_alert_events"] = db.scalar(
            select(func.count(AlertEvent.id)).where(AlertEvent.status == "open")
        )

    return {
        "status": "working" if db_ok else "degraded",
        "service": "sensorbridge",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "counts": counts,
        "services": {
            "alert_manager": getattr(request.app.state, "alert_manager", None) is not None,
            "mapping_editor": getattr(request.app.state, "mapping_editor_service", None) is not None,
            "ingest": getattr(request.app.state, "ingest_service", None) is not None,
        },
        "config": {
            "ingestion_source": settings.ingestion_source if settings else None,
            "ingest_workers": settings.ingest_workers if settings else None,
            "channel_workers": settings.channel_workers if settings else None,
            "formula_timeout_ms": settings.formula_timeout_ms if settings else None,
            "sample_window_size": settings.sample_window_size if settings else None,
            "alert_event_mode": settings.alert_event_mode if settings else None,
        },
    }
