from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
    from sensorbridge.services.mapping_editor import MappingEditorService


def get_mapping_editor_service(request: Request) -> "MappingEditorService":
    service = getattr(request.app.state, "mapping_editor_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Mapping editor service is not initialized")
    return service


def get_alert_manager(request: Request) -> "AlertLifecycleManager":
    service = getattr(request.app.state, "alert_manager", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Alert lifecycle manager is not initialized")
    return service
