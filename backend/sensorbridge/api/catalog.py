from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sensorbridge.db.models import AlertRule, Device, DeviceProfile, SensorChannel, SensorType
from sensorbridge.db.session import get_db
from sensorbridge.dependencies import get_mapping_editor_service
from sensorbridge.repositories.catalog import (
    create_alert_rule,
    create_channel,
    create_sensor_type,
    delete_channel,
    get_alert_rule_by_id,
    get_channel_by_id,
    get_sensor_type_by_id,
    list_alert_rules,
    list_channels,
    list_sensor_types,
    update_alert_rule,
    update_channel,
    update_sensor_type,
)
from sensorbridge.repositories.mappings import (
    create_device,
    create_profile,
    delete_profile,
    get_device_by_device_id,
    get_profile_by_id,
    list_devices,
    list_profiles,
    update_device,
    update_profile,
)
from sensorbridge.schemas.catalog import (
    AlertRuleCreateRequest,
    AlertRuleResponse,
    AlertRuleUpdateRequest,
    ChannelCreateRequest,
    ChannelResponse,
    ChannelUpdateRequest,
    DeviceCreateRequest,
    DeviceResponse,
    DeviceUpdateRequest,
    ProfileCreateRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    SensorTypeCreateRequest,
    SensorTypeResponse,
    SensorTypeUpdateRequest,
)
from sensorbridge.services.errors import FormulaValidationError
from sensorbridge.services.mapping_editor import MappingEditorService


router = APIRouter(prefix="/api/catalog", tags=["catalog"])


def _raise_conflict(exc: IntegrityError, entity: str) -> None:
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"{entity} conflict: {getattr(exc, 'orig', exc)}",
    )


def _raise_formula_rejected(exc: FormulaValidationError) -> None:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"reason": exc.reason, "code": exc.code},
    )


def _rename_offset(updates: dict[str, Any]) -> dict[str, Any]:
    if "offset" in updates:
        updates["offset_value"] = updates.pop("offset")
    return updates


@router.get("/profiles", response_model=list[ProfileResponse])
def get_profiles(db: Session = Depends(get_db)) -> list[DeviceProfile]:
    return list_profiles(db)


@router.post("/profiles", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def post_profile(payload: ProfileCreateRequest, db: Session = Depends(get_db)) -> DeviceProfile:
    try:
        return create_profile(db, code=payload.code, name=payload.name, enabled=payload.enabled)
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc, "Device profile")


@router.patch("/profiles/{profile_id}", response_model=ProfileResponse)
def patch_profile(
    profile_id: int,
    payload: ProfileUpdateRequest,
    db: Session = Depends(get_db),
) -> DeviceProfile:
    profile = get_profile_by_id(db, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device profile not found")
    return update_profile(db, profile, name=payload.name, enabled=payload.enabled)


@router.delete("/profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile_endpoint(profile_id: int, db: Session = Depends(get_db)) -> Response:
    profile = get_profile_by_id(db, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device profile not found")
    try:
        delete_profile(db, profile)
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc, "Device profile")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/devices", response_model=list[DeviceResponse])
def get_devices(profile_id: int | None = None, db: Session = Depends(get_db)) -> list[Device]:
    return list_devices(db, profile_id=profile_id)


@router.post("/devices", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
def post_device(payload: DeviceCreateRequest, db: Session = Depends(get_db)) -> Device:
    if payload.profile_id is not None and get_profile_by_id(db, payload.profile_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device profile not found")
    try:
        return create_device(
            db,
            device_id=payload.device_id.strip(),
            profile_id=payload.profile_id,
            enabled=payload.enabled,
        )
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc, "Device")


@router.patch("/devices/{device_id}", response_model=DeviceResponse)
def patch_device(device_id: str, payload: DeviceUpdateRequest, db: Session = Depends(get_db)) -> Device:
    device = get_device_by_device_id(db, device_id)
    if device is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    if payload.profile_id is not None and get_profile_by_id(db, payload.profile_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device profile not found")
    return update_device(db, device, profile_id=payload.profile_id, enabled=payload.enabled)


@router.get("/sensor-types", response_model=list[SensorTypeResponse])
def get_sensor_types(db: Session = Depends(get_db)) -> list[SensorType]:
    return list_sensor_types(db)


@router.post("/sensor-types", response_model=SensorTypeResponse, status_code=status.HTTP_201_CREATED)
def post_sensor_type(
    payload: SensorTypeCreateRequest,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> SensorType:
    try:
        formula = editor.ensure_formula(payload.conversion_formula)
    except FormulaValidationError as exc:
        _raise_formula_rejected(exc)

    try:
        return create_sensor_type(
            db,
            code=payload.code.strip(),
            name=payload.name.strip(),
            unit=payload.unit,
            conversion_formula=formula,
            multiplier=payload.multiplier,
            offset_value=payload.offset,
        )
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc, "Sensor type")


@router.patch("/sensor-types/{sensor_type_id}", response_model=SensorTypeResponse)
def patch_sensor_type(
    sensor_type_id: int,
    payload: SensorTypeUpdateRequest,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> SensorType:
    sensor_type = get_sensor_type_by_id(db, sensor_type_id)
    if sensor_type is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor type not found")

    updates = _rename_offset(payload.model_dump(exclude_unset=True))
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one field must be provided")
    for key in ("multiplier", "offset_value"):
        if key in updates and updates[key] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{key} must be a number")
    if "conversion_formula" in updates:
        try:
            updates["conversion_formula"] = editor.ensure_formula(updates["conversion_formula"])
        except FormulaValidationError as exc:
            _raise_formula_rejected(exc)
    return update_sensor_type(db, sensor_type, updates)


@router.get("/channels", response_model=list[ChannelResponse])
def get_channels(profile_id: int | None = None, db: Session = Depends(get_db)) -> list[SensorChannel]:
    return list_channels(db, profile_id=profile_id)


@router.post("/channels", response_model=ChannelResponse, status_code=status.HTTP_201_CREATED)
def post_channel(
    payload: ChannelCreateRequest,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> SensorChannel:
    if get_profile_by_id(db, payload.profile_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device profile not found")
    if payload.sensor_type_id is not None and get_sensor_type_by_id(db, payload.sensor_type_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor type not found")
    try:
        formula = editor.ensure_formula(payload.conversion_formula)
    except FormulaValidationError as exc:
        _raise_formula_rejected(exc)

    fields = _rename_offset(payload.model_dump())
    fields["metric_code"] = fields["metric_code"].strip()
    fields["conversion_formula"] = formula
    try:
        return create_channel(db, **fields)
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc, "Sensor channel")


@router.patch("/channels/{channel_id}", response_model=ChannelResponse)
def patch_channel(
    channel_id: int,
    payload: ChannelUpdateRequest,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> SensorChannel:
    channel = get_channel_by_id(db, channel_id)
    if channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor channel not found")

    updates = _rename_offset(payload.model_dump(exclude_unset=True))
    if updates.get("sensor_type_id") is not None and get_sensor_type_by_id(db, updates["sensor_type_id"]) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor type not found")
    minimum = updates.get("min_threshold", channel.min_threshold)
    maximum = updates.get("max_threshold", channel.max_threshold)
    if minimum is not None and maximum is not None and minimum > maximum:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="min_threshold must not be greater than max_threshold",
        )
    if "conversion_formula" in updates:
        try:
            updates["conversion_formula"] = editor.ensure_formula(updates["conversion_formula"])
        except FormulaValidationError as exc:
            _raise_formula_rejected(exc)
    return update_channel(db, channel, updates)


@router.delete("/channels/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_channel_endpoint(channel_id: int, db: Session = Depends(get_db)) -> Response:
    channel = get_channel_by_id(db, channel_id)
    if channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor channel not found")
    try:
        delete_channel(db, channel)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/alert-rules", response_model=list[AlertRuleResponse])
def get_alert_rules(channel_id: int | None = None, db: Session = Depends(get_db)) -> list[AlertRule]:
    return list_alert_rules(db, channel_id=channel_id)


@router.post("/alert-rules", response_model=AlertRuleResponse, status_code=status.HTTP_201_CREATED)
def post_alert_rule(payload: AlertRuleCreateRequest, db: Session = Depends(get_db)) -> AlertRule:
    if get_channel_by_id(db, payload.sensor_channel_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sensor channel not found")
    return create_alert_rule(
        db,
        sensor_channel_id=payload.sensor_channel_id,
        rule_type=payload.rule_type,
        severity=payload.severity,
        params_json=payload.params.model_dump(),
        enabled=payload.enabled,
    )


@router.patch("/alert-rules/{rule_id}", response_model=AlertRuleResponse)
def patch_alert_rule(rule_id: int, payload: AlertRuleUpdateRequest, db: Session = Depends(get_db)) -> AlertRule:
    rule = get_alert_rule_by_id(db, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert rule not found")

    updates: dict[str, Any] = {}
    if payload.severity is not None:
        updates["severity"] = payload.severity
    if payload.params is not None:
        updates["params_json"] = payload.params.model_dump()
    if payload.enabled is not None:
        updates["enabled"] = payload.enabled
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one field must be provided")
    return update_alert_rule(db, rule, updates)
