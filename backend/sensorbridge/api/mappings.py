from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sensorbridge.db.session import get_db
from sensorbridge.dependencies import get_mapping_editor_service
from sensorbridge.schemas.mappings import (
    CandidateFieldsRequest,
    FormulaValidationRequest,
    FormulaValidationResponse,
    MappingSpecificationRequest,
    MetadataTypeSuggestionRequest,
    MetadataTypeSuggestionResponse,
    PayloadFieldResponse,
    PayloadSampleResponse,
    ProfileMappingResponse,
)
from sensorbridge.services.errors import FormulaValidationError, NotFound
from sensorbridge.services.mapping_editor import MappingEditorService


router = APIRouter(prefix="/api/mapping", tags=["mapping-editor"])
logger = logging.getLogger("sensorbridge.mappings_api")


def _raise_not_found(exc: NotFound) -> None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/candidate-fields", response_model=list[PayloadFieldResponse])
def list_candidate_fields_endpoint(
    payload: CandidateFieldsRequest,
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> list[PayloadFieldResponse]:
    return editor.list_candidate_fields(payload.payload)


@router.get("/devices/{device_id}/samples", response_model=list[PayloadSampleResponse])
def list_device_samples_endpoint(
    device_id: str,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> list[PayloadSampleResponse]:
    return editor.list_samples(db, device_id)


@router.get("/devices/{device_id}/samples/{index}/fields", response_model=list[PayloadFieldResponse])
def list_sample_fields_endpoint(
    device_id: str,
    index: int,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> list[PayloadFieldResponse]:
    try:
        return editor.sample_fields(db, device_id, index)
    except NotFound as exc:
        _raise_not_found(exc)


@router.post("/validate-formula", response_model=FormulaValidationResponse)
def validate_formula_endpoint(
    payload: FormulaValidationRequest,
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> FormulaValidationResponse:
    return editor.validate_formula(payload.formula)


@router.post("/metadata-type-suggestion", response_model=MetadataTypeSuggestionResponse)
def metadata_type_suggestion_endpoint(
    payload: MetadataTypeSuggestionRequest,
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> MetadataTypeSuggestionResponse:
    return MetadataTypeSuggestionResponse(
        payload_path=payload.payload_path,
        inferred_type=editor.suggest_metadata_type(payload.payload_path),
    )


@router.get("/profiles/{profile_id}", response_model=ProfileMappingResponse)
def get_profile_mapping_endpoint(
    profile_id: int,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> ProfileMappingResponse:
    try:
        return editor.get_profile_mapping(db, profile_id)
    except NotFound as exc:
        _raise_not_found(exc)


@router.put("/profiles/{profile_id}", response_model=ProfileMappingResponse)
def save_profile_mapping_endpoint(
    profile_id: int,
    payload: MappingSpecificationRequest,
    db: Session = Depends(get_db),
    editor: MappingEditorService = Depends(get_mapping_editor_service),
) -> ProfileMappingResponse:
    try:
        return editor.save_mapping(db, profile_id, payload)
    except NotFound as exc:
        _raise_not_found(exc)
    except FormulaValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": exc.reason, "code": exc.code},
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except IntegrityError as exc:
        logger.warning("mapping save conflict profile_id=%s error=%s", profile_id, exc.orig)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Mapping save conflicted with stored data")
