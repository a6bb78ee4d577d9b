from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from sensorbridge.core.config import Settings
from sensorbridge.db.models import DeviceProfile, PayloadSample
from sensorbridge.repositories.catalog import list_channels, update_channel
from sensorbridge.repositories.mappings import get_profile_by_id, replace_profile_mapping
from sensorbridge.repositories.telemetry import list_payload_samples
from sensorbridge.schemas.mappings import (
    ChannelMappingEntry,
    ChannelMappingResponse,
    FormulaValidationResponse,
    MappingSpecificationRequest,
    MetadataMappingResponse,
    PayloadFieldResponse,
    PayloadSampleResponse,
    ProfileMappingResponse,
)
from sensorbridge.services.errors import FormulaValidationError, NotFound
from sensorbridge.services.formula import validate_formula
from sensorbridge.services.mapping_resolver import (
    ChannelBinding,
    MappingSnapshot,
    MetadataBinding,
    infer_metadata_type,
)
from sensorbridge.services.payload_parser import flatten


class MappingEditorService:
    """Operations behind the binding editor: browse sample fields, check formulas, save bindings."""

    def __init__(self, *, settings: Settings):
        self._settings = settings
        self._logger = logging.getLogger("sensorbridge.mapping_editor")

    def list_candidate_fields(self, payload: object) -> list[PayloadFieldResponse]:
        return [
            PayloadFieldResponse(
                path=field.path,
                value=field.value,
                suggested_type=infer_metadata_type(field.path),
            )
            for field in flatten(payload)
        ]

    def list_samples(self, db: Session, device_id: str) -> list[PayloadSampleResponse]:
        samples = list_payload_samples(db, device_id=device_id, limit=self._settings.sample_window_size)
        return [_sample_response(index, sample) for index, sample in enumerate(samples)]

    def sample_fields(self, db: Session, device_id: str, index: int) -> list[PayloadFieldResponse]:
        samples = list_payload_samples(db, device_id=device_id, limit=self._settings.sample_window_size)
        if index < 0 or index >= len(samples):
            raise NotFound(f"Payload sample {index} for device", device_id)
        return self.list_candidate_fields(samples[index].payload_json)

    def validate_formula(self, formula: str) -> FormulaValidationResponse:
        result = validate_formula(
            formula,
            max_length=self._settings.formula_max_length,
            max_nodes=self._settings.formula_max_nodes,
            timeout_ms=self._settings.formula_timeout_ms,
        )
        return FormulaValidationResponse(
            ok=result.ok,
            reason=result.reason,
            code=result.code,
            probe_value=result.probe_value,
            probe_result=result.probe_result,
        )

    def ensure_formula(self, formula: str | None) -> str | None:
        if formula is None:
            return None
        result = self.validate_formula(formula)
        if not result.ok:
            raise FormulaValidationError(result.reason or "Invalid formula", code=result.code or "", formula=formula)
        return formula.strip()

    def get_profile_mapping(self, db: Session, profile_id: int) -> ProfileMappingResponse:
        profile = get_profile_by_id(db, profile_id)
        if profile is None:
            raise NotFound("Device profile", profile_id)
        return self._profile_response(db, profile)

    def save_mapping(
        self,
        db: Session,
        profile_id: int,
        request: MappingSpecificationRequest,
    ) -> ProfileMappingResponse:
        """Validate and persist a whole mapping document; nothing is written when any part is rejected."""
        profile = get_profile_by_id(db, profile_id)
        if profile is None:
            raise NotFound("Device profile", profile_id)

        channels_by_code = {channel.metric_code: channel for channel in list_channels(db, profile_id=profile_id)}
        unknown = sorted(code for code in request.channels if code not in channels_by_code)
        if unknown:
            raise ValueError(f"Unknown channel code(s) for profile {profile.code}: {', '.join(unknown)}")

        conversion_updates: dict[str, dict[str, Any]] = {}
        for code, entry in request.channels.items():
            updates = self._conversion_updates(code, entry)
            if updates:
                conversion_updates[code] = updates

        snapshot = MappingSnapshot(
            profile_id=profile.id,
            version=profile.mapping_version + 1,
            channels=tuple(
                ChannelBinding(channel_code=code, payload_path=entry.payload_path)
                for code, entry in sorted(request.channels.items())
            ),
            metadata=tuple(
                MetadataBinding(
                    slot=slot,
                    payload_path=entry.payload_path,
                    inferred_type=entry.inferred_type or infer_metadata_type(entry.payload_path),
                )
                for slot, entry in sorted(request.metadata.items())
            ),
        )

        try:
            for code, updates in conversion_updates.items():
                update_channel(db, channels_by_code[code], updates, commit=False)
            replace_profile_mapping(db, profile, snapshot.to_document())
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(profile)

        self._logger.info(
            "mapping saved profile_id=%s version=%s channels=%s metadata=%s",
            profile.id,
            profile.mapping_version,
            len(snapshot.channels),
            len(snapshot.metadata),
        )
        return self._profile_response(db, profile)

    def suggest_metadata_type(self, payload_path: str) -> str:
        return infer_metadata_type(payload_path)

    def _conversion_updates(self, code: str, entry: ChannelMappingEntry) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        fields_set = entry.model_fields_set
        if "conversion_formula" in fields_set:
            try:
                updates["conversion_formula"] = self.ensure_formula(entry.conversion_formula)
            except FormulaValidationError as exc:
                raise FormulaValidationError(
                    f"Channel '{code}': {exc.reason}",
                    code=exc.code,
                    formula=exc.formula,
                ) from exc
        if "multiplier" in fields_set:
            updates["multiplier"] = entry.multiplier
        if "offset" in fields_set:
            updates["offset_value"] = entry.offset
        return updates

    def _profile_response(self, db: Session, profile: DeviceProfile) -> ProfileMappingResponse:
        snapshot = MappingSnapshot.from_document(
            profile.mapping_json,
            profile_id=profile.id,
            version=profile.mapping_version,
        )
        bound = {binding.channel_code for binding in snapshot.channels}
        return ProfileMappingResponse(
            profile_id=profile.id,
            code=profile.code,
            name=profile.name,
            enabled=profile.enabled,
            mapping_version=profile.mapping_version,
            channels={
                binding.channel_code: ChannelMappingResponse(payload_path=binding.payload_path)
                for binding in snapshot.channels
            },
            metadata={
                binding.slot: MetadataMappingResponse(
                    payload_path=binding.payload_path,
                    inferred_type=binding.inferred_type,
                )
                for binding in snapshot.metadata
            },
            unbound_channels=sorted(
                channel.metric_code
                for channel in list_channels(db, profile_id=profile.id)
                if channel.metric_code not in bound
            ),
            updated_at=profile.updated_at,
        )


def _sample_response(index: int, sample: PayloadSample) -> PayloadSampleResponse:
    return PayloadSampleResponse(
        index=index,
        id=sample.id,
        device_id=sample.device_id,
        received_at=sample.received_at,
        payload=sample.payload_json,
    )
