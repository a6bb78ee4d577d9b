from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from fastapi import FastAPI
from fastapi.testclient import TestClient

from sensorbridge.api.mappings import router as mappings_router
from sensorbridge.db.models import DeviceProfile, PayloadSample, SensorChannel
from sensorbridge.db.session import get_db
from sensorbridge.dependencies import get_mapping_editor_service
from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
from sensorbridge.services.mapping_editor import MappingEditorService
from sensorbridge.services.telemetry_ingest import TelemetryIngestService

from db_support import make_session_factory, make_settings, override_get_db, seed_profile

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class MappingApiTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.settings = make_settings(sample_window_size=3)
        self.seeded = seed_profile(
            self.session_factory,
            channels={"pressure": {"unit": "bar"}, "flow": {"unit": "l/min"}},
            mapping={"channels": {"flow": {"payload_path": "flow"}}},
        )
        self.editor = MappingEditorService(settings=self.settings)

        app = FastAPI()
        app.include_router(mappings_router)
        app.dependency_overrides[get_mapping_editor_service] = lambda: self.editor
        app.dependency_overrides[get_db] = override_get_db(self.session_factory)
        self.client = TestClient(app)

    def _add_samples(self, *payloads: dict) -> None:
        with self.session_factory() as db:
            for index, payload in enumerate(payloads):
                db.add(
                    PayloadSample(
                        device_id="dev-1",
                        payload_json=payload,
                        received_at=RECEIVED_AT + timedelta(seconds=index),
                    )
                )
            db.commit()

    def _profile_url(self, profile_id: int | None = None) -> str:
        return f"/api/mapping/profiles/{profile_id or self.seeded['profile_id']}"

    def test_candidate_fields_for_pasted_payload(self) -> None:
        response = self.client.post(
            "/api/mapping/candidate-fields",
            json={"payload": {"data": {"telemetry": {"pressure_bar": 4.8}}, "meta": {"rssi": -70}}},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            [
                {"path": "data.telemetry.pressure_bar", "value": 4.8, "suggested_type": "string"},
                {"path": "meta.rssi", "value": -70, "suggested_type": "number"},
            ],
        )

    def test_samples_newest_first_and_fields_by_index(self) -> None:
        self._add_samples({"seq": 1}, {"seq": 2, "payload": {"temp": 20.5}})

        samples = self.client.get("/api/mapping/devices/dev-1/samples")
        fields = self.client.get("/api/mapping/devices/dev-1/samples/0/fields")
        missing = self.client.get("/api/mapping/devices/dev-1/samples/5/fields")

        self.assertEqual(samples.status_code, 200)
        self.assertEqual([sample["index"] for sample in samples.json()], [0, 1])
        self.assertEqual(samples.json()[0]["payload"], {"seq": 2, "payload": {"temp": 20.5}})
        self.assertEqual([field["path"] for field in fields.json()], ["payload.temp", "seq"])
        self.assertEqual(missing.status_code, 404)

    def test_validate_formula(self) -> None:
        accepted = self.client.post("/api/mapping/validate-formula", json={"formula": "x * 2"})
        rejected = self.client.post("/api/mapping/validate-formula", json={"formula": "require('fs')"})

        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.json()["ok"], True)
        self.assertEqual(accepted.json()["probe_result"], 2.0)
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["ok"], False)
        self.assertEqual(rejected.json()["code"], "prohibited_token")
        self.assertIn("prohibited", rejected.json()["reason"])

    def test_metadata_type_suggestion(self) -> None:
        response = self.client.post(
            "/api/mapping/metadata-type-suggestion",
            json={"payload_path": "meta.received_time"},
        )

        self.assertEqual(response.json(), {"payload_path": "meta.received_time", "inferred_type": "timestamp"})

    def test_get_profile_mapping_lists_unbound_channels(self) -> None:
        response = self.client.get(self._profile_url())

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["mapping_version"], 1)
        self.assertEqual(body["channels"], {"flow": {"payload_path": "flow"}})
        self.assertEqual(body["unbound_channels"], ["pressure"])
        self.assertEqual(self.client.get(self._profile_url(999)).status_code, 404)

    def test_save_mapping_bumps_version_and_updates_conversion(self) -> None:
        response = self.client.put(
            self._profile_url(),
            json={
                "channels": {
                    "pressure": {"payload_path": "data.telemetry.pressure_bar", "conversion_formula": "x * 1.5"},
                    "flow": {"payload_path": "data.flow", "multiplier": 0.1},
                },
                "metadata": {"timestamp": {"payload_path": "meta.ts"}},
            },
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["mapping_version"], 2)
        self.assertEqual(body["unbound_channels"], [])
        self.assertEqual(body["metadata"], {"timestamp": {"payload_path": "meta.ts", "inferred_type": "string"}})
        with self.session_factory() as db:
            pressure = db.get(SensorChannel, self.seeded["channel_ids"]["pressure"])
            flow = db.get(SensorChannel, self.seeded["channel_ids"]["flow"])
            self.assertEqual(pressure.conversion_formula, "x * 1.5")
            self.assertEqual(flow.multiplier, 0.1)

    def test_rejected_formula_leaves_mapping_untouched(self) -> None:
        response = self.client.put(
            self._profile_url(),
            json={"channels": {"pressure": {"payload_path": "p", "conversion_formula": "import os"}}},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "prohibited_token")
        self.assertIn("pressure", response.json()["detail"]["reason"])
        with self.session_factory() as db:
            profile = db.get(DeviceProfile, self.seeded["profile_id"])
            self.assertEqual(profile.mapping_version, 1)
            self.assertEqual(profile.mapping_json["channels"], {"flow": {"payload_path": "flow"}})

    def test_unknown_channel_code_is_rejected(self) -> None:
        response = self.client.put(self._profile_url(), json={"channels": {"ghost": {"payload_path": "g"}}})

        self.assertEqual(response.status_code, 400)
        self.assertIn("ghost", response.json()["detail"])

    def test_malformed_path_is_rejected(self) -> None:
        response = self.client.put(self._profile_url(), json={"channels": {"flow": {"payload_path": "a..b"}}})

        self.assertEqual(response.status_code, 422)

    def test_saved_mapping_applies_to_the_next_payload(self) -> None:
        self.client.put(
            self._profile_url(),
            json={"channels": {"pressure": {"payload_path": "data.telemetry.pressure_bar"}}},
        )
        service = TelemetryIngestService(
            settings=self.settings,
            session_factory=self.session_factory,
            alert_manager=AlertLifecycleManager(settings=self.settings),
        )
        try:
            result = service.ingest("dev-1", {"data": {"telemetry": {"pressure_bar": 4.8}}}, RECEIVED_AT)
        finally:
            service.close()

        self.assertEqual(result.mapping_version, 2)
        self.assertEqual([log.value_engineered for log in result.readings], [4.8])
