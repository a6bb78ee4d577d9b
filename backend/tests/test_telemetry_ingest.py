from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest import TestCase
from unittest.mock import patch

from sqlalchemy import select

from sensorbridge.db.models import AlertEvent, Device, DeviceProfile, PayloadSample, SensorChannel, SensorLog
from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
from sensorbridge.services.errors import IngestAborted, NotFound
from sensorbridge.services.telemetry_ingest import IngestItem, IngestResult, TelemetryIngestService

from db_support import add_rule, make_session_factory, make_settings, seed_profile

ARRIVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PUMP_MAPPING = {
    "channels": {
        "pressure": {"payload_path": "data.telemetry.pressure_bar"},
        "flow": {"payload_path": "data.telemetry.flow_raw"},
        "level": {"payload_path": "data.tank.level"},
    },
    "metadata": {},
}


class TelemetryIngestTestBase(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.settings = make_settings(sample_window_size=3)
        self.seeded = seed_profile(
            self.session_factory,
            channels={
                "pressure": {"unit": "bar"},
                "flow": {"unit": "l/min", "multiplier": 0.1, "offset_value": 1.0},
                "level": {"unit": "%"},
            },
            mapping=PUMP_MAPPING,
        )
        self.manager = AlertLifecycleManager(settings=self.settings)
        self.service = TelemetryIngestService(
            settings=self.settings,
            session_factory=self.session_factory,
            alert_manager=self.manager,
        )

    def tearDown(self) -> None:
        self.service.close()

    def _payload(self, pressure: object = 4.8, flow: object = 120, level: object = 40) -> dict:
        telemetry: dict = {}
        if pressure is not None:
            telemetry["pressure_bar"] = pressure
        if flow is not None:
            telemetry["flow_raw"] = flow
        return {"data": {"telemetry": telemetry, "tank": {"level": level}}}

    def _rows(self, model) -> list:
        with self.session_factory() as db:
            return list(db.scalars(select(model)))

    def _set_mapping(self, mapping: dict) -> None:
        with self.session_factory() as db:
            profile = db.get(DeviceProfile, self.seeded["profile_id"])
            profile.mapping_json = mapping
            profile.mapping_version += 1
            db.commit()


class IngestTests(TelemetryIngestTestBase):
    def test_pressure_payload_end_to_end(self) -> None:
        add_rule(
            self.session_factory,
            channel_id=self.seeded["channel_ids"]["pressure"],
            params={"min": 0, "warning": 4, "critical": 4.5, "max": 5},
        )

        result = self.service.ingest("dev-1", self._payload(), ARRIVED_AT)

        self.assertFalse(result.duplicate)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.alert_events, [])
        self.assertEqual(result.mapping_version, 1)
        by_channel = {log.sensor_channel_id: log for log in self._rows(SensorLog)}
        pressure = by_channel[self.seeded["channel_ids"]["pressure"]]
        self.assertEqual(pressure.value_raw, 4.8)
        self.assertEqual(pressure.value_engineered, 4.8)
        self.assertEqual(pressure.quality_flag, "good")
        self.assertEqual(pressure.status_code, "ok")
        self.assertEqual(pressure.ingestion_source, "sensorbridge")
        flow = by_channel[self.seeded["channel_ids"]["flow"]]
        self.assertAlmostEqual(flow.value_engineered, 13.0)

    def test_missing_field_is_isolated_to_its_channel(self) -> None:
        result = self.service.ingest("dev-1", self._payload(flow=None), ARRIVED_AT)

        logs = self._rows(SensorLog)
        self.assertEqual(len(logs), 3)
        self.assertEqual(sorted(log.quality_flag for log in logs), ["bad", "good", "good"])
        bad = next(log for log in logs if log.quality_flag == "bad")
        self.assertEqual(bad.status_code, "missing_field")
        self.assertIsNone(bad.value_raw)
        self.assertIsNone(bad.value_engineered)
        self.assertEqual([(error.channel_code, error.status_code) for error in result.errors], [("flow", "missing_field")])

    def test_non_numeric_value_is_a_bad_reading(self) -> None:
        result = self.service.ingest("dev-1", self._payload(pressure="n/a"), ARRIVED_AT)

        self.assertEqual([error.status_code for error in result.errors], ["not_numeric"])
        self.assertEqual(len(self._rows(SensorLog)), 3)

    def test_numeric_strings_are_accepted(self) -> None:
        result = self.service.ingest("dev-1", self._payload(pressure="4.25"), ARRIVED_AT)

        self.assertEqual(result.errors, [])
        pressure = next(
            log for log in result.readings if log.sensor_channel_id == self.seeded["channel_ids"]["pressure"]
        )
        self.assertEqual(pressure.value_engineered, 4.25)

    def test_oversized_integer_is_isolated_to_its_channel(self) -> None:
        payload = json.loads('{"data": {"telemetry": {"pressure_bar": 1' + "0" * 400 + ', "flow_raw": 30}, "tank": {"level": 40}}}')

        result = self.service.ingest("dev-1", payload, ARRIVED_AT)

        self.assertEqual([(error.channel_code, error.status_code) for error in result.errors], [("pressure", "not_numeric")])
        flow = next(log for log in result.readings if log.sensor_channel_id == self.seeded["channel_ids"]["flow"])
        self.assertEqual(flow.value_engineered, 4.0)
        self.assertEqual(len(self._rows(SensorLog)), 3)

    def test_conversion_failure_keeps_raw_value_and_other_channels(self) -> None:
        with self.session_factory() as db:
            channel = db.get(SensorChannel, self.seeded["channel_ids"]["level"])
            channel.conversion_formula = "100 / (x - 2)"
            db.commit()

        result = self.service.ingest("dev-1", self._payload(level=2), ARRIVED_AT)

        self.assertEqual([(error.channel_code, error.status_code) for error in result.errors], [("level", "conversion_error")])
        level = next(
            log for log in self._rows(SensorLog) if log.sensor_channel_id == self.seeded["channel_ids"]["level"]
        )
        self.assertEqual(level.value_raw, 2.0)
        self.assertIsNone(level.value_engineered)
        self.assertEqual(level.quality_flag, "bad")
        self.assertEqual(sum(1 for log in self._rows(SensorLog) if log.quality_flag == "good"), 2)

    def test_sensor_type_conversion_applies_when_channel_has_none(self) -> None:
        factory = make_session_factory()
        seed_profile(
            factory,
            channels={"temp": {}},
            mapping={"channels": {"temp": {"payload_path": "t"}}},
            sensor_type={"conversion_formula": "x / 10"},
        )
        service = TelemetryIngestService(settings=self.settings, session_factory=factory, alert_manager=self.manager)
        try:
            result = service.ingest("dev-1", {"t": 215}, ARRIVED_AT)
        finally:
            service.close()

        self.assertEqual([log.value_engineered for log in result.readings], [21.5])

    def test_unsafe_reading_opens_alert(self) -> None:
        rule_id = add_rule(
            self.session_factory,
            channel_id=self.seeded["channel_ids"]["level"],
            params={"min": 0, "warning": 50, "critical": 80, "max": 100},
        )

        first = self.service.ingest("dev-1", self._payload(level=150), ARRIVED_AT)
        second = self.service.ingest("dev-1", self._payload(level=160), ARRIVED_AT + timedelta(seconds=30))

        self.assertEqual(len(first.alert_events), 1)
        self.assertEqual(first.alert_events[0].severity, "critical")
        self.assertEqual(second.alert_events, [])
        events = self._rows(AlertEvent)
        self.assertEqual([(event.alert_rule_id, event.status, event.value) for event in events], [(rule_id, "open", 150)])

    def test_bad_readings_do_not_trigger_alerts(self) -> None:
        add_rule(
            self.session_factory,
            channel_id=self.seeded["channel_ids"]["pressure"],
            params={"min": 0, "warning": 4, "critical": 4.5, "max": 5},
        )

        self.service.ingest("dev-1", self._payload(pressure=None), ARRIVED_AT)

        self.assertEqual(self._rows(AlertEvent), [])

    def test_mapped_code_without_channel_is_reported(self) -> None:
        self._set_mapping({"channels": {"ghost": {"payload_path": "data.tank.level"}}})

        result = self.service.ingest("dev-1", self._payload(), ARRIVED_AT)

        self.assertEqual(result.readings, [])
        self.assertEqual([error.status_code for error in result.errors], ["unknown_channel"])
        self.assertEqual(result.mapping_version, 2)

    def test_only_bound_channels_produce_readings(self) -> None:
        self._set_mapping({"channels": {"level": {"payload_path": "data.tank.level"}}})

        result = self.service.ingest("dev-1", self._payload(), ARRIVED_AT)

        self.assertEqual([log.sensor_channel_id for log in result.readings], [self.seeded["channel_ids"]["level"]])


class MetadataTests(TelemetryIngestTestBase):
    def test_bound_timestamp_becomes_reading_time(self) -> None:
        self._set_mapping(
            {
                "channels": PUMP_MAPPING["channels"],
                "metadata": {"timestamp": {"payload_path": "meta.sampled_at", "inferred_type": "timestamp"}},
            }
        )
        payload = self._payload()
        payload["meta"] = {"sampled_at": "2026-03-01T11:59:30Z"}

        result = self.service.ingest("dev-1", payload, ARRIVED_AT)

        self.assertEqual(result.metadata.ts, datetime(2026, 3, 1, 11, 59, 30, tzinfo=timezone.utc))
        self.assertEqual(result.metadata.timestamp_source, "meta.sampled_at")
        self.assertEqual({log.ingestion_latency_ms > 0 for log in result.readings}, {True})

    def test_arrival_time_is_used_without_a_payload_timestamp(self) -> None:
        result = self.service.ingest("dev-1", self._payload(), ARRIVED_AT)

        self.assertEqual(result.metadata.ts, ARRIVED_AT)
        self.assertEqual(result.metadata.timestamp_source, "arrived_at")

    def test_oversized_fallback_timestamp_uses_arrival_time(self) -> None:
        payload = json.loads('{"ts": 1' + "0" * 400 + ', "data": {"tank": {"level": 40}}}')

        result = self.service.ingest("dev-1", payload, ARRIVED_AT)

        self.assertEqual(result.metadata.ts, ARRIVED_AT)
        self.assertEqual(result.metadata.timestamp_source, "arrived_at")
        level = next(log for log in result.readings if log.status_code == "ok")
        self.assertEqual(level.value_engineered, 40.0)

    def test_device_last_seen_is_updated(self) -> None:
        self.service.ingest("dev-1", self._payload(), ARRIVED_AT)

        devices = self._rows(Device)
        self.assertEqual(devices[0].last_seen_at.replace(tzinfo=None), ARRIVED_AT.replace(tzinfo=None))


class DeliveryTests(TelemetryIngestTestBase):
    def test_duplicate_payload_seq_is_skipped(self) -> None:
        first = self.service.ingest("dev-1", self._payload(), ARRIVED_AT, payload_seq=41)
        second = self.service.ingest("dev-1", self._payload(pressure=1.0), ARRIVED_AT, payload_seq=41)

        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(len(self._rows(SensorLog)), 3)
        self.assertEqual(len(self._rows(PayloadSample)), 1)

    def test_sample_window_keeps_newest_payloads(self) -> None:
        for index in range(5):
            self.service.ingest("dev-1", self._payload(level=index), ARRIVED_AT + timedelta(seconds=index))

        samples = self._rows(PayloadSample)
        self.assertEqual(len(samples), 3)
        self.assertEqual(sorted(sample.payload_json["data"]["tank"]["level"] for sample in samples), [2, 3, 4])

    def test_unknown_device(self) -> None:
        with self.assertRaises(NotFound):
            self.service.ingest("dev-404", self._payload(), ARRIVED_AT)

    def test_device_without_profile_keeps_sample_only(self) -> None:
        with self.session_factory() as db:
            db.add(Device(device_id="orphan", profile_id=None, enabled=True))
            db.commit()

        result = self.service.ingest("orphan", {"x": 1}, ARRIVED_AT)

        self.assertEqual([error.status_code for error in result.errors], ["no_profile"])
        self.assertEqual(self._rows(SensorLog), [])
        self.assertEqual([sample.device_id for sample in self._rows(PayloadSample)], ["orphan"])

    def test_non_object_payload_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.service.ingest("dev-1", [1, 2, 3], ARRIVED_AT)


class AbortTests(TelemetryIngestTestBase):
    def assertNothingWritten(self) -> None:
        self.assertEqual(self._rows(SensorLog), [])
        self.assertEqual(self._rows(PayloadSample), [])
        self.assertEqual(self._rows(AlertEvent), [])

    def test_cancelled_before_start(self) -> None:
        cancel = threading.Event()
        cancel.set()

        with self.assertRaises(IngestAborted):
            self.service.ingest("dev-1", self._payload(), ARRIVED_AT, cancel_event=cancel)
        self.assertNothingWritten()

    def test_cancelled_while_channels_convert(self) -> None:
        cancel = threading.Event()

        def convert_then_cancel(value, rule, **_limits):
            cancel.set()
            return value

        with patch("sensorbridge.services.telemetry_ingest.convert", side_effect=convert_then_cancel) as convert:
            with self.assertRaises(IngestAborted):
                self.service.ingest("dev-1", self._payload(), ARRIVED_AT, cancel_event=cancel)

        self.assertEqual(convert.call_count, 3)
        self.assertNothingWritten()

    def test_profile_removed_during_ingest_rolls_back(self) -> None:
        add_rule(
            self.session_factory,
            channel_id=self.seeded["channel_ids"]["level"],
            params={"min": 0, "warning": 50, "critical": 80, "max": 100},
        )

        with patch("sensorbridge.services.telemetry_ingest.get_profile_state", return_value=None):
            with self.assertRaises(IngestAborted):
                self.service.ingest("dev-1", self._payload(level=150), ARRIVED_AT)
        self.assertNothingWritten()

    def test_disabled_profile_aborts(self) -> None:
        with self.session_factory() as db:
            db.get(DeviceProfile, self.seeded["profile_id"]).enabled = False
            db.commit()

        with self.assertRaises(IngestAborted):
            self.service.ingest("dev-1", self._payload(), ARRIVED_AT)
        self.assertNothingWritten()

    def test_disabled_device_aborts(self) -> None:
        with self.session_factory() as db:
            db.scalars(select(Device)).one().enabled = False
            db.commit()

        with self.assertRaises(IngestAborted):
            self.service.ingest("dev-1", self._payload(), ARRIVED_AT)


class BatchTests(TelemetryIngestTestBase):
    def test_results_keep_input_order_and_failures_stay_in_place(self) -> None:
        items = [
            IngestItem(device_id="dev-1", payload=self._payload(level=10), arrived_at=ARRIVED_AT, payload_seq=1),
            IngestItem(device_id="dev-404", payload=self._payload(), arrived_at=ARRIVED_AT),
            IngestItem(device_id="dev-1", payload=self._payload(level=20), arrived_at=ARRIVED_AT, payload_seq=2),
        ]

        results = self.service.ingest_many(items)

        self.assertIsInstance(results[0], IngestResult)
        self.assertIsInstance(results[1], NotFound)
        self.assertIsInstance(results[2], IngestResult)
        self.assertEqual(len(self._rows(SensorLog)), 6)

    def test_concurrent_unsafe_payloads_open_one_incident(self) -> None:
        add_rule(
            self.session_factory,
            channel_id=self.seeded["channel_ids"]["level"],
            params={"min": 0, "warning": 50, "critical": 80, "max": 100},
        )
        service = TelemetryIngestService(
            settings=make_settings(ingest_workers=4, alert_event_mode="incident"),
            session_factory=self.session_factory,
            alert_manager=self.manager,
        )
        items = [
            IngestItem(
                device_id="dev-1",
                payload=self._payload(level=150 + index),
                arrived_at=ARRIVED_AT + timedelta(seconds=index),
                payload_seq=index,
            )
            for index in range(8)
        ]

        try:
            results = service.ingest_many(items)
        finally:
            service.close()

        self.assertEqual([type(result) for result in results], [IngestResult] * 8)
        self.assertEqual(sum(len(result.alert_events) for result in results), 1)
        self.assertEqual(len(self._rows(AlertEvent)), 1)
        self.assertEqual(len(self._rows(SensorLog)), 24)

    def test_empty_batch(self) -> None:
        self.assertEqual(self.service.ingest_many([]), [])
