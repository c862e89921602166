"""Tests for MQTT topic mapping, change detection and discovery."""
import json
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from deye_solarman.config import MQTTConfig
from deye_solarman.mqtt_publisher import MQTTPublisher, encode_payload
from deye_solarman.register_parser import RegisterDefinition, slugify

DEFINITIONS = (
    RegisterDefinition(name="Output AC Power", rule=3, registers=(0x50, 0x51), scale=0.1,
                       binding="ac_power", uom="W", device_class="power",
                       state_class="measurement"),
    RegisterDefinition(name="Device State", rule=1, registers=(0x3B,), lookup={2: "Normal"}),
)


@pytest.fixture
def publisher():
    pub = MQTTPublisher(MQTTConfig(enabled=False, topic_prefix="deye", ha_discovery=True))
    pub.client = MagicMock()
    pub.client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
    pub.connected = True
    return pub


def published(pub):
    """topic -> (payload, retain) of every publish call."""
    return {c.args[0]: (c.args[1], c.kwargs['retain']) for c in pub.client.publish.call_args_list}


class TestTopics:
    def test_slugify(self):
        assert slugify("Output AC Power") == "output_ac_power"
        assert slugify("  Deye Roof #1 ") == "deye_roof_1"

    def test_field_name_prefers_binding(self):
        assert DEFINITIONS[0].field_name == "ac_power"
        assert DEFINITIONS[1].field_name == "device_state"

    def test_device_topic(self, publisher):
        assert publisher.device_topic("Deye Roof", "runtime", "backoff") == "deye/deye_roof/runtime/backoff"

    def test_status_topic(self, publisher):
        assert publisher.status_topic == "deye/status"


class TestPublishTelemetry:
    def test_one_topic_per_definition(self, publisher):
        count = publisher.publish_telemetry(
            "Deye Roof", {"Output AC Power": 1500.04, "Device State": "Normal"}, DEFINITIONS)

        assert count == 2
        topics = published(publisher)
        assert topics["deye/deye_roof/ac_power"][0] == "1500.04"
        assert topics["deye/deye_roof/device_state"][0] == "Normal"

    def test_skips_missing_values(self, publisher):
        count = publisher.publish_telemetry("Deye Roof", {"Output AC Power": None}, DEFINITIONS)
        assert count == 0
        publisher.client.publish.assert_not_called()

    def test_unchanged_values_are_skipped(self, publisher):
        values = {"Output AC Power": 100.0, "Device State": "Normal"}
        publisher.publish_telemetry("Deye Roof", values, DEFINITIONS)

        count = publisher.publish_telemetry("Deye Roof", dict(values, **{"Output AC Power": 90.0}),
                                            DEFINITIONS)

        assert count == 1
        assert publisher.counters["skipped"] == 1

    def test_publish_mode_all(self, publisher):
        publisher.changes.mode = 'all'
        values = {"Output AC Power": 100.0}
        publisher.publish_telemetry("Deye Roof", values, DEFINITIONS)
        assert publisher.publish_telemetry("Deye Roof", values, DEFINITIONS) == 1

    def test_reconnect_republishes(self, publisher):
        values = {"Output AC Power": 100.0}
        publisher.publish_telemetry("Deye Roof", values, DEFINITIONS)

        publisher._on_connect(None, None, None, 0)

        assert publisher.publish_telemetry("Deye Roof", values, DEFINITIONS) == 1

    def test_without_client(self):
        pub = MQTTPublisher(MQTTConfig(enabled=False))
        assert pub.publish_telemetry("Deye Roof", {"Output AC Power": 1.0}, DEFINITIONS) == 0

    def test_failed_publish_marks_disconnected(self, publisher):
        publisher.client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)

        assert publisher.publish_telemetry("Deye Roof", {"Output AC Power": 1.0}, DEFINITIONS) == 0
        assert not publisher.connected


class TestAvailability:
    def test_offline_with_reason(self, publisher):
        publisher.publish_availability("Deye Roof", False, "Response timeout after 15s")

        topics = published(publisher)
        assert topics["deye/deye_roof/availability"] == ("offline", True)
        assert topics["deye/deye_roof/availability/reason"] == ("Response timeout after 15s", True)

    def test_online_clears_reason(self, publisher):
        publisher.publish_availability("Deye Roof", False, "timeout")
        publisher.client.publish.reset_mock()

        publisher.publish_availability("Deye Roof", True)

        topics = published(publisher)
        assert topics["deye/deye_roof/availability"] == ("online", True)
        assert topics["deye/deye_roof/availability/reason"] == ("", True)


class TestRuntime:
    def test_device_runtime(self, publisher):
        publisher.publish_device_runtime("Deye Roof", {
            'transport': 'tcp', 'consecutive_failures': 2, 'last_error': 'timeout',
            'in_backoff': True, 'last_success': None,
        })

        topics = published(publisher)
        assert topics["deye/deye_roof/runtime/transport"][0] == "tcp"
        assert topics["deye/deye_roof/runtime/consecutive_failures"][0] == "2"
        assert topics["deye/deye_roof/runtime/backoff"][0] == "on"
        assert "deye/deye_roof/runtime/last_seen" not in topics

    def test_runtime_requires_connection(self, publisher):
        publisher.connected = False
        publisher.publish_device_runtime("Deye Roof", {'transport': 'rtu'})
        publisher.client.publish.assert_not_called()


class TestDiscovery:
    def test_sensor_configs(self, publisher):
        count = publisher.publish_ha_discovery("Deye Roof", DEFINITIONS, model="SUN-5K-G", serial_number="2110123456")

        topics = published(publisher)
        config = json.loads(topics["homeassistant/sensor/deye/deye_roof/ac_power/config"][0])
        assert config["state_topic"] == "deye/deye_roof/ac_power"
        assert config["unit_of_measurement"] == "W"
        assert config["device_class"] == "power"
        assert config["unique_id"] == "deye_deye_roof_ac_power"
        assert config["device"]["serial_number"] == "2110123456"
        assert {"topic": "deye/deye_roof/availability"} in config["availability"]
        assert count == len(DEFINITIONS) + 5

    def test_runtime_sensors_are_diagnostic(self, publisher):
        publisher.publish_ha_discovery("Deye Roof", DEFINITIONS)

        topics = published(publisher)
        config = json.loads(topics["homeassistant/sensor/deye/deye_roof/runtime_transport/config"][0])
        assert config["entity_category"] == "diagnostic"
        assert config["availability"] == [{"topic": "deye/status"}]
        assert "serial_number" not in config["device"]

    def test_disabled(self, publisher):
        publisher.config.ha_discovery = False
        assert publisher.publish_ha_discovery("Deye Roof", DEFINITIONS) == 0


@pytest.mark.parametrize("value,payload", [
    (1500.04449, "1500.044"), (7, "7"), ("Normal", "Normal"), ({"a": 1}, '{"a": 1}'),
])
def test_encode_payload(value, payload):
    assert encode_payload(value) == payload


def test_stats_count_disconnects(publisher):
    publisher.connected = False
    publisher.connected = False
    stats = publisher.get_stats()
    assert stats['disconnects'] == 1
    assert stats['publish_mode'] == 'changed'
