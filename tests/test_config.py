"""Tests for the YAML configuration loader."""
import pytest

from deye_solarman.config import ConfigLoader, get_config

ENV_KEYS = (
    'DEYE_CONFIG', 'LOGGER_HOST', 'LOGGER_PORT', 'LOGGER_SERIAL', 'LOGGER_SLAVE_ID',
    'LOGGER_TIMEOUT', 'INVERTER_VARIANT', 'DEVICE_NAME', 'REGISTERS_FILE',
    'POLL_INTERVAL', 'NIGHT_BACKOFF', 'POWER_THRESHOLD', 'LATITUDE', 'LONGITUDE', 'TIMEZONE',
    'MQTT_ENABLED', 'MQTT_BROKER', 'MQTT_PORT', 'MQTT_PREFIX', 'MQTT_HA_DISCOVERY',
    'INFLUXDB_ENABLED', 'PUBLISH_MODE', 'LOG_LEVEL',
)

BASIC_CONFIG = """
general:
  log_level: DEBUG
devices:
  - name: Roof
    host: 192.168.1.50
    logger_serial: 2712345678
    variant: string_4mppt
  - name: Garage
    host: 192.168.1.51
    logger_serial: 2798765432
    port: 8900
schedule:
  poll_interval: 30
  night_backoff: 900
location:
  latitude: 50.45
  longitude: 0
  timezone: Europe/Kyiv
mqtt:
  broker: mqtt.local
  topic_prefix: solar
  ha_discovery: true
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    ConfigLoader.reset_instance()
    yield
    ConfigLoader.reset_instance()


@pytest.fixture
def config_file(tmp_path):
    def write(text):
        path = tmp_path / "deye_solarman_mqtt.yaml"
        path.write_text(text)
        return str(path)
    return write


class TestConfigLoader:
    def test_loads_devices(self, config_file):
        config = ConfigLoader(config_file(BASIC_CONFIG))

        assert [d.name for d in config.devices] == ["Roof", "Garage"]
        roof, garage = config.devices
        assert roof.logger_serial == 2712345678
        assert roof.variant == "string_4mppt"
        assert roof.port == 8899
        assert garage.port == 8900
        assert garage.variant == "string_2mppt"
        assert config.device("Garage") is garage
        assert config.device("Shed") is None

    def test_sections(self, config_file):
        config = ConfigLoader(config_file(BASIC_CONFIG))

        assert config.general.log_level == "DEBUG"
        assert config.schedule.poll_interval == 30
        assert config.schedule.night_backoff == 900
        assert config.schedule.power_threshold == 5.0
        assert config.location.latitude == 50.45
        assert config.location.longitude == 0.0
        assert config.location.timezone == "Europe/Kyiv"
        assert config.mqtt.broker == "mqtt.local"
        assert config.mqtt.topic_prefix == "solar"
        assert config.mqtt.ha_discovery is True
        assert config.influxdb.enabled is False

    def test_records_path(self, config_file):
        path = config_file(BASIC_CONFIG)
        assert ConfigLoader(path).config_path == path

    def test_missing_location_is_none(self, config_file):
        config = ConfigLoader(config_file("devices:\n  - {host: h, logger_serial: 1}\n"))
        assert config.location.latitude is None
        assert config.location.longitude is None
        assert config.devices[0].name == "deye_1"

    def test_env_overrides_first_device_only(self, config_file, monkeypatch):
        monkeypatch.setenv('LOGGER_HOST', '10.0.0.9')
        monkeypatch.setenv('LOGGER_SERIAL', '42')
        monkeypatch.setenv('POLL_INTERVAL', '15')
        monkeypatch.setenv('MQTT_ENABLED', 'false')

        config = ConfigLoader(config_file(BASIC_CONFIG))

        assert config.devices[0].host == '10.0.0.9'
        assert config.devices[0].logger_serial == 42
        assert config.devices[1].host == '192.168.1.51'
        assert config.schedule.poll_interval == 15.0
        assert config.mqtt.enabled is False

    def test_env_only(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('LOGGER_HOST', '10.0.0.9')
        monkeypatch.setenv('LOGGER_SERIAL', '2712345678')
        monkeypatch.setenv('INVERTER_VARIANT', 'hybrid')

        config = ConfigLoader()

        assert len(config.devices) == 1
        assert config.devices[0].variant == 'hybrid'
        assert config.devices[0].name == 'deye_2712345678'
        assert config.config_path is None

    def test_no_config_and_no_env(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(FileNotFoundError, match="LOGGER_HOST"):
            ConfigLoader()

    def test_deye_config_env_path(self, config_file, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('DEYE_CONFIG', config_file(BASIC_CONFIG))
        assert len(ConfigLoader().devices) == 2

    def test_host_required(self, config_file):
        with pytest.raises(ValueError, match="host"):
            ConfigLoader(config_file("devices:\n  - {logger_serial: 1}\n"))

    def test_serial_required(self, config_file):
        with pytest.raises(ValueError, match="logger_serial"):
            ConfigLoader(config_file("devices:\n  - {host: h}\n"))

    def test_unknown_variant(self, config_file):
        with pytest.raises(ValueError, match="variant"):
            ConfigLoader(config_file("devices:\n  - {host: h, logger_serial: 1, variant: micro}\n"))

    def test_custom_needs_registers_file(self, config_file):
        with pytest.raises(ValueError, match="registers_file"):
            ConfigLoader(config_file("devices:\n  - {host: h, logger_serial: 1, variant: custom}\n"))

    def test_duplicate_names(self, config_file):
        text = "devices:\n  - {name: A, host: h, logger_serial: 1}\n  - {name: A, host: i, logger_serial: 2}\n"
        with pytest.raises(ValueError, match="Duplicate"):
            ConfigLoader(config_file(text))

    def test_singleton(self, config_file):
        path = config_file(BASIC_CONFIG)
        first = get_config(path)
        assert get_config() is first

        ConfigLoader.reset_instance()
        assert get_config(path) is not first

    def test_unparseable_env_keeps_yaml_value(self, config_file, monkeypatch):
        monkeypatch.setenv('MQTT_PORT', 'not-a-port')
        monkeypatch.setenv('LATITUDE', '')
        config = ConfigLoader(config_file(BASIC_CONFIG))
        assert config.mqtt.port == 1883
        assert config.location.latitude == 50.45
