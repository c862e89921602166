"""Configuration for Deye Solarman MQTT.

Settings come from a YAML file; environment variables override single
values. Each dataclass field carries the name of its variable in
``metadata['env']``. Device variables (LOGGER_HOST, LOGGER_SERIAL, ...)
only apply to the first device, so one container can run from
environment alone.
"""

import os
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

VARIANTS = ('string_2mppt', 'string_4mppt', 'hybrid', 'custom')

SEARCH_PATHS = (
    '/app/config/deye_solarman_mqtt.yaml',
    'config/deye_solarman_mqtt.yaml',
    'deye_solarman_mqtt.yaml',
)

_TRUTHY = ('true', '1', 'yes', 'on')


def _as_bool(text: str) -> bool:
    return text.strip().lower() in _TRUTHY


def _env_get(key: str, default: Any = None, cast=str) -> Any:
    """``cast`` applied to ``$key``; ``default`` when unset or not parseable."""
    text = os.environ.get(key)
    if text is None:
        return default
    try:
        return cast(text)
    except ValueError:
        return default


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)


_CASTS = {bool: _as_bool, int: int, float: float, Optional[float]: float}


def setting(default: Any = MISSING, env: str = None):
    """Dataclass field overridable by environment variable ``env``."""
    return field(default=default, metadata={'env': env} if env else {})


@dataclass
class DeviceConfig:
    """One inverter behind a Solarman logger"""
    name: str = setting(None, 'DEVICE_NAME')   # None = deye_<logger serial>
    host: str = setting(None, 'LOGGER_HOST')
    logger_serial: int = setting(None, 'LOGGER_SERIAL')
    port: int = setting(8899, 'LOGGER_PORT')
    slave_id: int = setting(1, 'LOGGER_SLAVE_ID')
    variant: str = setting("string_2mppt", 'INVERTER_VARIANT')
    registers_file: str = setting("", 'REGISTERS_FILE')   # variant 'custom' only
    power_sensor: str = ""                                # empty = variant default
    timeout: float = setting(15.0, 'LOGGER_TIMEOUT')
    max_registers: int = 100


@dataclass
class ScheduleConfig:
    """Polling cadence and night handling"""
    poll_interval: float = setting(60.0, 'POLL_INTERVAL')
    initial_delay: float = 1.5
    night_backoff: float = setting(1800.0, 'NIGHT_BACKOFF')      # pause after a night failure
    power_threshold: float = setting(5.0, 'POWER_THRESHOLD')     # W, above it a failure is a fault
    night_margin: float = 0.5                                    # hours around sunrise/sunset


@dataclass
class LocationConfig:
    """Site location for the sunrise/sunset estimate"""
    latitude: Optional[float] = setting(None, 'LATITUDE')
    longitude: Optional[float] = setting(None, 'LONGITUDE')
    timezone: str = setting("", 'TIMEZONE')   # IANA name, empty = system local time

    def __post_init__(self):
        self.latitude = _optional_float(self.latitude)
        self.longitude = _optional_float(self.longitude)


@dataclass
class MQTTConfig:
    enabled: bool = setting(True, 'MQTT_ENABLED')
    broker: str = setting("localhost", 'MQTT_BROKER')
    port: int = setting(1883, 'MQTT_PORT')
    username: str = setting("", 'MQTT_USERNAME')
    password: str = setting("", 'MQTT_PASSWORD')
    topic_prefix: str = setting("deye", 'MQTT_PREFIX')
    retain: bool = setting(True, 'MQTT_RETAIN')
    qos: int = setting(0, 'MQTT_QOS')
    ha_discovery: bool = setting(False, 'MQTT_HA_DISCOVERY')
    ha_discovery_prefix: str = "homeassistant"


@dataclass
class InfluxDBConfig:
    enabled: bool = setting(False, 'INFLUXDB_ENABLED')
    url: str = setting("", 'INFLUXDB_URL')
    token: str = setting("", 'INFLUXDB_TOKEN')
    org: str = setting("", 'INFLUXDB_ORG')
    bucket: str = setting("deye", 'INFLUXDB_BUCKET')
    write_interval: int = setting(60, 'INFLUXDB_WRITE_INTERVAL')
    publish_mode: str = setting("", 'INFLUXDB_PUBLISH_MODE')   # empty = general.publish_mode


@dataclass
class GeneralConfig:
    log_level: str = setting("INFO", 'LOG_LEVEL')
    log_file: str = setting("", 'LOG_FILE')
    publish_mode: str = setting("changed", 'PUBLISH_MODE')   # 'changed' or 'all'


def section_values(cls, raw: Optional[Dict], use_env: bool = True) -> Dict[str, Any]:
    """Field values of ``cls`` from a YAML mapping, then the environment."""
    raw = raw or {}
    values = {}
    for f in fields(cls):
        value = raw.get(f.name, None if f.default is MISSING else f.default)
        env_key = f.metadata.get('env')
        if use_env and env_key:
            value = _env_get(env_key, value, _CASTS.get(f.type, str))
        values[f.name] = value
    return values


def parse_device(raw: Optional[Dict], index: int, use_env: bool) -> DeviceConfig:
    values = section_values(DeviceConfig, raw, use_env)
    where = f"devices[{index}]"

    if not values['host']:
        raise ValueError(f"{where}.host is required (YAML host or LOGGER_HOST)")
    if values['logger_serial'] in (None, ''):
        raise ValueError(f"{where}.logger_serial is required (YAML logger_serial or LOGGER_SERIAL)")
    if values['variant'] not in VARIANTS:
        raise ValueError(f"{where}.variant '{values['variant']}' is not one of {', '.join(VARIANTS)}")
    if values['variant'] == 'custom' and not values['registers_file']:
        raise ValueError(f"{where}: variant 'custom' needs a registers_file")

    values['logger_serial'] = int(values['logger_serial'])
    values['name'] = values['name'] or f"deye_{values['logger_serial']}"
    return DeviceConfig(**values)


class ConfigLoader:
    """Parsed configuration; one shared instance via :func:`get_config`."""

    _instance: Optional['ConfigLoader'] = None

    def __init__(self, config_path: str = None):
        self.config_path: Optional[str] = None
        self.raw: Dict = self._read_yaml(config_path)

        self.general = GeneralConfig(**section_values(GeneralConfig, self.raw.get('general')))
        self.schedule = ScheduleConfig(**section_values(ScheduleConfig, self.raw.get('schedule')))
        self.location = LocationConfig(**section_values(LocationConfig, self.raw.get('location')))
        self.mqtt = MQTTConfig(**section_values(MQTTConfig, self.raw.get('mqtt')))
        self.influxdb = InfluxDBConfig(**section_values(InfluxDBConfig, self.raw.get('influxdb')))
        self.devices: List[DeviceConfig] = self._parse_devices(self.raw.get('devices'))

    @classmethod
    def get_instance(cls, config_path: str = None) -> 'ConfigLoader':
        if cls._instance is None:
            cls._instance = cls(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Forget the shared instance (tests, SIGHUP reload)."""
        cls._instance = None

    def _read_yaml(self, config_path: Optional[str]) -> Dict:
        candidates = [p for p in (config_path, os.environ.get('DEYE_CONFIG')) + SEARCH_PATHS if p]
        for path in candidates:
            if os.path.exists(path):
                with open(path, 'r') as f:
                    self.config_path = path
                    return yaml.safe_load(f) or {}

        if os.environ.get('LOGGER_HOST'):
            return {}
        raise FileNotFoundError(
            "No configuration file and LOGGER_HOST is not set; looked in:\n"
            + "\n".join(f"  - {p}" for p in candidates)
        )

    @staticmethod
    def _parse_devices(raw) -> List[DeviceConfig]:
        if isinstance(raw, dict):
            raw = [raw]
        entries = raw or [{}]   # [{}]: a single device described by env vars
        devices = [parse_device(entry, i, use_env=(i == 0)) for i, entry in enumerate(entries)]

        seen, duplicates = set(), set()
        for device in devices:
            (duplicates if device.name in seen else seen).add(device.name)
        if duplicates:
            raise ValueError(f"Duplicate device names: {', '.join(sorted(duplicates))}")
        return devices

    def device(self, name: str) -> Optional[DeviceConfig]:
        return next((d for d in self.devices if d.name == name), None)


def get_config(config_path: str = None) -> ConfigLoader:
    return ConfigLoader.get_instance(config_path)
