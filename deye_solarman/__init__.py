"""Deye Solarman MQTT - Solarman V5 logger to MQTT/InfluxDB bridge"""

__version__ = "1.0.0"

from .logging_setup import setup_logging, get_logger
from .config import get_config, ConfigLoader
from .exceptions import (
    SolarmanError,
    TransportConnectionError,
    FrameFormatError,
    ModbusExceptionError,
)
from .timers import Timers, RealTimers, VirtualTimers
from .solarman_v5 import SolarmanV5Client, TransportMode
from .register_parser import RegisterDefinition, ReadRequest, build_read_requests, decode_register
from .telemetry_client import TelemetryClient
from .devices import InverterDevice, SolarmanInverter, create_device
from .poller import PollingScheduler, DeviceState
from .mqtt_publisher import MQTTPublisher
from .influxdb_publisher import InfluxDBPublisher

__all__ = [
    '__version__',
    'setup_logging',
    'get_logger',
    'get_config',
    'ConfigLoader',
    'SolarmanError',
    'TransportConnectionError',
    'FrameFormatError',
    'ModbusExceptionError',
    'Timers',
    'RealTimers',
    'VirtualTimers',
    'SolarmanV5Client',
    'TransportMode',
    'RegisterDefinition',
    'ReadRequest',
    'build_read_requests',
    'decode_register',
    'TelemetryClient',
    'InverterDevice',
    'SolarmanInverter',
    'create_device',
    'PollingScheduler',
    'DeviceState',
    'MQTTPublisher',
    'InfluxDBPublisher',
]
