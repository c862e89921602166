"""Inverter device lifecycle.

The polling scheduler only talks to ``InverterDevice``; each Deye model is a
``SolarmanInverter`` subclass that differs in its register catalog and in
which definition reports output power.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from .config import DeviceConfig
from .logging_setup import get_logger
from .profiles import HYBRID, STRING_2MPPT, STRING_4MPPT, load_register_catalog
from .register_parser import RegisterDefinition, Value
from .solarman_v5 import SolarmanV5Client, TransportMode
from .telemetry_client import TelemetryClient
from .timers import Timers


class InverterDevice(ABC):
    """Lifecycle every polled device provides."""

    name: str

    @abstractmethod
    def init(self):
        """Create the transport; called on start and after reconfigure."""

    @abstractmethod
    def poll(self) -> Dict[str, Value]:
        """Read one full snapshot; raises on any transport or frame error."""

    @abstractmethod
    def teardown(self):
        """Release the transport."""

    def disconnect(self):
        """Drop the current connection but stay initialised."""

    @property
    @abstractmethod
    def transport_mode(self) -> TransportMode:
        ...

    @property
    @abstractmethod
    def definitions(self) -> Tuple[RegisterDefinition, ...]:
        ...

    @property
    @abstractmethod
    def power_sensor(self) -> Optional[str]:
        """Name of the definition holding output power, if the model has one."""


class SolarmanInverter(InverterDevice):
    """Deye inverter reached through a Solarman V5 logger."""

    model = "Deye inverter"
    catalog: Tuple[RegisterDefinition, ...] = ()
    default_power_sensor: Optional[str] = None

    def __init__(self, config: DeviceConfig, timers: Timers = None,
                 socket_factory: Callable = None):
        self.config = config
        self.name = config.name
        self.timers = timers
        self.socket_factory = socket_factory
        self.log = get_logger()
        self._telemetry: Optional[TelemetryClient] = None

    def init(self):
        client = SolarmanV5Client(
            host=self.config.host,
            logger_serial=self.config.logger_serial,
            port=self.config.port,
            slave_id=self.config.slave_id,
            timeout=self.config.timeout,
            timers=self.timers,
            socket_factory=self.socket_factory,
        )
        self._telemetry = TelemetryClient(client, self.config.max_registers)
        self.log.info(
            f"{self.name}: {self.model} via logger {self.config.logger_serial} "
            f"at {self.config.host}:{self.config.port}, {len(self.definitions)} definitions"
        )

    @property
    def telemetry(self) -> TelemetryClient:
        if self._telemetry is None:
            self.init()
        return self._telemetry

    def poll(self) -> Dict[str, Value]:
        return self.telemetry.read_all(self.definitions)

    def read_device_serial(self) -> Optional[str]:
        return self.telemetry.read_device_serial(self.definitions)

    def disconnect(self):
        if self._telemetry is not None:
            self._telemetry.disconnect()

    def teardown(self):
        self.disconnect()
        self._telemetry = None

    @property
    def transport_mode(self) -> TransportMode:
        if self._telemetry is None:
            return TransportMode.RTU
        return self._telemetry.transport_mode

    @property
    def definitions(self) -> Tuple[RegisterDefinition, ...]:
        return self.catalog

    @property
    def power_sensor(self) -> Optional[str]:
        return self.config.power_sensor or self.default_power_sensor

    def get_stats(self) -> dict:
        if self._telemetry is None:
            return {'transport': self.transport_mode.value}
        return self._telemetry.get_stats()


class DeyeString2Mppt(SolarmanInverter):
    model = "Deye string inverter (2 MPPT)"
    catalog = STRING_2MPPT
    default_power_sensor = "Output AC Power"


class DeyeString4Mppt(SolarmanInverter):
    model = "Deye string inverter (4 MPPT)"
    catalog = STRING_4MPPT
    default_power_sensor = "Output AC Power"


class DeyeHybrid(SolarmanInverter):
    # No single output power register; grid/load/battery power are reported separately
    model = "Deye hybrid inverter"
    catalog = HYBRID


class CustomCatalogInverter(SolarmanInverter):
    """Register catalog loaded from the device's YAML ``registers_file``."""

    model = "custom catalog inverter"

    def __init__(self, config: DeviceConfig, timers: Timers = None,
                 socket_factory: Callable = None):
        super().__init__(config, timers, socket_factory)
        self.catalog = load_register_catalog(config.registers_file)

        if config.power_sensor and config.power_sensor not in {d.name for d in self.catalog}:
            raise ValueError(
                f"{config.name}: power_sensor '{config.power_sensor}' not in {config.registers_file}"
            )


DEVICE_CLASSES = {
    'string_2mppt': DeyeString2Mppt,
    'string_4mppt': DeyeString4Mppt,
    'hybrid': DeyeHybrid,
    'custom': CustomCatalogInverter,
}


def create_device(config: DeviceConfig, timers: Timers = None,
                  socket_factory: Callable = None) -> SolarmanInverter:
    """Instantiate the device class matching ``config.variant``."""
    try:
        device_class = DEVICE_CLASSES[config.variant]
    except KeyError:
        raise ValueError(f"Unknown inverter variant '{config.variant}'") from None
    return device_class(config, timers, socket_factory)
