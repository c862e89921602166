"""InfluxDB output: one ``deye_inverter`` point per device snapshot."""

import time
from collections import Counter
from typing import Any, Dict, Iterable, Optional

from influxdb_client import InfluxDBClient, Point, WriteOptions

from .config import InfluxDBConfig
from .logging_setup import get_logger
from .publishing import ChangeFilter, ReconnectMonitor, RetryPolicy, connect_with_retry
from .register_parser import RegisterDefinition

MEASUREMENT = "deye_inverter"
STARTUP_RETRY = RetryPolicy(attempts=5, initial_delay=2, max_delay=60)
MONITOR_INTERVAL = 30  # seconds

BATCHING = WriteOptions(batch_size=100, flush_interval=10_000, jitter_interval=2_000,
                        retry_interval=5_000, max_retries=3)

# Write errors mentioning one of these mean the server went away
LINK_ERROR_MARKERS = (
    'connection refused', 'connection reset', 'connection closed', 'connection aborted',
    'no route to host', 'network is unreachable', 'timed out', 'timeout', 'broken pipe',
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def numeric_fields(values: Dict[str, Any], definitions: Iterable[RegisterDefinition]) -> Dict[str, float]:
    return {d.field_name: float(values[d.name]) for d in definitions if _is_number(values.get(d.name))}


def build_point(device_name: str, values: Dict[str, Any],
                definitions: Iterable[RegisterDefinition]) -> Point:
    """Numbers become float fields; lookup labels and strings become tags."""
    point = Point(MEASUREMENT).tag("device", device_name)
    for definition in definitions:
        value = values.get(definition.name)
        if value is None:
            continue
        if _is_number(value):
            point = point.field(definition.field_name, float(value))
        else:
            point = point.tag(definition.field_name, str(value))
    return point


class InfluxDBPublisher:
    """Batched snapshot writer, rate limited per device."""

    def __init__(self, config: InfluxDBConfig, publish_mode: str = 'changed',
                 connect: bool = True):
        self.config = config
        self.changes = ChangeFilter(publish_mode)
        self.counters = Counter()
        self.client: Optional[InfluxDBClient] = None
        self.write_api = None
        self.connected = False
        self.log = get_logger()
        self._last_write: Dict[str, float] = {}
        self._monitor = ReconnectMonitor("InfluxDB-Reconnect", self._recover, MONITOR_INTERVAL,
                                         until_success=True)

        if config.enabled and connect:
            if not connect_with_retry(self._open, STARTUP_RETRY, "InfluxDB"):
                self._monitor.start()

    @property
    def publish_mode(self) -> str:
        return self.changes.mode

    def _release(self):
        for resource in (self.write_api, self.client):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                self.log.debug(f"Closing InfluxDB {type(resource).__name__}: {e}")
        self.write_api = None
        self.client = None

    def _open(self) -> bool:
        self._release()
        try:
            self.client = InfluxDBClient(url=self.config.url, token=self.config.token,
                                         org=self.config.org)
            self.write_api = self.client.write_api(write_options=BATCHING)
            health = self.client.health()
        except Exception as e:
            self.log.warning(f"InfluxDB at {self.config.url} unreachable: {e}")
            self.connected = False
            return False

        self.connected = health.status == "pass"
        if self.connected:
            self.log.info(f"Writing to InfluxDB {self.config.url}, bucket {self.config.bucket}")
        else:
            self.log.warning(f"InfluxDB {self.config.url} reports {health.status}: {health.message}")
        return self.connected

    def _recover(self) -> bool:
        if self.connected:
            return True
        if self._open():
            self.log.info("InfluxDB connection restored")
            return True
        return False

    def _on_write_error(self, error: Exception):
        text = str(error).lower()
        if self.connected and any(marker in text for marker in LINK_ERROR_MARKERS):
            self.log.warning("Lost InfluxDB, reconnecting in background")
            self.connected = False
            self._monitor.start()

    def is_enabled(self) -> bool:
        return self.config.enabled and self.connected

    def _rate_limited(self, device_name: str) -> bool:
        last = self._last_write.get(device_name)
        return last is not None and time.time() - last < self.config.write_interval

    def write_snapshot(self, device_name: str, values: Dict[str, Any],
                       definitions: Iterable[RegisterDefinition]):
        """Write one point unless rate limited, unchanged or free of numbers."""
        if not self.is_enabled():
            return
        definitions = list(definitions)
        fields = numeric_fields(values, definitions)
        if not fields or self._rate_limited(device_name):
            return
        if not self.changes.changed(device_name, fields):
            return
        self._last_write[device_name] = time.time()

        try:
            self.write_api.write(bucket=self.config.bucket,
                                 record=build_point(device_name, values, definitions))
        except Exception as e:
            self.counters['failed'] += 1
            self.log.error(f"{device_name}: InfluxDB write failed: {e}")
            self._on_write_error(e)
            return
        self.counters['written'] += 1

    def flush(self):
        if self.write_api is None:
            return
        try:
            self.write_api.flush()
        except Exception as e:
            self.log.error(f"InfluxDB flush failed: {e}")

    def close(self):
        self._monitor.stop()
        self._release()
        self.connected = False
        self.log.info("InfluxDB output closed")

    def get_stats(self) -> Dict:
        return {
            'enabled': self.config.enabled,
            'connected': self.connected,
            'url': self.config.url,
            'bucket': self.config.bucket,
            'publish_mode': self.publish_mode,
            'writes_total': self.counters['written'],
            'writes_failed': self.counters['failed'],
        }
