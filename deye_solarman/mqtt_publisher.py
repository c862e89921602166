"""MQTT output.

Topic layout below ``topic_prefix``:

    status                             application online/offline (LWT)
    <device>/<field>                   one retained topic per catalog value
    <device>/availability[/reason]     inverter reachability
    <device>/runtime/<field>           polling diagnostics
"""

import json
import time
from collections import Counter
from typing import Any, Dict, Iterable, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .ha_discovery import discovery_messages
from .logging_setup import get_logger
from .publishing import ChangeFilter, ReconnectMonitor, RetryPolicy, connect_with_retry
from .register_parser import RegisterDefinition, slugify

STARTUP_RETRY = RetryPolicy(attempts=10, initial_delay=2, max_delay=60)
MONITOR_INTERVAL = 30   # seconds
CONNACK_WAIT = 1.0      # seconds
KEEPALIVE = 60
MAX_QUEUED = 1000

# Publish exceptions whose text matches one of these mean the socket is gone
LINK_ERROR_MARKERS = ('connection', 'socket', 'broken pipe')


def encode_payload(value: Any) -> str:
    """Containers as JSON, floats rounded to 3 places, everything else as str."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, float):
        return str(round(value, 3))
    return str(value)


class MQTTPublisher:
    """Sends inverter snapshots to one broker.

    paho reconnects by itself once its network loop runs; until then the
    monitor keeps trying the initial connect.
    """

    def __init__(self, config: MQTTConfig, publish_mode: str = 'changed'):
        self.config = config
        self.changes = ChangeFilter(publish_mode)
        self.counters = Counter()
        self.client: Optional[mqtt.Client] = None
        self.log = get_logger()
        self._online = False
        self._loop_running = False
        self._was_online = False
        self._monitor = ReconnectMonitor("MQTT-Reconnect", self._check_link, MONITOR_INTERVAL)

        if config.enabled:
            self.client = self._make_client()

    @property
    def connected(self) -> bool:
        return self._online

    @connected.setter
    def connected(self, online: bool):
        if self._online and not online:
            self.counters['disconnects'] += 1
        self._online = online

    @property
    def publish_mode(self) -> str:
        return self.changes.mode

    @property
    def status_topic(self) -> str:
        return f"{self.config.topic_prefix}/status"

    def device_topic(self, device_name: str, *fields: str) -> str:
        return '/'.join((self.config.topic_prefix, slugify(device_name)) + fields)

    def _make_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        client.max_queued_messages_set(MAX_QUEUED)
        client.will_set(self.status_topic, payload="offline", qos=1, retain=True)
        client.reconnect_delay_set(min_delay=1, max_delay=60)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        return client

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            self.connected = False
            self.log.error(f"Broker {self.config.broker} refused the session: {reason_code}")
            return
        self.connected = True
        self.counters['connects'] += 1
        self.log.info(f"Session open with {self.config.broker}:{self.config.port}")
        # New session: every topic goes out again on the next poll
        self.changes.reset()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.connected = False
        if reason_code != 0:
            self.log.warning(f"Broker session dropped: {reason_code}")

    def _open_session(self) -> bool:
        if self._loop_running:
            # paho owns reconnects from here on
            time.sleep(CONNACK_WAIT)
            return self.connected
        try:
            self.client.connect(self.config.broker, self.config.port, keepalive=KEEPALIVE)
        except (OSError, ValueError) as e:
            self.log.warning(f"Cannot reach broker {self.config.broker}:{self.config.port}: {e}")
            return False
        self.client.loop_start()
        self._loop_running = True
        deadline = time.monotonic() + CONNACK_WAIT
        while not self.connected and time.monotonic() < deadline:
            time.sleep(0.1)
        return self.connected

    def _check_link(self) -> bool:
        """Monitor tick: log transitions and retry while no loop is running."""
        online = self.connected
        if not online and not self._loop_running:
            online = self._open_session()
        if online != self._was_online:
            if online:
                self.log.info("Broker session restored")
            else:
                self.log.warning("Broker session lost, paho is reconnecting")
        self._was_online = online
        return online

    def connect(self) -> bool:
        if not self.config.enabled:
            self.log.info("MQTT output disabled")
            return False
        self._was_online = connect_with_retry(self._open_session, STARTUP_RETRY, "MQTT")
        self._monitor.start()
        return self._was_online

    def disconnect(self):
        self._monitor.stop()
        if self.client is not None:
            self.client.loop_stop()
            self.client.disconnect()
            self._loop_running = False
        self.connected = False
        self.log.info("MQTT session closed")

    def _send(self, topic: str, payload: str, retain: Optional[bool] = None) -> bool:
        if self.client is None:
            return False
        if retain is None:
            retain = self.config.retain
        try:
            info = self.client.publish(topic, payload, qos=self.config.qos, retain=retain)
        except Exception as e:
            if any(marker in str(e).lower() for marker in LINK_ERROR_MARKERS):
                self.log.warning(f"Link error publishing {topic}: {e}")
                self.connected = False
            else:
                self.log.error(f"Publishing {topic} failed: {e}")
            return False

        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            self.counters['published'] += 1
            return True
        if info.rc == mqtt.MQTT_ERR_QUEUE_SIZE:
            self.log.warning(f"Outgoing queue full, dropped {topic}")
        elif info.rc in (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_CONN_LOST):
            self.connected = False
        return False

    def publish(self, topic: str, value: Any, retain: Optional[bool] = None) -> bool:
        return self._send(topic, encode_payload(value), retain)

    def publish_if_changed(self, topic: str, value: Any, retain: Optional[bool] = None) -> bool:
        if not self.changes.changed(topic, value):
            self.counters['skipped'] += 1
            return False
        return self.publish(topic, value, retain)

    def publish_telemetry(self, device_name: str, values: Dict[str, Any],
                          definitions: Iterable[RegisterDefinition]) -> int:
        """Send each decoded value to its own topic; returns how many went out."""
        if self.client is None:
            return 0
        sent = 0
        for definition in definitions:
            value = values.get(definition.name)
            if value is not None and self.publish_if_changed(
                    self.device_topic(device_name, definition.field_name), value):
                sent += 1
        return sent

    def publish_availability(self, device_name: str, available: bool, reason: str = ""):
        topic = self.device_topic(device_name, 'availability')
        self.publish_if_changed(topic, 'online' if available else 'offline', retain=True)
        self.publish_if_changed(f"{topic}/reason", reason, retain=True)

    def publish_device_runtime(self, device_name: str, status: Dict[str, Any]):
        """Diagnostics from ``PollingScheduler.get_status()``."""
        if not self.connected:
            return
        runtime = {
            'transport': status.get('transport'),
            'consecutive_failures': status.get('consecutive_failures', 0),
            'last_error': status.get('last_error', ''),
            'backoff': 'on' if status.get('in_backoff') else 'off',
        }
        if status.get('last_success'):
            runtime['last_seen'] = time.strftime(
                '%Y-%m-%dT%H:%M:%S%z', time.localtime(status['last_success']))
        for field, value in runtime.items():
            self.publish_if_changed(self.device_topic(device_name, 'runtime', field), value,
                                    retain=True)

    def publish_status(self, status: str):
        self.publish(self.status_topic, status, retain=True)

    def publish_ha_discovery(self, device_name: str, definitions: Iterable[RegisterDefinition],
                             model: Optional[str] = None,
                             serial_number: Optional[str] = None) -> int:
        """Send retained discovery configs; returns how many were accepted."""
        if not (self.connected and self.config.ha_discovery):
            return 0
        messages = discovery_messages(self.config.ha_discovery_prefix, self.config.topic_prefix,
                                      device_name, definitions, model, serial_number)
        sent = sum(1 for topic, entity in messages
                   if self._send(topic, json.dumps(entity), retain=True))
        self.log.info(f"{device_name}: {sent} of {len(messages)} discovery configs sent")
        return sent

    def get_stats(self) -> Dict:
        return {
            'enabled': self.config.enabled,
            'connected': self.connected,
            'broker': f"{self.config.broker}:{self.config.port}",
            'publish_mode': self.publish_mode,
            'messages_published': self.counters['published'],
            'messages_skipped': self.counters['skipped'],
            'connects': self.counters['connects'],
            'disconnects': self.counters['disconnects'],
        }
