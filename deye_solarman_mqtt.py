#!/usr/bin/env python3
"""
Deye Solarman MQTT

Polls Deye inverters through their Solarman Wi-Fi logger (V5 frames on
TCP 8899) and forwards the decoded values to MQTT and/or InfluxDB.
Every configured inverter gets its own PollingScheduler; the main
thread only handles signals, reloads and the health file.

SIGINT/SIGTERM stop the service, SIGHUP re-reads the configuration.
"""

import argparse
import signal
import sys
import threading
import time
from typing import Callable, Dict, Optional

from deye_solarman import (
    __version__,
    ConfigLoader,
    InfluxDBPublisher,
    MQTTPublisher,
    PollingScheduler,
    SolarmanError,
    SolarmanV5Client,
    TelemetryClient,
    create_device,
    get_config,
    get_logger,
    setup_logging,
)
from deye_solarman.logger_status import fetch_logger_serial
from deye_solarman.profiles import DEVICE_SERIAL
from deye_solarman.solarman_v5 import DEFAULT_PORT, DEFAULT_SLAVE_ID, PAIRING_TIMEOUT
from healthcheck import HEALTH_FILE, format_uptime, write_health_file

HEALTH_INTERVAL = 30  # seconds
LWT_FLUSH_DELAY = 0.5  # seconds for the offline status to leave the socket


class DeyeSolarmanMQTT:
    """Owns the outputs and one scheduler per configured inverter."""

    def __init__(self, config_path: str = None):
        self.config_path = config_path
        self.config = get_config(config_path)
        self.log = setup_logging(self.config.general.log_level, self.config.general.log_file)

        self.mqtt_publisher: Optional[MQTTPublisher] = None
        self.influxdb_publisher: Optional[InfluxDBPublisher] = None
        self.schedulers: Dict[str, PollingScheduler] = {}
        self._announced_serials: Dict[str, Optional[str]] = {}

        self._start_time = time.time()
        self._stop = threading.Event()
        self._reload_requested = threading.Event()
        self._routes: Dict[str, Callable] = {
            'telemetry': self._route_telemetry,
            'availability': self._route_availability,
            'diagnostics': self._route_diagnostics,
        }

        signal.signal(signal.SIGINT, self._on_stop_signal)
        signal.signal(signal.SIGTERM, self._on_stop_signal)
        signal.signal(signal.SIGHUP, self._on_reload_signal)

    def _on_stop_signal(self, signum, frame):
        self.log.info(f"Signal {signal.Signals(signum).name}, stopping")
        self._stop.set()

    def _on_reload_signal(self, signum, frame):
        # Reload runs on the main thread, not inside the handler
        self.log.info("SIGHUP, configuration reload scheduled")
        self._reload_requested.set()

    def _publish_data(self, device_name: str, kind: str, data: dict):
        """Scheduler callback: hand one event to the enabled outputs."""
        scheduler = self.schedulers.get(device_name)
        route = self._routes.get(kind)
        if scheduler is not None and route is not None:
            route(device_name, scheduler, data)

    def _route_telemetry(self, name: str, scheduler: PollingScheduler, data: dict):
        definitions = scheduler.device.definitions
        serial_number = scheduler.state.snapshot.get(DEVICE_SERIAL)
        if serial_number and serial_number != self._announced_serials.get(name):
            self._announce(scheduler, serial_number)
        if self.mqtt_publisher:
            self.mqtt_publisher.publish_telemetry(name, data, definitions)
        if self.influxdb_publisher:
            # InfluxDB gets the whole snapshot, MQTT only the changed values
            self.influxdb_publisher.write_snapshot(name, scheduler.state.snapshot, definitions)

    def _route_availability(self, name: str, scheduler: PollingScheduler, data: dict):
        if self.mqtt_publisher:
            self.mqtt_publisher.publish_availability(name, data['available'], data['reason'])

    def _route_diagnostics(self, name: str, scheduler: PollingScheduler, data: dict):
        if self.mqtt_publisher:
            self.mqtt_publisher.publish_device_runtime(name, data)

    def _open_outputs(self):
        general = self.config.general
        if self.config.mqtt.enabled:
            self.mqtt_publisher = MQTTPublisher(self.config.mqtt, general.publish_mode)
            if self.mqtt_publisher.connect():
                self.mqtt_publisher.publish_status("online")
            else:
                self.log.warning("MQTT broker not reachable yet, values are dropped until it is")
        else:
            self.log.info("MQTT output disabled")

        if self.config.influxdb.enabled:
            self.influxdb_publisher = InfluxDBPublisher(
                self.config.influxdb, self.config.influxdb.publish_mode or general.publish_mode)
        else:
            self.log.info("InfluxDB output disabled")

    def _announce(self, scheduler: PollingScheduler, serial_number: str = None):
        """Discovery configs for one inverter; sent again once its serial is read."""
        if self.mqtt_publisher and self.config.mqtt.ha_discovery:
            device = scheduler.device
            if self.mqtt_publisher.publish_ha_discovery(device.name, device.definitions,
                                                        getattr(device, 'model', None),
                                                        serial_number):
                self._announced_serials[device.name] = serial_number

    def _start_device(self, device_config):
        scheduler = PollingScheduler(create_device(device_config), self.config.schedule,
                                     self.config.location, publish_callback=self._publish_data)
        self.schedulers[scheduler.device.name] = scheduler
        self._announce(scheduler)
        scheduler.start()

    def start(self):
        self.log.info(f"Deye Solarman MQTT {__version__} starting")
        location = self.config.location
        if location.latitude is None or location.longitude is None:
            self.log.warning("No latitude/longitude, assuming sunrise 06:00 and sunset 19:00")
        else:
            self.log.info(f"Site at {location.latitude}, {location.longitude} "
                          f"({location.timezone or 'local time'})")

        # Outputs first: schedulers publish on their first poll
        self._open_outputs()
        for device_config in self.config.devices:
            self._start_device(device_config)
        self.log.info(f"{len(self.schedulers)} inverter(s) polling, "
                      f"publish mode {self.config.general.publish_mode}")

        self._run()

    def reload(self):
        """Re-read the configuration and apply it to running schedulers."""
        previous = self.config
        ConfigLoader.reset_instance()
        try:
            current = get_config(self.config_path)
        except (OSError, ValueError) as e:
            self.log.error(f"Keeping the running configuration, reload failed: {e}")
            ConfigLoader._instance = previous
            return

        self.config = current
        setup_logging(current.general.log_level, current.general.log_file)

        timing_changed = (current.schedule, current.location) != (previous.schedule, previous.location)
        wanted = {d.name: d for d in current.devices}

        for name in [n for n in self.schedulers if n not in wanted]:
            self.log.info(f"{name}: no longer configured, stopping")
            self.schedulers.pop(name).stop()

        for name, device_config in wanted.items():
            scheduler = self.schedulers.get(name)
            if scheduler is None:
                self._start_device(device_config)
            elif timing_changed or previous.device(name) != device_config:
                scheduler.reconfigure(create_device(device_config), current.schedule,
                                      current.location)
                self._announce(scheduler)

        self.log.info(f"Reload done, {len(self.schedulers)} inverter(s)")

    def _run(self):
        next_health = 0.0
        try:
            while not self._stop.wait(1):
                if self._reload_requested.is_set():
                    self._reload_requested.clear()
                    self.reload()
                if time.time() >= next_health:
                    self._write_health_file()
                    next_health = time.time() + HEALTH_INTERVAL
        except KeyboardInterrupt:
            pass
        self._shutdown()

    def health_status(self) -> str:
        """'sleep' when every inverter is in night backoff, else healthy/unhealthy."""
        statuses = [s.get_status() for s in self.schedulers.values()]
        if not statuses:
            return 'unhealthy'
        if all(s['in_backoff'] for s in statuses):
            return 'sleep'
        return 'healthy' if all(s['available'] for s in statuses) else 'unhealthy'

    def _write_health_file(self):
        status = self.health_status()
        available = sum(1 for s in self.schedulers.values() if s.state.available)
        try:
            write_health_file(
                HEALTH_FILE, status,
                mqtt=self.mqtt_publisher.connected if self.mqtt_publisher else True,
                devices=f"{available}/{len(self.schedulers)}",
                sleep_mode=status == 'sleep',
                uptime=format_uptime(time.time() - self._start_time),
            )
        except OSError as e:
            self.log.warning(f"Health file {HEALTH_FILE} not written: {e}")

    def _close_outputs(self):
        if self.mqtt_publisher:
            if self.mqtt_publisher.connected:
                self.mqtt_publisher.publish_status("offline")
                time.sleep(LWT_FLUSH_DELAY)
            self.mqtt_publisher.disconnect()
        if self.influxdb_publisher:
            self.influxdb_publisher.flush()
            self.influxdb_publisher.close()

    def _log_totals(self):
        for name, scheduler in self.schedulers.items():
            status = scheduler.get_status()
            self.log.info(f"{name}: {status['successful_polls']} ok / {status['failed_polls']} failed polls, "
                          f"transport {status['transport']}")
        if self.mqtt_publisher:
            stats = self.mqtt_publisher.get_stats()
            self.log.info(f"MQTT: {stats['messages_published']} sent, {stats['messages_skipped']} unchanged")
        if self.influxdb_publisher:
            stats = self.influxdb_publisher.get_stats()
            self.log.info(f"InfluxDB: {stats['writes_total']} points, {stats['writes_failed']} failed")

    def _shutdown(self):
        self.log.info("Stopping schedulers")
        for scheduler in self.schedulers.values():
            scheduler.stop()
        self._close_outputs()
        self._log_totals()
        self.log.info("Stopped")


def identify(host: str, logger_serial: int = None, port: int = DEFAULT_PORT,
             slave_id: int = DEFAULT_SLAVE_ID) -> int:
    """
    Print a ready-to-paste device entry for the logger at ``host``.

    The logger serial is read from its status page when not given; the
    inverter serial names the device when the inverter answers.
    Returns a process exit code.
    """
    log = get_logger()

    if logger_serial is None:
        logger_serial = fetch_logger_serial(host)
        if logger_serial is None:
            print(f"ERROR: no logger serial in http://{host}/status.html, pass it with --serial")
            return 1
        log.info(f"Logger serial {logger_serial} taken from the access point name")

    client = SolarmanV5Client(host, logger_serial, port=port, slave_id=slave_id,
                              timeout=PAIRING_TIMEOUT)
    inverter_serial = None
    try:
        inverter_serial = TelemetryClient(client).read_device_serial()
    except SolarmanError as e:
        log.warning(f"Inverter serial unavailable: {e}")
    finally:
        client.disconnect()

    entry = [
        "devices:",
        f"  - name: \"Deye {inverter_serial or logger_serial}\"",
        f"    host: {host}",
        f"    port: {port}",
        f"    logger_serial: {logger_serial}",
        f"    slave_id: {slave_id}",
        f"    # transport detected: {client.transport.value}",
    ]
    print("\n".join(entry))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Poll Deye inverters through a Solarman V5 logger and publish to MQTT/InfluxDB"
    )
    parser.add_argument('-c', '--config', help='YAML configuration file')
    parser.add_argument('-v', '--version', action='version', version=f'%(prog)s {__version__}')

    pairing = parser.add_argument_group('pairing')
    pairing.add_argument('--identify', metavar='HOST',
                         help='print a device entry for the logger at HOST and exit')
    pairing.add_argument('--serial', type=int,
                         help='logger serial (default: read from the logger web page)')
    pairing.add_argument('--port', type=int, default=DEFAULT_PORT, help='logger TCP port')
    pairing.add_argument('--slave-id', type=int, default=DEFAULT_SLAVE_ID, help='Modbus slave id')
    return parser


def main():
    args = build_parser().parse_args()
    if args.identify:
        sys.exit(identify(args.identify, args.serial, args.port, args.slave_id))
    DeyeSolarmanMQTT(args.config).start()


if __name__ == "__main__":
    main()
