"""Per-device polling with night-aware availability.

An inverter powers its logger from the PV strings, so every evening it
vanishes from the network. A failed poll is therefore classified:

- night (outside the solar window): zero live values, keep energy counters,
  stay available, back off 30 minutes
- day, inverter was producing: genuine fault, mark unavailable
- day, inverter was idle: log only

State transitions are pure functions returning the new ``DeviceState`` plus
a list of effects; ``PollingScheduler`` owns the timers and applies the
effects.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pymodbus.exceptions import ModbusException

from .config import LocationConfig, ScheduleConfig
from .devices import InverterDevice
from .logging_setup import get_logger
from .solar_window import is_night
from .timers import RealTimers, TimerHandle, Timers


class FailureKind(Enum):
    NIGHT = "night"
    FAULT = "fault"
    IDLE = "idle"


@dataclass(frozen=True)
class DeviceState:
    """Everything the scheduler knows about one device between polls."""
    transport_mode: str = "rtu"
    available: bool = True
    unavailable_reason: str = ""
    last_power: float = 0.0
    backoff_until: float = 0.0
    polling: bool = False
    snapshot: Dict[str, Any] = field(default_factory=dict)
    last_error: str = ""
    last_failure: Optional[FailureKind] = None
    last_success: Optional[float] = None
    successful_polls: int = 0
    failed_polls: int = 0
    consecutive_failures: int = 0


@dataclass(frozen=True)
class PublishTelemetry:
    values: Dict[str, Any]


@dataclass(frozen=True)
class SetAvailability:
    available: bool
    reason: str = ""


@dataclass(frozen=True)
class LogMessage:
    level: int
    message: str


Effect = Any  # PublishTelemetry | SetAvailability | LogMessage


def can_poll(state: DeviceState, now: float) -> bool:
    return not state.polling and now >= state.backoff_until


def on_poll_started(state: DeviceState) -> DeviceState:
    return replace(state, polling=True)


def on_poll_success(state: DeviceState, values: Dict[str, Any], now: float,
                    power_sensor: Optional[str] = None,
                    transport_mode: Optional[str] = None) -> Tuple[DeviceState, List[Effect]]:
    """
    Merge a fresh snapshot.

    Args:
        state: Current state
        values: Decoded snapshot; None entries are left out of the merge
        now: POSIX timestamp of the poll
        power_sensor: Definition name reporting output power, if any
        transport_mode: Transport mode the client ended up using

    Returns:
        (new state, effects)
    """
    present = {name: value for name, value in values.items() if value is not None}
    snapshot = dict(state.snapshot)
    snapshot.update(present)

    last_power = state.last_power
    if power_sensor and power_sensor in present:
        power = present[power_sensor]
        last_power = float(power) if isinstance(power, (int, float)) else 0.0

    new_state = replace(
        state,
        transport_mode=transport_mode or state.transport_mode,
        available=True,
        unavailable_reason="",
        last_power=last_power,
        polling=False,
        snapshot=snapshot,
        last_success=now,
        successful_polls=state.successful_polls + 1,
        consecutive_failures=0,
    )
    effects = [SetAvailability(True), PublishTelemetry(present)]
    return new_state, effects


def on_poll_failure(state: DeviceState, error: str, now: float, night: bool,
                    instantaneous: Iterable[str] = (),
                    power_threshold: float = 5.0,
                    night_backoff: float = 1800.0,
                    transport_mode: Optional[str] = None) -> Tuple[DeviceState, List[Effect]]:
    """
    Classify a failed poll.

    Args:
        state: Current state
        error: Error text of the failure
        now: POSIX timestamp of the poll
        night: Whether ``now`` is outside the solar window
        instantaneous: Names of live measurements to zero at night
        power_threshold: Power (W) above which a daytime failure is a fault
        night_backoff: Seconds to skip polls after a night failure
        transport_mode: Transport mode the client ended up using

    Returns:
        (new state, effects)
    """
    state = replace(
        state,
        transport_mode=transport_mode or state.transport_mode,
        polling=False,
        last_error=error,
        failed_polls=state.failed_polls + 1,
        consecutive_failures=state.consecutive_failures + 1,
    )

    if night:
        zeros = {name: 0 for name in instantaneous}
        snapshot = dict(state.snapshot)
        snapshot.update(zeros)
        new_state = replace(
            state,
            available=True,
            unavailable_reason="",
            last_power=0.0,
            backoff_until=now + night_backoff,
            snapshot=snapshot,
            last_failure=FailureKind.NIGHT,
        )
        return new_state, [
            PublishTelemetry(zeros),
            SetAvailability(True),
            LogMessage(logging.INFO,
                       f"night timeout (expected), backing off {night_backoff / 60:g} min: {error}"),
        ]

    if state.last_power > power_threshold:
        new_state = replace(
            state,
            available=False,
            unavailable_reason=error,
            last_failure=FailureKind.FAULT,
        )
        return new_state, [
            SetAvailability(False, error),
            LogMessage(logging.ERROR,
                       f"poll failed (inverter was active at {state.last_power:g} W): {error}"),
        ]

    new_state = replace(state, last_failure=FailureKind.IDLE)
    return new_state, [LogMessage(logging.WARNING, f"poll failed (inverter idle): {error}")]


class PollingScheduler:
    """Drives one InverterDevice on a fixed cadence."""

    def __init__(self, device: InverterDevice, schedule: ScheduleConfig = None,
                 location: LocationConfig = None, timers: Timers = None,
                 publish_callback: Callable[[str, str, Dict[str, Any]], None] = None):
        """
        Args:
            device: Device to poll
            schedule: Cadence, backoff and power threshold
            location: Coordinates and timezone for the solar window
            timers: Clock and timer capability
            publish_callback: Called as (device_name, kind, data) with kind
                'telemetry', 'availability' or 'diagnostics'
        """
        self.device = device
        self.schedule = schedule or ScheduleConfig()
        self.location = location or LocationConfig()
        self.timers = timers or RealTimers()
        self.publish_callback = publish_callback
        self.log = get_logger()

        self.state = DeviceState()
        self._busy = threading.Lock()
        self._poll_thread: Optional[threading.Thread] = None
        self._generation = 0
        self._stopped = False
        self._initial_handle: Optional[TimerHandle] = None
        self._interval_handle: Optional[TimerHandle] = None
        self._running = False

    @property
    def name(self) -> str:
        return self.device.name

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Initialise the device and start ticking."""
        if self._running:
            return
        self.device.init()
        self._stopped = False
        self.state = DeviceState(transport_mode=self.device.transport_mode.value)
        self._running = True
        self._initial_handle = self.timers.schedule_after(self.schedule.initial_delay, self._on_timer)
        self._schedule_interval()
        self.log.info(
            f"{self.name}: polling every {self.schedule.poll_interval:g}s "
            f"(first poll in {self.schedule.initial_delay:g}s)"
        )

    def stop(self):
        """Cancel timers, wait for a poll in flight and release the device.

        A poll that is still running when stop() is called (or that calls it
        itself, through a reload) has its result discarded.
        """
        self._running = False
        self._stopped = True
        self._generation += 1
        for handle in (self._initial_handle, self._interval_handle):
            if handle is not None:
                handle.cancel()
        self._initial_handle = self._interval_handle = None
        self._wait_for_poll()
        self.device.teardown()

    def _wait_for_poll(self):
        if self._poll_thread is threading.current_thread():
            return
        with self._busy:
            pass

    def reconfigure(self, device: InverterDevice = None, schedule: ScheduleConfig = None,
                    location: LocationConfig = None):
        """Tear down and start again with a fresh DeviceState."""
        self.log.info(f"{self.name}: reconfiguring")
        self.stop()
        if device is not None:
            self.device = device
        if schedule is not None:
            self.schedule = schedule
        if location is not None:
            self.location = location
        self.start()

    def _schedule_interval(self):
        self._interval_handle = self.timers.schedule_after(self.schedule.poll_interval, self._on_interval)

    def _on_interval(self):
        if not self._running:
            return
        self._schedule_interval()
        self.tick()

    def _on_timer(self):
        if self._running:
            self.tick()

    def _local_time(self, now: float) -> datetime:
        if self.location.timezone:
            return datetime.fromtimestamp(now, ZoneInfo(self.location.timezone))
        return datetime.fromtimestamp(now, timezone.utc).astimezone()

    def in_night(self, now: float = None) -> bool:
        now = self.timers.now() if now is None else now
        return is_night(self._local_time(now), self.location.latitude,
                        self.location.longitude, self.schedule.night_margin)

    @property
    def in_backoff(self) -> bool:
        return self.timers.now() < self.state.backoff_until

    def tick(self) -> bool:
        """
        Attempt one poll.

        Returns:
            True if a poll ran, False if skipped (backoff or already in flight)
        """
        now = self.timers.now()
        if not self._busy.acquire(blocking=False):
            self.log.debug(f"{self.name}: poll still in flight, skipping tick")
            return False
        self._poll_thread = threading.current_thread()
        try:
            if self._stopped:
                return False
            if not can_poll(self.state, now):
                self.log.debug(f"{self.name}: in backoff, skipping tick")
                return False
            self.state = on_poll_started(self.state)
            self._poll(now)
            return True
        finally:
            self._poll_thread = None
            self._busy.release()

    def _poll(self, now: float):
        device, generation = self.device, self._generation
        error = None
        try:
            values = device.poll()
        except (ModbusException, OSError) as e:
            error = e

        if generation != self._generation:
            self.log.debug(f"{device.name}: stopped during the poll, result discarded")
            return

        if error is not None:
            device.disconnect()
            instantaneous = [d.name for d in device.definitions if d.instantaneous]
            self.state, effects = on_poll_failure(
                self.state, str(error), now, self.in_night(now),
                instantaneous=instantaneous,
                power_threshold=self.schedule.power_threshold,
                night_backoff=self.schedule.night_backoff,
                transport_mode=device.transport_mode.value,
            )
        else:
            self.state, effects = on_poll_success(
                self.state, values, now, device.power_sensor,
                transport_mode=device.transport_mode.value,
            )
            self.log.debug(f"{self.name}: poll ok, {len(values)} values")

        self._apply(effects)
        self._publish('diagnostics', self.get_status())

    def _apply(self, effects: List[Effect]):
        for effect in effects:
            if isinstance(effect, PublishTelemetry):
                if effect.values:
                    self._publish('telemetry', dict(effect.values))
            elif isinstance(effect, SetAvailability):
                self._publish('availability', {'available': effect.available, 'reason': effect.reason})
            elif isinstance(effect, LogMessage):
                self.log.log(effect.level, f"{self.name}: {effect.message}")

    def _publish(self, kind: str, data: Dict[str, Any]):
        if self.publish_callback is None:
            return
        try:
            self.publish_callback(self.name, kind, data)
        except Exception as e:
            self.log.error(f"{self.name}: publishing {kind} failed: {e}")

    def get_status(self) -> dict:
        state = self.state
        return {
            'device': self.name,
            'transport': state.transport_mode,
            'available': state.available,
            'unavailable_reason': state.unavailable_reason,
            'last_power': state.last_power,
            'in_backoff': self.in_backoff,
            'backoff_until': state.backoff_until,
            'last_error': state.last_error,
            'last_failure': state.last_failure.value if state.last_failure else None,
            'last_success': state.last_success,
            'successful_polls': state.successful_polls,
            'failed_polls': state.failed_polls,
            'consecutive_failures': state.consecutive_failures,
        }
