"""Tests for poll classification and the polling scheduler."""
import logging
import threading
from datetime import datetime, timezone

import pytest

from deye_solarman.config import LocationConfig, ScheduleConfig
from deye_solarman.exceptions import FrameFormatError, TransportConnectionError
from deye_solarman.poller import (
    DeviceState,
    FailureKind,
    LogMessage,
    PollingScheduler,
    PublishTelemetry,
    SetAvailability,
    can_poll,
    on_poll_failure,
    on_poll_started,
    on_poll_success,
)
from deye_solarman.register_parser import RegisterDefinition
from deye_solarman.timers import VirtualTimers

from fakes import FakeDevice

NOON = datetime(2025, 3, 21, 12, 0, tzinfo=timezone.utc).timestamp()
MIDNIGHT = datetime(2025, 3, 21, 23, 0, tzinfo=timezone.utc).timestamp()

DEFINITIONS = (
    RegisterDefinition(name="Output AC Power", rule=3, registers=(0x50, 0x51), scale=0.1,
                       state_class="measurement"),
    RegisterDefinition(name="Grid L1 Voltage", rule=1, registers=(0x49,), scale=0.1,
                       state_class="measurement"),
    RegisterDefinition(name="Total Production", rule=3, registers=(0x3F, 0x40), scale=0.1,
                       state_class="total_increasing"),
)

TIMEOUT = TransportConnectionError("Response timeout after 15s from 10.0.0.5:8899")


class TestOnPollSuccess:
    def test_merges_present_values(self):
        state = DeviceState(snapshot={"Total Production": 100.0, "Grid L1 Voltage": 230.0})

        new_state, effects = on_poll_success(
            state, {"Total Production": 101.0, "Grid L1 Voltage": None}, now=10.0)

        assert new_state.snapshot == {"Total Production": 101.0, "Grid L1 Voltage": 230.0}
        assert effects == [SetAvailability(True), PublishTelemetry({"Total Production": 101.0})]
        assert new_state.last_success == 10.0
        assert new_state.successful_polls == 1

    def test_restores_availability(self):
        state = DeviceState(available=False, unavailable_reason="timeout", consecutive_failures=3)

        new_state, _ = on_poll_success(state, {}, now=1.0)

        assert new_state.available
        assert new_state.unavailable_reason == ""
        assert new_state.consecutive_failures == 0

    def test_tracks_power(self):
        new_state, _ = on_poll_success(DeviceState(), {"P": 1234.5}, 1.0, power_sensor="P")
        assert new_state.last_power == 1234.5

    def test_missing_power_keeps_last_value(self):
        state = DeviceState(last_power=800.0)
        new_state, _ = on_poll_success(state, {"P": None}, 1.0, power_sensor="P")
        assert new_state.last_power == 800.0

    def test_non_numeric_power_is_zero(self):
        state = DeviceState(last_power=800.0)
        new_state, _ = on_poll_success(state, {"P": "Unknown(7)"}, 1.0, power_sensor="P")
        assert new_state.last_power == 0.0

    def test_records_transport(self):
        new_state, _ = on_poll_success(DeviceState(), {}, 1.0, transport_mode="tcp")
        assert new_state.transport_mode == "tcp"


class TestOnPollFailure:
    def test_night_zeroes_live_values(self):
        state = DeviceState(snapshot={"P": 500.0, "E": 10.0}, last_power=500.0, polling=True)

        new_state, effects = on_poll_failure(state, "timeout", now=100.0, night=True,
                                             instantaneous=["P"], night_backoff=1800.0)

        assert new_state.snapshot == {"P": 0, "E": 10.0}
        assert new_state.available
        assert new_state.last_power == 0.0
        assert new_state.backoff_until == 1900.0
        assert new_state.last_failure is FailureKind.NIGHT
        assert not new_state.polling
        assert effects[:2] == [PublishTelemetry({"P": 0}), SetAvailability(True)]
        assert effects[2].level == logging.INFO

    def test_day_fault_when_producing(self):
        state = DeviceState(last_power=1500.0)

        new_state, effects = on_poll_failure(state, "timeout", now=1.0, night=False)

        assert not new_state.available
        assert new_state.unavailable_reason == "timeout"
        assert new_state.last_failure is FailureKind.FAULT
        assert new_state.backoff_until == 0.0
        assert effects[0] == SetAvailability(False, "timeout")
        assert effects[1].level == logging.ERROR

    def test_day_idle_only_logs(self):
        state = DeviceState(last_power=3.0, snapshot={"P": 3.0})

        new_state, effects = on_poll_failure(state, "timeout", now=1.0, night=False,
                                             instantaneous=["P"])

        assert new_state.available
        assert new_state.snapshot == {"P": 3.0}
        assert new_state.last_failure is FailureKind.IDLE
        assert len(effects) == 1
        assert isinstance(effects[0], LogMessage)
        assert effects[0].level == logging.WARNING

    def test_threshold_is_exclusive(self):
        new_state, _ = on_poll_failure(DeviceState(last_power=5.0), "x", 1.0, night=False,
                                       power_threshold=5.0)
        assert new_state.last_failure is FailureKind.IDLE

    def test_counts_failures(self):
        state, _ = on_poll_failure(DeviceState(), "x", 1.0, night=False)
        state, _ = on_poll_failure(state, "y", 2.0, night=False)
        assert state.failed_polls == 2
        assert state.consecutive_failures == 2
        assert state.last_error == "y"


class TestCanPoll:
    def test_blocked_while_polling(self):
        assert can_poll(DeviceState(), 0.0)
        assert not can_poll(on_poll_started(DeviceState()), 0.0)

    def test_blocked_during_backoff(self):
        state = DeviceState(backoff_until=100.0)
        assert not can_poll(state, 99.9)
        assert can_poll(state, 100.0)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, device_name, kind, data):
        self.calls.append((device_name, kind, data))

    def of_kind(self, kind):
        return [data for _, k, data in self.calls if k == kind]


@pytest.fixture
def location():
    return LocationConfig(latitude=0.0, longitude=0.0, timezone="UTC")


def make_scheduler(device, start, location, **schedule):
    timers = VirtualTimers(start=start)
    recorder = Recorder()
    scheduler = PollingScheduler(device, ScheduleConfig(**schedule), location, timers, recorder)
    return scheduler, timers, recorder


class TestPollingScheduler:
    def test_initial_poll_after_delay(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 100.0}])
        scheduler, timers, _ = make_scheduler(device, NOON, location)

        scheduler.start()
        assert device.init_calls == 1
        timers.advance(1.0)
        assert device.poll_calls == 0
        timers.advance(0.5)
        assert device.poll_calls == 1

    def test_polls_on_interval(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 100.0}] * 3)
        scheduler, timers, _ = make_scheduler(device, NOON, location, poll_interval=60)

        scheduler.start()
        timers.advance(120)

        assert device.poll_calls == 3
        assert scheduler.state.successful_polls == 3

    def test_success_publishes(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power",
                            [{"Output AC Power": 1500.0, "Grid L1 Voltage": None}])
        scheduler, timers, recorder = make_scheduler(device, NOON, location)

        scheduler.start()
        timers.advance(1.5)

        assert recorder.of_kind('availability') == [{'available': True, 'reason': ''}]
        assert recorder.of_kind('telemetry') == [{"Output AC Power": 1500.0}]
        diagnostics = recorder.of_kind('diagnostics')[-1]
        assert diagnostics['device'] == "Deye Test"
        assert diagnostics['successful_polls'] == 1
        assert scheduler.state.last_power == 1500.0

    def test_daytime_fault_marks_unavailable(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}, TIMEOUT])
        scheduler, timers, recorder = make_scheduler(device, NOON, location)

        scheduler.start()
        timers.advance(61.5)

        assert not scheduler.state.available
        assert "timeout" in scheduler.state.unavailable_reason
        assert recorder.of_kind('availability')[-1] == {'available': False, 'reason': str(TIMEOUT)}
        assert device.disconnect_calls == 1
        assert scheduler.get_status()['last_failure'] == "fault"

    def test_daytime_idle_failure_stays_available(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power",
                            [{"Output AC Power": 2.0}, FrameFormatError("bad checksum")])
        scheduler, timers, recorder = make_scheduler(device, NOON, location)

        scheduler.start()
        timers.advance(61.5)

        assert scheduler.state.available
        assert scheduler.state.last_failure is FailureKind.IDLE
        assert all(a['available'] for a in recorder.of_kind('availability'))

    def test_night_failure_zeroes_and_backs_off(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [TIMEOUT, TIMEOUT])
        scheduler, timers, recorder = make_scheduler(device, MIDNIGHT, location)

        scheduler.start()
        timers.advance(1.5)

        assert recorder.of_kind('telemetry') == [{"Output AC Power": 0, "Grid L1 Voltage": 0}]
        assert scheduler.state.available
        assert scheduler.in_backoff

        timers.advance(1800)
        assert device.poll_calls == 1

        timers.advance(60)
        assert device.poll_calls == 2

    def test_night_without_coordinates_uses_fixed_window(self):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}, TIMEOUT])
        scheduler, timers, _ = make_scheduler(
            device, datetime(2025, 3, 21, 19, 30, tzinfo=timezone.utc).timestamp() - 30,
            LocationConfig(timezone="UTC"))

        scheduler.start()
        timers.advance(60)

        assert scheduler.state.last_failure is FailureKind.NIGHT
        assert scheduler.state.available

    def test_margin_extends_fixed_window(self):
        # 19:15 is past the fixed 19:00 sunset but inside the 30 minute margin
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}, TIMEOUT])
        scheduler, timers, _ = make_scheduler(
            device, datetime(2025, 3, 21, 19, 15, tzinfo=timezone.utc).timestamp() - 30,
            LocationConfig(timezone="UTC"))

        scheduler.start()
        timers.advance(60)

        assert scheduler.state.last_failure is FailureKind.FAULT
        assert not scheduler.state.available
        assert not scheduler.in_backoff

    def test_unexpected_error_propagates(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [ValueError("bug")])
        scheduler, _, _ = make_scheduler(device, NOON, location)

        with pytest.raises(ValueError):
            scheduler.tick()

    def test_overlapping_tick_is_skipped(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1.0}])
        scheduler, _, _ = make_scheduler(device, NOON, location)
        nested = []
        device.on_poll = lambda: nested.append(scheduler.tick())

        assert scheduler.tick() is True
        assert nested == [False]
        assert device.poll_calls == 1

    def test_tick_skipped_in_backoff(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power")
        scheduler, _, _ = make_scheduler(device, NOON, location)
        scheduler.state = DeviceState(backoff_until=NOON + 10)

        assert scheduler.tick() is False
        assert device.poll_calls == 0

    def test_stop_cancels_timers(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power")
        scheduler, timers, _ = make_scheduler(device, NOON, location)

        scheduler.start()
        scheduler.stop()
        timers.advance(600)

        assert timers.pending == 0
        assert device.poll_calls == 0
        assert device.teardown_calls == 1
        assert not scheduler.running

    def test_reconfigure_resets_state(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}, TIMEOUT])
        scheduler, timers, _ = make_scheduler(device, NOON, location)
        scheduler.start()
        timers.advance(61.5)
        assert not scheduler.state.available

        scheduler.reconfigure(schedule=ScheduleConfig(poll_interval=30))

        assert device.init_calls == 2
        assert device.teardown_calls == 1
        assert scheduler.state == DeviceState()
        assert scheduler.schedule.poll_interval == 30
        assert timers.pending == 2

    def test_reconfigure_swaps_device(self, location):
        old = FakeDevice(DEFINITIONS, "Output AC Power")
        new = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1.0}], name="Deye New")
        scheduler, timers, recorder = make_scheduler(old, NOON, location)
        scheduler.start()

        scheduler.reconfigure(device=new)
        timers.advance(1.5)

        assert old.poll_calls == 0
        assert new.poll_calls == 1
        assert recorder.calls[0][0] == "Deye New"

    def test_tick_after_stop_is_skipped(self, location):
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1.0}])
        scheduler, _, _ = make_scheduler(device, NOON, location)
        scheduler.start()
        scheduler.stop()

        assert scheduler.tick() is False
        assert device.poll_calls == 0

    def test_reconfigure_during_poll_discards_result(self, location):
        old = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}])
        new = FakeDevice(DEFINITIONS, "Output AC Power", name="Deye New")
        scheduler, _, recorder = make_scheduler(old, NOON, location)
        old.on_poll = lambda: scheduler.reconfigure(device=new)

        assert scheduler.tick() is True

        assert old.teardown_calls == 1
        assert old.disconnect_calls == 0
        assert new.init_calls == 1
        assert scheduler.state.successful_polls == 0
        assert scheduler.state.last_success is None
        assert scheduler.state.snapshot == {}
        assert recorder.calls == []

    def test_stop_waits_for_poll_in_flight(self, location):
        polling, release = threading.Event(), threading.Event()
        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1500.0}])
        scheduler, _, _ = make_scheduler(device, NOON, location)

        def blocked_poll():
            polling.set()
            release.wait(5)

        device.on_poll = blocked_poll
        poller = threading.Thread(target=scheduler.tick)
        poller.start()
        assert polling.wait(5)

        stopper = threading.Thread(target=scheduler.stop)
        stopper.start()
        stopper.join(0.2)
        assert stopper.is_alive()
        assert device.teardown_calls == 0

        release.set()
        stopper.join(5)
        poller.join(5)

        assert device.teardown_calls == 1

    def test_callback_errors_do_not_stop_polling(self, location):
        def broken(device_name, kind, data):
            raise RuntimeError("broker gone")

        device = FakeDevice(DEFINITIONS, "Output AC Power", [{"Output AC Power": 1.0}] * 2)
        scheduler = PollingScheduler(device, ScheduleConfig(), location,
                                     VirtualTimers(start=NOON), broken)

        assert scheduler.tick() is True
        assert scheduler.tick() is True
        assert scheduler.state.successful_polls == 2
