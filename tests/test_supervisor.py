from __future__ import annotations

import pytest

from battery_keeper.errors import HardwareError, Interrupted, ValidationError
from battery_keeper.state import Role
from battery_keeper.targets import Percentage, PercentageRange, Voltage

from conftest import FakeTelemetry, FakeWait


def _lock_pid(paths, role=Role.MAINTAIN):
    path = paths.pid_file if role is Role.MAINTAIN else paths.calibrate_pid_file
    return int(path.read_text()) if path.exists() else None


# maintain

def test_maintain_spawns_loop_and_persists(make_supervisor, store, paths):
    sup = make_supervisor()
    assert sup.maintain("80") == 0
    assert sup.launcher.spawned == [(4000, ["maintain_synchronous", "80"])]
    assert _lock_pid(paths) == 4000
    assert store.load_target() == Percentage(80)
    assert sup.agent.created == 1
    assert sup.control.calls[0] == "disable_discharging"


def test_new_maintain_replaces_the_running_loop(make_supervisor, paths, processes):
    sup = make_supervisor()
    sup.maintain("80")
    sup.maintain("70-80")
    assert processes.terminated == [4000]
    assert _lock_pid(paths) == 4001
    assert sup.store.load_target() == PercentageRange(70, 80)


def test_invalid_target_touches_nothing(make_supervisor, paths, processes):
    sup = make_supervisor()
    sup.maintain("80")
    calls_before = list(sup.control.calls)
    with pytest.raises(ValidationError):
        sup.maintain("101")
    with pytest.raises(ValidationError):
        sup.maintain("11.4V", "5V")
    assert sup.control.calls == calls_before
    assert processes.terminated == []
    assert _lock_pid(paths) == 4000
    assert sup.store.load_target() == Percentage(80)


def test_voltage_maintain_passes_hysteresis(make_supervisor, paths):
    sup = make_supervisor()
    sup.maintain("11.4V", "0.3V")
    assert sup.launcher.spawned[0][1] == ["maintain_synchronous", "11.4V", "0.3V"]
    assert paths.voltage_file.read_text().strip() == "11.4 0.3"


def test_force_discharge_is_not_persisted(make_supervisor, paths):
    sup = make_supervisor()
    sup.maintain("80", force_discharge=True)
    assert sup.launcher.spawned[0][1] == ["maintain_synchronous", "80", "--force-discharge"]
    sup.maintain("recover")
    assert sup.launcher.spawned[1][1] == ["maintain_synchronous", "80"]


def test_recover_without_setting_is_a_no_op(make_supervisor, store, paths):
    sup = make_supervisor()
    store.acquire_lock(Role.MAINTAIN, 9999)
    assert sup.maintain("recover") == 0
    assert sup.launcher.spawned == []
    assert _lock_pid(paths) is None
    assert sup.agent.created == 0


def test_recover_restarts_persisted_target(make_supervisor, store, paths):
    store.save_target(Voltage(11.4, 0.3))
    sup = make_supervisor()
    assert sup.maintain("recover") == 0
    assert sup.launcher.spawned == [(4000, ["maintain_synchronous", "11.4V", "0.3V"])]
    assert paths.voltage_file.read_text().strip() == "11.4 0.3"


def test_stop_clears_everything(make_supervisor, paths, processes):
    sup = make_supervisor(charging=False)
    sup.maintain("80")
    assert sup.maintain("stop") == 0
    assert processes.terminated == [4000]
    assert _lock_pid(paths) is None
    assert sup.store.load_target() is None
    assert sup.agent.disabled == 1
    assert sup.control.charging is True
    assert sup.control.calls[-2:] == ["enable_charging", "led_reset"]
    assert sup.output and sup.output[-1].startswith("Battery at 80%")


def test_maintain_stops_calibration(make_supervisor, paths, processes):
    sup = make_supervisor()
    processes.alive.add(555)
    sup.store.acquire_lock(Role.CALIBRATE, 555)
    sup.maintain("80")
    assert 555 in processes.terminated
    assert _lock_pid(paths, Role.CALIBRATE) is None


# the loop

def test_loop_holds_its_own_lock_and_applies_transitions(make_supervisor, store, paths):
    store.save_target(Percentage(80))
    seen = []
    wait = FakeWait(stop_after=3, on_wait=lambda n: seen.append(_lock_pid(paths)))
    sup = make_supervisor(percentages=(75, 80, 80), charging=True, wait=wait)
    assert sup.run_loop("80") == 0
    assert seen == [1000, 1000, 1000]
    assert sup.control.calls == ["disable_charging", "led_full"]
    assert wait.intervals == [60, 60, 60]
    assert _lock_pid(paths) is None


def test_loop_enables_charging_below_target(make_supervisor, store):
    store.save_target(PercentageRange(70, 80))
    sup = make_supervisor(percentages=(69,), charging=False, wait=FakeWait(stop_after=1))
    sup.run_loop("70-80")
    assert sup.control.calls == ["enable_charging", "led_charging"]


def test_loop_exits_when_setting_removed(make_supervisor, store):
    store.save_target(Percentage(80))
    wait = FakeWait(on_wait=lambda n: store.clear_target())
    sup = make_supervisor(percentages=(80,), charging=False, wait=wait)
    assert sup.run_loop("80") == 0
    assert len(wait.intervals) == 1


def test_loop_exits_when_setting_replaced(make_supervisor, store):
    store.save_target(Percentage(80))
    wait = FakeWait(on_wait=lambda n: store.save_target(Percentage(60)))
    sup = make_supervisor(percentages=(70,), charging=False, wait=wait)
    sup.run_loop("80")
    assert len(wait.intervals) == 1


def test_loop_recover_without_setting(make_supervisor, paths):
    sup = make_supervisor()
    assert sup.run_loop("recover") == 0
    assert _lock_pid(paths) is None
    assert sup.control.calls == []


class FlakyTelemetry(FakeTelemetry):
    """Fails the first read, then behaves."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.failures = 1

    def read(self, with_voltage=False):
        if self.failures:
            self.failures -= 1
            raise HardwareError("battery percentage could not be read")
        return super().read(with_voltage)


def test_loop_survives_telemetry_failure(make_supervisor, store):
    store.save_target(Percentage(80))
    wait = FakeWait(stop_after=2)
    sup = make_supervisor(charging=False, wait=wait, telemetry=FlakyTelemetry(percentages=(60,)))
    assert sup.run_loop("80") == 0
    assert wait.intervals == [60, 60]
    assert sup.control.calls == ["enable_charging", "led_charging"]


def test_voltage_loop(make_supervisor, store):
    store.save_target(Voltage(11.4, 0.1))
    sup = make_supervisor(charging=False, voltages=(11.2,), wait=FakeWait(stop_after=1))
    sup.run_loop("11.4V")
    assert sup.control.calls == ["enable_charging"]


def test_force_discharge_runs_before_the_loop(make_supervisor, store):
    store.save_target(Percentage(80))
    sup = make_supervisor(percentages=(85, 80, 80), charging=False, wait=FakeWait(stop_after=2))
    sup.run_loop("80", force_discharge=True)
    assert sup.control.calls[:2] == ["enable_discharging", "disable_discharging"]


# one-shot convergence

def test_charge_converges_then_restores(make_supervisor, store):
    store.save_target(Percentage(60))
    wait = FakeWait()
    sup = make_supervisor(percentages=(70, 78, 80), charging=False, wait=wait)
    assert sup.charge("80") == 0
    assert wait.intervals == [60, 20]
    assert sup.control.calls[:2] == ["enable_charging", "disable_charging"]
    assert sup.launcher.spawned == [(4000, ["maintain_synchronous", "60"])]


def test_cancelled_discharge_does_not_restore(make_supervisor, store):
    store.save_target(Percentage(60))
    sup = make_supervisor(percentages=(90,), wait=FakeWait(stop_after=1))
    with pytest.raises(Interrupted) as excinfo:
        sup.discharge("50")
    assert excinfo.value.exit_code == 130
    assert sup.control.calls[-2:] == ["enable_discharging", "disable_discharging"]
    assert sup.launcher.spawned == []
    assert store.load_target() == Percentage(60)


def test_cancelled_charge_does_not_restore(make_supervisor, store):
    store.save_target(Percentage(60))
    sup = make_supervisor(percentages=(40,), charging=False, wait=FakeWait(stop_after=1))
    with pytest.raises(Interrupted):
        sup.charge("90")
    assert sup.launcher.spawned == []


def test_ctrl_c_during_charge_skips_restore(make_supervisor, store):
    store.save_target(Percentage(60))

    def ctrl_c(n):
        raise KeyboardInterrupt

    sup = make_supervisor(percentages=(40,), wait=FakeWait(on_wait=ctrl_c))
    with pytest.raises(KeyboardInterrupt):
        sup.charge("90")
    assert sup.launcher.spawned == []


@pytest.mark.parametrize("command", ["charge", "discharge"])
def test_one_shot_commands_stop_calibration(make_supervisor, paths, processes, command):
    sup = make_supervisor(percentages=(70,), wait=FakeWait())
    processes.alive.add(555)
    sup.store.acquire_lock(Role.CALIBRATE, 555)
    getattr(sup, command)("70")
    assert 555 in processes.terminated
    assert _lock_pid(paths, Role.CALIBRATE) is None


def test_charge_rejects_bad_level(make_supervisor):
    sup = make_supervisor()
    with pytest.raises(ValidationError):
        sup.charge("110")
    assert sup.control.calls == []


# calibration

def test_calibration_order(make_supervisor, paths):
    wait = FakeWait()
    sup = make_supervisor(percentages=(20, 15, 50, 100, 90, 80), wait=wait)
    assert sup.calibrate() == 0
    assert sup.control.calls == [
        "enable_discharging", "disable_discharging",
        "enable_charging", "disable_charging",
        "enable_charging",
        "enable_discharging", "disable_discharging",
        "disable_discharging",
    ]
    assert wait.intervals == [60, 60, 3600, 60]
    assert [line for line in sup.output if line.startswith("[")] == [
        "[ 1 ] Discharging battery to 15%",
        "[ 2 ] Charging to 100%",
        "[ 3 ] Reached 100%, waiting for 1 hour",
        "[ 4 ] Discharging battery to 80%",
        "[ 5 ] Restarting battery maintenance",
    ]
    assert "\n✅ Done\n" in sup.output
    assert _lock_pid(paths, Role.CALIBRATE) is None


def test_calibration_interrupted(make_supervisor, paths):
    seen = []
    wait = FakeWait(stop_after=1, on_wait=lambda n: seen.append(_lock_pid(paths, Role.CALIBRATE)))
    sup = make_supervisor(percentages=(50,), wait=wait)
    with pytest.raises(Interrupted):
        sup.calibrate()
    assert seen == [1000]
    assert _lock_pid(paths, Role.CALIBRATE) is None


# manual overrides and status

def test_charging_override(make_supervisor):
    sup = make_supervisor()
    with pytest.raises(ValidationError):
        sup.charging("maybe")
    assert sup.control.calls == []
    sup.charging("off")
    assert sup.control.calls[-1] == "disable_charging"


def test_adapter_override(make_supervisor):
    sup = make_supervisor()
    sup.adapter("off")
    assert sup.control.calls[-1] == "enable_discharging"
    sup.adapter("on")
    assert sup.control.calls[-1] == "disable_discharging"


def test_status_mentions_live_maintenance(make_supervisor):
    sup = make_supervisor(percentages=(80,))
    assert "maintained" not in sup.status()
    sup.maintain("70-80")
    status = sup.status()
    assert status.startswith("Battery at 80% (1:30 remaining), unknown voltage, smc charging enabled")
    assert "maintained at 70% - 80%" in status


def test_status_csv(make_supervisor):
    sup = make_supervisor(percentages=(80,))
    sup.maintain("70-80")
    assert sup.status_csv() == "80,1:30,enabled,not discharging,70-80"
