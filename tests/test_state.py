from __future__ import annotations

import signal

from battery_keeper.state import ProcessLock, Role, pid_alive
from battery_keeper.targets import Percentage, PercentageRange, Voltage


def test_target_round_trip_and_exclusive_files(store, paths):
    store.save_target(PercentageRange(70, 80))
    assert paths.percentage_file.read_text().strip() == "70-80"
    assert store.load_target() == PercentageRange(70, 80)

    store.save_target(Voltage(11.4, 0.3))
    assert not paths.percentage_file.exists()
    assert paths.voltage_file.read_text().strip() == "11.4 0.3"
    assert store.load_target() == Voltage(11.4, 0.3)
    assert store.load_target_text() == "11.4 0.3"

    store.save_target(Percentage(80))
    assert not paths.voltage_file.exists()
    assert store.load_target() == Percentage(80)


def test_clear_target(store):
    store.save_target(Percentage(80))
    store.clear_target()
    assert store.load_target() is None
    assert store.load_target_text() == ""


def test_unreadable_target_is_ignored(store, paths, caplog):
    store.ensure_folder()
    paths.percentage_file.write_text("banana\n")
    assert store.load_target() is None
    assert "ignoring unreadable maintain setting" in caplog.text


def test_stale_lock_reads_as_none(store, paths, processes):
    store.acquire_lock(Role.MAINTAIN, 4242)
    assert paths.pid_file.read_text().strip() == "4242"
    assert store.load_lock(Role.MAINTAIN) is None

    processes.alive.add(4242)
    assert store.load_lock(Role.MAINTAIN) == ProcessLock(4242, Role.MAINTAIN)


def test_malformed_lock_reads_as_none(store, paths):
    store.ensure_folder()
    paths.pid_file.write_text("not-a-pid\n")
    assert store.load_lock(Role.MAINTAIN) is None


def test_roles_use_separate_files(store, paths, processes):
    processes.alive.update({10, 20})
    store.acquire_lock(Role.MAINTAIN, 10)
    store.acquire_lock(Role.CALIBRATE, 20)
    assert paths.pid_file.read_text().strip() == "10"
    assert paths.calibrate_pid_file.read_text().strip() == "20"


def test_release_only_when_pid_matches(store, paths):
    store.acquire_lock(Role.MAINTAIN, 10)
    store.release_lock(Role.MAINTAIN, pid=11)
    assert paths.pid_file.exists()
    store.release_lock(Role.MAINTAIN, pid=10)
    assert not paths.pid_file.exists()
    # releasing a missing lock is fine
    store.release_lock(Role.MAINTAIN)


def test_terminate_signals_live_holder(store, processes):
    processes.alive.add(77)
    store.acquire_lock(Role.MAINTAIN, 77)
    assert store.terminate(Role.MAINTAIN) == 77
    assert processes.terminated == [77]
    assert store.terminate(Role.MAINTAIN) is None


def test_terminate_skips_excluded_pid(store, processes):
    processes.alive.add(77)
    store.acquire_lock(Role.MAINTAIN, 77)
    assert store.terminate(Role.MAINTAIN, exclude=77) is None
    assert processes.terminated == []


def test_pid_alive(monkeypatch):
    import battery_keeper.state as state_module

    def denied(pid, sig):
        assert sig == 0
        raise PermissionError(pid)

    assert pid_alive(0) is False
    assert pid_alive(-5) is False
    monkeypatch.setattr(state_module.os, "kill", denied)
    assert pid_alive(123) is False
    monkeypatch.setattr(state_module.os, "kill", lambda pid, sig: None)
    assert pid_alive(123) is True


def test_sigterm_is_the_termination_signal(store, monkeypatch):
    import battery_keeper.state as state_module

    sent = []

    def kill(pid, sig):
        sent.append((pid, sig))

    monkeypatch.setattr(state_module.os, "kill", kill)
    store.acquire_lock(Role.CALIBRATE, 55)
    store.terminate(Role.CALIBRATE)
    assert sent == [(55, 0), (55, signal.SIGTERM)]
