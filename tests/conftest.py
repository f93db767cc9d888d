"""Fakes for the process runner, SMC control, telemetry, launcher and waits."""
from __future__ import annotations

import signal
import subprocess
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from battery_keeper import state as state_module
from battery_keeper.config import Paths
from battery_keeper.machine import Reading
from battery_keeper.smc import CapabilitySet
from battery_keeper.state import StateStore
from battery_keeper.supervisor import Supervisor
from battery_keeper.telemetry import PowerSource


class FakeRunner:
    """Records argv lists and answers from a prefix table.

    `responses` maps an argv prefix tuple to ``(returncode, stdout)``; the
    longest matching prefix wins, anything else succeeds with no output.
    """

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], Tuple[int, str]]] = None):
        self.responses = dict(responses or {})
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []

    def __call__(self, argv: Sequence[str], input=None, timeout=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.inputs.append(input)
        best = None
        for prefix, answer in self.responses.items():
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, answer)
        returncode, stdout = best[1] if best else (0, "")
        return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr="" if returncode == 0 else "failed")

    def called(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


class FakeControl:
    """Stands in for ChargeControl; tracks the relay state it was asked for."""

    def __init__(self, charging: Optional[bool] = True):
        self.charging = charging
        self.discharging = False
        self.calls: List[str] = []
        self.capabilities = CapabilitySet(tahoe=True, chie=True)

    def enable_charging(self):
        self.calls.append("enable_charging")
        self.charging = True
        self.discharging = False
        return True

    def disable_charging(self):
        self.calls.append("disable_charging")
        self.charging = False
        return True

    def enable_discharging(self):
        self.calls.append("enable_discharging")
        self.discharging = True
        return True

    def disable_discharging(self):
        self.calls.append("disable_discharging")
        self.discharging = False
        return True

    def set_led(self, led):
        self.calls.append(f"led_{led.name.lower()}")
        return True

    def charging_status(self):
        if self.charging is None:
            return "unknown"
        return "enabled" if self.charging else "disabled"

    def discharging_status(self):
        return "discharging" if self.discharging else "not discharging"


class FakeTelemetry:
    """Replays percentages; the last one repeats once the list runs out."""

    def __init__(self, percentages=(80,), voltages=(None,), ac_attached=True, remaining="1:30"):
        self.percentages = list(percentages)
        self.voltages = list(voltages)
        self.ac_attached = ac_attached
        self.remaining = remaining

    @staticmethod
    def _next(values):
        return values.pop(0) if len(values) > 1 else values[0]

    def percentage(self):
        return self._next(self.percentages)

    def power_source(self):
        return PowerSource(self.percentage(), self.remaining, self.ac_attached)

    def voltage(self):
        return self._next(self.voltages)

    def read(self, with_voltage=False):
        return Reading(
            percentage=self.percentage(),
            voltage=self.voltage() if with_voltage else None,
            ac_attached=self.ac_attached,
        )


class FakeLauncher:
    def __init__(self, first_pid: int = 4000):
        self.next_pid = first_pid
        self.spawned: List[Tuple[int, List[str]]] = []

    def spawn(self, args):
        pid = self.next_pid
        self.next_pid += 1
        self.spawned.append((pid, list(args)))
        return pid


class FakeAgent:
    def __init__(self):
        self.created = 0
        self.disabled = 0
        self.removed = 0

    def create(self):
        self.created += 1
        return True

    def disable(self):
        self.disabled += 1
        return True

    def remove(self):
        self.removed += 1


class FakeWait:
    """Replacement for Supervisor._wait.

    Returns True (stop requested) on call number `stop_after`; `on_wait` runs
    before each answer so tests can change the world between ticks.
    """

    def __init__(self, stop_after: Optional[int] = None, on_wait=None):
        self.stop_after = stop_after
        self.on_wait = on_wait
        self.intervals: List[float] = []

    def __call__(self, seconds):
        self.intervals.append(seconds)
        if self.on_wait is not None:
            self.on_wait(len(self.intervals))
        return self.stop_after is not None and len(self.intervals) >= self.stop_after


class FakeProcesses:
    """Replaces os.kill for the state module: a set of live pids."""

    def __init__(self, alive=()):
        self.alive = set(alive)
        self.terminated: List[int] = []

    def kill(self, pid, sig):
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if sig == signal.SIGTERM:
            self.terminated.append(pid)
            self.alive.discard(pid)


@pytest.fixture
def processes(monkeypatch):
    procs = FakeProcesses()
    monkeypatch.setattr(state_module.os, "kill", procs.kill)
    return procs


@pytest.fixture
def paths(tmp_path):
    return Paths.for_home(tmp_path)


@pytest.fixture
def store(paths):
    return StateStore(paths)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_supervisor(store, processes):
    """Build a Supervisor around fakes; `processes` marks the spawned pids alive."""

    def _make(percentages=(80,), charging=True, wait=None, pid=1000, **kwargs):
        control = kwargs.pop("control", None) or FakeControl(charging=charging)
        telemetry = kwargs.pop("telemetry", None) or FakeTelemetry(percentages=percentages, **kwargs)
        launcher = FakeLauncher()
        original_spawn = launcher.spawn

        def spawn(args):
            spawned = original_spawn(args)
            processes.alive.add(spawned)
            return spawned

        launcher.spawn = spawn
        output: List[str] = []
        supervisor = Supervisor(
            store=store,
            control=control,
            telemetry=telemetry,
            launcher=launcher,
            agent=FakeAgent(),
            wait=wait or FakeWait(stop_after=1),
            pid=pid,
            echo=output.append,
            awake=_no_awake,
        )
        supervisor.output = output
        return supervisor

    return _make


class _NoAwake:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _no_awake():
    return _NoAwake()
