from __future__ import annotations

from battery_keeper.machine import (
    CALIBRATION_STEPS,
    Bounds,
    CalibrationStep,
    ChargeState,
    Effect,
    Reading,
    apply_effects,
    convergence_interval,
    transition,
    voltage_transition,
)
from battery_keeper.targets import Percentage, PercentageRange, Voltage

from conftest import FakeControl


def _run(step, bounds, readings, state):
    history = []
    for reading in readings:
        state, effects = step(state, reading, bounds)
        history.append(effects)
    return state, history


def test_single_target_toggles_only_when_crossing():
    bounds = Bounds.of(Percentage(80))
    readings = [Reading(percentage=p, ac_attached=True) for p in (75, 79, 80, 82, 79, 80)]
    _, history = _run(transition, bounds, readings, ChargeState(charging=False))
    assert history == [
        [Effect.ENABLE_CHARGING, Effect.LED_CHARGING],
        [],
        [Effect.DISABLE_CHARGING, Effect.LED_FULL],
        [],
        [Effect.ENABLE_CHARGING, Effect.LED_CHARGING],
        [Effect.DISABLE_CHARGING, Effect.LED_FULL],
    ]


def test_sitting_on_the_boundary_writes_nothing():
    bounds = Bounds.of(Percentage(80))
    state = ChargeState(charging=False, led=Effect.LED_FULL)
    _, history = _run(transition, bounds, [Reading(percentage=80, ac_attached=True)] * 5, state)
    assert history == [[]] * 5


def test_range_dead_zone():
    bounds = Bounds.of(PercentageRange(70, 80))
    state = ChargeState(charging=False)
    state, effects = transition(state, Reading(percentage=75, ac_attached=True), bounds)
    assert effects == []
    state, effects = transition(state, Reading(percentage=69, ac_attached=True), bounds)
    assert effects == [Effect.ENABLE_CHARGING, Effect.LED_CHARGING]
    state, effects = transition(state, Reading(percentage=75, ac_attached=True), bounds)
    assert effects == []
    state, effects = transition(state, Reading(percentage=80, ac_attached=True), bounds)
    assert effects == [Effect.DISABLE_CHARGING, Effect.LED_FULL]
    assert state.charging is False


def test_unknown_charging_state_never_toggles():
    bounds = Bounds.of(Percentage(80))
    state = ChargeState(charging=None)
    _, effects = transition(state, Reading(percentage=50, ac_attached=True), bounds)
    assert effects == []
    _, effects = transition(state, Reading(percentage=90, ac_attached=True), bounds)
    assert Effect.DISABLE_CHARGING not in effects


def test_full_led_only_on_ac_when_not_charging():
    bounds = Bounds.of(Percentage(80))
    state = ChargeState(charging=False)
    _, effects = transition(state, Reading(percentage=90, ac_attached=False), bounds)
    assert effects == []
    _, effects = transition(state, Reading(percentage=90, ac_attached=True), bounds)
    assert effects == [Effect.LED_FULL]


def test_missing_percentage_is_a_no_op():
    state = ChargeState(charging=True)
    new_state, effects = transition(state, Reading(percentage=None), Bounds(80, 80))
    assert new_state == state
    assert effects == []


def test_voltage_transition():
    bounds = Bounds.of(Voltage(11.4, 0.1))
    state = ChargeState(charging=False)
    state, effects = voltage_transition(state, Reading(voltage=11.2), bounds)
    assert effects == [Effect.ENABLE_CHARGING]
    state, effects = voltage_transition(state, Reading(voltage=11.4), bounds)
    assert effects == []
    state, effects = voltage_transition(state, Reading(voltage=11.5), bounds)
    assert effects == [Effect.DISABLE_CHARGING]
    state, effects = voltage_transition(state, Reading(voltage=11.45), bounds)
    assert effects == []
    _, effects = voltage_transition(state, Reading(voltage=None), bounds)
    assert effects == []


def test_from_status():
    assert ChargeState.from_status("enabled").charging is True
    assert ChargeState.from_status("disabled").charging is False
    assert ChargeState.from_status("unknown").charging is None
    assert ChargeState.from_status("enabled", "discharging").discharging is True


def test_convergence_interval():
    assert convergence_interval(78, 80) == 20
    assert convergence_interval(83, 80) == 20
    assert convergence_interval(70, 80) == 60
    assert convergence_interval(None, 80) == 60


def test_calibration_sequence():
    assert [(step, arg) for step, arg, _ in CALIBRATION_STEPS] == [
        (CalibrationStep.DISCHARGE, 15),
        (CalibrationStep.CHARGE, 100),
        (CalibrationStep.HOLD, 3600),
        (CalibrationStep.DISCHARGE, 80),
        (CalibrationStep.RESTORE, None),
    ]


def test_apply_effects():
    control = FakeControl(charging=True)
    assert apply_effects(control, [Effect.DISABLE_CHARGING, Effect.LED_FULL])
    assert control.calls == ["disable_charging", "led_full"]
