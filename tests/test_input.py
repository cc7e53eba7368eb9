import math

import pytest

from fmusim.description import parse_model_description
from fmusim.errors import CapabilityError, ValidationError
from fmusim.input import Input, Signal
from mock_model import MOCK_MODEL_DESCRIPTION


def test_continuous_signal_is_interpolated(description):
    signal = Signal(description.variable("u"), [(0.0, 0.0), (1.0, 2.0), (2.0, 2.0)])
    assert signal.continuous
    assert signal.value(-1.0) == 0.0
    assert signal.value(0.25) == pytest.approx(0.5)
    assert signal.value(1.5) == 2.0
    assert signal.value(5.0) == 2.0
    assert signal.derivative(0.5) == pytest.approx(2.0)
    assert signal.derivative(1.5) == 0.0
    assert signal.derivative(3.0) == 0.0
    assert signal.next_event(0.0) == math.inf


def test_repeated_time_stamp_is_an_event(description):
    signal = Signal(
        description.variable("u"), [(0.0, 0.0), (1.0, 1.0), (1.0, 3.0), (2.0, 3.0)]
    )
    assert signal.events == [1.0]
    assert signal.value(1.0, after_event=False) == 1.0
    assert signal.value(1.0) == 3.0
    assert signal.value(0.5) == pytest.approx(0.5)
    assert signal.next_event(0.5) == 1.0
    assert signal.next_event(1.0) == math.inf


def test_discrete_signal_is_held(description):
    signal = Signal(description.variable("steps"), [(0.0, 1), (0.5, 2), (1.0, 2)])
    assert not signal.continuous
    assert signal.value(0.49) == 1
    assert signal.value(0.5) == 2
    assert signal.value(0.5, after_event=False) == 1
    assert signal.derivative(0.2) == 0.0
    # value changes of held signals are events
    assert signal.events == [0.5]
    assert signal.next_event(0.0) == 0.5


def test_values_are_coerced(description):
    signal = Signal(description.variable("enabled"), [(0.0, "true"), (1.0, 0)])
    assert signal.values == [True, False]
    with pytest.raises(ValidationError):
        Signal(description.variable("u"), [(0.0, "high")])


def test_invalid_signals(description):
    with pytest.raises(ValidationError):
        Signal(description.variable("u"), [])
    with pytest.raises(ValidationError):
        Signal(description.variable("u"), [(1.0, 0.0), (0.5, 1.0)])


def test_next_event_of_all_signals(description, cs_instance):
    inputs = Input(
        cs_instance,
        description,
        {
            "u": [(0.0, 0.0), (0.3, 0.0), (0.3, 1.0)],
            "steps": [(0.0, 0), (0.2, 1)],
        },
    )
    assert inputs.next_event(0.0) == 0.2
    assert inputs.next_event(0.2) == 0.3
    assert inputs.next_event(0.3) == math.inf
    assert Input(cs_instance, description).next_event(0.0) == math.inf


def test_apply_sets_values_by_type(description, cs_instance, mock_model):
    inputs = Input(
        cs_instance,
        description,
        {
            "u": [(0.0, 0.0), (1.0, 1.0)],
            "steps": [(0.0, 5)],
            "enabled": [(0.0, False)],
            "label": [(0.0, "input")],
        },
    )
    inputs.apply(0.5)
    assert mock_model.reals[5] == pytest.approx(0.5)
    assert mock_model.integers[4] == 5
    assert mock_model.booleans[6] == 0
    assert mock_model.strings[7] == b"input"
    assert mock_model.input_derivatives == {}


def test_apply_input_derivatives(description, cs_instance, mock_model):
    inputs = Input(
        cs_instance,
        description,
        {"u": [(0.0, 0.0), (1.0, 4.0)]},
        set_input_derivatives=True,
    )
    inputs.apply(0.5)
    assert mock_model.input_derivatives == {5: (1, 4.0)}


def test_input_derivatives_are_ignored_for_model_exchange(description, me_instance, mock_model):
    inputs = Input(
        me_instance,
        description,
        {"u": [(0.0, 0.0), (1.0, 4.0)]},
        set_input_derivatives=True,
    )
    inputs.apply(0.5)
    assert mock_model.input_derivatives == {}


def test_input_derivatives_need_interpolation(cs_instance):
    description = parse_model_description(
        MOCK_MODEL_DESCRIPTION.replace('canInterpolateInputs="true"', "")
    )
    with pytest.raises(CapabilityError):
        Input(
            cs_instance,
            description,
            {"u": [(0.0, 0.0)]},
            set_input_derivatives=True,
        )


def test_apply_without_signals(description, cs_instance, mock_model):
    calls = len(mock_model.calls)
    Input(cs_instance, description).apply(0.0)
    assert len(mock_model.calls) == calls
