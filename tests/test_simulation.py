import time

import pydantic
import pytest

from fmusim.description import parse_model_description
from fmusim.errors import CapabilityError, LifecycleError, LoadError, NativeStatusError, ValidationError
from fmusim.fmi2 import Fmi2Status, Fmi2Type, ModelBinding
from fmusim.instance import LifecycleState, ModelInstance
from fmusim.numeric import auto_interval
from fmusim.simulation import (
    CO_SIMULATION,
    MODEL_EXCHANGE,
    SimulationOptions,
    SimulationResult,
    apply_start_values,
    resolve_options,
    simulate_cs,
    simulate_fmu,
    simulate_me,
)
from mock_model import MOCK_GUID, MOCK_MODEL_DESCRIPTION, MockModel


def _description(**replacements):
    xml = MOCK_MODEL_DESCRIPTION
    for old, new in replacements.items():
        xml = xml.replace(old, new)
    return parse_model_description(xml)


def _cs_instance(model):
    binding = ModelBinding(model, [Fmi2Type.CO_SIMULATION])
    return ModelInstance.instantiate(
        binding, "mock", Fmi2Type.CO_SIMULATION, MOCK_GUID, ""
    )


# ---------------------------------------------------------------------------
# Option resolution
# ---------------------------------------------------------------------------
def test_resolve_defaults(description):
    options = resolve_options(description)
    assert options.fmi_type == CO_SIMULATION
    assert options.start_time == 0.0
    assert options.stop_time == 0.1
    assert options.step_size == pytest.approx(1e-4)
    assert options.output_interval == auto_interval(0.1)
    assert options.relative_tolerance is None


def test_resolve_model_exchange(description):
    options = resolve_options(
        description, SimulationOptions(fmi_type=MODEL_EXCHANGE, step_size=0.01)
    )
    assert options.output_interval == 0.01


def test_resolve_without_default_experiment():
    description = _description(
        **{'<DefaultExperiment startTime="0" stopTime="0.1"/>': ""}
    )
    options = resolve_options(description, SimulationOptions(start_time=2.0))
    assert options.stop_time == 3.0
    assert options.step_size == pytest.approx(1e-3)


def test_resolve_prefers_the_instance_type(description, me_instance):
    options = resolve_options(
        description, SimulationOptions(fmu_instance=me_instance)
    )
    assert options.fmi_type == MODEL_EXCHANGE


def test_experiment_step_size_is_coarsened():
    description = _description(
        **{'stopTime="0.1"': 'stopTime="0.1" stepSize="0.00001"'}
    )
    options = resolve_options(description)
    assert options.output_interval == pytest.approx(1.6e-4)


def test_fixed_internal_step_size():
    description = _description(
        **{'canInterpolateInputs="true"': 'fixedInternalStepSize="0.01"'}
    )
    assert resolve_options(description).output_interval == 0.01


def test_explicit_options_are_kept(description):
    options = resolve_options(
        description,
        SimulationOptions(
            start_time=0.5,
            stop_time=2.0,
            output_interval=0.1,
            relative_tolerance=1e-6,
        ),
    )
    assert options.start_time == 0.5
    assert options.stop_time == 2.0
    assert options.output_interval == 0.1
    assert options.relative_tolerance == 1e-6


@pytest.mark.parametrize(
    "kwargs",
    [
        {"stop_time": 0.0},
        {"start_time": 1.0, "stop_time": 0.5},
        {"solver": "CVode"},
        {"fmi_type": "Other"},
        {"initialize": False},
        {"initialize": False, "fmi_type": MODEL_EXCHANGE, "fmu_state": b"x"},
        {"fmu_state": b"x"},
        {"start_values": {"nope": 1.0}},
        {"output": ["x", "nope"]},
        {"input": {"nope": [(0.0, 1.0)]}},
    ],
)
def test_invalid_options(description, kwargs):
    with pytest.raises(ValidationError):
        resolve_options(description, SimulationOptions(**kwargs))


def test_unknown_option_name():
    with pytest.raises(pydantic.ValidationError):
        SimulationOptions(stepsize=0.1)


def test_unsupported_fmi_version():
    description = _description(**{'fmiVersion="2.0"': 'fmiVersion="1.0"'})
    with pytest.raises(ValidationError, match="FMI 2.0"):
        resolve_options(description)


def test_missing_interface_type():
    description = _description(**{'<ModelExchange modelIdentifier="Mock"/>': ""})
    with pytest.raises(CapabilityError):
        resolve_options(description, SimulationOptions(fmi_type=MODEL_EXCHANGE))


def test_input_derivatives_need_interpolation():
    description = _description(**{'canInterpolateInputs="true"': ""})
    with pytest.raises(CapabilityError):
        resolve_options(description, SimulationOptions(set_input_derivatives=True))


def test_state_capsule_needs_its_instance(description, cs_instance):
    cs_instance.setup_experiment()
    cs_instance.enter_initialization_mode()
    cs_instance.exit_initialization_mode()
    with cs_instance.get_state() as state:
        with pytest.raises(ValidationError):
            resolve_options(
                description, SimulationOptions(initialize=False, fmu_state=state)
            )


# ---------------------------------------------------------------------------
# Co-simulation
# ---------------------------------------------------------------------------
def test_simulate_cs_defaults(description, cs_instance, mock_model):
    result = simulate_cs(description, cs_instance)

    assert result.columns == ["time", "x", "steps"]
    times = result.time
    assert times[0] == 0.0
    assert all(b > a for a, b in zip(times, times[1:]))
    assert result.final_time == pytest.approx(0.1)
    assert len(mock_model.steps) == len(times) - 1
    assert result["x"][-1] == pytest.approx(0.2)
    assert mock_model.calls.count("fmi2Terminate") == 1
    assert cs_instance.state == LifecycleState.TERMINATED


def test_simulate_cs_output_interval(description, cs_instance, mock_model):
    result = simulate_cs(
        description, cs_instance, SimulationOptions(output_interval=0.025)
    )
    assert result.time == pytest.approx([0.0, 0.025, 0.05, 0.075, 0.1])
    assert result["steps"] == [0, 1, 2, 3, 4]
    assert result.step_count == 4
    assert [h for _, h in mock_model.steps] == pytest.approx([0.025] * 4)
    assert mock_model.calls.count("fmi2SetupExperiment") == 1


def test_simulate_cs_fixed_step_size_stops_early():
    description = _description(
        **{
            'canHandleVariableCommunicationStepSize="true"':
            'canHandleVariableCommunicationStepSize="false"'
        }
    )
    model = MockModel()
    instance = _cs_instance(model)
    result = simulate_cs(
        description, instance, SimulationOptions(output_interval=0.03)
    )
    assert result.time == pytest.approx([0.0, 0.03, 0.06, 0.09])
    assert model.calls.count("fmi2Terminate") == 1
    instance.free_instance()


def test_simulate_cs_clamps_last_step(description, cs_instance, mock_model):
    result = simulate_cs(
        description, cs_instance, SimulationOptions(output_interval=0.03)
    )
    assert result.time == pytest.approx([0.0, 0.03, 0.06, 0.09, 0.1])
    assert mock_model.steps[-1][1] == pytest.approx(0.01)


def test_simulate_cs_model_terminates_on_discard(description):
    model = MockModel(discard_at=0.06)
    instance = _cs_instance(model)
    result = simulate_cs(
        description, instance, SimulationOptions(output_interval=0.025)
    )
    assert result.time == pytest.approx([0.0, 0.025, 0.05, 0.06])
    assert result.final_time == pytest.approx(0.06)
    assert result["x"][-1] == pytest.approx(0.12)
    assert model.calls.count("fmi2Terminate") == 1
    instance.free_instance()


def test_simulate_cs_discard_without_termination(description):
    model = MockModel(discard_at=0.06, terminate_on_discard=False)
    instance = _cs_instance(model)
    with pytest.raises(NativeStatusError) as exc_info:
        simulate_cs(description, instance, SimulationOptions(output_interval=0.025))
    assert exc_info.value.func_name == "fmi2DoStep"
    assert exc_info.value.status == Fmi2Status.DISCARD
    assert "fmi2Terminate" not in model.calls
    # the run has been released
    with instance.claim_run():
        pass
    instance.free_instance()


def test_simulate_cs_pending_steps(description):
    model = MockModel(pending_polls=1)
    instance = _cs_instance(model)
    result = simulate_cs(
        description, instance, SimulationOptions(output_interval=0.025)
    )
    assert result.time == pytest.approx([0.0, 0.025, 0.05, 0.075, 0.1])
    assert model.calls.count("fmi2GetStatus") == 8
    instance.free_instance()


def test_simulate_cs_step_finished(description, cs_instance):
    seen = []

    def step_finished(time, recorder):
        seen.append(time)
        return time < 0.05

    result = simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.025, step_finished=step_finished),
    )
    assert seen == pytest.approx([0.025, 0.05])
    assert result.final_time == pytest.approx(0.05)
    assert cs_instance.state == LifecycleState.TERMINATED


def test_simulate_cs_timeout(description, cs_instance):
    def slow(time_, recorder):
        time.sleep(0.05)
        return True

    result = simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.025, timeout=0.01, step_finished=slow),
    )
    assert result.time == pytest.approx([0.0, 0.025])
    assert cs_instance.state == LifecycleState.TERMINATED


def test_simulate_cs_without_terminate(description, cs_instance, mock_model):
    simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.05, terminate=False),
    )
    assert "fmi2Terminate" not in mock_model.calls
    assert cs_instance.state == LifecycleState.STEP_MODE


def test_simulate_cs_start_and_stop_time(description, cs_instance, mock_model):
    simulate_cs(
        description,
        cs_instance,
        SimulationOptions(
            start_time=1.0, stop_time=1.1, output_interval=0.05, set_stop_time=False
        ),
    )
    assert mock_model.steps[0][0] == 1.0


def test_simulate_cs_start_values(description, cs_instance, mock_model):
    result = simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.05, start_values={"k": "3", "x": 1}),
    )
    assert mock_model.reals[3] == 3.0
    assert result["x"] == pytest.approx([1.0, 1.15, 1.3])


def test_simulate_cs_default_start_values(description, cs_instance, mock_model):
    mock_model.strings[7] = b"changed"
    simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.05, apply_default_start_values=True),
    )
    assert mock_model.strings[7] == b"mock"
    assert mock_model.booleans[6] == 1


def test_simulate_cs_output_selection(description, cs_instance):
    result = simulate_cs(
        description,
        cs_instance,
        SimulationOptions(output_interval=0.05, output=["k", "enabled", "label"]),
    )
    assert result.columns == ["time", "k", "enabled", "label"]
    assert list(result.rows())[0] == {
        "time": 0.0,
        "k": 2.0,
        "enabled": True,
        "label": "mock",
    }


def test_simulate_cs_input(description, cs_instance, mock_model):
    simulate_cs(
        description,
        cs_instance,
        SimulationOptions(
            output_interval=0.025,
            input={"u": [(0.0, 0.0), (0.1, 1.0)]},
            set_input_derivatives=True,
        ),
    )
    # inputs are applied at the start of each step
    assert mock_model.reals[5] == pytest.approx(0.75)
    assert mock_model.input_derivatives[5] == (1, pytest.approx(10.0))


def test_simulate_cs_restores_state(description, cs_instance, mock_model):
    cs_instance.setup_experiment()
    cs_instance.enter_initialization_mode()
    cs_instance.exit_initialization_mode()
    cs_instance.do_step(0.0, 0.05)
    with cs_instance.get_state() as state:
        data = state.serialize()

    cs_instance.do_step(0.05, 0.05)
    result = simulate_cs(
        description,
        cs_instance,
        SimulationOptions(
            start_time=0.05,
            stop_time=0.1,
            output_interval=0.05,
            initialize=False,
            fmu_state=data,
        ),
    )
    assert result["x"] == pytest.approx([0.1, 0.2])
    assert mock_model.calls.count("fmi2SetupExperiment") == 1


def test_simulate_cs_rejects_a_second_run(description, cs_instance):
    with cs_instance.claim_run():
        with pytest.raises(LifecycleError):
            simulate_cs(description, cs_instance)


def test_simulate_cs_requires_co_simulation(description, me_instance):
    with pytest.raises(CapabilityError):
        simulate_cs(
            description, me_instance, SimulationOptions(fmi_type=CO_SIMULATION)
        )


# ---------------------------------------------------------------------------
# Model exchange
# ---------------------------------------------------------------------------
def test_simulate_me_euler(description, me_instance, mock_model):
    result = simulate_me(
        description, me_instance, SimulationOptions(step_size=0.01)
    )
    assert len(result) == 11
    assert result.final_time == pytest.approx(0.1)
    for t, x in zip(result.time, result["x"]):
        assert x == pytest.approx(2.0 * t)
    assert result.step_count == 10
    assert mock_model.calls.count("fmi2CompletedIntegratorStep") == 10
    assert me_instance.state == LifecycleState.TERMINATED


def test_simulate_me_output_interval(description, me_instance):
    result = simulate_me(
        description,
        me_instance,
        SimulationOptions(step_size=0.01, output_interval=0.05),
    )
    assert result.time == pytest.approx([0.0, 0.05, 0.1])


class TimeEventModel(MockModel):
    """Schedules a single time event at 0.035."""

    def __init__(self):
        self.event_times = []
        super().__init__()

    def _NewDiscreteStates(self, c, info):
        first = not self.event_times
        self.event_times.append(self.time)
        info.contents.newDiscreteStatesNeeded = 0
        info.contents.terminateSimulation = 0
        info.contents.nominalsOfContinuousStatesChanged = 0
        info.contents.valuesOfContinuousStatesChanged = 0
        info.contents.nextEventTimeDefined = 1 if first else 0
        info.contents.nextEventTime = 0.035 if first else 0.0
        return 0


def test_simulate_me_time_event(description):
    model = TimeEventModel()
    binding = ModelBinding(model, [Fmi2Type.MODEL_EXCHANGE])
    instance = ModelInstance.instantiate(
        binding, "mock", Fmi2Type.MODEL_EXCHANGE, MOCK_GUID, ""
    )
    result = simulate_me(
        description, instance, SimulationOptions(step_size=0.01)
    )
    instance.free_instance()
    binding.close()

    assert model.event_times == pytest.approx([0.0, 0.035])
    # sampled before and after the event
    assert result.time[:7] == pytest.approx(
        [0.0, 0.01, 0.02, 0.03, 0.035, 0.035, 0.04]
    )
    assert result["x"][4] == pytest.approx(0.07)
    assert result.final_time == pytest.approx(0.1)


def test_simulate_me_without_event_recording(description):
    model = TimeEventModel()
    binding = ModelBinding(model, [Fmi2Type.MODEL_EXCHANGE])
    instance = ModelInstance.instantiate(
        binding, "mock", Fmi2Type.MODEL_EXCHANGE, MOCK_GUID, ""
    )
    result = simulate_me(
        description,
        instance,
        SimulationOptions(step_size=0.01, record_events=False),
    )
    instance.free_instance()
    binding.close()
    assert result.time[:5] == pytest.approx([0.0, 0.01, 0.02, 0.03, 0.04])


def test_simulate_me_requires_model_exchange(description, cs_instance):
    with pytest.raises(CapabilityError):
        simulate_me(
            description, cs_instance, SimulationOptions(fmi_type=MODEL_EXCHANGE)
        )


# ---------------------------------------------------------------------------
# Start values, results and files
# ---------------------------------------------------------------------------
def test_apply_start_values(description, cs_instance, mock_model):
    remaining = apply_start_values(
        cs_instance,
        description,
        {"k": 4, "enabled": "false", "label": "abc", "steps": 3},
        settable=lambda v: v.settable_before_initialization,
    )
    assert remaining == {"steps": 3}
    assert mock_model.reals[3] == 4.0
    assert mock_model.booleans[6] == 0
    assert mock_model.strings[7] == b"abc"


def test_apply_start_values_rejects_bad_values(description, cs_instance):
    with pytest.raises(ValidationError):
        apply_start_values(cs_instance, description, {"k": "fast"})


def test_result_to_csv(tmp_path):
    result = SimulationResult(
        columns=["time", "x"], data=[(0.0, 1.0), (0.5, 2.5)]
    )
    text = result.to_csv(tmp_path / "result.csv")
    assert text == "time,x\n0.0,1.0\n0.5,2.5\n"
    assert (tmp_path / "result.csv").read_text() == text
    with pytest.raises(KeyError):
        result["y"]


def test_simulate_fmu_with_existing_instance(description, cs_instance):
    result = simulate_fmu(
        "unused.fmu",
        SimulationOptions(
            model_description=description,
            fmu_instance=cs_instance,
            output_interval=0.05,
        ),
    )
    assert result.time == pytest.approx([0.0, 0.05, 0.1])


def test_simulate_fmu_without_binary(tmp_path):
    (tmp_path / "modelDescription.xml").write_text(MOCK_MODEL_DESCRIPTION)
    with pytest.raises(LoadError):
        simulate_fmu(tmp_path)


def test_simulate_fmu_missing_file(tmp_path):
    with pytest.raises(LoadError):
        simulate_fmu(tmp_path / "missing.fmu")
