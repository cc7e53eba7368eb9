"""
Simulation driver.

:func:`simulate_fmu` runs an FMU file end-to-end: it reads the model
description, resolves the options, extracts the archive, loads the binary
for the host, instantiates the model and hands it to :func:`simulate_cs`
(co-simulation master algorithm) or :func:`simulate_me` (fixed-step forward
Euler for model exchange).  Everything the driver creates is released
before it returns, also on failure.
"""

from __future__ import annotations

import csv
import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

from .archive import FmuArchive
from .description import ModelDescription, ScalarVariable, coerce_value, read_model_description
from .errors import CapabilityError, NativeStatusError, ValidationError
from .fmi2 import EventInfo, Fmi2Status, Fmi2StatusKind, Fmi2Type, LogSink, ModelBinding, logging_sink
from .input import Input
from .instance import ModelInstance, ModelState
from .numeric import auto_interval, default_step_size, is_close
from .platforms import find_binary

logger = logging.getLogger(__name__)

MODEL_EXCHANGE = "ModelExchange"
CO_SIMULATION = "CoSimulation"

_FMU_TYPES = {
    MODEL_EXCHANGE: Fmi2Type.MODEL_EXCHANGE,
    CO_SIMULATION: Fmi2Type.CO_SIMULATION,
}


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------
@dataclass
class SimulationResult:
    """Recorded samples of a run, one row per sample."""

    columns: list[str]
    data: list[tuple[Any, ...]] = field(default_factory=list)
    step_count: int = 0

    @property
    def time(self) -> list[float]:
        return [row[0] for row in self.data]

    @property
    def final_time(self) -> float | None:
        return self.data[-1][0] if self.data else None

    def __len__(self) -> int:
        return len(self.data)

    def __getitem__(self, name: str) -> list[Any]:
        try:
            index = self.columns.index(name)
        except ValueError:
            raise KeyError(name) from None
        return [row[index] for row in self.data]

    def rows(self) -> Iterator[dict[str, Any]]:
        for row in self.data:
            yield dict(zip(self.columns, row))

    def to_csv(self, path: str | Path | None = None) -> str:
        """Return the result as CSV text and write it to *path* if given."""
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(self.columns)
        writer.writerows(self.data)
        text = buf.getvalue()
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text


class Recorder:
    """Samples time and a set of variables of a running instance."""

    def __init__(
        self, instance: ModelInstance, variables: list[ScalarVariable]
    ) -> None:
        self.instance = instance
        self.variables = variables
        self._groups: dict[str, list[int]] = {}
        self._columns: dict[str, list[int]] = {}
        for i, v in enumerate(variables):
            kind = "Integer" if v.type == "Enumeration" else v.type
            self._groups.setdefault(kind, []).append(v.value_reference)
            self._columns.setdefault(kind, []).append(i + 1)
        self.result = SimulationResult(
            columns=["time"] + [v.name for v in variables]
        )

    def sample(self, time: float, force: bool = False) -> None:
        """Record the current values.  A second sample at the same time is
        only taken when *force* is set, e.g. before and after an event."""
        data = self.result.data
        if not force and data and data[-1][0] == time:
            return

        row: list[Any] = [time] + [None] * len(self.variables)
        getters = {
            "Real": self.instance.get_real,
            "Integer": self.instance.get_integer,
            "Boolean": self.instance.get_boolean,
            "String": self.instance.get_string,
        }
        for kind, vrs in self._groups.items():
            for index, value in zip(self._columns[kind], getters[kind](vrs)):
                row[index] = value
        data.append(tuple(row))


StepFinished = Callable[[float, Recorder], bool]


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------
class SimulationOptions(BaseModel):
    """Options of a simulation run.

    Every field is optional; :func:`resolve_options` fills in the defaults
    from the model description.
    """

    model_config = ConfigDict(
        extra="forbid",
        arbitrary_types_allowed=True,
        protected_namespaces=(),
    )

    validate_description: bool = True
    start_time: Optional[float] = None
    stop_time: Optional[float] = None
    solver: str = "Euler"
    step_size: Optional[float] = Field(default=None, gt=0)
    relative_tolerance: Optional[float] = Field(default=None, gt=0)
    output_interval: Optional[float] = Field(default=None, gt=0)
    record_events: bool = True
    fmi_type: Optional[str] = None
    start_values: dict[str, Any] = Field(default_factory=dict)
    apply_default_start_values: bool = False
    input: Optional[dict[str, list[tuple[float, Any]]]] = None
    output: Optional[list[str]] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    debug_logging: bool = False
    log_sink: Optional[LogSink] = None
    set_input_derivatives: bool = False
    visible: bool = False
    initialize: bool = True
    terminate: bool = True
    set_stop_time: bool = True
    unpack_dir: Optional[str] = None
    model_description: Optional[ModelDescription] = None
    fmu_instance: Optional[ModelInstance] = None
    fmu_state: Optional[ModelState | bytes] = None
    step_finished: Optional[StepFinished] = None


def resolve_options(
    description: ModelDescription,
    options: SimulationOptions | None = None,
) -> SimulationOptions:
    """Validate *options* against *description* and fill in the defaults.

    All checks happen here so that a run fails before anything is
    instantiated.
    """
    options = options or SimulationOptions()

    if description.fmi_version != "2.0":
        raise ValidationError(
            f"Only FMI 2.0 models can be simulated "
            f"(fmiVersion={description.fmi_version!r})"
        )

    fmi_type = options.fmi_type
    if fmi_type is None:
        if options.fmu_instance is not None:
            fmi_type = (
                CO_SIMULATION
                if options.fmu_instance.fmu_type == Fmi2Type.CO_SIMULATION
                else MODEL_EXCHANGE
            )
        elif description.co_simulation is not None:
            fmi_type = CO_SIMULATION
        elif description.model_exchange is not None:
            fmi_type = MODEL_EXCHANGE
        else:
            raise ValidationError(
                "The model supports neither co-simulation nor model exchange"
            )

    if fmi_type not in _FMU_TYPES:
        raise ValidationError(
            f"fmi_type must be one of {MODEL_EXCHANGE!r} or {CO_SIMULATION!r}"
        )
    if fmi_type == CO_SIMULATION and description.co_simulation is None:
        raise CapabilityError("The model does not support co-simulation")
    if fmi_type == MODEL_EXCHANGE and description.model_exchange is None:
        raise CapabilityError("The model does not support model exchange")

    if not options.initialize:
        if fmi_type != CO_SIMULATION:
            raise ValidationError(
                f"If initialize is False, fmi_type must be {CO_SIMULATION!r}"
            )
        if options.fmu_instance is None and options.fmu_state is None:
            raise ValidationError(
                "If initialize is False, fmu_instance or fmu_state must be "
                "provided"
            )
    if options.fmu_state is not None:
        if options.initialize:
            raise ValidationError("fmu_state requires initialize=False")
        if isinstance(options.fmu_state, ModelState) and options.fmu_instance is None:
            raise ValidationError(
                "Restoring a state capsule requires the fmu_instance it "
                "belongs to"
            )

    if options.solver != "Euler":
        raise ValidationError(f"Unknown solver {options.solver!r}")

    experiment = description.default_experiment

    start_time = options.start_time
    if start_time is None:
        if experiment is not None and experiment.start_time is not None:
            start_time = experiment.start_time
        else:
            start_time = 0.0

    stop_time = options.stop_time
    if stop_time is None:
        if experiment is not None and experiment.stop_time is not None:
            stop_time = experiment.stop_time
        else:
            stop_time = start_time + 1.0

    duration = stop_time - start_time
    if duration <= 0:
        raise ValidationError(
            f"stop_time ({stop_time}) must be greater than start_time "
            f"({start_time})"
        )

    relative_tolerance = options.relative_tolerance
    if relative_tolerance is None and experiment is not None:
        relative_tolerance = experiment.tolerance

    step_size = options.step_size
    if step_size is None:
        step_size = default_step_size(duration)

    output_interval = options.output_interval
    if output_interval is None and fmi_type == CO_SIMULATION:
        cs = description.co_simulation
        if cs is not None and cs.fixed_internal_step_size is not None:
            output_interval = cs.fixed_internal_step_size
        elif experiment is not None and experiment.step_size is not None:
            output_interval = experiment.step_size

        if output_interval is not None:
            while duration / output_interval > 1000:
                output_interval *= 2
    if output_interval is None:
        output_interval = (
            auto_interval(duration) if fmi_type == CO_SIMULATION else step_size
        )

    if options.set_input_derivatives and not (
        description.co_simulation is not None
        and description.co_simulation.can_interpolate_inputs
    ):
        raise CapabilityError(
            "set_input_derivatives is True but the model cannot interpolate "
            "inputs"
        )

    # unknown names fail here rather than mid-run
    for name in list(options.start_values) + list(options.output or []):
        description.variable(name)
    for name in options.input or {}:
        description.variable(name)

    return options.model_copy(
        update={
            "fmi_type": fmi_type,
            "start_time": start_time,
            "stop_time": stop_time,
            "relative_tolerance": relative_tolerance,
            "step_size": step_size,
            "output_interval": output_interval,
        }
    )


# ---------------------------------------------------------------------------
# Start values
# ---------------------------------------------------------------------------
def apply_start_values(
    instance: ModelInstance,
    description: ModelDescription,
    start_values: dict[str, Any],
    settable: Callable[[ScalarVariable], bool] | None = None,
) -> dict[str, Any]:
    """Set *start_values* by variable name.

    Only variables accepted by *settable* are set; the others are returned
    so that they can be applied in a later phase.
    """
    remaining: dict[str, Any] = {}
    groups: dict[str, tuple[list[int], list[Any]]] = {}

    for name, value in start_values.items():
        variable = description.variable(name)
        if settable is not None and not settable(variable):
            remaining[name] = value
            continue
        kind = "Integer" if variable.type == "Enumeration" else variable.type
        vrs, values = groups.setdefault(kind, ([], []))
        vrs.append(variable.value_reference)
        values.append(coerce_value(variable.type, value))

    setters = {
        "Real": instance.set_real,
        "Integer": instance.set_integer,
        "Boolean": instance.set_boolean,
        "String": instance.set_string,
    }
    for kind, (vrs, values) in groups.items():
        setters[kind](vrs, values)

    return remaining


def _start_values(
    description: ModelDescription, options: SimulationOptions
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if options.apply_default_start_values:
        values = {
            v.name: v.start
            for v in description.model_variables
            if v.start is not None and v.settable_before_initialization
        }
    values.update(options.start_values)
    return values


def _output_variables(
    description: ModelDescription, names: list[str] | None
) -> list[ScalarVariable]:
    if names is None:
        return [v for v in description.model_variables if v.causality == "output"]
    return [description.variable(name) for name in names]


def _initialize(
    instance: ModelInstance,
    description: ModelDescription,
    options: SimulationOptions,
    inputs: Input,
) -> None:
    assert options.start_time is not None and options.stop_time is not None
    instance.setup_experiment(
        start_time=options.start_time,
        stop_time=options.stop_time if options.set_stop_time else None,
        tolerance=options.relative_tolerance,
    )
    remaining = apply_start_values(
        instance,
        description,
        _start_values(description, options),
        settable=lambda v: v.settable_before_initialization,
    )
    instance.enter_initialization_mode()
    apply_start_values(instance, description, remaining)
    inputs.apply(options.start_time)
    instance.exit_initialization_mode()


def _restore_state(instance: ModelInstance, state: ModelState | bytes) -> None:
    if isinstance(state, ModelState):
        instance.set_state(state)
        return
    with instance.deserialize_state(state) as capsule:
        instance.set_state(capsule)


def _await_step(instance: ModelInstance, poll_interval: float = 0.01) -> Fmi2Status:
    """Poll an asynchronous step until it is no longer pending."""
    while True:
        status = instance.get_status(Fmi2StatusKind.DO_STEP_STATUS)
        if status != Fmi2Status.PENDING:
            return status
        time.sleep(poll_interval)


# ---------------------------------------------------------------------------
# Co-simulation
# ---------------------------------------------------------------------------
def simulate_cs(
    description: ModelDescription,
    instance: ModelInstance,
    options: SimulationOptions | None = None,
) -> SimulationResult:
    """Run the co-simulation master algorithm on *instance*.

    The instance is owned by the caller and is not freed.
    """
    options = resolve_options(
        description,
        (options or SimulationOptions()).model_copy(
            update={"fmu_instance": instance}
        ),
    )
    if instance.fmu_type != Fmi2Type.CO_SIMULATION:
        raise CapabilityError("simulate_cs requires a co-simulation instance")

    cs = description.co_simulation
    assert cs is not None
    start_time = options.start_time
    stop_time = options.stop_time
    output_interval = options.output_interval
    assert start_time is not None and stop_time is not None
    assert output_interval is not None
    can_handle_variable_step_size = cs.can_handle_variable_communication_step_size

    with instance.claim_run():
        inputs = Input(
            instance, description, options.input, options.set_input_derivatives
        )
        recorder = Recorder(instance, _output_variables(description, options.output))

        if options.initialize:
            _initialize(instance, description, options, inputs)
        elif options.fmu_state is not None:
            _restore_state(instance, options.fmu_state)

        current_time = start_time
        recorder.sample(current_time)

        sim_start = time.monotonic()
        step_count = 0

        logger.debug(
            "Simulating %s from %g to %g (output interval %g)",
            description.model_name,
            start_time,
            stop_time,
            output_interval,
        )

        while True:
            if (
                options.timeout is not None
                and time.monotonic() - sim_start > options.timeout
            ):
                logger.info("Simulation timed out at t=%g", current_time)
                break

            if current_time >= stop_time:
                break

            next_regular_point = start_time + (step_count + 1) * output_interval
            next_communication_point = next_regular_point

            next_input_event_time = inputs.next_event(current_time)
            if (
                can_handle_variable_step_size
                and next_communication_point > next_input_event_time
                and not is_close(next_communication_point, next_input_event_time)
            ):
                next_communication_point = next_input_event_time

            if next_communication_point > stop_time and not is_close(
                next_communication_point, stop_time
            ):
                if can_handle_variable_step_size:
                    next_communication_point = stop_time
                else:
                    break

            step_size = next_communication_point - current_time

            inputs.apply(current_time)

            status = instance.do_step(current_time, step_size, False)

            if status == Fmi2Status.PENDING:
                status = _await_step(instance)

            if status == Fmi2Status.DISCARD:
                if instance.get_boolean_status(Fmi2StatusKind.TERMINATED):
                    current_time = instance.get_real_status(
                        Fmi2StatusKind.LAST_SUCCESSFUL_TIME
                    )
                    logger.info(
                        "Simulation terminated by the model at t=%g",
                        current_time,
                    )
                    recorder.sample(current_time, force=True)
                    break
                raise NativeStatusError("fmi2DoStep", status)

            current_time = next_communication_point

            if is_close(current_time, next_regular_point):
                step_count += 1

            recorder.sample(current_time)

            if options.step_finished is not None and not options.step_finished(
                current_time, recorder
            ):
                break

        if options.terminate:
            instance.terminate()

    recorder.result.step_count = step_count
    return recorder.result


# ---------------------------------------------------------------------------
# Model exchange
# ---------------------------------------------------------------------------
def _event_iteration(instance: ModelInstance) -> EventInfo:
    while True:
        info = instance.new_discrete_states()
        if info.terminate_simulation or not info.new_discrete_states_needed:
            return info


def _sign_changed(z0: list[float], z1: list[float]) -> bool:
    return any((a > 0) != (b > 0) for a, b in zip(z0, z1))


def simulate_me(
    description: ModelDescription,
    instance: ModelInstance,
    options: SimulationOptions | None = None,
) -> SimulationResult:
    """Integrate a model-exchange instance with fixed-step forward Euler.

    Time events, state events (sign changes of the event indicators) and
    step events reported by ``fmi2CompletedIntegratorStep`` are handled by
    an event iteration in event mode.
    """
    options = resolve_options(
        description,
        (options or SimulationOptions()).model_copy(
            update={"fmu_instance": instance}
        ),
    )
    if instance.fmu_type != Fmi2Type.MODEL_EXCHANGE:
        raise CapabilityError("simulate_me requires a model-exchange instance")

    me = description.model_exchange
    assert me is not None
    start_time = options.start_time
    stop_time = options.stop_time
    step_size = options.step_size
    output_interval = options.output_interval
    assert start_time is not None and stop_time is not None
    assert step_size is not None and output_interval is not None

    nx = description.number_of_continuous_states
    nz = description.number_of_event_indicators

    with instance.claim_run():
        inputs = Input(instance, description, options.input)
        recorder = Recorder(instance, _output_variables(description, options.output))

        _initialize(instance, description, options, inputs)

        current_time = start_time
        info = _event_iteration(instance)
        recorder.sample(current_time)

        sim_start = time.monotonic()
        n_steps = 0
        n_outputs = 1
        terminated = info.terminate_simulation

        if not terminated:
            instance.enter_continuous_time_mode()
            x = instance.get_continuous_states(nx)
            z = instance.get_event_indicators(nz)

        while not terminated:
            if (
                options.timeout is not None
                and time.monotonic() - sim_start > options.timeout
            ):
                logger.info("Simulation timed out at t=%g", current_time)
                break

            if current_time >= stop_time or is_close(current_time, stop_time):
                break

            next_time = start_time + (n_steps + 1) * step_size
            if next_time > stop_time:
                next_time = stop_time

            time_event = (
                info.next_event_time is not None
                and info.next_event_time <= next_time
            )
            if time_event:
                assert info.next_event_time is not None
                next_time = info.next_event_time

            dx = instance.get_derivatives(nx)
            h = next_time - current_time
            x = [xi + h * dxi for xi, dxi in zip(x, dx)]

            current_time = next_time
            if is_close(current_time, start_time + (n_steps + 1) * step_size):
                n_steps += 1

            instance.set_time(current_time)
            if nx > 0:
                instance.set_continuous_states(x)
            inputs.apply(current_time, after_event=False)

            z_prev, z = z, instance.get_event_indicators(nz)
            state_event = _sign_changed(z_prev, z)

            step_event = False
            if not me.completed_integrator_step_not_needed:
                step_event, terminated = instance.completed_integrator_step()
                if terminated:
                    recorder.sample(current_time, force=True)
                    break

            if time_event or state_event or step_event:
                if options.record_events:
                    recorder.sample(current_time, force=True)
                instance.enter_event_mode()
                inputs.apply(current_time, after_event=True)
                info = _event_iteration(instance)
                if info.terminate_simulation:
                    recorder.sample(current_time, force=True)
                    break
                instance.enter_continuous_time_mode()
                if info.values_changed:
                    x = instance.get_continuous_states(nx)
                z = instance.get_event_indicators(nz)
                if options.record_events:
                    recorder.sample(current_time, force=True)

            next_output = start_time + n_outputs * output_interval
            if current_time >= next_output or is_close(current_time, next_output):
                recorder.sample(current_time)
                while current_time >= next_output or is_close(
                    current_time, next_output
                ):
                    n_outputs += 1
                    next_output = start_time + n_outputs * output_interval

            if options.step_finished is not None and not options.step_finished(
                current_time, recorder
            ):
                break

        if options.terminate:
            instance.terminate()

    recorder.result.step_count = n_steps
    return recorder.result


# ---------------------------------------------------------------------------
# Running an FMU file
# ---------------------------------------------------------------------------
def _run(
    description: ModelDescription,
    instance: ModelInstance,
    options: SimulationOptions,
) -> SimulationResult:
    if instance.fmu_type == Fmi2Type.CO_SIMULATION:
        return simulate_cs(description, instance, options)
    return simulate_me(description, instance, options)


def simulate_fmu(
    filename: str | Path,
    options: SimulationOptions | None = None,
) -> SimulationResult:
    """Simulate the FMU *filename*.

    Args:
        filename: An ``.fmu`` archive or an extracted FMU directory.
        options: The run configuration; see :class:`SimulationOptions`.

    Raises:
        LoadError: The archive cannot be read or contains no binary for the
            host platform.
        CapabilityError: A required entry point or capability is missing.
        ValidationError: The options are inconsistent with the model.
        NativeStatusError: A model call failed during the run.
    """
    options = options or SimulationOptions()

    description = options.model_description
    if description is None:
        description = read_model_description(filename)

    options = resolve_options(description, options)
    assert options.fmi_type is not None
    fmu_type = _FMU_TYPES[options.fmi_type]

    if options.fmu_instance is not None:
        return _run(description, options.fmu_instance, options)

    with FmuArchive(filename, unpack_dir=options.unpack_dir) as archive:
        model_identifier = description.model_identifier(fmu_type)
        library_path = find_binary(archive.directory, model_identifier)

        log_sink = options.log_sink
        if log_sink is None and options.debug_logging:
            log_sink = logging_sink()

        block = (
            description.co_simulation
            if fmu_type == Fmi2Type.CO_SIMULATION
            else description.model_exchange
        )
        assert block is not None

        binding = ModelBinding.load(library_path, [fmu_type], log_sink=log_sink)
        try:
            instance = ModelInstance.instantiate(
                binding,
                description.model_name,
                fmu_type,
                description.guid,
                archive.resource_location(),
                visible=options.visible,
                logging_on=options.debug_logging,
                use_memory_callbacks=not block.can_not_use_memory_management_functions,
            )
            try:
                if options.debug_logging:
                    instance.set_debug_logging(True)
                return _run(description, instance, options)
            finally:
                instance.free_instance()
        finally:
            binding.close()
