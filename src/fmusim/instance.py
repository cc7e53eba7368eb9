"""
Model instances and their lifecycle.

A :class:`ModelInstance` wraps one native component handle together with the
:class:`~fmusim.fmi2.ModelBinding` that created it.  Every operation first
checks the current :class:`LifecycleState` and raises
:class:`~fmusim.errors.LifecycleError` before touching the native side if
the call is not allowed.  A native ``fmi2Error`` moves the instance to
``ERROR`` and ``fmi2Fatal`` to ``FATAL``.

Example::

    with ModelInstance.instantiate(binding, "bb", Fmi2Type.CO_SIMULATION,
                                   guid, resource_uri) as inst:
        inst.setup_experiment(start_time=0.0)
        inst.enter_initialization_mode()
        inst.exit_initialization_mode()
        inst.do_step(0.0, 0.1)
        inst.terminate()
"""

from __future__ import annotations

import contextlib
import logging
import threading
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

from .errors import CapabilityError, LifecycleError, NativeStatusError, ValidationError
from .fmi2 import EventInfo, Fmi2Status, Fmi2StatusKind, Fmi2Type, ModelBinding

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    INSTANTIATED = "instantiated"
    EXPERIMENT_SET_UP = "experiment set up"
    INITIALIZATION_MODE = "initialization mode"
    EVENT_MODE = "event mode"
    CONTINUOUS_TIME_MODE = "continuous time mode"
    STEP_MODE = "step mode"
    STEP_PENDING = "step pending"
    STEP_CANCELED = "step canceled"
    TERMINATED = "terminated"
    ERROR = "error"
    FATAL = "fatal"
    FREED = "freed"


_S = LifecycleState

_RUNNING = frozenset({_S.EVENT_MODE, _S.CONTINUOUS_TIME_MODE, _S.STEP_MODE})
_SETTABLE = frozenset(
    {_S.INSTANTIATED, _S.EXPERIMENT_SET_UP, _S.INITIALIZATION_MODE} | _RUNNING
)
_GETTABLE = frozenset(
    {
        _S.INITIALIZATION_MODE,
        _S.STEP_PENDING,
        _S.STEP_CANCELED,
        _S.TERMINATED,
        _S.ERROR,
    }
    | _RUNNING
)
_STATUS_QUERY = frozenset(
    {_S.STEP_MODE, _S.STEP_PENDING, _S.STEP_CANCELED, _S.TERMINATED, _S.ERROR}
)
_ME_QUERY = frozenset(
    {
        _S.INITIALIZATION_MODE,
        _S.EVENT_MODE,
        _S.CONTINUOUS_TIME_MODE,
        _S.TERMINATED,
        _S.ERROR,
    }
)
_ALIVE = frozenset(LifecycleState) - {_S.FATAL, _S.FREED}


class ModelInstance:
    """A native model instance and its current lifecycle state.

    The instance shares its binding; the binding must stay loaded until
    :meth:`free_instance` has been called.
    """

    def __init__(
        self,
        binding: ModelBinding,
        handle: int,
        fmu_type: Fmi2Type,
        instance_name: str = "",
    ) -> None:
        self.binding = binding
        self.handle = handle
        self.fmu_type = fmu_type
        self.instance_name = instance_name
        self._state = LifecycleState.INSTANTIATED
        self._run_lock = threading.Lock()

    @classmethod
    def instantiate(
        cls,
        binding: ModelBinding,
        instance_name: str,
        fmu_type: Fmi2Type,
        guid: str,
        resource_location: str,
        *,
        visible: bool = False,
        logging_on: bool = False,
        use_memory_callbacks: bool = True,
    ) -> ModelInstance:
        """Create a new native instance through *binding*."""
        if fmu_type not in binding.interface_types:
            raise CapabilityError(
                f"The binding was not loaded for {fmu_type.name.lower()}"
            )
        handle = binding.instantiate(
            instance_name,
            fmu_type,
            guid,
            resource_location,
            visible=visible,
            logging_on=logging_on,
            use_memory_callbacks=use_memory_callbacks,
        )
        logger.debug("Instantiated %r (%s)", instance_name, fmu_type.name)
        return cls(binding, handle, fmu_type, instance_name)

    @property
    def state(self) -> LifecycleState:
        # a fatal error of any instance breaks the whole model
        if self.binding.fatal and self._state != _S.FREED:
            self._state = _S.FATAL
        return self._state

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def _require(self, operation: str, allowed: frozenset[LifecycleState]) -> None:
        state = self.state
        if state not in allowed:
            raise LifecycleError(operation, state)

    def _require_type(self, operation: str, fmu_type: Fmi2Type) -> None:
        if self.fmu_type != fmu_type:
            raise CapabilityError(
                f"{operation} is not available for {self.fmu_type.name.lower()}"
            )

    def _invoke(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(self.handle, *args)
        except NativeStatusError as exc:
            self._state = (
                LifecycleState.FATAL
                if exc.status == Fmi2Status.FATAL
                else LifecycleState.ERROR
            )
            raise

    @contextlib.contextmanager
    def claim_run(self) -> Iterator[ModelInstance]:
        """Reserve the instance for one run; a second concurrent run is
        rejected."""
        if not self._run_lock.acquire(blocking=False):
            raise LifecycleError("run", "ACTIVE_RUN")
        try:
            yield self
        finally:
            self._run_lock.release()

    # ------------------------------------------------------------------
    # Common functions
    # ------------------------------------------------------------------
    def set_debug_logging(
        self, logging_on: bool, categories: Sequence[str] | None = None
    ) -> Fmi2Status:
        self._require("set_debug_logging", _ALIVE)
        return self._invoke(self.binding.set_debug_logging, logging_on, categories)

    def setup_experiment(
        self,
        start_time: float = 0.0,
        stop_time: float | None = None,
        tolerance: float | None = None,
    ) -> Fmi2Status:
        self._require("setup_experiment", frozenset({_S.INSTANTIATED}))
        status = self._invoke(
            self.binding.setup_experiment, start_time, stop_time, tolerance
        )
        self._state = _S.EXPERIMENT_SET_UP
        return status

    def enter_initialization_mode(self) -> Fmi2Status:
        self._require("enter_initialization_mode", frozenset({_S.EXPERIMENT_SET_UP}))
        status = self._invoke(self.binding.enter_initialization_mode)
        self._state = _S.INITIALIZATION_MODE
        return status

    def exit_initialization_mode(self) -> Fmi2Status:
        self._require("exit_initialization_mode", frozenset({_S.INITIALIZATION_MODE}))
        status = self._invoke(self.binding.exit_initialization_mode)
        self._state = (
            _S.STEP_MODE if self.fmu_type == Fmi2Type.CO_SIMULATION else _S.EVENT_MODE
        )
        return status

    def terminate(self) -> Fmi2Status:
        self._require("terminate", _RUNNING)
        status = self._invoke(self.binding.terminate)
        self._state = _S.TERMINATED
        return status

    def reset(self) -> Fmi2Status:
        self._require("reset", _ALIVE)
        status = self._invoke(self.binding.reset)
        self._state = _S.INSTANTIATED
        return status

    def free_instance(self) -> None:
        """Release the native instance.  Calling it again is a no-op."""
        if self._state == _S.FREED:
            return
        self.binding.free_instance(self.handle)
        self._state = _S.FREED
        logger.debug("Freed %r", self.instance_name)

    def __enter__(self) -> ModelInstance:
        return self

    def __exit__(self, *_: object) -> None:
        self.free_instance()

    # ------------------------------------------------------------------
    # Getting and setting variable values
    # ------------------------------------------------------------------
    def get_real(self, vrs: Sequence[int]) -> list[float]:
        self._require("get_real", _GETTABLE)
        return self._invoke(self.binding.get_real, vrs)

    def get_integer(self, vrs: Sequence[int]) -> list[int]:
        self._require("get_integer", _GETTABLE)
        return self._invoke(self.binding.get_integer, vrs)

    def get_boolean(self, vrs: Sequence[int]) -> list[bool]:
        self._require("get_boolean", _GETTABLE)
        return self._invoke(self.binding.get_boolean, vrs)

    def get_string(self, vrs: Sequence[int]) -> list[str]:
        self._require("get_string", _GETTABLE)
        return self._invoke(self.binding.get_string, vrs)

    def set_real(self, vrs: Sequence[int], values: Sequence[float]) -> Fmi2Status:
        self._require("set_real", _SETTABLE)
        return self._invoke(self.binding.set_real, vrs, values)

    def set_integer(self, vrs: Sequence[int], values: Sequence[int]) -> Fmi2Status:
        self._require("set_integer", _SETTABLE)
        return self._invoke(self.binding.set_integer, vrs, values)

    def set_boolean(
        self, vrs: Sequence[int], values: Sequence[bool | int]
    ) -> Fmi2Status:
        self._require("set_boolean", _SETTABLE)
        return self._invoke(self.binding.set_boolean, vrs, values)

    def set_string(self, vrs: Sequence[int], values: Sequence[str]) -> Fmi2Status:
        self._require("set_string", _SETTABLE)
        return self._invoke(self.binding.set_string, vrs, values)

    def get_directional_derivative(
        self,
        v_unknown_ref: Sequence[int],
        v_known_ref: Sequence[int],
        dv_known: Sequence[float],
    ) -> list[float]:
        self._require("get_directional_derivative", _GETTABLE)
        return self._invoke(
            self.binding.get_directional_derivative,
            v_unknown_ref,
            v_known_ref,
            dv_known,
        )

    # ------------------------------------------------------------------
    # FMU state
    # ------------------------------------------------------------------
    def get_state(self, into: ModelState | None = None) -> ModelState:
        """Capture the model state.

        If *into* holds a live capsule of this binding, the model overwrites
        it and *into* is returned.
        """
        self._require("get_state", _ALIVE)
        if into is not None and not into.empty:
            into._check_owner(self)
            into._handle = self._invoke(self.binding.get_fmu_state, into._handle)
            into._captured_in = self._state
            return into
        handle = self._invoke(self.binding.get_fmu_state)
        return ModelState(self, handle, self._state)

    def set_state(self, state: ModelState) -> Fmi2Status:
        """Restore *state*; the instance returns to the lifecycle state the
        capsule was captured in."""
        self._require("set_state", _ALIVE)
        if state.empty:
            raise ValidationError("The state capsule has been released")
        state._check_owner(self)
        status = self._invoke(self.binding.set_fmu_state, state._handle)
        self._state = state.captured_in
        return status

    def deserialize_state(self, data: bytes) -> ModelState:
        self._require("deserialize_state", _ALIVE)
        handle = self._invoke(self.binding.deserialize_fmu_state, data)
        captured_in = (
            _S.STEP_MODE if self.fmu_type == Fmi2Type.CO_SIMULATION else _S.EVENT_MODE
        )
        return ModelState(self, handle, captured_in)

    def _state_call(self, operation: str, func: Callable[..., Any], handle: int) -> Any:
        """Run a state function on this instance or, once it has been freed,
        on any other live instance of the binding."""
        if self._state != _S.FREED:
            self._require(operation, _ALIVE)
            return self._invoke(func, handle)
        components = self.binding.components
        if not components:
            raise LifecycleError(operation, self._state)
        return func(components[0], handle)

    def _serialize_state(self, handle: int) -> bytes:
        return self._state_call(
            "serialize_state", self.binding.serialize_fmu_state, handle
        )

    def _free_state(self, handle: int) -> None:
        # gone with the last instance, or unreachable after a fatal error
        if not self.binding.owns_state(handle) or self.binding.fatal:
            return
        self._state_call("release_state", self.binding.free_fmu_state, handle)

    # ------------------------------------------------------------------
    # Model Exchange functions
    # ------------------------------------------------------------------
    def enter_event_mode(self) -> Fmi2Status:
        self._require_type("enter_event_mode", Fmi2Type.MODEL_EXCHANGE)
        self._require(
            "enter_event_mode", frozenset({_S.EVENT_MODE, _S.CONTINUOUS_TIME_MODE})
        )
        status = self._invoke(self.binding.enter_event_mode)
        self._state = _S.EVENT_MODE
        return status

    def new_discrete_states(self) -> EventInfo:
        self._require_type("new_discrete_states", Fmi2Type.MODEL_EXCHANGE)
        self._require("new_discrete_states", frozenset({_S.EVENT_MODE}))
        return self._invoke(self.binding.new_discrete_states)

    def enter_continuous_time_mode(self) -> Fmi2Status:
        self._require_type("enter_continuous_time_mode", Fmi2Type.MODEL_EXCHANGE)
        self._require("enter_continuous_time_mode", frozenset({_S.EVENT_MODE}))
        status = self._invoke(self.binding.enter_continuous_time_mode)
        self._state = _S.CONTINUOUS_TIME_MODE
        return status

    def completed_integrator_step(
        self, no_set_fmu_state_prior: bool = True
    ) -> tuple[bool, bool]:
        self._require_type("completed_integrator_step", Fmi2Type.MODEL_EXCHANGE)
        self._require(
            "completed_integrator_step", frozenset({_S.CONTINUOUS_TIME_MODE})
        )
        return self._invoke(
            self.binding.completed_integrator_step, no_set_fmu_state_prior
        )

    def set_time(self, time: float) -> Fmi2Status:
        self._require_type("set_time", Fmi2Type.MODEL_EXCHANGE)
        self._require("set_time", frozenset({_S.EVENT_MODE, _S.CONTINUOUS_TIME_MODE}))
        return self._invoke(self.binding.set_time, time)

    def set_continuous_states(self, states: Sequence[float]) -> Fmi2Status:
        self._require_type("set_continuous_states", Fmi2Type.MODEL_EXCHANGE)
        self._require("set_continuous_states", frozenset({_S.CONTINUOUS_TIME_MODE}))
        return self._invoke(self.binding.set_continuous_states, states)

    def get_derivatives(self, nx: int) -> list[float]:
        self._require_type("get_derivatives", Fmi2Type.MODEL_EXCHANGE)
        self._require("get_derivatives", _ME_QUERY)
        return self._invoke(self.binding.get_derivatives, nx)

    def get_event_indicators(self, ni: int) -> list[float]:
        self._require_type("get_event_indicators", Fmi2Type.MODEL_EXCHANGE)
        self._require("get_event_indicators", _ME_QUERY)
        return self._invoke(self.binding.get_event_indicators, ni)

    def get_continuous_states(self, nx: int) -> list[float]:
        self._require_type("get_continuous_states", Fmi2Type.MODEL_EXCHANGE)
        self._require("get_continuous_states", _ME_QUERY)
        return self._invoke(self.binding.get_continuous_states, nx)

    def get_nominals_of_continuous_states(self, nx: int) -> list[float]:
        self._require_type(
            "get_nominals_of_continuous_states", Fmi2Type.MODEL_EXCHANGE
        )
        self._require("get_nominals_of_continuous_states", _ME_QUERY)
        return self._invoke(self.binding.get_nominals_of_continuous_states, nx)

    # ------------------------------------------------------------------
    # Co-Simulation functions
    # ------------------------------------------------------------------
    def do_step(
        self,
        current_communication_point: float,
        communication_step_size: float,
        no_set_fmu_state_prior: bool = False,
    ) -> Fmi2Status:
        """Advance by one communication step.

        ``DISCARD`` and ``PENDING`` are returned to the caller; the latter
        moves the instance to ``STEP_PENDING``.
        """
        self._require_type("do_step", Fmi2Type.CO_SIMULATION)
        self._require("do_step", frozenset({_S.STEP_MODE}))
        status = self._invoke(
            self.binding.do_step,
            current_communication_point,
            communication_step_size,
            no_set_fmu_state_prior,
        )
        if status == Fmi2Status.PENDING:
            self._state = _S.STEP_PENDING
        return status

    def cancel_step(self) -> Fmi2Status:
        self._require_type("cancel_step", Fmi2Type.CO_SIMULATION)
        self._require("cancel_step", frozenset({_S.STEP_PENDING}))
        status = self._invoke(self.binding.cancel_step)
        self._state = _S.STEP_CANCELED
        return status

    def set_real_input_derivatives(
        self,
        vrs: Sequence[int],
        orders: Sequence[int],
        values: Sequence[float],
    ) -> Fmi2Status:
        self._require_type("set_real_input_derivatives", Fmi2Type.CO_SIMULATION)
        self._require(
            "set_real_input_derivatives",
            frozenset({_S.INSTANTIATED, _S.INITIALIZATION_MODE, _S.STEP_MODE}),
        )
        return self._invoke(
            self.binding.set_real_input_derivatives, vrs, orders, values
        )

    def get_real_output_derivatives(
        self, vrs: Sequence[int], orders: Sequence[int]
    ) -> list[float]:
        self._require_type("get_real_output_derivatives", Fmi2Type.CO_SIMULATION)
        self._require("get_real_output_derivatives", _STATUS_QUERY)
        return self._invoke(self.binding.get_real_output_derivatives, vrs, orders)

    def get_status(self, kind: Fmi2StatusKind) -> Fmi2Status:
        self._require("get_status", _STATUS_QUERY)
        status = self._invoke(self.binding.get_status, kind)
        if (
            self._state == _S.STEP_PENDING
            and kind == Fmi2StatusKind.DO_STEP_STATUS
            and status in (Fmi2Status.OK, Fmi2Status.WARNING, Fmi2Status.DISCARD)
        ):
            self._state = _S.STEP_MODE
        return status

    def get_real_status(self, kind: Fmi2StatusKind) -> float:
        self._require("get_real_status", _STATUS_QUERY)
        return self._invoke(self.binding.get_real_status, kind)

    def get_integer_status(self, kind: Fmi2StatusKind) -> int:
        self._require("get_integer_status", _STATUS_QUERY)
        return self._invoke(self.binding.get_integer_status, kind)

    def get_boolean_status(self, kind: Fmi2StatusKind) -> bool:
        self._require("get_boolean_status", _STATUS_QUERY)
        return self._invoke(self.binding.get_boolean_status, kind)

    def get_string_status(self, kind: Fmi2StatusKind) -> str:
        self._require("get_string_status", _STATUS_QUERY)
        return self._invoke(self.binding.get_string_status, kind)


class ModelState:
    """An owned snapshot of a model's internal state.

    The capsule frees the native state on :meth:`release` or when a
    ``with`` block exits.  :meth:`move` hands ownership to a new capsule and
    leaves this one empty.
    """

    def __init__(
        self,
        instance: ModelInstance,
        handle: int | None,
        captured_in: LifecycleState,
    ) -> None:
        self._instance = instance
        self._handle = handle
        self._captured_in = captured_in

    @property
    def empty(self) -> bool:
        return self._handle is None

    @property
    def captured_in(self) -> LifecycleState:
        return self._captured_in

    def _check_owner(self, instance: ModelInstance) -> None:
        if instance.binding is not self._instance.binding:
            raise ValidationError("The state belongs to a different model")

    def move(self) -> ModelState:
        moved = ModelState(self._instance, self._handle, self._captured_in)
        self._handle = None
        return moved

    def serialize(self) -> bytes:
        if self._handle is None:
            raise ValidationError("The state capsule has been released")
        return self._instance._serialize_state(self._handle)

    def release(self) -> None:
        """Free the native state.  Releasing an empty capsule is a no-op."""
        handle, self._handle = self._handle, None
        if handle is not None:
            self._instance._free_state(handle)

    def __enter__(self) -> ModelState:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()
