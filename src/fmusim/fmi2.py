"""
Python ctypes bindings for the FMI 2.0 standard.

This module describes the FMI 2.0 entry-point table and wraps a loaded
shared library in a :class:`ModelBinding` that exposes one typed method per
entry point.  Every method takes the native component handle as its first
argument; lifecycle ordering is enforced one level up by
:class:`fmusim.instance.ModelInstance`.

Reference: FMI Specification 2.0.5
"""

from __future__ import annotations

import ctypes
import logging
import platform
from ctypes import (
    CDLL,
    CFUNCTYPE,
    POINTER,
    Structure,
    byref,
    c_char_p,
    c_double,
    c_int,
    c_size_t,
    c_uint,
    c_void_p,
)
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

from .errors import CapabilityError, LifecycleError, NativeStatusError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FMI 2.0 primitive types
# ---------------------------------------------------------------------------
fmi2Component = c_void_p
fmi2ComponentEnvironment = c_void_p
fmi2FMUstate = c_void_p
fmi2ValueReference = c_uint
fmi2Real = c_double
fmi2Integer = c_int
fmi2Boolean = c_int
fmi2Char = ctypes.c_char
fmi2String = c_char_p
fmi2Byte = ctypes.c_char

fmi2True: int = 1
fmi2False: int = 0


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class Fmi2Status(IntEnum):
    OK = 0
    WARNING = 1
    DISCARD = 2
    ERROR = 3
    FATAL = 4
    PENDING = 5


class Fmi2Type(IntEnum):
    MODEL_EXCHANGE = 0
    CO_SIMULATION = 1


class Fmi2StatusKind(IntEnum):
    DO_STEP_STATUS = 0
    PENDING_STATUS = 1
    LAST_SUCCESSFUL_TIME = 2
    TERMINATED = 3


# ---------------------------------------------------------------------------
# Callback function types
# ---------------------------------------------------------------------------
# void logger(fmi2ComponentEnvironment, fmi2String instanceName,
#              fmi2Status status, fmi2String category, fmi2String message, ...)
# Note: ctypes CFUNCTYPE does not support variadic arguments, so we define
# the callback with the fixed parameters only.
_fmi2CallbackLogger = CFUNCTYPE(
    None,
    fmi2ComponentEnvironment,
    fmi2String,
    c_int,
    fmi2String,
    fmi2String,
)

# void* allocateMemory(size_t nobj, size_t size)
_fmi2CallbackAllocateMemory = CFUNCTYPE(c_void_p, c_size_t, c_size_t)

# void freeMemory(void* obj)
_fmi2CallbackFreeMemory = CFUNCTYPE(None, c_void_p)

# void stepFinished(fmi2ComponentEnvironment, fmi2Status)
_fmi2StepFinished = CFUNCTYPE(None, fmi2ComponentEnvironment, c_int)


class _Fmi2CallbackFunctions(Structure):
    _fields_ = [
        ("logger", _fmi2CallbackLogger),
        ("allocateMemory", _fmi2CallbackAllocateMemory),
        ("freeMemory", _fmi2CallbackFreeMemory),
        ("stepFinished", _fmi2StepFinished),
        ("componentEnvironment", fmi2ComponentEnvironment),
    ]


class Fmi2EventInfo(Structure):
    _fields_ = [
        ("newDiscreteStatesNeeded", fmi2Boolean),
        ("terminateSimulation", fmi2Boolean),
        ("nominalsOfContinuousStatesChanged", fmi2Boolean),
        ("valuesOfContinuousStatesChanged", fmi2Boolean),
        ("nextEventTimeDefined", fmi2Boolean),
        ("nextEventTime", fmi2Real),
    ]


@dataclass(frozen=True)
class EventInfo:
    """Result of ``fmi2NewDiscreteStates``."""

    new_discrete_states_needed: bool
    terminate_simulation: bool
    nominals_changed: bool
    values_changed: bool
    next_event_time: float | None

    @classmethod
    def from_struct(cls, info: Fmi2EventInfo) -> EventInfo:
        return cls(
            new_discrete_states_needed=bool(info.newDiscreteStatesNeeded),
            terminate_simulation=bool(info.terminateSimulation),
            nominals_changed=bool(info.nominalsOfContinuousStatesChanged),
            values_changed=bool(info.valuesOfContinuousStatesChanged),
            next_event_time=(
                info.nextEventTime if info.nextEventTimeDefined else None
            ),
        )


# ---------------------------------------------------------------------------
# Logging sinks
# ---------------------------------------------------------------------------
LogSink = Callable[[str, Fmi2Status, str, str], None]
"""``sink(instance_name, status, category, message)``"""


def no_op_sink(
    _instance_name: str, _status: Fmi2Status, _category: str, _message: str
) -> None:
    pass


_STATUS_LEVELS = {
    Fmi2Status.OK: logging.INFO,
    Fmi2Status.WARNING: logging.WARNING,
    Fmi2Status.DISCARD: logging.WARNING,
    Fmi2Status.ERROR: logging.ERROR,
    Fmi2Status.FATAL: logging.CRITICAL,
    Fmi2Status.PENDING: logging.INFO,
}


def logging_sink(target: logging.Logger | None = None) -> LogSink:
    """Return a sink that forwards model messages to *target*."""
    target = target or logger

    def _sink(
        instance_name: str, status: Fmi2Status, category: str, message: str
    ) -> None:
        target.log(
            _STATUS_LEVELS.get(status, logging.INFO),
            "[%s] [%s] %s",
            instance_name,
            category,
            message,
        )

    return _sink


def _make_logger(sink: LogSink) -> Any:
    def _log(
        _env: object,
        instance_name: bytes | None,
        status: int,
        category: bytes | None,
        message: bytes | None,
    ) -> None:
        name = instance_name.decode(errors="replace") if instance_name else ""
        cat = category.decode(errors="replace") if category else ""
        msg = message.decode(errors="replace") if message else ""
        try:
            s = Fmi2Status(status)
        except ValueError:
            s = Fmi2Status.ERROR
        try:
            sink(name, s, cat, msg)
        except Exception:
            # exceptions cannot propagate through a C callback
            logger.exception("Log sink failed for message %r", msg)

    return _fmi2CallbackLogger(_log)


# ---------------------------------------------------------------------------
# Memory callbacks
# ---------------------------------------------------------------------------
def _c_runtime() -> CDLL:
    if platform.system() == "Windows":
        return ctypes.cdll.msvcrt
    return CDLL(None)


_libc = _c_runtime()
_libc.calloc.restype = c_void_p
_libc.calloc.argtypes = [c_size_t, c_size_t]
_libc.free.restype = None
_libc.free.argtypes = [c_void_p]


def _default_allocate(nobj: int, size: int) -> int:
    return _libc.calloc(nobj, size) or 0


def _default_free(obj: int) -> None:
    _libc.free(obj)


_ALLOCATE_FUNC = _fmi2CallbackAllocateMemory(_default_allocate)
_FREE_FUNC = _fmi2CallbackFreeMemory(_default_free)
_STEP_FINISHED_FUNC = _fmi2StepFinished(0)  # NULL


def _make_callbacks(
    logger_func: Any,
    use_memory_callbacks: bool = True,
) -> _Fmi2CallbackFunctions:
    """Create the callback struct for fmi2Instantiate."""
    if use_memory_callbacks:
        return _Fmi2CallbackFunctions(
            logger=logger_func,
            allocateMemory=_ALLOCATE_FUNC,
            freeMemory=_FREE_FUNC,
            stepFinished=_STEP_FINISHED_FUNC,
            componentEnvironment=None,
        )
    # When canNotUseMemoryManagementFunctions=true, pass NULL for alloc/free
    return _Fmi2CallbackFunctions(
        logger=logger_func,
        allocateMemory=_fmi2CallbackAllocateMemory(0),
        freeMemory=_fmi2CallbackFreeMemory(0),
        stepFinished=_STEP_FINISHED_FUNC,
        componentEnvironment=None,
    )


# ---------------------------------------------------------------------------
# FMI 2.0 error checking
# ---------------------------------------------------------------------------
def _to_status(func_name: str, status: int) -> Fmi2Status:
    try:
        return Fmi2Status(status)
    except ValueError:
        # a model returning an undefined status can no longer be trusted
        logger.error("%s returned the unknown status %d", func_name, status)
        raise NativeStatusError(func_name, Fmi2Status.FATAL) from None


def _check_status(func_name: str, status: int) -> Fmi2Status:
    s = _to_status(func_name, status)
    if s in (Fmi2Status.ERROR, Fmi2Status.FATAL):
        raise NativeStatusError(func_name, s)
    return s


# ---------------------------------------------------------------------------
# Entry-point table
# ---------------------------------------------------------------------------
_VR = POINTER(fmi2ValueReference)

# name -> (restype, argtypes)
_SIGNATURES: dict[str, tuple[Any, list[Any]]] = {
    # ---- Common functions ----
    "fmi2GetTypesPlatform": (c_char_p, []),
    "fmi2GetVersion": (c_char_p, []),
    "fmi2SetDebugLogging": (
        c_int,
        [fmi2Component, fmi2Boolean, c_size_t, POINTER(fmi2String)],
    ),
    "fmi2Instantiate": (
        fmi2Component,
        [
            fmi2String,       # instanceName
            c_int,            # fmuType
            fmi2String,       # fmuGUID
            fmi2String,       # fmuResourceLocation
            POINTER(_Fmi2CallbackFunctions),
            fmi2Boolean,      # visible
            fmi2Boolean,      # loggingOn
        ],
    ),
    "fmi2FreeInstance": (None, [fmi2Component]),
    "fmi2SetupExperiment": (
        c_int,
        [
            fmi2Component,
            fmi2Boolean,   # toleranceDefined
            fmi2Real,      # tolerance
            fmi2Real,      # startTime
            fmi2Boolean,   # stopTimeDefined
            fmi2Real,      # stopTime
        ],
    ),
    "fmi2EnterInitializationMode": (c_int, [fmi2Component]),
    "fmi2ExitInitializationMode": (c_int, [fmi2Component]),
    "fmi2Terminate": (c_int, [fmi2Component]),
    "fmi2Reset": (c_int, [fmi2Component]),
    # ---- Getters / Setters ----
    "fmi2GetReal": (c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Real)]),
    "fmi2GetInteger": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Integer)]
    ),
    "fmi2GetBoolean": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Boolean)]
    ),
    "fmi2GetString": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2String)]
    ),
    "fmi2SetReal": (c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Real)]),
    "fmi2SetInteger": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Integer)]
    ),
    "fmi2SetBoolean": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2Boolean)]
    ),
    "fmi2SetString": (
        c_int, [fmi2Component, _VR, c_size_t, POINTER(fmi2String)]
    ),
    # ---- FMU state ----
    "fmi2GetFMUstate": (c_int, [fmi2Component, POINTER(fmi2FMUstate)]),
    "fmi2SetFMUstate": (c_int, [fmi2Component, fmi2FMUstate]),
    "fmi2FreeFMUstate": (c_int, [fmi2Component, POINTER(fmi2FMUstate)]),
    "fmi2SerializedFMUstateSize": (
        c_int, [fmi2Component, fmi2FMUstate, POINTER(c_size_t)]
    ),
    "fmi2SerializeFMUstate": (
        c_int, [fmi2Component, fmi2FMUstate, POINTER(fmi2Byte), c_size_t]
    ),
    "fmi2DeSerializeFMUstate": (
        c_int,
        [fmi2Component, POINTER(fmi2Byte), c_size_t, POINTER(fmi2FMUstate)],
    ),
    # ---- Directional derivatives ----
    "fmi2GetDirectionalDerivative": (
        c_int,
        [
            fmi2Component,
            _VR,
            c_size_t,
            _VR,
            c_size_t,
            POINTER(fmi2Real),
            POINTER(fmi2Real),
        ],
    ),
    # ---- Model Exchange functions ----
    "fmi2EnterEventMode": (c_int, [fmi2Component]),
    "fmi2NewDiscreteStates": (
        c_int, [fmi2Component, POINTER(Fmi2EventInfo)]
    ),
    "fmi2EnterContinuousTimeMode": (c_int, [fmi2Component]),
    "fmi2CompletedIntegratorStep": (
        c_int,
        [fmi2Component, fmi2Boolean, POINTER(fmi2Boolean), POINTER(fmi2Boolean)],
    ),
    "fmi2SetTime": (c_int, [fmi2Component, fmi2Real]),
    "fmi2SetContinuousStates": (
        c_int, [fmi2Component, POINTER(fmi2Real), c_size_t]
    ),
    "fmi2GetDerivatives": (c_int, [fmi2Component, POINTER(fmi2Real), c_size_t]),
    "fmi2GetEventIndicators": (
        c_int, [fmi2Component, POINTER(fmi2Real), c_size_t]
    ),
    "fmi2GetContinuousStates": (
        c_int, [fmi2Component, POINTER(fmi2Real), c_size_t]
    ),
    "fmi2GetNominalsOfContinuousStates": (
        c_int, [fmi2Component, POINTER(fmi2Real), c_size_t]
    ),
    # ---- Co-Simulation functions ----
    "fmi2SetRealInputDerivatives": (
        c_int,
        [fmi2Component, _VR, c_size_t, POINTER(fmi2Integer), POINTER(fmi2Real)],
    ),
    "fmi2GetRealOutputDerivatives": (
        c_int,
        [fmi2Component, _VR, c_size_t, POINTER(fmi2Integer), POINTER(fmi2Real)],
    ),
    "fmi2DoStep": (
        c_int,
        [
            fmi2Component,
            fmi2Real,       # currentCommunicationPoint
            fmi2Real,       # communicationStepSize
            fmi2Boolean,    # noSetFMUStatePriorToCurrentPoint
        ],
    ),
    "fmi2CancelStep": (c_int, [fmi2Component]),
    "fmi2GetStatus": (c_int, [fmi2Component, c_int, POINTER(c_int)]),
    "fmi2GetRealStatus": (c_int, [fmi2Component, c_int, POINTER(fmi2Real)]),
    "fmi2GetIntegerStatus": (
        c_int, [fmi2Component, c_int, POINTER(fmi2Integer)]
    ),
    "fmi2GetBooleanStatus": (
        c_int, [fmi2Component, c_int, POINTER(fmi2Boolean)]
    ),
    "fmi2GetStringStatus": (
        c_int, [fmi2Component, c_int, POINTER(fmi2String)]
    ),
}

COMMON_FUNCTIONS: tuple[str, ...] = (
    "fmi2GetTypesPlatform",
    "fmi2GetVersion",
    "fmi2SetDebugLogging",
    "fmi2Instantiate",
    "fmi2FreeInstance",
    "fmi2SetupExperiment",
    "fmi2EnterInitializationMode",
    "fmi2ExitInitializationMode",
    "fmi2Terminate",
    "fmi2Reset",
    "fmi2GetReal",
    "fmi2GetInteger",
    "fmi2GetBoolean",
    "fmi2GetString",
    "fmi2SetReal",
    "fmi2SetInteger",
    "fmi2SetBoolean",
    "fmi2SetString",
)

MODEL_EXCHANGE_FUNCTIONS: tuple[str, ...] = (
    "fmi2EnterEventMode",
    "fmi2NewDiscreteStates",
    "fmi2EnterContinuousTimeMode",
    "fmi2CompletedIntegratorStep",
    "fmi2SetTime",
    "fmi2SetContinuousStates",
    "fmi2GetDerivatives",
    "fmi2GetEventIndicators",
    "fmi2GetContinuousStates",
    "fmi2GetNominalsOfContinuousStates",
)

CO_SIMULATION_FUNCTIONS: tuple[str, ...] = (
    "fmi2DoStep",
    "fmi2CancelStep",
    "fmi2GetStatus",
    "fmi2GetRealStatus",
    "fmi2GetIntegerStatus",
    "fmi2GetBooleanStatus",
    "fmi2GetStringStatus",
)


def required_functions(interface_types: Iterable[Fmi2Type]) -> list[str]:
    """Return the entry points that must be exported for *interface_types*."""
    names = list(COMMON_FUNCTIONS)
    for t in interface_types:
        if t == Fmi2Type.MODEL_EXCHANGE:
            names.extend(MODEL_EXCHANGE_FUNCTIONS)
        elif t == Fmi2Type.CO_SIMULATION:
            names.extend(CO_SIMULATION_FUNCTIONS)
    return names


class SymbolSource(Protocol):
    """Anything that can resolve entry-point addresses, e.g.
    :class:`fmusim.library.DynamicLibrary`."""

    def resolve(self, name: str) -> int | None: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers to convert Python lists -> ctypes arrays
# ---------------------------------------------------------------------------
# Empty sequences are passed as NULL so that no element is ever dereferenced.
def _vr_array(vrs: Sequence[int]) -> ctypes.Array[c_uint] | None:
    if not vrs:
        return None
    return (fmi2ValueReference * len(vrs))(*vrs)


def _real_array(vals: Sequence[float]) -> ctypes.Array[c_double] | None:
    if not vals:
        return None
    return (fmi2Real * len(vals))(*vals)


def _int_array(vals: Sequence[int]) -> ctypes.Array[c_int] | None:
    if not vals:
        return None
    return (fmi2Integer * len(vals))(*vals)


def _bool_array(vals: Sequence[bool | int]) -> ctypes.Array[c_int] | None:
    if not vals:
        return None
    return (fmi2Boolean * len(vals))(
        *(fmi2True if v else fmi2False for v in vals)
    )


def _string_array(vals: Sequence[str]) -> ctypes.Array[c_char_p] | None:
    if not vals:
        return None
    return (fmi2String * len(vals))(*(v.encode("utf-8") for v in vals))


def _out_array(ctype: Any, n: int) -> Any:
    return (ctype * n)() if n > 0 else None


def _check_lengths(func_name: str, *seqs: Sequence[Any]) -> int:
    n = len(seqs[0])
    for s in seqs[1:]:
        if len(s) != n:
            raise ValueError(
                f"{func_name}: argument lengths differ ({n} != {len(s)})"
            )
    return n


# ---------------------------------------------------------------------------
# Model binding
# ---------------------------------------------------------------------------
class ModelBinding:
    """Typed access to the FMI 2.0 entry points of one loaded library.

    The binding exclusively owns *library*: :meth:`close` unloads it.  All
    entry points are resolved once at construction.  Entry points required
    by *interface_types* must be present, otherwise :class:`CapabilityError`
    is raised; optional ones are only checked when invoked.

    Args:
        library: The symbol source, usually a
            :class:`~fmusim.library.DynamicLibrary`.
        interface_types: The interface types the model declares.
        log_sink: Receives the messages the model logs.  Defaults to a
            no-op; see :func:`logging_sink`.
    """

    def __init__(
        self,
        library: SymbolSource,
        interface_types: Iterable[Fmi2Type] = (Fmi2Type.CO_SIMULATION,),
        *,
        log_sink: LogSink | None = None,
    ) -> None:
        self._library: SymbolSource | None = library
        self.interface_types = tuple(interface_types)
        self._addresses: dict[str, int | None] = {}
        self._functions: dict[str, Any] = {}
        # callback structs must stay alive until fmi2FreeInstance
        self._callbacks: dict[int, _Fmi2CallbackFunctions] = {}
        # native states not yet freed
        self._states: set[int] = set()
        self._fatal = False
        self._logger_func = _make_logger(log_sink or no_op_sink)
        self._bind_functions()

    @classmethod
    def load(
        cls,
        path: str | Path,
        interface_types: Iterable[Fmi2Type] = (Fmi2Type.CO_SIMULATION,),
        *,
        log_sink: LogSink | None = None,
    ) -> ModelBinding:
        """Map the shared library at *path* and bind it."""
        from .library import DynamicLibrary

        library = DynamicLibrary.load(path)
        try:
            return cls(library, interface_types, log_sink=log_sink)
        except Exception:
            library.close()
            raise

    # ------------------------------------------------------------------
    # Function binding
    # ------------------------------------------------------------------
    def _bind_functions(self) -> None:
        """Resolve every FMI 2.0 C function of the library."""
        library = self._library
        assert library is not None

        for name, (restype, argtypes) in _SIGNATURES.items():
            address = library.resolve(name)
            self._addresses[name] = address
            if address:
                prototype = CFUNCTYPE(restype, *argtypes)
                self._functions[name] = prototype(address)

        missing = [
            name
            for name in required_functions(self.interface_types)
            if name not in self._functions
        ]
        if missing:
            raise CapabilityError(
                f"Required entry points are not exported: {', '.join(missing)}"
            )
        logger.debug(
            "Bound %d of %d entry points",
            len(self._functions),
            len(_SIGNATURES),
        )

    def _fn(self, name: str) -> Any:
        if self._library is None:
            raise LifecycleError(name, "UNLOADED")
        if self._fatal and name != "fmi2FreeInstance":
            raise LifecycleError(name, "FATAL")
        try:
            return self._functions[name]
        except KeyError:
            raise CapabilityError(
                f"{name} is not exported by the model"
            ) from None

    def _check(self, func_name: str, status: int) -> Fmi2Status:
        try:
            return _check_status(func_name, status)
        except NativeStatusError as exc:
            if exc.status == Fmi2Status.FATAL:
                self._mark_fatal(func_name)
            raise

    def _check_value(self, func_name: str, status: int) -> Fmi2Status:
        try:
            return _to_status(func_name, status)
        except NativeStatusError:
            self._mark_fatal(func_name)
            raise

    def _mark_fatal(self, func_name: str) -> None:
        if not self._fatal:
            logger.error(
                "%s failed fatally; only fmi2FreeInstance may be called now",
                func_name,
            )
        self._fatal = True

    def has_function(self, name: str) -> bool:
        return name in self._functions

    @property
    def addresses(self) -> dict[str, int | None]:
        return dict(self._addresses)

    @property
    def live_instances(self) -> int:
        return len(self._callbacks)

    @property
    def components(self) -> list[int]:
        """Handles of the instances that have not been freed."""
        return list(self._callbacks)

    @property
    def fatal(self) -> bool:
        """True once any call returned fmi2Fatal."""
        return self._fatal

    def owns_state(self, state: int) -> bool:
        return state in self._states

    def close(self) -> None:
        """Unload the library.  All instances must have been freed."""
        if self._library is None:
            return
        if self._callbacks:
            raise LifecycleError("close", "INSTANCES_ALIVE")
        self._functions.clear()
        self._library.close()
        self._library = None

    def __enter__(self) -> ModelBinding:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Common functions
    # ------------------------------------------------------------------
    def get_types_platform(self) -> str:
        """Return the FMI types platform string."""
        return self._fn("fmi2GetTypesPlatform")().decode()

    def get_version(self) -> str:
        """Return the FMI version string."""
        return self._fn("fmi2GetVersion")().decode()

    def set_debug_logging(
        self,
        component: int,
        logging_on: bool,
        categories: Sequence[str] | None = None,
    ) -> Fmi2Status:
        cats: Sequence[str] = categories or []
        status = self._fn("fmi2SetDebugLogging")(
            component,
            fmi2True if logging_on else fmi2False,
            len(cats),
            _string_array(cats),
        )
        return self._check("fmi2SetDebugLogging", status)

    def instantiate(
        self,
        instance_name: str,
        fmu_type: Fmi2Type,
        guid: str,
        resource_location: str,
        *,
        visible: bool = False,
        logging_on: bool = False,
        use_memory_callbacks: bool = True,
    ) -> int:
        """Call fmi2Instantiate and return the component handle."""
        callbacks = _make_callbacks(
            self._logger_func, use_memory_callbacks=use_memory_callbacks
        )
        component = self._fn("fmi2Instantiate")(
            instance_name.encode("utf-8"),
            int(fmu_type),
            guid.encode("utf-8"),
            resource_location.encode("utf-8"),
            byref(callbacks),
            fmi2True if visible else fmi2False,
            fmi2True if logging_on else fmi2False,
        )
        if not component:
            logger.error("fmi2Instantiate returned NULL for %r", instance_name)
            raise NativeStatusError("fmi2Instantiate", Fmi2Status.ERROR)
        self._callbacks[component] = callbacks
        return component

    def free_instance(self, component: int) -> None:
        """Call fmi2FreeInstance.  The last instance also frees the states
        that are still held, since they cannot be freed without one."""
        try:
            if list(self._callbacks) == [component] and not self._fatal:
                for state in list(self._states):
                    self.free_fmu_state(component, state)
        finally:
            self._fn("fmi2FreeInstance")(component)
            self._callbacks.pop(component, None)

    def setup_experiment(
        self,
        component: int,
        start_time: float = 0.0,
        stop_time: float | None = None,
        tolerance: float | None = None,
    ) -> Fmi2Status:
        status = self._fn("fmi2SetupExperiment")(
            component,
            fmi2True if tolerance is not None else fmi2False,
            tolerance if tolerance is not None else 0.0,
            start_time,
            fmi2True if stop_time is not None else fmi2False,
            stop_time if stop_time is not None else 0.0,
        )
        return self._check("fmi2SetupExperiment", status)

    def enter_initialization_mode(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2EnterInitializationMode")(component)
        return self._check("fmi2EnterInitializationMode", status)

    def exit_initialization_mode(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2ExitInitializationMode")(component)
        return self._check("fmi2ExitInitializationMode", status)

    def terminate(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2Terminate")(component)
        return self._check("fmi2Terminate", status)

    def reset(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2Reset")(component)
        return self._check("fmi2Reset", status)

    # ------------------------------------------------------------------
    # Getting variable values
    # ------------------------------------------------------------------
    def get_real(self, component: int, vrs: Sequence[int]) -> list[float]:
        n = len(vrs)
        values = _out_array(fmi2Real, n)
        status = self._fn("fmi2GetReal")(component, _vr_array(vrs), n, values)
        self._check("fmi2GetReal", status)
        return list(values) if n else []

    def get_integer(self, component: int, vrs: Sequence[int]) -> list[int]:
        n = len(vrs)
        values = _out_array(fmi2Integer, n)
        status = self._fn("fmi2GetInteger")(
            component, _vr_array(vrs), n, values
        )
        self._check("fmi2GetInteger", status)
        return list(values) if n else []

    def get_boolean(self, component: int, vrs: Sequence[int]) -> list[bool]:
        n = len(vrs)
        values = _out_array(fmi2Boolean, n)
        status = self._fn("fmi2GetBoolean")(
            component, _vr_array(vrs), n, values
        )
        self._check("fmi2GetBoolean", status)
        return [bool(v) for v in values] if n else []

    def get_string(self, component: int, vrs: Sequence[int]) -> list[str]:
        n = len(vrs)
        values = _out_array(fmi2String, n)
        status = self._fn("fmi2GetString")(
            component, _vr_array(vrs), n, values
        )
        self._check("fmi2GetString", status)
        # copy now: the model may reuse the buffers on the next call
        return [v.decode("utf-8") if v else "" for v in values] if n else []

    # ------------------------------------------------------------------
    # Setting variable values
    # ------------------------------------------------------------------
    def set_real(
        self, component: int, vrs: Sequence[int], values: Sequence[float]
    ) -> Fmi2Status:
        n = _check_lengths("fmi2SetReal", vrs, values)
        status = self._fn("fmi2SetReal")(
            component, _vr_array(vrs), n, _real_array(values)
        )
        return self._check("fmi2SetReal", status)

    def set_integer(
        self, component: int, vrs: Sequence[int], values: Sequence[int]
    ) -> Fmi2Status:
        n = _check_lengths("fmi2SetInteger", vrs, values)
        status = self._fn("fmi2SetInteger")(
            component, _vr_array(vrs), n, _int_array(values)
        )
        return self._check("fmi2SetInteger", status)

    def set_boolean(
        self, component: int, vrs: Sequence[int], values: Sequence[bool | int]
    ) -> Fmi2Status:
        n = _check_lengths("fmi2SetBoolean", vrs, values)
        status = self._fn("fmi2SetBoolean")(
            component, _vr_array(vrs), n, _bool_array(values)
        )
        return self._check("fmi2SetBoolean", status)

    def set_string(
        self, component: int, vrs: Sequence[int], values: Sequence[str]
    ) -> Fmi2Status:
        n = _check_lengths("fmi2SetString", vrs, values)
        status = self._fn("fmi2SetString")(
            component, _vr_array(vrs), n, _string_array(values)
        )
        return self._check("fmi2SetString", status)

    # ------------------------------------------------------------------
    # FMU State
    # ------------------------------------------------------------------
    def get_fmu_state(self, component: int, state: int | None = None) -> int:
        """Call fmi2GetFMUstate.  Passing an existing *state* lets the
        model overwrite it in place."""
        handle = fmi2FMUstate(state)
        status = self._fn("fmi2GetFMUstate")(component, byref(handle))
        self._check("fmi2GetFMUstate", status)
        if not handle.value:
            raise NativeStatusError("fmi2GetFMUstate", Fmi2Status.ERROR)
        self._states.add(handle.value)
        return handle.value

    def set_fmu_state(self, component: int, state: int) -> Fmi2Status:
        status = self._fn("fmi2SetFMUstate")(component, state)
        return self._check("fmi2SetFMUstate", status)

    def free_fmu_state(self, component: int, state: int) -> Fmi2Status:
        handle = fmi2FMUstate(state)
        status = self._fn("fmi2FreeFMUstate")(component, byref(handle))
        s = self._check("fmi2FreeFMUstate", status)
        self._states.discard(state)
        return s

    def serialized_fmu_state_size(self, component: int, state: int) -> int:
        size = c_size_t()
        status = self._fn("fmi2SerializedFMUstateSize")(
            component, state, byref(size)
        )
        self._check("fmi2SerializedFMUstateSize", status)
        return size.value

    def serialize_fmu_state(self, component: int, state: int) -> bytes:
        size = self.serialized_fmu_state_size(component, state)
        buf = (fmi2Byte * size)()
        status = self._fn("fmi2SerializeFMUstate")(component, state, buf, size)
        self._check("fmi2SerializeFMUstate", status)
        return bytes(buf)

    def deserialize_fmu_state(self, component: int, data: bytes) -> int:
        size = len(data)
        buf = (fmi2Byte * size).from_buffer_copy(data)
        handle = fmi2FMUstate()
        status = self._fn("fmi2DeSerializeFMUstate")(
            component, buf, size, byref(handle)
        )
        self._check("fmi2DeSerializeFMUstate", status)
        if not handle.value:
            raise NativeStatusError("fmi2DeSerializeFMUstate", Fmi2Status.ERROR)
        self._states.add(handle.value)
        return handle.value

    # ------------------------------------------------------------------
    # Directional derivatives
    # ------------------------------------------------------------------
    def get_directional_derivative(
        self,
        component: int,
        v_unknown_ref: Sequence[int],
        v_known_ref: Sequence[int],
        dv_known: Sequence[float],
    ) -> list[float]:
        n_unknown = len(v_unknown_ref)
        n_known = _check_lengths(
            "fmi2GetDirectionalDerivative", v_known_ref, dv_known
        )
        dv_unknown = _out_array(fmi2Real, n_unknown)
        status = self._fn("fmi2GetDirectionalDerivative")(
            component,
            _vr_array(v_unknown_ref),
            n_unknown,
            _vr_array(v_known_ref),
            n_known,
            _real_array(dv_known),
            dv_unknown,
        )
        self._check("fmi2GetDirectionalDerivative", status)
        return list(dv_unknown) if n_unknown else []

    # ------------------------------------------------------------------
    # Model Exchange functions
    # ------------------------------------------------------------------
    def enter_event_mode(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2EnterEventMode")(component)
        return self._check("fmi2EnterEventMode", status)

    def new_discrete_states(self, component: int) -> EventInfo:
        event_info = Fmi2EventInfo()
        status = self._fn("fmi2NewDiscreteStates")(
            component, byref(event_info)
        )
        self._check("fmi2NewDiscreteStates", status)
        return EventInfo.from_struct(event_info)

    def enter_continuous_time_mode(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2EnterContinuousTimeMode")(component)
        return self._check("fmi2EnterContinuousTimeMode", status)

    def completed_integrator_step(
        self, component: int, no_set_fmu_state_prior: bool = True
    ) -> tuple[bool, bool]:
        """Call fmi2CompletedIntegratorStep.

        Returns:
            (enter_event_mode, terminate_simulation) booleans.
        """
        enter_event = fmi2Boolean(fmi2False)
        terminate = fmi2Boolean(fmi2False)
        status = self._fn("fmi2CompletedIntegratorStep")(
            component,
            fmi2True if no_set_fmu_state_prior else fmi2False,
            byref(enter_event),
            byref(terminate),
        )
        self._check("fmi2CompletedIntegratorStep", status)
        return bool(enter_event.value), bool(terminate.value)

    def set_time(self, component: int, time: float) -> Fmi2Status:
        status = self._fn("fmi2SetTime")(component, time)
        return self._check("fmi2SetTime", status)

    def set_continuous_states(
        self, component: int, states: Sequence[float]
    ) -> Fmi2Status:
        status = self._fn("fmi2SetContinuousStates")(
            component, _real_array(states), len(states)
        )
        return self._check("fmi2SetContinuousStates", status)

    def _get_real_vector(self, func_name: str, component: int, n: int) -> list[float]:
        values = _out_array(fmi2Real, n)
        status = self._fn(func_name)(component, values, n)
        self._check(func_name, status)
        return list(values) if n else []

    def get_derivatives(self, component: int, nx: int) -> list[float]:
        return self._get_real_vector("fmi2GetDerivatives", component, nx)

    def get_event_indicators(self, component: int, ni: int) -> list[float]:
        return self._get_real_vector("fmi2GetEventIndicators", component, ni)

    def get_continuous_states(self, component: int, nx: int) -> list[float]:
        return self._get_real_vector("fmi2GetContinuousStates", component, nx)

    def get_nominals_of_continuous_states(
        self, component: int, nx: int
    ) -> list[float]:
        return self._get_real_vector(
            "fmi2GetNominalsOfContinuousStates", component, nx
        )

    # ------------------------------------------------------------------
    # Co-Simulation functions
    # ------------------------------------------------------------------
    def do_step(
        self,
        component: int,
        current_communication_point: float,
        communication_step_size: float,
        no_set_fmu_state_prior: bool = True,
    ) -> Fmi2Status:
        status = self._fn("fmi2DoStep")(
            component,
            current_communication_point,
            communication_step_size,
            fmi2True if no_set_fmu_state_prior else fmi2False,
        )
        return self._check("fmi2DoStep", status)

    def cancel_step(self, component: int) -> Fmi2Status:
        status = self._fn("fmi2CancelStep")(component)
        return self._check("fmi2CancelStep", status)

    def set_real_input_derivatives(
        self,
        component: int,
        vrs: Sequence[int],
        orders: Sequence[int],
        values: Sequence[float],
    ) -> Fmi2Status:
        n = _check_lengths("fmi2SetRealInputDerivatives", vrs, orders, values)
        status = self._fn("fmi2SetRealInputDerivatives")(
            component,
            _vr_array(vrs),
            n,
            _int_array(orders),
            _real_array(values),
        )
        return self._check("fmi2SetRealInputDerivatives", status)

    def get_real_output_derivatives(
        self,
        component: int,
        vrs: Sequence[int],
        orders: Sequence[int],
    ) -> list[float]:
        n = _check_lengths("fmi2GetRealOutputDerivatives", vrs, orders)
        values = _out_array(fmi2Real, n)
        status = self._fn("fmi2GetRealOutputDerivatives")(
            component,
            _vr_array(vrs),
            n,
            _int_array(orders),
            values,
        )
        self._check("fmi2GetRealOutputDerivatives", status)
        return list(values) if n else []

    def get_status(self, component: int, kind: Fmi2StatusKind) -> Fmi2Status:
        value = c_int()
        status = self._fn("fmi2GetStatus")(component, int(kind), byref(value))
        self._check("fmi2GetStatus", status)
        return self._check_value("fmi2GetStatus", value.value)

    def get_real_status(self, component: int, kind: Fmi2StatusKind) -> float:
        value = fmi2Real()
        status = self._fn("fmi2GetRealStatus")(
            component, int(kind), byref(value)
        )
        self._check("fmi2GetRealStatus", status)
        return value.value

    def get_integer_status(self, component: int, kind: Fmi2StatusKind) -> int:
        value = fmi2Integer()
        status = self._fn("fmi2GetIntegerStatus")(
            component, int(kind), byref(value)
        )
        self._check("fmi2GetIntegerStatus", status)
        return value.value

    def get_boolean_status(self, component: int, kind: Fmi2StatusKind) -> bool:
        value = fmi2Boolean()
        status = self._fn("fmi2GetBooleanStatus")(
            component, int(kind), byref(value)
        )
        self._check("fmi2GetBooleanStatus", status)
        return bool(value.value)

    def get_string_status(self, component: int, kind: Fmi2StatusKind) -> str:
        value = fmi2String()
        status = self._fn("fmi2GetStringStatus")(
            component, int(kind), byref(value)
        )
        self._check("fmi2GetStringStatus", status)
        return value.value.decode("utf-8") if value.value else ""
