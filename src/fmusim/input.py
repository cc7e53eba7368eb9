"""
Time-table input signals.

Signals map a variable name to a list of ``(time, value)`` points.  Real
signals of continuous variables are interpolated linearly, all others are
held.  Two points with the same time stamp describe an event: before the
event the first value applies, after it the second.
"""

from __future__ import annotations

import bisect
import math
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from .description import ModelDescription, ScalarVariable, coerce_value
from .errors import CapabilityError, ValidationError
from .fmi2 import Fmi2Type
from .numeric import is_close

if TYPE_CHECKING:
    from .instance import ModelInstance

Signals = Mapping[str, Sequence[tuple[float, Any]]]


class Signal:
    """One input signal of a single variable."""

    def __init__(
        self, variable: ScalarVariable, points: Sequence[tuple[float, Any]]
    ) -> None:
        if not points:
            raise ValidationError(f"Input {variable.name!r} has no points")
        self.variable = variable
        self.times = [float(t) for t, _ in points]
        self.values = [coerce_value(variable.type, v) for _, v in points]
        for a, b in zip(self.times, self.times[1:]):
            if b < a:
                raise ValidationError(
                    f"The time stamps of input {variable.name!r} must not "
                    "decrease"
                )

        self.continuous = (
            variable.type == "Real" and variable.variability == "continuous"
        )

        events = set()
        for i in range(len(self.times) - 1):
            if self.times[i] == self.times[i + 1]:
                events.add(self.times[i])
            elif not self.continuous and self.values[i] != self.values[i + 1]:
                events.add(self.times[i + 1])
        self.events = sorted(events)

    def _index(self, time: float, after_event: bool) -> int:
        i = bisect.bisect_right(self.times, time) - 1
        if not after_event and self.times[i] == time:
            i = bisect.bisect_left(self.times, time)
            # a held value only changes after the event
            if not self.continuous and i > 0:
                i -= 1
        return i

    def value(self, time: float, after_event: bool = True) -> Any:
        times, values = self.times, self.values
        if time < times[0]:
            return values[0]
        i = self._index(time, after_event)
        if not self.continuous or i == len(times) - 1 or times[i] == time:
            return values[i]
        t0, t1 = times[i], times[i + 1]
        v0, v1 = values[i], values[i + 1]
        return v0 + (v1 - v0) * (time - t0) / (t1 - t0)

    def derivative(self, time: float) -> float:
        """First derivative of a continuous signal at *time*."""
        times, values = self.times, self.values
        if not self.continuous or time < times[0]:
            return 0.0
        i = bisect.bisect_right(times, time) - 1
        if i == len(times) - 1:
            return 0.0
        return (values[i + 1] - values[i]) / (times[i + 1] - times[i])

    def next_event(self, time: float) -> float:
        for t in self.events:
            if t > time and not is_close(t, time):
                return t
        return math.inf


class Input:
    """Applies a set of input signals to a model instance.

    Args:
        instance: The instance to set the inputs on.
        description: The model description the variable names refer to.
        signals: Mapping of variable name to ``(time, value)`` points.
        set_input_derivatives: Pass the slopes of continuous real signals
            to ``fmi2SetRealInputDerivatives``.
    """

    def __init__(
        self,
        instance: ModelInstance,
        description: ModelDescription,
        signals: Signals | None = None,
        set_input_derivatives: bool = False,
    ) -> None:
        self.instance = instance
        self.signals = [
            Signal(description.variable(name), points)
            for name, points in (signals or {}).items()
        ]
        self.set_input_derivatives = (
            set_input_derivatives
            and instance.fmu_type == Fmi2Type.CO_SIMULATION
        )
        if self.set_input_derivatives and not (
            description.co_simulation is not None
            and description.co_simulation.can_interpolate_inputs
        ):
            raise CapabilityError(
                "set_input_derivatives requires canInterpolateInputs"
            )

    def next_event(self, time: float) -> float:
        """Return the next input event after *time* or ``inf``."""
        return min((s.next_event(time) for s in self.signals), default=math.inf)

    def apply(self, time: float, after_event: bool = True) -> None:
        if not self.signals:
            return

        groups: dict[str, tuple[list[int], list[Any]]] = {}
        derivatives: tuple[list[int], list[float]] = ([], [])

        for signal in self.signals:
            kind = signal.variable.type
            if kind == "Enumeration":
                kind = "Integer"
            vrs, values = groups.setdefault(kind, ([], []))
            vrs.append(signal.variable.value_reference)
            values.append(signal.value(time, after_event))
            if self.set_input_derivatives and signal.continuous:
                derivatives[0].append(signal.variable.value_reference)
                derivatives[1].append(signal.derivative(time))

        setters = {
            "Real": self.instance.set_real,
            "Integer": self.instance.set_integer,
            "Boolean": self.instance.set_boolean,
            "String": self.instance.set_string,
        }
        for kind, (vrs, values) in groups.items():
            setters[kind](vrs, values)

        if derivatives[0]:
            self.instance.set_real_input_derivatives(
                derivatives[0], [1] * len(derivatives[0]), derivatives[1]
            )
