"""
Exception hierarchy shared by every layer of fmusim.

Load, capability and validation errors are raised before any native
instance exists.  :class:`NativeStatusError` is raised when a model call
returns ``fmi2Error`` or ``fmi2Fatal`` and aborts the active run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .fmi2 import Fmi2Status


class FmuError(Exception):
    """Base class for all errors raised by fmusim."""


class LoadError(FmuError):
    """The archive is unreadable, the platform is unsupported or the binary
    cannot be mapped."""


class CapabilityError(FmuError):
    """A required entry point is missing or a requested feature is not
    declared by the model."""


class ValidationError(FmuError):
    """Unsupported description version or invalid option combination."""


class LifecycleError(FmuError):
    """An operation was invoked in a lifecycle state that does not allow it."""

    def __init__(self, operation: str, state: object) -> None:
        self.operation = operation
        self.state = state
        name = getattr(state, "name", state)
        super().__init__(f"{operation} is not allowed in state {name}")


class NativeStatusError(FmuError):
    """Raised when an FMI 2.0 function returns an error status."""

    def __init__(self, func_name: str, status: Fmi2Status) -> None:
        self.func_name = func_name
        self.status = status
        super().__init__(
            f"{func_name} returned {status.name} ({status.value})"
        )
