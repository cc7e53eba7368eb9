"""Loading shared libraries and resolving symbol addresses."""

from __future__ import annotations

import ctypes
import logging
import platform
from ctypes import CDLL, c_void_p
from pathlib import Path

import _ctypes

from .errors import LoadError

logger = logging.getLogger(__name__)


class DynamicLibrary:
    """A mapped shared library.

    Use :meth:`load` to map a binary and :meth:`resolve` to look up entry
    points.  :meth:`close` unloads the library; every function pointer
    obtained from it is invalid afterwards.
    """

    def __init__(self, path: Path, dll: CDLL) -> None:
        self.path = path
        self._dll: CDLL | None = dll

    @classmethod
    def load(cls, path: str | Path) -> DynamicLibrary:
        path = Path(path)
        if not path.is_file():
            raise LoadError(f"Cannot find shared library {str(path)!r}")
        try:
            dll = CDLL(str(path))
        except OSError as exc:
            raise LoadError(f"Cannot load {str(path)!r}: {exc}") from exc
        logger.debug("Loaded %s", path)
        return cls(path, dll)

    @property
    def loaded(self) -> bool:
        return self._dll is not None

    def resolve(self, name: str) -> int | None:
        """Return the address of *name* or *None* if it is not exported."""
        if self._dll is None:
            raise LoadError(f"{self.path} has been unloaded")
        try:
            func = getattr(self._dll, name)
        except AttributeError:
            return None
        return ctypes.cast(func, c_void_p).value

    def close(self) -> None:
        if self._dll is None:
            return
        handle = self._dll._handle
        self._dll = None
        if platform.system() == "Windows":
            _ctypes.FreeLibrary(handle)
        else:
            _ctypes.dlclose(handle)
        logger.debug("Unloaded %s", self.path)
