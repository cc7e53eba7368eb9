"""
Host platform detection and binary lookup inside an FMU.

The FMI 2.0 standard defines the platform folders ``win32``, ``win64``,
``linux32``, ``linux64``, ``darwin32`` and ``darwin64``.  ARM hosts map to
the 64-bit folder of their operating system.
"""

from __future__ import annotations

import functools
import platform
import sys
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import LoadError

_LIBRARY_SUFFIXES = ("dll", "so", "dylib")


@dataclass(frozen=True)
class PlatformTriple:
    architecture: str
    platform_tag: str
    library_suffix: str

    def library_name(self, model_identifier: str) -> str:
        return f"{model_identifier}.{self.library_suffix}"


def _shared_lib_suffix(system: str) -> str:
    if system == "Windows":
        return "dll"
    if system == "Darwin":
        return "dylib"
    return "so"


def detect_platform(
    system: str, machine: str, is_64bit: bool
) -> PlatformTriple:
    """Derive the platform triple from raw host information."""
    system_map = {"Windows": "win", "Darwin": "darwin", "Linux": "linux"}
    prefix = system_map.get(system)
    if prefix is None:
        raise LoadError(f"Unsupported platform: {system}")

    machine = machine.lower()
    if machine in ("aarch64", "arm64"):
        architecture = "aarch64"
        bits = "64"
    elif is_64bit:
        architecture = "x86_64"
        bits = "64"
    else:
        architecture = "x86"
        bits = "32"

    return PlatformTriple(
        architecture=architecture,
        platform_tag=prefix + bits,
        library_suffix=_shared_lib_suffix(system),
    )


@functools.lru_cache(maxsize=None)
def current_platform() -> PlatformTriple:
    """Return the platform triple of the running interpreter."""
    return detect_platform(
        platform.system(), platform.machine(), sys.maxsize > 2**32
    )


def supported_platforms(path: str | Path) -> list[str]:
    """Return the platform folders that contain a binary.

    Args:
        path: An ``.fmu`` archive or an already-extracted FMU directory.
    """
    path = Path(path)
    names: list[str]
    if path.is_dir():
        names = [
            p.relative_to(path).as_posix()
            for p in (path / "binaries").glob("*/*")
        ]
    else:
        try:
            with zipfile.ZipFile(path) as zf:
                names = zf.namelist()
        except (OSError, zipfile.BadZipFile) as exc:
            raise LoadError(f"Cannot read archive {path}: {exc}") from exc

    platforms: list[str] = []
    for name in names:
        p = PurePosixPath(name)
        if len(p.parts) != 3 or p.parts[0] != "binaries":
            continue
        if p.suffix.lstrip(".") not in _LIBRARY_SUFFIXES:
            continue
        if p.parts[1] not in platforms:
            platforms.append(p.parts[1])
    return platforms


def find_binary(
    extract_dir: Path,
    model_identifier: str,
    binary_dir: str | None = None,
    triple: PlatformTriple | None = None,
) -> Path:
    """Locate the shared library for the host inside an extracted FMU.

    Args:
        extract_dir: The root of the extracted FMU.
        model_identifier: The shared library name without extension.
        binary_dir: Optional override for the platform subfolder name,
            e.g. ``"aarch64-darwin"`` for non-standard platforms.
        triple: Platform to resolve for; defaults to the host.
    """
    triple = triple or current_platform()
    folder = binary_dir if binary_dir is not None else triple.platform_tag
    candidate = (
        extract_dir / "binaries" / folder / triple.library_name(model_identifier)
    )
    if candidate.is_file():
        return candidate

    available = supported_platforms(extract_dir)
    raise LoadError(
        f"The current platform ({folder}) is not supported by the FMU "
        f"(available: {', '.join(available) or 'none'})"
    )
