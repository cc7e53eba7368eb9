"""Extraction of ``.fmu`` archives."""

from __future__ import annotations

import logging
import platform
import tempfile
import zipfile
from pathlib import Path

from .errors import LoadError

logger = logging.getLogger(__name__)


def _path_to_file_uri(p: Path) -> str:
    """Convert an absolute path to a file:/// URI."""
    resolved = p.resolve()
    # On Windows the drive letter must be handled
    if platform.system() == "Windows":
        uri_path = "/" + str(resolved).replace("\\", "/")
    else:
        uri_path = str(resolved)
    return "file://" + uri_path


def _safe_extract(zf: zipfile.ZipFile, target: Path) -> None:
    root = target.resolve()
    for member in zf.namelist():
        dest = (root / member).resolve()
        if dest != root and root not in dest.parents:
            raise LoadError(f"Illegal file path in archive: {member!r}")
    zf.extractall(root)


class FmuArchive:
    """An FMU on disk, extracted if necessary.

    Args:
        path: Path to an ``.fmu`` archive **or** an already-extracted FMU
            directory.
        unpack_dir: Where to extract the archive.  If *None* a temporary
            directory is used and removed by :meth:`cleanup`.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        unpack_dir: str | Path | None = None,
    ) -> None:
        self.path = Path(path)
        self._tmpdir: tempfile.TemporaryDirectory[str] | None = None

        if self.path.is_dir():
            self.directory = self.path
            return

        if not self.path.is_file():
            raise LoadError(f"No such file: {self.path}")

        if unpack_dir is not None:
            self.directory = Path(unpack_dir)
            self.directory.mkdir(parents=True, exist_ok=True)
        else:
            self._tmpdir = tempfile.TemporaryDirectory(prefix="fmusim_")
            self.directory = Path(self._tmpdir.name)

        try:
            with zipfile.ZipFile(self.path) as zf:
                _safe_extract(zf, self.directory)
        except (OSError, zipfile.BadZipFile) as exc:
            self.cleanup()
            raise LoadError(f"Cannot extract {self.path}: {exc}") from exc
        except LoadError:
            self.cleanup()
            raise
        logger.debug("Extracted %s to %s", self.path, self.directory)

    @property
    def model_description_path(self) -> Path:
        return self.directory / "modelDescription.xml"

    def resource_location(self) -> str:
        """``file:///`` URI of the ``resources/`` directory."""
        resources_dir = self.directory / "resources"
        if not resources_dir.exists():
            resources_dir = self.directory
        return _path_to_file_uri(resources_dir)

    def cleanup(self) -> None:
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None

    def __enter__(self) -> FmuArchive:
        return self

    def __exit__(self, *_: object) -> None:
        self.cleanup()
