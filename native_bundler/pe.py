"""PE import-table inspector."""

import logging
import pathlib

import lief

from native_bundler.errors import UnsupportedArtifact
from native_bundler.model import DependencyReference


def imported_dll_names(path: pathlib.Path) -> list[str]:
    """List the DLL names of a PE file's import table.

    :param path: PE file (``.exe`` or ``.dll``).
    :returns: DLL names as recorded, first-seen order.
    :raises UnsupportedArtifact: If the file is not a PE image.
    """

    try:
        with open(path, "rb") as f:
            magic: bytes = f.read(2)
    except OSError as e:
        raise UnsupportedArtifact(f"Cannot read {path}: {e}") from e
    if magic != b"MZ":
        raise UnsupportedArtifact(f"Not a PE file: {path}")

    binary = lief.PE.parse(str(path))
    if binary is None:
        raise UnsupportedArtifact(f"Cannot parse PE file: {path}")

    names: list[str] = []
    seen: set[str] = set()
    for imp in binary.imports:
        name: str = imp.name
        if len(name) == 0 or name.lower() in seen:
            continue
        seen.add(name.lower())
        names.append(name)
    return names


class PeInspector:
    """Native Inspector backend for PE binaries.

    DLLs are looked up next to the importing file first, then in ``search_dirs``
    (the native installation's ``bin`` directory). Matching ignores case.
    """

    def __init__(
        self,
        *,
        search_dirs: tuple[pathlib.Path, ...] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("native_bundler")
        self._logger: logging.Logger = logger
        self._search_dirs: tuple[pathlib.Path, ...] = search_dirs
        self._listings: dict[pathlib.Path, dict[str, pathlib.Path]] = {}

    def list_dependencies(self, path: pathlib.Path) -> list[DependencyReference]:
        return [DependencyReference(owner=path, name=name) for name in imported_dll_names(path)]

    def locate(self, reference: DependencyReference) -> pathlib.Path | None:
        wanted: str = reference.filename.lower()
        for directory in (reference.owner.parent, *self._search_dirs):
            found: pathlib.Path | None = self._listing(directory).get(wanted)
            if found is not None:
                return found
        return None

    def _listing(self, directory: pathlib.Path) -> dict[str, pathlib.Path]:
        """Case-folded directory listing, memoized per directory."""

        cached: dict[str, pathlib.Path] | None = self._listings.get(directory)
        if cached is not None:
            return cached

        listing: dict[str, pathlib.Path] = {}
        if directory.is_dir() is True:
            for p in sorted(directory.iterdir()):
                if p.is_file() is True:
                    listing.setdefault(p.name.lower(), p)
        self._listings[directory] = listing
        return listing
