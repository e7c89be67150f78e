"""Mach-O load-command reader and dependency inspector."""

import logging
import pathlib

from macholib.MachO import MachO
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_RPATH,
)

from native_bundler.errors import UnsupportedArtifact
from native_bundler.model import DependencyReference

MACHO_MAGICS: frozenset[bytes] = frozenset(
    {
        b"\xfe\xed\xfa\xce",
        b"\xce\xfa\xed\xfe",
        b"\xfe\xed\xfa\xcf",
        b"\xcf\xfa\xed\xfe",
        b"\xca\xfe\xba\xbe",
    }
)

# References already expressed relative to the loading binary.
SELF_RELATIVE_PREFIXES: tuple[str, ...] = ("@loader_path/", "@executable_path/")

_DYLIB_COMMANDS: frozenset[int] = frozenset(
    {
        LC_LOAD_DYLIB,
        LC_LOAD_WEAK_DYLIB,
        LC_REEXPORT_DYLIB,
        LC_LAZY_LOAD_DYLIB,
        LC_LOAD_UPWARD_DYLIB,
    }
)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\x00")


def _load(path: pathlib.Path) -> MachO:
    try:
        with open(path, "rb") as f:
            magic: bytes = f.read(4)
    except OSError as e:
        raise UnsupportedArtifact(f"Cannot read {path}: {e}") from e
    if magic not in MACHO_MAGICS:
        raise UnsupportedArtifact(f"Not a Mach-O file: {path}")

    try:
        return MachO(str(path))
    except (ValueError, OSError) as e:
        raise UnsupportedArtifact(f"Cannot parse Mach-O file {path}: {e}") from e


def load_command_references(path: pathlib.Path) -> list[str]:
    """List every dylib reference recorded in a Mach-O file.

    All architectures of a universal binary are read; duplicates are dropped
    while keeping first-seen order.

    :param path: Mach-O file.
    :returns: Raw reference strings.
    :raises UnsupportedArtifact: If the file is not Mach-O.
    """

    macho: MachO = _load(path)
    refs: list[str] = []
    for header in macho.headers:
        for cmd in header.commands:
            if cmd[0].cmd in _DYLIB_COMMANDS:
                name: str = _decode(cmd[2])
                if name not in refs:
                    refs.append(name)
    return refs


def install_name(path: pathlib.Path) -> str | None:
    """Return the ``LC_ID_DYLIB`` install name of a dylib, if any."""

    macho: MachO = _load(path)
    for header in macho.headers:
        for cmd in header.commands:
            if cmd[0].cmd == LC_ID_DYLIB:
                return _decode(cmd[2])
    return None


def rpaths(path: pathlib.Path) -> list[str]:
    """Return the ``LC_RPATH`` entries of a Mach-O file."""

    macho: MachO = _load(path)
    found: list[str] = []
    for header in macho.headers:
        for cmd in header.commands:
            if cmd[0].cmd == LC_RPATH:
                rpath: str = _decode(cmd[2])
                if rpath not in found:
                    found.append(rpath)
    return found


class MachOInspector:
    """Native Inspector backend for Mach-O binaries.

    :param search_dirs: Directories searched for bare library names.
    :param executable_dir: Directory of the main executable, used for ``@executable_path``.
        Without it the owner's directory stands in.
    """

    def __init__(
        self,
        *,
        search_dirs: tuple[pathlib.Path, ...] = (),
        executable_dir: pathlib.Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("native_bundler")
        self._logger: logging.Logger = logger
        self._search_dirs: tuple[pathlib.Path, ...] = search_dirs
        self._executable_dir: pathlib.Path | None = executable_dir

    def list_dependencies(self, path: pathlib.Path) -> list[DependencyReference]:
        refs: list[DependencyReference] = []
        for name in load_command_references(path):
            if name.startswith(SELF_RELATIVE_PREFIXES) is True:
                continue
            refs.append(DependencyReference(owner=path, name=name))
        return refs

    def locate(self, reference: DependencyReference) -> pathlib.Path | None:
        """Bind a reference to a file on the build host.

        :param reference: Reference declared by a Mach-O file.
        :returns: Existing path, or ``None``.
        """

        name: str = reference.name
        if name.startswith("@rpath/") is True:
            tail: str = name[len("@rpath/") :]
            owner_dir: pathlib.Path = reference.owner.parent
            executable_dir: pathlib.Path = owner_dir if self._executable_dir is None else self._executable_dir
            for rpath in rpaths(reference.owner):
                expanded: str = rpath.replace("@loader_path", str(owner_dir))
                expanded = expanded.replace("@executable_path", str(executable_dir))
                candidate: pathlib.Path = pathlib.Path(expanded) / tail
                if candidate.is_file() is True:
                    return candidate
            name = tail
        elif name.startswith("/") is True:
            absolute: pathlib.Path = pathlib.Path(name)
            if absolute.is_file() is True:
                return absolute
            name = absolute.name

        for directory in self._search_dirs:
            candidate = directory / name
            if candidate.is_file() is True:
                return candidate

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"native-bundler: could not locate {reference.name} for {reference.owner}")
        return None
