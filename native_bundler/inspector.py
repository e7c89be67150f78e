"""Native Inspector interface and backend selection."""

import logging
import pathlib
from typing import Protocol

from native_bundler.model import DependencyReference, PlatformKind
from native_bundler.process import ToolRunner
from native_bundler.profile import PlatformProfile


class Inspector(Protocol):
    """Reads the declared library references of binaries of one loader ABI."""

    def list_dependencies(self, path: pathlib.Path) -> list[DependencyReference]:
        """List the library references recorded in ``path``.

        :raises UnsupportedArtifact: If ``path`` is not a binary of this ABI.
        """
        ...

    def locate(self, reference: DependencyReference) -> pathlib.Path | None:
        """Find the build-host file a reference resolves to, or ``None``."""
        ...


def create_inspector(
    profile: PlatformProfile,
    *,
    search_dirs: tuple[pathlib.Path, ...] = (),
    executable: pathlib.Path | None = None,
    runner: ToolRunner | None = None,
    logger: logging.Logger | None = None,
) -> Inspector:
    """Pick the inspector backend for the profile's loader ABI.

    :param profile: Platform profile.
    :param search_dirs: Installation directories searched for dependencies.
    :param executable: Main executable; Mach-O expands ``@executable_path`` against its directory.
    :param runner: Tool runner (ELF uses it for the loader cache).
    :param logger: Optional logger.
    :returns: The inspector.
    """

    if profile.kind is PlatformKind.MACHO:
        from native_bundler.macho import MachOInspector

        executable_dir: pathlib.Path | None = None
        if executable is not None:
            executable_dir = executable.resolve().parent
        return MachOInspector(search_dirs=search_dirs, executable_dir=executable_dir, logger=logger)

    if profile.kind is PlatformKind.PE:
        from native_bundler.pe import PeInspector

        return PeInspector(search_dirs=search_dirs, logger=logger)

    from native_bundler.elf import ElfInspector

    return ElfInspector(search_dirs=search_dirs, runner=runner, logger=logger)
