"""Path rewriting of bundled binaries.

Each loader ABI gets its own convention:

- Mach-O: every retained load command is changed to a path relative to the
  *loading* file. Executables (main and helpers) use ``@executable_path``; libraries
  and plugins use ``@loader_path``, so a plugin resolves its dependencies the same
  way whether the main executable or the plugin scanner loaded it.
- ELF: the loader resolves bare names through a directory list, so each file gets
  one ``$ORIGIN``-relative ``RUNPATH`` instead of per-reference edits.
- PE: nothing is patched; the flat layout relies on the executable-directory search.
"""

import logging
import pathlib
import posixpath
from typing import Protocol

from native_bundler.errors import UnsupportedArtifact
from native_bundler.inspector import Inspector
from native_bundler.layout import bundled_path
from native_bundler.model import BundleManifest, ManifestEntry, PlatformKind
from native_bundler.process import ToolResult, ToolRunner
from native_bundler.profile import PlatformProfile


def relative_to_dir(target: pathlib.PurePosixPath, directory: pathlib.PurePosixPath) -> str:
    """POSIX path of ``target`` relative to ``directory`` (both bundle-relative)."""

    return posixpath.relpath(target.as_posix(), directory.as_posix())


def macho_reference(referrer: ManifestEntry, target: ManifestEntry) -> str:
    """New load-command string for ``referrer`` pointing at ``target``.

    :param referrer: The file that holds the reference.
    :param target: The bundled dependency.
    :returns: ``@executable_path/...`` or ``@loader_path/...`` reference.
    """

    token: str = "@executable_path" if referrer.role.is_executable is True else "@loader_path"
    rel: str = relative_to_dir(target.destination, referrer.destination.parent)
    return f"{token}/{rel}"


def macho_install_id(entry: ManifestEntry) -> str:
    """Self-identifier for a bundled library."""

    return f"@loader_path/{entry.filename}"


def elf_runpath(referrer: ManifestEntry, targets: list[ManifestEntry], profile: PlatformProfile) -> str:
    """``RUNPATH`` value for a bundled ELF file.

    The dependency directory always comes first; any other directory holding one
    of the file's retained dependencies follows, in order of first use.

    :param referrer: The file being patched.
    :param targets: Bundled dependencies it references.
    :param profile: Platform profile (layout).
    :returns: Colon-separated ``$ORIGIN``-relative directory list.
    """

    base: pathlib.PurePosixPath = referrer.destination.parent
    dirs: list[pathlib.PurePosixPath] = [profile.layout.dependency_dir]
    for target in targets:
        if target.destination.parent not in dirs:
            dirs.append(target.destination.parent)

    parts: list[str] = []
    for d in dirs:
        rel: str = relative_to_dir(d, base)
        parts.append("$ORIGIN" if rel == "." else f"$ORIGIN/{rel}")
    return ":".join(parts)


class Rewriter(Protocol):
    """Per-ABI path rewriting backend."""

    tool: str | None

    def rewrite(self, entry: ManifestEntry, manifest: BundleManifest, output_root: pathlib.Path) -> ToolResult | None:
        """Patch one bundled file in place.

        :returns: The tool result, or ``None`` if nothing needed patching.
        """
        ...


def _retained_targets(
    entry: ManifestEntry,
    manifest: BundleManifest,
    profile: PlatformProfile,
    inspector: Inspector,
    path: pathlib.Path,
) -> list[tuple[str, ManifestEntry]]:
    """References of a bundled file that point at bundled entries.

    :returns: ``(recorded reference, target entry)`` pairs, excluding self-references.
    """

    pairs: list[tuple[str, ManifestEntry]] = []
    for ref in inspector.list_dependencies(path):
        if profile.exclusions.matches(ref.name) is True:
            continue
        target: ManifestEntry | None = manifest.get(ref.filename)
        if target is None or target is entry:
            continue
        pairs.append((ref.name, target))
    return pairs


class MachORewriter:
    """Rewrites load commands and install names with ``install_name_tool``."""

    tool: str | None = "install_name_tool"

    def __init__(self, profile: PlatformProfile, inspector: Inspector, runner: ToolRunner) -> None:
        self._profile: PlatformProfile = profile
        self._inspector: Inspector = inspector
        self._runner: ToolRunner = runner

    def rewrite(self, entry: ManifestEntry, manifest: BundleManifest, output_root: pathlib.Path) -> ToolResult | None:
        from native_bundler.macho import install_name

        path: pathlib.Path = bundled_path(entry, output_root)
        cmd: list[str] = ["install_name_tool"]

        if entry.role.is_executable is False and install_name(path) is not None:
            cmd.extend(["-id", macho_install_id(entry)])

        for old, target in _retained_targets(entry, manifest, self._profile, self._inspector, path):
            cmd.extend(["-change", old, macho_reference(entry, target)])

        if len(cmd) == 1:
            return None
        cmd.append(str(path))
        return self._runner.run(cmd)


class ElfRewriter:
    """Sets a relative ``RUNPATH`` with ``patchelf``."""

    tool: str | None = "patchelf"

    def __init__(self, profile: PlatformProfile, inspector: Inspector, runner: ToolRunner) -> None:
        self._profile: PlatformProfile = profile
        self._inspector: Inspector = inspector
        self._runner: ToolRunner = runner

    def rewrite(self, entry: ManifestEntry, manifest: BundleManifest, output_root: pathlib.Path) -> ToolResult | None:
        path: pathlib.Path = bundled_path(entry, output_root)
        targets: list[ManifestEntry] = [
            t for _, t in _retained_targets(entry, manifest, self._profile, self._inspector, path)
        ]
        runpath: str = elf_runpath(entry, targets, self._profile)
        return self._runner.run(["patchelf", "--set-rpath", runpath, str(path)])


class NullRewriter:
    """PE bundles rely on the loader's executable-directory search; nothing to patch."""

    tool: str | None = None

    def rewrite(self, entry: ManifestEntry, manifest: BundleManifest, output_root: pathlib.Path) -> ToolResult | None:
        return None


def create_rewriter(profile: PlatformProfile, inspector: Inspector, runner: ToolRunner) -> Rewriter:
    """Pick the rewriting backend for the profile's loader ABI."""

    if profile.kind is PlatformKind.MACHO:
        return MachORewriter(profile, inspector, runner)
    if profile.kind is PlatformKind.ELF:
        return ElfRewriter(profile, inspector, runner)
    return NullRewriter()


def rewrite_bundle(
    manifest: BundleManifest,
    profile: PlatformProfile,
    output_root: pathlib.Path,
    rewriter: Rewriter,
    runner: ToolRunner,
    *,
    logger: logging.Logger | None = None,
) -> tuple[list[pathlib.Path], list[pathlib.Path]]:
    """Rewrite every bundled binary.

    :param manifest: Placed manifest.
    :param profile: Platform profile.
    :param output_root: Output directory.
    :param rewriter: Rewriting backend.
    :param runner: Tool runner (availability check).
    :param logger: Optional logger.
    :returns: ``(rewritten, failed)`` bundled paths.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    rewritten: list[pathlib.Path] = []
    failed: list[pathlib.Path] = []

    if rewriter.tool is None:
        logger.info(f"native-bundler: [rewriting] {profile.system}: no in-binary rewriting needed")
        return (rewritten, failed)

    if runner.available(rewriter.tool) is False:
        logger.warning(
            f"native-bundler: {rewriter.tool} not found; skipping path rewriting. "
            "The bundle will need its library directory on the loader search path at runtime."
        )
        return (rewritten, failed)

    entries: list[ManifestEntry] = manifest.sorted_entries()
    for entry in entries:
        path: pathlib.Path = bundled_path(entry, output_root)
        try:
            result: ToolResult | None = rewriter.rewrite(entry, manifest, output_root)
        except UnsupportedArtifact as e:
            logger.warning(f"native-bundler: cannot rewrite {entry.destination}: {e}")
            failed.append(path)
            continue
        if result is None:
            continue
        if result.ok is True:
            rewritten.append(path)
        else:
            logger.warning(f"native-bundler: rewriting {entry.destination} failed: {result.diagnostic}")
            failed.append(path)

    logger.info(
        f"native-bundler: [rewriting] {len(rewritten)}/{len(entries)} files patched with {rewriter.tool}"
        + (f", {len(failed)} failed" if len(failed) > 0 else "")
    )
    return (rewritten, failed)
