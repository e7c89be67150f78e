"""Bundle layout: seeding plugins and helpers, and copying into the output tree."""

import logging
import os
import pathlib
import shutil
import stat

from native_bundler.errors import UnresolvedDependency, UnsafeOutputRoot
from native_bundler.installation import NativeInstallation
from native_bundler.model import Artifact, ArtifactRole, BundleManifest, ManifestEntry, PlatformKind
from native_bundler.profile import PlatformProfile


def prepare_output_root(output_root: pathlib.Path, *, logger: logging.Logger | None = None) -> None:
    """Delete and recreate the output tree.

    :param output_root: Output directory.
    :param logger: Optional logger.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    if output_root.is_symlink() is True or output_root.is_file() is True:
        output_root.unlink()
    elif output_root.exists() is True:
        logger.info(f"native-bundler: removing previous bundle at {output_root}")
        shutil.rmtree(output_root)
    output_root.mkdir(parents=True)


def check_output_root(output_root: pathlib.Path, inputs: list[pathlib.Path]) -> None:
    """Refuse an output directory that is, or contains, one of the build inputs.

    :param output_root: Output directory that is about to be emptied.
    :param inputs: Seed executable and native library directories.
    :raises UnsafeOutputRoot: When one of ``inputs`` lives under ``output_root``.
    """

    root: pathlib.Path = output_root.resolve()
    for path in inputs:
        if path.resolve().is_relative_to(root) is True:
            raise UnsafeOutputRoot(f"Output directory {output_root} contains input {path}; refusing to delete it")


def _plugin_candidates(profile: PlatformProfile, name: str) -> tuple[str, ...]:
    if profile.kind is PlatformKind.PE and name.startswith("lib") is True:
        # MSVC builds drop the lib prefix from plugin DLL names.
        return (name, name[3:])
    return (name,)


def find_plugins(
    profile: PlatformProfile,
    installation: NativeInstallation,
    *,
    logger: logging.Logger | None = None,
) -> list[Artifact]:
    """Look up the profile's plugin names in the installation's plugin directory.

    A plugin matches when its filename is ``<name>.<anything>``. Symlinks are
    followed, but the plugin keeps the name it was found under.

    :param profile: Platform profile.
    :param installation: Native installation.
    :param logger: Optional logger.
    :returns: Plugin seed artifacts, in configuration order.
    :raises UnresolvedDependency: If a required plugin is missing.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    files: list[pathlib.Path] = []
    if installation.plugin_dir.is_dir() is True:
        files = sorted(p for p in installation.plugin_dir.iterdir() if p.is_file() is True)

    found: list[Artifact] = []
    missing_required: list[str] = []
    for name in profile.plugins.names:
        match: pathlib.Path | None = None
        for candidate in _plugin_candidates(profile, name):
            prefix: str = candidate + "."
            for p in files:
                fname: str = p.name if profile.case_sensitive_names is True else p.name.lower()
                wanted: str = prefix if profile.case_sensitive_names is True else prefix.lower()
                if fname.startswith(wanted) is True:
                    match = p
                    break
            if match is not None:
                break

        if match is None:
            if profile.plugins.is_required(name) is True:
                missing_required.append(name)
            elif logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"native-bundler: optional plugin {name} not installed")
            continue

        logger.info(f"native-bundler:   + {match.name}")
        found.append(Artifact(source=match, role=ArtifactRole.PLUGIN_LIBRARY, platform_kind=profile.kind))

    logger.info(f"native-bundler: found {len(found)} plugins")
    if len(missing_required) > 0:
        raise UnresolvedDependency(
            f"Required plugins not found in {installation.plugin_dir}: {', '.join(missing_required)}"
        )
    return found


def find_helpers(profile: PlatformProfile, installation: NativeInstallation) -> list[Artifact]:
    """Helper process seed artifacts.

    :param profile: Platform profile.
    :param installation: Native installation.
    :returns: Helper artifacts.
    """

    return [
        Artifact(source=helper, role=ArtifactRole.HELPER_PROCESS, platform_kind=profile.kind)
        for helper in installation.helpers
    ]


def place(
    manifest: BundleManifest,
    profile: PlatformProfile,
    output_root: pathlib.Path,
    *,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Copy every manifest entry to its destination inside the output tree.

    :param manifest: Resolved manifest.
    :param profile: Platform profile.
    :param output_root: Output directory (already prepared).
    :param logger: Optional logger.
    :returns: Written file paths, sorted by destination.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    written: list[pathlib.Path] = []
    for entry in manifest.sorted_entries():
        dest: pathlib.Path = bundled_path(entry, output_root)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(entry.source, dest)
        _make_owner_writable(dest)
        written.append(dest)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"native-bundler: copied {entry.source} -> {entry.destination}")

    deps: int = len(manifest.dependencies())
    plugins: int = len(manifest.by_role(ArtifactRole.PLUGIN_LIBRARY))
    logger.info(
        f"native-bundler: [copying] {len(written)} files "
        f"({deps} shared libraries, {plugins} plugins) into {output_root}"
    )
    if profile.layout.is_flat is True:
        logger.info("native-bundler: flat layout: libraries placed next to the executable")
    return written


def bundled_path(entry: ManifestEntry, output_root: pathlib.Path) -> pathlib.Path:
    """Absolute path of an entry's copy inside the output tree."""

    return output_root.joinpath(*entry.destination.parts)


def _make_owner_writable(path: pathlib.Path) -> None:
    # Package-manager libraries are often read-only; patching needs write access.
    mode: int = path.stat().st_mode
    if mode & stat.S_IWUSR == 0:
        os.chmod(path, mode | stat.S_IWUSR)
