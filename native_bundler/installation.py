"""Locating the native library installation on the build host.

The bundler copies GStreamer and its dependencies out of whatever installation
the executable was built against: Homebrew on macOS, the distribution packages
on Linux, the official MSVC/MinGW installers on Windows.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
import pathlib

from native_bundler.errors import NoNativeLibraryInstallation, UnsupportedArtifact
from native_bundler.model import PlatformKind
from native_bundler.profile import PlatformProfile

PLUGIN_SUBDIR: str = "gstreamer-1.0"

LINUX_LIBRARY_DIRS: tuple[str, ...] = (
    "/usr/lib/x86_64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
    "/usr/lib64",
    "/usr/lib",
)

LINUX_HELPER_ROOTS: tuple[str, ...] = ("/usr/libexec",)

WINDOWS_ROOT_ENV_VARS: tuple[str, ...] = (
    "GSTREAMER_1_0_ROOT_MSVC_X86_64",
    "GSTREAMER_1_0_ROOT_X86_64",
)

WINDOWS_DEFAULT_ROOTS: tuple[str, ...] = (
    "C:/gstreamer/1.0/msvc_x86_64",
    "C:/gstreamer/1.0/x86_64",
)


@dataclass(frozen=True, slots=True)
class NativeInstallation:
    """Where the source libraries live on the build host.

    :ivar lib_dir: Directory of the shared libraries.
    :ivar plugin_dir: Directory of the plugin modules.
    :ivar bin_dir: Directory of the DLLs (Windows only).
    :ivar helpers: Helper process executables that were found.
    """

    lib_dir: pathlib.Path
    plugin_dir: pathlib.Path
    bin_dir: pathlib.Path | None
    helpers: tuple[pathlib.Path, ...]

    @property
    def search_dirs(self) -> tuple[pathlib.Path, ...]:
        """Directories the inspector should search for dependencies."""

        if self.bin_dir is not None:
            return (self.bin_dir, self.lib_dir)
        return (self.lib_dir,)


def locate_installation(
    profile: PlatformProfile,
    executable: pathlib.Path,
    *,
    root_override: pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> NativeInstallation:
    """Find the native library installation for the profile's platform.

    :param profile: Platform profile.
    :param executable: Main executable (macOS derives the location from it).
    :param root_override: Explicit library directory (or Windows install root).
    :param environ: Environment consulted for Windows root variables.
    :param logger: Optional logger.
    :returns: The installation.
    :raises NoNativeLibraryInstallation: If nothing usable is found.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")
    if environ is None:
        environ = os.environ

    installation: NativeInstallation
    if profile.kind is PlatformKind.PE:
        installation = _locate_windows(profile, root_override=root_override, environ=environ)
    elif profile.kind is PlatformKind.MACHO:
        installation = _locate_darwin(profile, executable, root_override=root_override)
    else:
        installation = _locate_linux(profile, root_override=root_override)

    logger.info(f"native-bundler: native libs:    {installation.lib_dir}")
    logger.info(f"native-bundler: native plugins: {installation.plugin_dir}")
    if len(installation.helpers) > 0:
        for helper in installation.helpers:
            logger.info(f"native-bundler: helper process: {helper}")
    else:
        logger.info("native-bundler: helper process: not found")
    return installation


def _locate_linux(profile: PlatformProfile, *, root_override: pathlib.Path | None) -> NativeInstallation:
    candidates: list[pathlib.Path]
    if root_override is not None:
        candidates = [root_override]
    else:
        candidates = [pathlib.Path(d) for d in LINUX_LIBRARY_DIRS]

    for lib_dir in candidates:
        plugin_dir: pathlib.Path = lib_dir / PLUGIN_SUBDIR
        if plugin_dir.is_dir() is True:
            roots: list[pathlib.Path] = [lib_dir]
            if root_override is None:
                roots.extend(pathlib.Path(d) for d in LINUX_HELPER_ROOTS)
            return NativeInstallation(
                lib_dir=lib_dir,
                plugin_dir=plugin_dir,
                bin_dir=None,
                helpers=_find_helpers(profile, roots),
            )

    searched: str = ", ".join(str(c) for c in candidates)
    raise NoNativeLibraryInstallation(f"Cannot find GStreamer libraries (searched {searched}).")


def _locate_darwin(
    profile: PlatformProfile,
    executable: pathlib.Path,
    *,
    root_override: pathlib.Path | None,
) -> NativeInstallation:
    lib_dir: pathlib.Path | None = root_override
    if lib_dir is None:
        from native_bundler.macho import load_command_references

        try:
            refs: list[str] = load_command_references(executable)
        except UnsupportedArtifact as e:
            raise NoNativeLibraryInstallation(f"Cannot read library references of {executable}: {e}") from e
        for ref in refs:
            if "libgstreamer" in ref and ref.startswith("/") is True:
                lib_dir = pathlib.Path(ref).parent
                break

    if lib_dir is None or lib_dir.is_dir() is False:
        raise NoNativeLibraryInstallation("Cannot find GStreamer library path from binary.")

    # Homebrew links opt/<formula> to Cellar/<formula>/<version>; search both.
    prefix: pathlib.Path = lib_dir.parent
    roots: list[pathlib.Path] = [prefix.resolve()]
    if prefix.resolve() != prefix:
        roots.append(prefix)

    return NativeInstallation(
        lib_dir=lib_dir,
        plugin_dir=lib_dir / PLUGIN_SUBDIR,
        bin_dir=None,
        helpers=_find_helpers(profile, roots),
    )


def _locate_windows(
    profile: PlatformProfile,
    *,
    root_override: pathlib.Path | None,
    environ: Mapping[str, str],
) -> NativeInstallation:
    root: pathlib.Path | None = root_override
    if root is None:
        for var in WINDOWS_ROOT_ENV_VARS:
            value: str | None = environ.get(var)
            if value is not None and len(value) > 0:
                root = pathlib.Path(value)
                break
    if root is None:
        for default in WINDOWS_DEFAULT_ROOTS:
            if pathlib.Path(default).is_dir() is True:
                root = pathlib.Path(default)
                break

    if root is None or root.is_dir() is False:
        raise NoNativeLibraryInstallation(
            "Cannot find GStreamer installation. Set GSTREAMER_1_0_ROOT_MSVC_X86_64 or install to C:\\gstreamer"
        )

    helpers: list[pathlib.Path] = []
    for name in profile.helper_names:
        candidate: pathlib.Path = root / "libexec" / PLUGIN_SUBDIR / profile.executable_name(name)
        if candidate.is_file() is True:
            helpers.append(candidate)

    return NativeInstallation(
        lib_dir=root / "lib",
        plugin_dir=root / "lib" / PLUGIN_SUBDIR,
        bin_dir=root / "bin",
        helpers=tuple(helpers),
    )


def _find_helpers(profile: PlatformProfile, roots: list[pathlib.Path]) -> tuple[pathlib.Path, ...]:
    """Find each helper process by name under the first root that has it.

    :param profile: Platform profile (helper names).
    :param roots: Directories searched recursively, in order.
    :returns: Found helper paths.
    """

    found: list[pathlib.Path] = []
    for name in profile.helper_names:
        filename: str = profile.executable_name(name)
        for root in roots:
            if root.is_dir() is False:
                continue
            matches: list[pathlib.Path] = sorted(p for p in root.rglob(filename) if p.is_file() is True)
            if len(matches) > 0:
                found.append(matches[0])
                break
    return tuple(found)
