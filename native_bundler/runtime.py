"""Runtime environment for a bundled executable.

At startup the application probes for a dependency directory next to its own
executable and, when present, points its native-library search and the GStreamer
registry at the bundle before initializing GStreamer. This module computes that
environment so it can be exported from a shell or used to launch the bundle.
"""

from collections.abc import Mapping
import os
import pathlib

from native_bundler.model import PlatformKind
from native_bundler.profile import PlatformProfile

LIBRARY_PATH_VARS: dict[PlatformKind, str] = {
    PlatformKind.ELF: "LD_LIBRARY_PATH",
    PlatformKind.MACHO: "DYLD_FALLBACK_LIBRARY_PATH",
    PlatformKind.PE: "PATH",
}


def _prepend(value: str, existing: str | None, sep: str) -> str:
    if existing is None or len(existing) == 0:
        return value
    return f"{value}{sep}{existing}"


def bundled_environment(
    executable: pathlib.Path,
    profile: PlatformProfile,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str] | None:
    """Environment that makes a bundled executable prefer its own libraries.

    :param executable: Path of the bundled main executable.
    :param profile: Platform profile the bundle was built with.
    :param environ: Base environment (defaults to ``os.environ``).
    :returns: A full environment, or ``None`` if ``executable`` is not inside a bundle.
    """

    if environ is None:
        environ = os.environ

    root: pathlib.Path = executable.resolve().parent
    dep_dir: pathlib.Path = root.joinpath(*profile.layout.dependency_dir.parts)
    plugin_dir: pathlib.Path = root.joinpath(*profile.layout.plugin_dir.parts)
    if plugin_dir.is_dir() is False or dep_dir.is_dir() is False:
        return None

    sep: str = ";" if profile.kind is PlatformKind.PE else ":"
    env: dict[str, str] = dict(environ)

    lib_var: str = LIBRARY_PATH_VARS[profile.kind]
    env[lib_var] = _prepend(str(dep_dir), environ.get(lib_var), sep)

    env["GST_PLUGIN_PATH"] = str(plugin_dir)
    # Keep GStreamer from also loading (possibly incompatible) system plugins.
    env["GST_PLUGIN_SYSTEM_PATH"] = str(plugin_dir)

    helper_dir: pathlib.Path = root.joinpath(*profile.layout.helper_dir.parts)
    for name in profile.helper_names:
        helper: pathlib.Path = helper_dir / profile.executable_name(name)
        if helper.is_file() is True:
            env["GST_PLUGIN_SCANNER"] = str(helper)
            break

    return env


def environment_exports(env: Mapping[str, str], base: Mapping[str, str]) -> list[str]:
    """Shell ``export`` lines for the variables ``env`` adds or changes.

    :param env: Bundled environment.
    :param base: Environment it was derived from.
    :returns: Sorted ``export NAME='value'`` lines.
    """

    lines: list[str] = []
    for name in sorted(env):
        value: str = env[name]
        if base.get(name) == value:
            continue
        quoted: str = value.replace("'", "'\\''")
        lines.append(f"export {name}='{quoted}'")
    return lines
