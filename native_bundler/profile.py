"""Platform profiles.

A profile bundles every platform-specific decision the bundler makes:

- which loader ABI the host builds for,
- which libraries the target OS is assumed to provide,
- which GStreamer plugins the application needs,
- and how the output tree is shaped.

The profile is resolved once, from host detection or an explicit override.
"""

from dataclasses import dataclass
import enum
import fnmatch
import pathlib
import platform

from native_bundler.model import ArtifactRole, PlatformKind


class PlatformResolutionError(ValueError):
    """Raised when a platform override cannot be mapped to a profile.

    :ivar exit_code: Process exit code the CLI reports for this error.
    """

    exit_code: int = 7


class SigningPolicy(enum.Enum):
    """Whether modified binaries must be re-signed."""

    NONE = "none"
    ADVISORY = "advisory"
    MANDATORY = "mandatory"


@dataclass(frozen=True, slots=True)
class ExclusionSet:
    """Libraries the target OS's base runtime is assumed to provide.

    :ivar prefixes: Reference prefixes that mark a system location.
    :ivar name_globs: ``fnmatch`` patterns matched against the reference's filename.
    :ivar case_sensitive: Whether filename matching is case-sensitive.
    """

    prefixes: tuple[str, ...] = ()
    name_globs: tuple[str, ...] = ()
    case_sensitive: bool = True

    def matches(self, reference: str) -> bool:
        """Check whether a recorded reference names a base-runtime library.

        :param reference: Reference as recorded in a binary.
        :returns: ``True`` if the reference must never be bundled.
        """

        for prefix in self.prefixes:
            if reference.startswith(prefix) is True:
                return True

        name: str = reference.replace("\\", "/").rsplit("/", 1)[-1]
        if self.case_sensitive is False:
            name = name.lower()
        for pattern in self.name_globs:
            p: str = pattern if self.case_sensitive is True else pattern.lower()
            if fnmatch.fnmatchcase(name, p) is True:
                return True
        return False


@dataclass(frozen=True, slots=True)
class PluginSelection:
    """Plugin modules located by name rather than by dependency traversal.

    :ivar required: Names whose absence aborts the run.
    :ivar optional: Names bundled when present.
    """

    required: tuple[str, ...]
    optional: tuple[str, ...] = ()

    @property
    def names(self) -> tuple[str, ...]:
        return (*self.required, *self.optional)

    def is_required(self, name: str) -> bool:
        """Check whether a library or plugin name matches a required plugin.

        :param name: Plugin name, or a filename such as ``libgstapp.so``.
        :returns: ``True`` if it is one of the required plugins.
        """

        stem: str = name.replace("\\", "/").rsplit("/", 1)[-1].split(".", 1)[0]
        return stem in self.required


@dataclass(frozen=True, slots=True)
class BundleLayout:
    """Shape of the output tree.

    :ivar dependency_dir: Directory for general shared libraries.
    :ivar plugin_dir: Directory for runtime-loadable plugin modules.
    :ivar helper_dir: Directory for helper processes.
    """

    dependency_dir: pathlib.PurePosixPath
    plugin_dir: pathlib.PurePosixPath
    helper_dir: pathlib.PurePosixPath

    @property
    def is_flat(self) -> bool:
        return self.dependency_dir == pathlib.PurePosixPath(".")

    def destination(self, role: ArtifactRole, filename: str) -> pathlib.PurePosixPath:
        """Destination of a file relative to the output root.

        :param role: Artifact role.
        :param filename: Bundled filename.
        :returns: Relative POSIX path.
        """

        if role is ArtifactRole.MAIN_EXECUTABLE:
            return pathlib.PurePosixPath(filename)
        if role is ArtifactRole.PLUGIN_LIBRARY:
            return self.plugin_dir / filename
        if role is ArtifactRole.HELPER_PROCESS:
            return self.helper_dir / filename
        return self.dependency_dir / filename


@dataclass(frozen=True, slots=True)
class PlatformProfile:
    """Everything platform-specific about a bundling run.

    :ivar kind: Loader ABI of the host.
    :ivar system: ``platform.system()``-style OS name.
    :ivar machine: Normalized machine architecture.
    :ivar exclusions: Base-runtime libraries never bundled.
    :ivar plugins: Plugin modules to bundle by name.
    :ivar layout: Output tree shape.
    :ivar helper_names: Helper process basenames (without suffix).
    :ivar executable_suffix: Suffix of executables (``.exe`` on Windows).
    :ivar signing: Re-signing policy after modification.
    :ivar case_sensitive_names: Whether library filenames are case-sensitive.
    """

    kind: PlatformKind
    system: str
    machine: str
    exclusions: ExclusionSet
    plugins: PluginSelection
    layout: BundleLayout
    helper_names: tuple[str, ...]
    executable_suffix: str
    signing: SigningPolicy
    case_sensitive_names: bool = True

    def executable_name(self, stem: str) -> str:
        return f"{stem}{self.executable_suffix}"


# GStreamer plugins used by the capture/encode/stream pipelines.
CORE_PLUGINS: tuple[str, ...] = (
    # core pipeline elements
    "libgstcoreelements",
    "libgstapp",
    "libgstvideoconvertscale",
    "libgstvideoparsersbad",
    "libgsttypefindfunctions",
    # rtp / webrtc
    "libgstrtp",
    "libgstrtpmanager",
    "libgstwebrtc",
    "libgstnice",
    "libgstdtls",
    "libgstsrtp",
    "libgstsctp",
    "libgstsdpelem",
    # video encoding
    "libgstx264",
    # audio
    "libgstopus",
    "libgstaudioconvert",
    "libgstaudioresample",
)

DARWIN_PLUGINS: tuple[str, ...] = ("libgstapplemedia", "libgstosxaudio")

WINDOWS_PLUGINS: tuple[str, ...] = (
    "gstd3d11",
    "gstwasapi2",
    "gstd3d12",
    "gstnvcodec",
    "gstqsv",
    "gstmediafoundation",
)

LINUX_PLUGINS: tuple[str, ...] = (
    "libgstpulseaudio",
    "libgstximagesrc",
    "libgstpipewire",
    "libgstv4l2",
    "libgstvideo4linux2",
    "libgstnvcodec",
    "libgstvaapi",
)

HELPER_NAMES: tuple[str, ...] = ("gst-plugin-scanner",)

MACHO_EXCLUSIONS: ExclusionSet = ExclusionSet(prefixes=("/usr/lib/", "/System/"))

ELF_EXCLUSIONS: ExclusionSet = ExclusionSet(
    name_globs=(
        "libc.so*",
        "libm.so*",
        "libdl.so*",
        "librt.so*",
        "libpthread.so*",
        "libutil.so*",
        "libresolv.so*",
        "libnsl.so*",
        "libcrypt.so*",
        "ld-linux*.so*",
        "libgcc_s.so*",
        "libstdc++.so*",
        "linux-vdso.so*",
    ),
)

PE_EXCLUSIONS: ExclusionSet = ExclusionSet(
    name_globs=(
        "kernel32.dll",
        "user32.dll",
        "gdi32.dll",
        "advapi32.dll",
        "shell32.dll",
        "ole32.dll",
        "oleaut32.dll",
        "ws2_32.dll",
        "wsock32.dll",
        "crypt32.dll",
        "wldap32.dll",
        "ntdll.dll",
        "msvcrt.dll",
        "vcruntime*.dll",
        "ucrtbase.dll",
        "api-ms-*",
        "ext-ms-*",
        "bcrypt.dll",
        "mswsock.dll",
        "secur32.dll",
        "iphlpapi.dll",
        "userenv.dll",
        "dbghelp.dll",
        "imm32.dll",
        "setupapi.dll",
        "cfgmgr32.dll",
        "dwmapi.dll",
        "d3d11.dll",
        "d3d12.dll",
        "dxgi.dll",
        "d3dcompiler_*.dll",
        "dnsapi.dll",
        "version.dll",
        "winmm.dll",
        "comctl32.dll",
        "comdlg32.dll",
        "wtsapi32.dll",
        "psapi.dll",
        "rpcrt4.dll",
        "normaliz.dll",
    ),
    case_sensitive=False,
)

NESTED_LAYOUT: BundleLayout = BundleLayout(
    dependency_dir=pathlib.PurePosixPath("lib"),
    plugin_dir=pathlib.PurePosixPath("lib/gstreamer-1.0"),
    helper_dir=pathlib.PurePosixPath("libexec"),
)

# Windows only searches the executable's own directory for DLLs.
FLAT_LAYOUT: BundleLayout = BundleLayout(
    dependency_dir=pathlib.PurePosixPath("."),
    plugin_dir=pathlib.PurePosixPath("lib/gstreamer-1.0"),
    helper_dir=pathlib.PurePosixPath("."),
)


def resolve_platform_profile(
    *,
    system: str | None = None,
    machine: str | None = None,
) -> PlatformProfile:
    """Resolve the platform profile for the host or an explicit override.

    :param system: OS override (``linux``, ``darwin``, ``windows``). ``None`` uses the host.
    :param machine: Architecture override. ``None`` uses the host.
    :returns: The platform profile.
    :raises PlatformResolutionError: If the OS is not supported.
    """

    system_name: str = _normalize_system(system if system is not None else platform.system())
    machine_name: str = _normalize_machine(machine if machine is not None else platform.machine())

    if system_name == "Darwin":
        signing: SigningPolicy = SigningPolicy.ADVISORY
        if machine_name == "arm64":
            signing = SigningPolicy.MANDATORY
        return PlatformProfile(
            kind=PlatformKind.MACHO,
            system=system_name,
            machine=machine_name,
            exclusions=MACHO_EXCLUSIONS,
            plugins=PluginSelection(required=CORE_PLUGINS, optional=DARWIN_PLUGINS),
            layout=NESTED_LAYOUT,
            helper_names=HELPER_NAMES,
            executable_suffix="",
            signing=signing,
        )

    if system_name == "Windows":
        return PlatformProfile(
            kind=PlatformKind.PE,
            system=system_name,
            machine=machine_name,
            exclusions=PE_EXCLUSIONS,
            plugins=PluginSelection(required=CORE_PLUGINS, optional=WINDOWS_PLUGINS),
            layout=FLAT_LAYOUT,
            helper_names=HELPER_NAMES,
            executable_suffix=".exe",
            signing=SigningPolicy.NONE,
            case_sensitive_names=False,
        )

    if system_name == "Linux":
        return PlatformProfile(
            kind=PlatformKind.ELF,
            system=system_name,
            machine=machine_name,
            exclusions=ELF_EXCLUSIONS,
            plugins=PluginSelection(required=CORE_PLUGINS, optional=LINUX_PLUGINS),
            layout=NESTED_LAYOUT,
            helper_names=HELPER_NAMES,
            executable_suffix="",
            signing=SigningPolicy.NONE,
        )

    raise PlatformResolutionError(f"Unsupported platform {system!r}; expected linux, darwin or windows.")


def _normalize_system(system: str) -> str:
    """Map OS spellings onto ``platform.system()`` names.

    :param system: OS name (``platform.system()`` value or a user override).
    :returns: ``Linux``, ``Darwin``, ``Windows``, or the input unchanged.
    """

    s: str = system.strip().lower()
    if s in {"darwin", "macos", "macosx", "osx"}:
        return "Darwin"
    if s in {"windows", "win32", "win64"} or s.startswith(("mingw", "msys", "cygwin")):
        return "Windows"
    if s == "linux":
        return "Linux"
    return system


def _normalize_machine(machine: str) -> str:
    """Normalize architecture names (``aarch64`` and ``arm64`` are the same CPU).

    :param machine: Architecture name.
    :returns: Normalized name.
    """

    m: str = machine.strip().lower()
    if m in {"amd64", "x64"}:
        return "x86_64"
    if m == "aarch64" or m == "arm64":
        return "arm64"
    return m
