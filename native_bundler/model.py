"""Core data types shared by the bundling phases."""

from dataclasses import dataclass, field
import enum
import json
import pathlib


class PlatformKind(enum.Enum):
    """Loader ABI a binary was built for."""

    ELF = "elf"
    MACHO = "macho"
    PE = "pe"


class ArtifactRole(enum.Enum):
    """What part an artifact plays in the bundle."""

    MAIN_EXECUTABLE = "main-executable"
    PLUGIN_LIBRARY = "plugin"
    HELPER_PROCESS = "helper"
    DEPENDENCY = "dependency"

    @property
    def is_executable(self) -> bool:
        return self is ArtifactRole.MAIN_EXECUTABLE or self is ArtifactRole.HELPER_PROCESS


@dataclass(frozen=True, slots=True)
class Artifact:
    """A file on the build host that takes part in the bundle.

    :ivar source: Path on the build host (symlinks already followed).
    :ivar role: Role of the artifact.
    :ivar platform_kind: Loader ABI the artifact targets.
    """

    source: pathlib.Path
    role: ArtifactRole
    platform_kind: PlatformKind


@dataclass(frozen=True, slots=True)
class DependencyReference:
    """A library identifier as recorded inside a binary.

    :ivar owner: Binary that declares the reference.
    :ivar name: Name, partial path, or absolute path, exactly as recorded.
    """

    owner: pathlib.Path
    name: str

    @property
    def filename(self) -> str:
        return self.name.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class ResolvedDependency:
    """A :class:`DependencyReference` bound to a physical file.

    :ivar reference: The reference that was resolved.
    :ivar real_path: Existing regular file, symlinks followed.
    """

    reference: DependencyReference
    real_path: pathlib.Path


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    """One file of the output tree.

    :ivar filename: Name the file is bundled under.
    :ivar source: Physical source file on the build host.
    :ivar role: Artifact role.
    :ivar destination: POSIX path relative to the output root.
    """

    filename: str
    source: pathlib.Path
    role: ArtifactRole
    destination: pathlib.PurePosixPath


@dataclass(frozen=True, slots=True)
class FilenameCollision:
    """Two distinct source files competing for one bundled filename.

    :ivar filename: The contested filename.
    :ivar kept: Source that stays in the manifest.
    :ivar dropped: Source that was dropped.
    """

    filename: str
    kept: pathlib.Path
    dropped: pathlib.Path


@dataclass(slots=True)
class BundleManifest:
    """Filename-keyed mapping of everything that lands in the output tree.

    Keys are case-folded when the platform's file names are case-insensitive.

    :ivar case_sensitive: Whether filename keys keep their case.
    :ivar entries: Entries by filename key.
    :ivar collisions: Filename collisions seen while resolving.
    :ivar unresolved: References that could not be bound to a file.
    :ivar unsupported: Artifacts that could not be parsed.
    :ivar rounds: Closure rounds executed.
    :ivar inspected: Number of binaries inspected.
    """

    case_sensitive: bool = True
    entries: dict[str, ManifestEntry] = field(default_factory=dict)
    collisions: list[FilenameCollision] = field(default_factory=list)
    unresolved: list[DependencyReference] = field(default_factory=list)
    unsupported: list[pathlib.Path] = field(default_factory=list)
    rounds: int = 0
    inspected: int = 0

    def key(self, filename: str) -> str:
        if self.case_sensitive is True:
            return filename
        return filename.lower()

    def get(self, filename: str) -> ManifestEntry | None:
        return self.entries.get(self.key(filename))

    def add(self, entry: ManifestEntry) -> None:
        self.entries[self.key(entry.filename)] = entry

    def __contains__(self, filename: object) -> bool:
        if not isinstance(filename, str):
            return False
        return self.key(filename) in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def sorted_entries(self) -> list[ManifestEntry]:
        return sorted(self.entries.values(), key=lambda e: e.destination.as_posix())

    def by_role(self, role: ArtifactRole) -> list[ManifestEntry]:
        return [e for e in self.sorted_entries() if e.role is role]

    def dependencies(self) -> list[ManifestEntry]:
        return self.by_role(ArtifactRole.DEPENDENCY)

    def to_json(self) -> str:
        """Render the manifest as deterministic JSON.

        :returns: JSON text (sorted keys, trailing newline).
        """

        payload: dict[str, object] = {
            "entries": [
                {
                    "filename": e.filename,
                    "role": e.role.value,
                    "destination": e.destination.as_posix(),
                    "size": e.source.stat().st_size,
                }
                for e in self.sorted_entries()
            ],
            "collisions": [
                {"filename": c.filename, "kept": str(c.kept), "dropped": str(c.dropped)}
                for c in self.collisions
            ],
            "unresolved": sorted({r.name for r in self.unresolved}),
        }
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"
