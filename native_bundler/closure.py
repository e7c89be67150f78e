"""Dependency-closure resolution.

Breadth-first, fixed-point traversal over the Native Inspector:

- round 0 is the seed set,
- each round inspects the artifacts discovered by the previous one,
- the loop stops when a round discovers nothing new, or at ``max_rounds``.

All traversal state lives in one :class:`Worklist` value, so the algorithm can
be driven with synthetic graphs.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import logging
import pathlib

from native_bundler.errors import UnresolvedDependency, UnsupportedArtifact
from native_bundler.inspector import Inspector
from native_bundler.model import (
    Artifact,
    ArtifactRole,
    BundleManifest,
    DependencyReference,
    FilenameCollision,
    ManifestEntry,
    ResolvedDependency,
)
from native_bundler.profile import PlatformProfile

DEFAULT_MAX_ROUNDS: int = 10


@dataclass(slots=True)
class Worklist:
    """Accumulated traversal state.

    :ivar manifest: Everything accepted so far, seeds included.
    :ivar pending: Artifacts to inspect in the next round.
    :ivar inspected: Physical paths already inspected.
    :ivar excluded: Number of references pruned by the exclusion set.
    """

    manifest: BundleManifest
    pending: list[Artifact] = field(default_factory=list)
    inspected: set[pathlib.Path] = field(default_factory=set)
    excluded: int = 0


def seed_worklist(
    seeds: Iterable[Artifact],
    profile: PlatformProfile,
    *,
    logger: logging.Logger,
) -> Worklist:
    """Register seed artifacts and queue them for round 1.

    :param seeds: Seed artifacts (main executable, plugins, helpers).
    :param profile: Platform profile.
    :param logger: Logger.
    :returns: The initial worklist.
    """

    worklist: Worklist = Worklist(manifest=BundleManifest(case_sensitive=profile.case_sensitive_names))
    for seed in seeds:
        source: pathlib.Path = seed.source.resolve()
        artifact: Artifact = Artifact(source=source, role=seed.role, platform_kind=seed.platform_kind)
        filename: str = seed.source.name
        if _accept(worklist, profile, filename=filename, source=source, role=seed.role, logger=logger) is True:
            worklist.pending.append(artifact)
    return worklist


def resolve(
    seeds: Iterable[Artifact],
    profile: PlatformProfile,
    inspector: Inspector,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    logger: logging.Logger | None = None,
) -> BundleManifest:
    """Compute the transitive library closure of the seed artifacts.

    :param seeds: Seed artifacts.
    :param profile: Platform profile (exclusions, layout, required plugins).
    :param inspector: Native Inspector for the profile's loader ABI.
    :param max_rounds: Depth guard for cyclic or pathological graphs.
    :param logger: Optional logger for progress output.
    :returns: The manifest of seeds plus discovered dependencies.
    :raises UnresolvedDependency: If a required plugin cannot be located.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    worklist: Worklist = seed_worklist(seeds, profile, logger=logger)

    while len(worklist.pending) > 0:
        if worklist.manifest.rounds >= max_rounds:
            logger.warning(
                f"native-bundler: closure stopped after {max_rounds} rounds with "
                f"{len(worklist.pending)} artifacts still pending"
            )
            break
        worklist = run_round(worklist, profile, inspector, logger=logger)
        logger.info(
            f"native-bundler: [discovery] round {worklist.manifest.rounds}: "
            f"{len(worklist.pending)} new, {len(worklist.manifest.dependencies())} dependencies total"
        )

    worklist.manifest.inspected = len(worklist.inspected)
    if worklist.excluded > 0 and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"native-bundler: pruned {worklist.excluded} base-runtime references")
    return worklist.manifest


def run_round(
    worklist: Worklist,
    profile: PlatformProfile,
    inspector: Inspector,
    *,
    logger: logging.Logger,
) -> Worklist:
    """Inspect every pending artifact once and queue what they newly reference.

    :param worklist: State before the round.
    :param profile: Platform profile.
    :param inspector: Native Inspector.
    :param logger: Logger.
    :returns: State after the round (same object, updated).
    """

    current: list[Artifact] = worklist.pending
    worklist.pending = []
    worklist.manifest.rounds += 1

    for artifact in current:
        if artifact.source in worklist.inspected:
            continue
        worklist.inspected.add(artifact.source)

        try:
            refs: list[DependencyReference] = inspector.list_dependencies(artifact.source)
        except UnsupportedArtifact as e:
            logger.warning(f"native-bundler: skipping {artifact.source}: {e}")
            worklist.manifest.unsupported.append(artifact.source)
            continue

        for ref in refs:
            if profile.exclusions.matches(ref.name) is True:
                worklist.excluded += 1
                continue

            resolved: ResolvedDependency | None = _bind(ref, inspector)
            if resolved is None:
                _unresolved(worklist, profile, ref, logger=logger)
                continue

            accepted: bool = _accept(
                worklist,
                profile,
                filename=ref.filename,
                source=resolved.real_path,
                role=ArtifactRole.DEPENDENCY,
                logger=logger,
            )
            if accepted is True:
                worklist.pending.append(
                    Artifact(
                        source=resolved.real_path,
                        role=ArtifactRole.DEPENDENCY,
                        platform_kind=profile.kind,
                    )
                )

    return worklist


def _bind(ref: DependencyReference, inspector: Inspector) -> ResolvedDependency | None:
    """Resolve a reference to a physical regular file, following symlinks."""

    located: pathlib.Path | None = inspector.locate(ref)
    if located is None:
        return None
    real: pathlib.Path = located.resolve()
    if real.is_file() is False:
        return None
    return ResolvedDependency(reference=ref, real_path=real)


def _unresolved(
    worklist: Worklist,
    profile: PlatformProfile,
    ref: DependencyReference,
    *,
    logger: logging.Logger,
) -> None:
    if profile.plugins.is_required(ref.filename) is True:
        raise UnresolvedDependency(f"Required plugin {ref.name} referenced by {ref.owner} could not be found.")
    if any(r.name == ref.name for r in worklist.manifest.unresolved) is False:
        logger.warning(f"native-bundler: unresolved dependency {ref.name} (referenced by {ref.owner})")
    worklist.manifest.unresolved.append(ref)


def _accept(
    worklist: Worklist,
    profile: PlatformProfile,
    *,
    filename: str,
    source: pathlib.Path,
    role: ArtifactRole,
    logger: logging.Logger,
) -> bool:
    """Add a file to the manifest unless its filename is already taken.

    :returns: ``True`` if the file was newly added.
    """

    existing: ManifestEntry | None = worklist.manifest.get(filename)
    if existing is not None:
        if existing.source != source:
            collision: FilenameCollision = FilenameCollision(filename=filename, kept=existing.source, dropped=source)
            if collision not in worklist.manifest.collisions:
                worklist.manifest.collisions.append(collision)
                logger.warning(
                    f"native-bundler: filename collision for {filename}: keeping {existing.source}, dropping {source}"
                )
        return False

    worklist.manifest.add(
        ManifestEntry(
            filename=filename,
            source=source,
            role=role,
            destination=profile.layout.destination(role, filename),
        )
    )
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"native-bundler:   + {filename} ({role.value})")
    return True
