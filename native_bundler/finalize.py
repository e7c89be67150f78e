"""Re-signing modified binaries and reporting the bundle."""

from dataclasses import dataclass, field
import logging
import os
import pathlib

from native_bundler.errors import SigningUnavailable
from native_bundler.model import ArtifactRole, BundleManifest
from native_bundler.process import ToolResult, ToolRunner
from native_bundler.profile import PlatformProfile, SigningPolicy

AD_HOC_IDENTITY: str = "-"


@dataclass(slots=True)
class BundleReport:
    """Human-readable summary of one bundling run.

    Filled in phase by phase, so a failed run still reports what succeeded.
    """

    output_root: pathlib.Path
    executable: str
    system: str
    executables: int = 0
    plugins: int = 0
    helpers: int = 0
    dependencies: int = 0
    rounds: int = 0
    rewritten: int = 0
    rewrite_failures: int = 0
    signed: int = 0
    sign_failures: int = 0
    collisions: int = 0
    unresolved: list[str] = field(default_factory=list)
    unsupported: int = 0
    total_bytes: int = 0
    error: str | None = None

    def record_manifest(self, manifest: BundleManifest) -> None:
        self.executables = len(manifest.by_role(ArtifactRole.MAIN_EXECUTABLE))
        self.plugins = len(manifest.by_role(ArtifactRole.PLUGIN_LIBRARY))
        self.helpers = len(manifest.by_role(ArtifactRole.HELPER_PROCESS))
        self.dependencies = len(manifest.dependencies())
        self.rounds = manifest.rounds
        self.collisions = len(manifest.collisions)
        self.unresolved = sorted({r.name for r in manifest.unresolved})
        self.unsupported = len(manifest.unsupported)


@dataclass(frozen=True, slots=True)
class SignOutcome:
    """Result of the signing phase.

    :ivar signed: Files signed successfully.
    :ivar failed: Files whose signing failed.
    """

    signed: tuple[pathlib.Path, ...]
    failed: tuple[pathlib.Path, ...]


def sign(
    paths: list[pathlib.Path],
    profile: PlatformProfile,
    runner: ToolRunner,
    *,
    identity: str = AD_HOC_IDENTITY,
    logger: logging.Logger | None = None,
) -> SignOutcome:
    """Re-sign modified binaries where the platform loader checks signatures.

    :param paths: Files to sign.
    :param profile: Platform profile (signing policy).
    :param runner: Tool runner.
    :param identity: ``codesign`` identity; ``-`` signs ad hoc.
    :param logger: Optional logger.
    :returns: Signed and failed files.
    :raises SigningUnavailable: If signing is mandatory and ``codesign`` is missing.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    if profile.signing is SigningPolicy.NONE or len(paths) == 0:
        return SignOutcome(signed=(), failed=())

    if runner.available("codesign") is False:
        if profile.signing is SigningPolicy.MANDATORY:
            raise SigningUnavailable(
                f"codesign not found; {profile.system}/{profile.machine} refuses to load modified unsigned binaries."
            )
        logger.warning("native-bundler: codesign not found; leaving modified binaries unsigned")
        return SignOutcome(signed=(), failed=())

    signed: list[pathlib.Path] = []
    failed: list[pathlib.Path] = []
    for path in paths:
        result: ToolResult = runner.run(["codesign", "--force", "--sign", identity, str(path)])
        if result.ok is True:
            signed.append(path)
        else:
            logger.warning(f"native-bundler: signing {path.name} failed: {result.diagnostic}")
            failed.append(path)

    logger.info(f"native-bundler: [signing] {len(signed)}/{len(paths)} files re-signed")
    return SignOutcome(signed=tuple(signed), failed=tuple(failed))


def tree_size(root: pathlib.Path) -> int:
    """Total size in bytes of the regular files under ``root``."""

    total: int = 0
    for dirpath, _, files in os.walk(root):
        for name in files:
            p: pathlib.Path = pathlib.Path(dirpath) / name
            if p.is_symlink() is False:
                total += p.stat().st_size
    return total


def log_report(report: BundleReport, *, logger: logging.Logger | None = None) -> None:
    """Print the end-of-run summary.

    :param report: Report to print.
    :param logger: Optional logger.
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")

    title: str = "Bundle complete" if report.error is None else "Bundle incomplete"
    logger.info("")
    logger.info(f"=== {title} ===")
    logger.info(f"Location: {report.output_root}/")
    logger.info(f"Size:     {report.total_bytes / (1024 * 1024):.1f} MiB")
    logger.info("Contents:")
    logger.info(f"  {report.executable}")
    logger.info(f"  shared libraries: {report.dependencies} (closure converged in {report.rounds} rounds)")
    logger.info(f"  plugins:          {report.plugins}")
    logger.info(f"  helper processes: {report.helpers}")
    logger.info(f"  rewritten:        {report.rewritten}" + _failures(report.rewrite_failures))
    if report.signed > 0 or report.sign_failures > 0:
        logger.info(f"  signed:           {report.signed}" + _failures(report.sign_failures))
    if report.collisions > 0:
        logger.warning(f"  filename collisions: {report.collisions}")
    if report.unsupported > 0:
        logger.warning(f"  unsupported artifacts skipped: {report.unsupported}")
    if len(report.unresolved) > 0:
        logger.warning(f"  unresolved dependencies: {', '.join(report.unresolved)}")
    if report.error is not None:
        logger.error(f"  error: {report.error}")
    else:
        logger.info("")
        logger.info(f"To run: {report.output_root / report.executable}")


def _failures(count: int) -> str:
    if count == 0:
        return ""
    return f" ({count} failed)"
