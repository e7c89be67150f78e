"""Bundle builder.

This module runs the whole pipeline:

- It locates the native library installation and seeds the closure with the main
  executable, the named plugin modules, and the helper processes.
- It resolves the transitive dependency closure and copies everything into a
  freshly emptied output tree.
- It rewrites library references so the bundle only loads from itself, then
  re-signs the modified binaries where the platform requires it.
"""

import logging
import pathlib
import time

from native_bundler.closure import DEFAULT_MAX_ROUNDS, resolve
from native_bundler.errors import BundleError, MissingSeedArtifact
from native_bundler.finalize import AD_HOC_IDENTITY, BundleReport, SignOutcome, log_report, sign, tree_size
from native_bundler.inspector import Inspector, create_inspector
from native_bundler.installation import NativeInstallation, locate_installation
from native_bundler.layout import check_output_root, find_helpers, find_plugins, place, prepare_output_root
from native_bundler.model import Artifact, ArtifactRole, BundleManifest
from native_bundler.process import ToolRunner
from native_bundler.profile import PlatformProfile
from native_bundler.rewrite import Rewriter, create_rewriter, rewrite_bundle

DEFAULT_BINARY_NAME: str = "horizon-streamer"
DEFAULT_OUTPUT_DIR: pathlib.Path = pathlib.Path("dist")


def default_executable(profile: PlatformProfile) -> pathlib.Path:
    """Where the release build of the application lands."""

    return pathlib.Path("target") / "release" / profile.executable_name(DEFAULT_BINARY_NAME)


def build_bundle(
    *,
    executable: pathlib.Path,
    output_root: pathlib.Path,
    profile: PlatformProfile,
    native_root: pathlib.Path | None = None,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    sign_identity: str = AD_HOC_IDENTITY,
    manifest_path: pathlib.Path | None = None,
    runner: ToolRunner | None = None,
    inspector: Inspector | None = None,
    logger: logging.Logger | None = None,
) -> BundleReport:
    """Build a self-contained bundle of ``executable``.

    The summary report is logged at the end of the run even when a phase fails.

    :param executable: Pre-built main executable.
    :param output_root: Output directory; deleted and rebuilt. It must not contain the executable or the
        native library installation.
    :param profile: Platform profile.
    :param native_root: Optional explicit native library directory.
    :param max_rounds: Closure depth guard.
    :param sign_identity: ``codesign`` identity for platforms that sign.
    :param manifest_path: Optional path to write the manifest JSON to.
    :param runner: Tool runner (defaults to real child processes).
    :param inspector: Native Inspector override (defaults to the profile's backend).
    :param logger: Optional logger for progress output.
    :returns: The run report.
    :raises BundleError: On fatal errors (missing seed, no installation, ...).
    """

    if logger is None:
        logger = logging.getLogger("native_bundler")
    if runner is None:
        runner = ToolRunner(logger)

    if executable.is_file() is False:
        raise MissingSeedArtifact(f"Binary not found at {executable}")

    report: BundleReport = BundleReport(output_root=output_root, executable=executable.name, system=profile.system)

    t_total0: float = time.perf_counter()
    prepared: bool = False
    logger.info(f"native-bundler: executable={executable}")
    logger.info(f"native-bundler: output={output_root}")
    logger.info(f"native-bundler: platform={profile.system} ({profile.kind.value}, {profile.machine})")

    try:
        installation: NativeInstallation = locate_installation(
            profile,
            executable,
            root_override=native_root,
            logger=logger,
        )

        inputs: list[pathlib.Path] = [executable, installation.lib_dir, installation.plugin_dir]
        if native_root is not None:
            inputs.append(native_root)
        if installation.bin_dir is not None:
            inputs.append(installation.bin_dir)
        check_output_root(output_root, inputs)
        prepare_output_root(output_root, logger=logger)
        prepared = True

        logger.info("native-bundler: [discovery] locating plugins")
        seeds: list[Artifact] = [
            Artifact(source=executable, role=ArtifactRole.MAIN_EXECUTABLE, platform_kind=profile.kind),
            *find_plugins(profile, installation, logger=logger),
            *find_helpers(profile, installation),
        ]

        if inspector is None:
            inspector = create_inspector(
                profile,
                search_dirs=installation.search_dirs,
                executable=executable,
                runner=runner,
                logger=logger,
            )

        logger.info("native-bundler: [discovery] resolving shared library dependencies")
        t0: float = time.perf_counter()
        manifest: BundleManifest = resolve(seeds, profile, inspector, max_rounds=max_rounds, logger=logger)
        report.record_manifest(manifest)
        logger.info(
            f"native-bundler: [discovery] {report.dependencies} shared libraries from "
            f"{manifest.inspected} inspected binaries in {time.perf_counter() - t0:.2f}s"
        )

        place(manifest, profile, output_root, logger=logger)
        if manifest_path is not None:
            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            manifest_path.write_text(manifest.to_json(), encoding="utf-8")
            logger.info(f"native-bundler: wrote manifest {manifest_path}")

        rewriter: Rewriter = create_rewriter(profile, inspector, runner)
        rewritten, failed = rewrite_bundle(manifest, profile, output_root, rewriter, runner, logger=logger)
        report.rewritten = len(rewritten)
        report.rewrite_failures = len(failed)

        outcome: SignOutcome = sign(rewritten, profile, runner, identity=sign_identity, logger=logger)
        report.signed = len(outcome.signed)
        report.sign_failures = len(outcome.failed)
    except BundleError as e:
        report.error = str(e)
        raise
    finally:
        if prepared is True and output_root.is_dir() is True:
            report.total_bytes = tree_size(output_root)
        log_report(report, logger=logger)
        logger.info(f"native-bundler: done in {time.perf_counter() - t_total0:.2f}s")

    return report
