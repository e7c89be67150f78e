"""Command line interface for native-bundler."""

import argparse
import logging
import os
import pathlib
import subprocess
import sys

from native_bundler.builder import DEFAULT_BINARY_NAME, DEFAULT_OUTPUT_DIR, build_bundle, default_executable
from native_bundler.closure import DEFAULT_MAX_ROUNDS
from native_bundler.errors import BundleError
from native_bundler.finalize import AD_HOC_IDENTITY
from native_bundler.profile import PlatformProfile, PlatformResolutionError, resolve_platform_profile
from native_bundler.runtime import bundled_environment, environment_exports


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the native-bundler logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("native_bundler")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--platform",
        type=str,
        default=None,
        help="Platform profile to use (linux, darwin, windows). Defaults to the host.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass twice to only show errors.",
    )


def _bundle_executable(dist: pathlib.Path, profile: PlatformProfile) -> pathlib.Path:
    return dist / profile.executable_name(DEFAULT_BINARY_NAME)


def main(argv: list[str] | None = None) -> int:
    """Run the native-bundler CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="native-bundler",
        description="Bundle an executable with every native library it needs into a relocatable directory.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", help="Build a self-contained bundle.")
    p_build.add_argument(
        "executable",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help=f"Pre-built executable. Defaults to target/release/{DEFAULT_BINARY_NAME}.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=DEFAULT_OUTPUT_DIR,
        help="Output directory (deleted and rebuilt). Defaults to dist/.",
    )
    p_build.add_argument(
        "--native-root",
        type=pathlib.Path,
        default=None,
        help="Native library directory (Windows: install root) instead of auto-detection.",
    )
    p_build.add_argument(
        "--max-rounds",
        type=int,
        default=DEFAULT_MAX_ROUNDS,
        help="Maximum dependency-closure rounds.",
    )
    p_build.add_argument(
        "--sign-identity",
        type=str,
        default=AD_HOC_IDENTITY,
        help="codesign identity for macOS ('-' signs ad hoc).",
    )
    p_build.add_argument(
        "--manifest",
        type=pathlib.Path,
        default=None,
        help="Write the bundle manifest as JSON to this path.",
    )
    _add_common(p_build)

    p_env = subparsers.add_parser("env", help="Print shell exports for running a bundle.")
    p_env.add_argument("dist", type=pathlib.Path, help="Bundle directory.")
    _add_common(p_env)

    p_run = subparsers.add_parser("run", help="Run a bundled executable with its bundled libraries.")
    p_run.add_argument("dist", type=pathlib.Path, help="Bundle directory.")
    p_run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the executable.")
    _add_common(p_run)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        profile: PlatformProfile = resolve_platform_profile(system=ns.platform)
    except PlatformResolutionError as e:
        logger.error(f"native-bundler: {e}")
        return e.exit_code

    if ns.command == "build":
        executable: pathlib.Path = ns.executable if ns.executable is not None else default_executable(profile)
        try:
            build_bundle(
                executable=executable,
                output_root=ns.output,
                profile=profile,
                native_root=ns.native_root,
                max_rounds=ns.max_rounds,
                sign_identity=ns.sign_identity,
                manifest_path=ns.manifest,
                logger=logger,
            )
        except BundleError as e:
            logger.error(f"ERROR: {e}")
            return e.exit_code
        return 0

    if ns.command == "env":
        exe: pathlib.Path = _bundle_executable(ns.dist, profile)
        env: dict[str, str] | None = bundled_environment(exe, profile)
        if env is None:
            logger.error(f"native-bundler: {ns.dist} does not look like a bundle")
            return 1
        for line in environment_exports(env, os.environ):
            print(line)
        return 0

    if ns.command == "run":
        exe = _bundle_executable(ns.dist, profile)
        env = bundled_environment(exe, profile)
        if env is None:
            logger.error(f"native-bundler: {ns.dist} does not look like a bundle")
            return 1
        args: list[str] = list(ns.args)
        if len(args) > 0 and args[0] == "--":
            args = args[1:]
        proc = subprocess.run([str(exe), *args], env=env, check=False)
        return proc.returncode

    raise AssertionError(f"Unhandled command: {ns.command}")
