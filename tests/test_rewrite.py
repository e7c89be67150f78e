import logging
import pathlib
import posixpath

import pytest

from conftest import GraphInspector, RecordingRunner
import native_bundler.macho as macho
from native_bundler.model import ArtifactRole, BundleManifest, ManifestEntry
from native_bundler.profile import PlatformProfile
from native_bundler.rewrite import (
    ElfRewriter,
    MachORewriter,
    NullRewriter,
    create_rewriter,
    elf_runpath,
    macho_reference,
    rewrite_bundle,
)


def _manifest(profile: PlatformProfile, files: list[tuple[str, ArtifactRole]], src: pathlib.Path) -> BundleManifest:
    manifest = BundleManifest(case_sensitive=profile.case_sensitive_names)
    for filename, role in files:
        manifest.add(
            ManifestEntry(
                filename=filename,
                source=src / filename,
                role=role,
                destination=profile.layout.destination(role, filename),
            )
        )
    return manifest


def _loader_resolve(referrer: ManifestEntry, reference: str) -> str:
    """Where a loader would look for ``reference`` when loading ``referrer`` from the bundle."""

    for token in ("@executable_path/", "@loader_path/"):
        if reference.startswith(token) is True:
            return posixpath.normpath(posixpath.join(referrer.destination.parent.as_posix(), reference[len(token) :]))
    raise AssertionError(f"not bundle-relative: {reference}")


def _runpath_dirs(referrer: ManifestEntry, runpath: str) -> list[str]:
    dirs: list[str] = []
    for part in runpath.split(":"):
        rel = part[len("$ORIGIN") :].lstrip("/")
        dirs.append(posixpath.normpath(posixpath.join(referrer.destination.parent.as_posix(), rel or ".")))
    return dirs


ROLES: list[tuple[str, ArtifactRole]] = [
    ("app", ArtifactRole.MAIN_EXECUTABLE),
    ("libfoo.1.dylib", ArtifactRole.DEPENDENCY),
    ("libgstfoo.so", ArtifactRole.PLUGIN_LIBRARY),
    ("gst-plugin-scanner", ArtifactRole.HELPER_PROCESS),
]


def test_macho_references_resolve_to_bundled_targets(tmp_path: pathlib.Path, darwin_profile: PlatformProfile) -> None:
    manifest = _manifest(darwin_profile, ROLES + [("libbar.dylib", ArtifactRole.DEPENDENCY)], tmp_path)
    targets = manifest.dependencies()
    for referrer in manifest.sorted_entries():
        for target in targets:
            ref = macho_reference(referrer, target)
            assert _loader_resolve(referrer, ref) == target.destination.as_posix()
            expected = "@executable_path/" if referrer.role.is_executable is True else "@loader_path/"
            assert ref.startswith(expected) is True


def test_elf_runpath_reaches_every_bundled_target(tmp_path: pathlib.Path, linux_profile: PlatformProfile) -> None:
    manifest = _manifest(linux_profile, [(n.replace(".1.dylib", ".so.1"), r) for n, r in ROLES], tmp_path)
    targets = manifest.dependencies()
    for referrer in manifest.sorted_entries():
        dirs = _runpath_dirs(referrer, elf_runpath(referrer, targets, linux_profile))
        for target in targets:
            assert target.destination.parent.as_posix() in dirs


@pytest.mark.parametrize(
    ("filename", "role", "expected"),
    [
        ("app", ArtifactRole.MAIN_EXECUTABLE, "$ORIGIN/lib"),
        ("libfoo.so.1", ArtifactRole.DEPENDENCY, "$ORIGIN"),
        ("libgstfoo.so", ArtifactRole.PLUGIN_LIBRARY, "$ORIGIN/.."),
        ("gst-plugin-scanner", ArtifactRole.HELPER_PROCESS, "$ORIGIN/../lib"),
    ],
)
def test_elf_runpath_values(
    tmp_path: pathlib.Path, linux_profile: PlatformProfile, filename: str, role: ArtifactRole, expected: str
) -> None:
    manifest = _manifest(linux_profile, [(filename, role), ("libbar.so.2", ArtifactRole.DEPENDENCY)], tmp_path)
    entry = manifest.get(filename)
    assert entry is not None
    assert elf_runpath(entry, manifest.dependencies(), linux_profile) == expected


def test_elf_rewriter_sets_runpath(tmp_path: pathlib.Path, linux_profile: PlatformProfile) -> None:
    files = [
        ("app", ArtifactRole.MAIN_EXECUTABLE),
        ("libfoo.so.1", ArtifactRole.DEPENDENCY),
        ("libbar.so.1", ArtifactRole.DEPENDENCY),
        ("libgstfoo.so", ArtifactRole.PLUGIN_LIBRARY),
    ]
    manifest = _manifest(linux_profile, files, tmp_path)
    inspector = GraphInspector(
        {"app": ["libfoo.so.1", "libc.so.6"], "libfoo.so.1": ["libbar.so.1"], "libgstfoo.so": ["libfoo.so.1"]},
        tmp_path,
    )
    runner = RecordingRunner(available={"patchelf"})
    out = tmp_path / "dist"

    rewritten, failed = rewrite_bundle(
        manifest, linux_profile, out, ElfRewriter(linux_profile, inspector, runner), runner
    )

    assert failed == []
    assert len(rewritten) == 4
    assert runner.commands == [
        ["patchelf", "--set-rpath", "$ORIGIN/lib", str(out / "app")],
        ["patchelf", "--set-rpath", "$ORIGIN/..", str(out / "lib" / "gstreamer-1.0" / "libgstfoo.so")],
        ["patchelf", "--set-rpath", "$ORIGIN", str(out / "lib" / "libbar.so.1")],
        ["patchelf", "--set-rpath", "$ORIGIN", str(out / "lib" / "libfoo.so.1")],
    ]


def test_macho_rewriter_changes_references_and_ids(
    tmp_path: pathlib.Path, darwin_profile: PlatformProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    files = ROLES + [("libbar.dylib", ArtifactRole.DEPENDENCY)]
    manifest = _manifest(darwin_profile, files, tmp_path)
    inspector = GraphInspector(
        {
            "app": ["/opt/homebrew/lib/libfoo.1.dylib", "/usr/lib/libSystem.B.dylib"],
            "libfoo.1.dylib": ["@rpath/libbar.dylib", "/opt/homebrew/lib/libfoo.1.dylib"],
            "libgstfoo.so": ["/opt/homebrew/lib/libfoo.1.dylib"],
            "gst-plugin-scanner": ["/opt/homebrew/lib/libfoo.1.dylib"],
        },
        tmp_path,
    )
    ids = {"libfoo.1.dylib": "/opt/homebrew/lib/libfoo.1.dylib", "libbar.dylib": "@rpath/libbar.dylib"}
    monkeypatch.setattr(macho, "install_name", lambda path: ids.get(path.name))
    runner = RecordingRunner(available={"install_name_tool"})
    out = tmp_path / "dist"

    rewriter = create_rewriter(darwin_profile, inspector, runner)
    assert isinstance(rewriter, MachORewriter)
    rewritten, failed = rewrite_bundle(manifest, darwin_profile, out, rewriter, runner)

    assert failed == []
    assert len(rewritten) == 5
    assert runner.commands == [
        [
            "install_name_tool",
            "-change",
            "/opt/homebrew/lib/libfoo.1.dylib",
            "@executable_path/lib/libfoo.1.dylib",
            str(out / "app"),
        ],
        [
            "install_name_tool",
            "-change",
            "/opt/homebrew/lib/libfoo.1.dylib",
            "@loader_path/../libfoo.1.dylib",
            str(out / "lib" / "gstreamer-1.0" / "libgstfoo.so"),
        ],
        ["install_name_tool", "-id", "@loader_path/libbar.dylib", str(out / "lib" / "libbar.dylib")],
        [
            "install_name_tool",
            "-id",
            "@loader_path/libfoo.1.dylib",
            "-change",
            "@rpath/libbar.dylib",
            "@loader_path/libbar.dylib",
            str(out / "lib" / "libfoo.1.dylib"),
        ],
        [
            "install_name_tool",
            "-change",
            "/opt/homebrew/lib/libfoo.1.dylib",
            "@executable_path/../lib/libfoo.1.dylib",
            str(out / "libexec" / "gst-plugin-scanner"),
        ],
    ]


def test_missing_tool_skips_rewriting(
    tmp_path: pathlib.Path, linux_profile: PlatformProfile, caplog: pytest.LogCaptureFixture
) -> None:
    manifest = _manifest(linux_profile, [("app", ArtifactRole.MAIN_EXECUTABLE)], tmp_path)
    runner = RecordingRunner()
    rewriter = ElfRewriter(linux_profile, GraphInspector({}, tmp_path), runner)

    with caplog.at_level(logging.WARNING, logger="native_bundler"):
        result = rewrite_bundle(manifest, linux_profile, tmp_path / "dist", rewriter, runner)

    assert result == ([], [])
    assert runner.commands == []
    assert "patchelf not found" in caplog.text


def test_tool_failures_and_unsupported_files_are_counted(tmp_path: pathlib.Path, linux_profile: PlatformProfile) -> None:
    files = [("app", ArtifactRole.MAIN_EXECUTABLE), ("data.bin", ArtifactRole.DEPENDENCY)]
    manifest = _manifest(linux_profile, files, tmp_path)
    inspector = GraphInspector({}, tmp_path)
    inspector.unsupported.add("data.bin")
    runner = RecordingRunner(available={"patchelf"}, failing={"patchelf"})
    out = tmp_path / "dist"

    rewritten, failed = rewrite_bundle(
        manifest, linux_profile, out, ElfRewriter(linux_profile, inspector, runner), runner
    )

    assert rewritten == []
    assert failed == [out / "app", out / "lib" / "data.bin"]
    assert len(runner.commands) == 1


def test_pe_needs_no_rewriting(tmp_path: pathlib.Path, windows_profile: PlatformProfile) -> None:
    manifest = _manifest(windows_profile, [("app.exe", ArtifactRole.MAIN_EXECUTABLE)], tmp_path)
    runner = RecordingRunner()
    rewriter = create_rewriter(windows_profile, GraphInspector({}, tmp_path), runner)

    assert isinstance(rewriter, NullRewriter)
    assert rewrite_bundle(manifest, windows_profile, tmp_path / "dist", rewriter, runner) == ([], [])
    assert runner.commands == []
