import pathlib
import types

import pytest

from conftest import stub_files
import native_bundler.cli as cli
from native_bundler.errors import BundleError, MissingSeedArtifact, NoNativeLibraryInstallation
from native_bundler.profile import PlatformResolutionError


def test_build_missing_executable_exits_2(tmp_path: pathlib.Path) -> None:
    code = cli.main(["build", str(tmp_path / "nope"), "-o", str(tmp_path / "dist"), "--platform", "linux"])
    assert code == 2


def test_unknown_platform_has_its_own_exit_code(tmp_path: pathlib.Path) -> None:
    code = cli.main(["env", str(tmp_path), "--platform", "plan9"])
    assert code == PlatformResolutionError.exit_code
    assert code not in (MissingSeedArtifact.exit_code, BundleError.exit_code)


def test_build_passes_options(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    def fake_build(**kwargs: object) -> None:
        calls.append(kwargs)

    monkeypatch.setattr(cli, "build_bundle", fake_build)

    code = cli.main(["build", "-o", str(tmp_path / "out"), "--max-rounds", "4", "--platform", "linux", "-q"])

    assert code == 0
    (kwargs,) = calls
    assert kwargs["executable"] == pathlib.Path("target/release/horizon-streamer")
    assert kwargs["output_root"] == tmp_path / "out"
    assert kwargs["max_rounds"] == 4
    assert kwargs["sign_identity"] == "-"
    assert kwargs["native_root"] is None


def test_build_error_maps_to_exit_code(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_build(**kwargs: object) -> None:
        raise NoNativeLibraryInstallation("Cannot find GStreamer libraries")

    monkeypatch.setattr(cli, "build_bundle", fake_build)
    assert cli.main(["build", str(tmp_path / "app"), "--platform", "linux"]) == 3


def _linux_bundle(root: pathlib.Path) -> pathlib.Path:
    stub_files(root, ["horizon-streamer"])
    (root / "lib" / "gstreamer-1.0").mkdir(parents=True)
    return root


def test_env_prints_exports(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    dist = _linux_bundle(tmp_path / "dist")

    assert cli.main(["env", str(dist), "--platform", "linux"]) == 0

    out = capsys.readouterr().out
    assert f"export GST_PLUGIN_PATH='{dist.resolve() / 'lib' / 'gstreamer-1.0'}'" in out
    assert "export LD_LIBRARY_PATH=" in out


def test_env_rejects_non_bundle(tmp_path: pathlib.Path) -> None:
    assert cli.main(["env", str(tmp_path), "--platform", "linux"]) == 1


def test_run_launches_bundled_executable(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dist = _linux_bundle(tmp_path / "dist")
    seen: list[tuple[list[str], dict[str, str]]] = []

    def fake_run(cmd: list[str], env: dict[str, str], check: bool) -> types.SimpleNamespace:
        seen.append((cmd, env))
        return types.SimpleNamespace(returncode=7)

    monkeypatch.setattr(cli.subprocess, "run", fake_run)

    code = cli.main(["run", "--platform", "linux", str(dist), "--", "--uri", "file:///a.mp4"])

    assert code == 7
    ((cmd, env),) = seen
    assert cmd == [str(dist / "horizon-streamer"), "--uri", "file:///a.mp4"]
    assert env["GST_PLUGIN_PATH"] == str(dist.resolve() / "lib" / "gstreamer-1.0")
