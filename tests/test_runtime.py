import pathlib

from conftest import stub_files
from native_bundler.profile import PlatformProfile
from native_bundler.runtime import bundled_environment, environment_exports


def test_nested_bundle_environment(tmp_path: pathlib.Path, linux_profile: PlatformProfile) -> None:
    dist = tmp_path / "dist"
    exe = stub_files(dist, ["horizon-streamer"])["horizon-streamer"]
    (dist / "lib" / "gstreamer-1.0").mkdir(parents=True)
    stub_files(dist / "libexec", ["gst-plugin-scanner"])
    root = dist.resolve()

    env = bundled_environment(exe, linux_profile, environ={"LD_LIBRARY_PATH": "/opt/x", "HOME": "/home/u"})

    assert env is not None
    assert env["LD_LIBRARY_PATH"] == f"{root / 'lib'}:/opt/x"
    assert env["GST_PLUGIN_PATH"] == str(root / "lib" / "gstreamer-1.0")
    assert env["GST_PLUGIN_SYSTEM_PATH"] == str(root / "lib" / "gstreamer-1.0")
    assert env["GST_PLUGIN_SCANNER"] == str(root / "libexec" / "gst-plugin-scanner")
    assert env["HOME"] == "/home/u"


def test_not_a_bundle(tmp_path: pathlib.Path, linux_profile: PlatformProfile) -> None:
    exe = stub_files(tmp_path / "bin", ["horizon-streamer"])["horizon-streamer"]
    assert bundled_environment(exe, linux_profile, environ={}) is None


def test_flat_bundle_prepends_path(tmp_path: pathlib.Path, windows_profile: PlatformProfile) -> None:
    dist = tmp_path / "dist"
    exe = stub_files(dist, ["horizon-streamer.exe"])["horizon-streamer.exe"]
    (dist / "lib" / "gstreamer-1.0").mkdir(parents=True)
    root = dist.resolve()

    env = bundled_environment(exe, windows_profile, environ={"PATH": "C:\\Windows"})

    assert env is not None
    assert env["PATH"] == f"{root};C:\\Windows"
    assert "GST_PLUGIN_SCANNER" not in env


def test_exports_only_changed_variables_and_quote() -> None:
    base = {"HOME": "/home/u", "GST_PLUGIN_PATH": "/old"}
    env = {"HOME": "/home/u", "GST_PLUGIN_PATH": "/b/it's", "LD_LIBRARY_PATH": "/b/lib"}
    assert environment_exports(env, base) == [
        "export GST_PLUGIN_PATH='/b/it'\\''s'",
        "export LD_LIBRARY_PATH='/b/lib'",
    ]
