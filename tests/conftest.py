from collections.abc import Iterator
import dataclasses
import logging
import pathlib
import struct

import pytest

from native_bundler.errors import UnsupportedArtifact
from native_bundler.model import DependencyReference
from native_bundler.process import ToolResult, ToolRunner
from native_bundler.profile import PlatformProfile, PluginSelection, resolve_platform_profile


def make_elf(
    needed: list[str],
    *,
    soname: str | None = None,
    rpath: str | None = None,
    runpath: str | None = None,
    elf_class: int = 2,
    little_endian: bool = True,
    machine: int = 62,
) -> bytes:
    """Build a minimal ELF image with a PT_LOAD and a PT_DYNAMIC segment."""

    is64: bool = elf_class == 2
    bo: str = "<" if little_endian is True else ">"
    ehsize: int = 64 if is64 is True else 52
    phentsize: int = 56 if is64 is True else 32
    word_size: int = 8 if is64 is True else 4
    entsize: int = 2 * word_size

    strtab: bytearray = bytearray(b"\x00")
    offsets: dict[str, int] = {}
    for s in [*needed, soname, rpath, runpath]:
        if s is None or s in offsets:
            continue
        offsets[s] = len(strtab)
        strtab += s.encode("utf-8") + b"\x00"

    strtab_off: int = ehsize + 2 * phentsize
    dyn_off: int = (strtab_off + len(strtab) + 7) & ~7

    entries: list[tuple[int, int]] = [(1, offsets[n]) for n in needed]
    if soname is not None:
        entries.append((14, offsets[soname]))
    if rpath is not None:
        entries.append((15, offsets[rpath]))
    if runpath is not None:
        entries.append((29, offsets[runpath]))
    entries.append((5, strtab_off))
    entries.append((10, len(strtab)))
    entries.append((0, 0))

    total: int = dyn_off + len(entries) * entsize
    data: bytearray = bytearray(total)
    data[0:4] = b"\x7fELF"
    data[4] = elf_class
    data[5] = 1 if little_endian is True else 2
    data[6] = 1
    struct.pack_into(bo + "H", data, 18, machine)

    if is64 is True:
        struct.pack_into(bo + "Q", data, 32, ehsize)
        struct.pack_into(bo + "H", data, 54, phentsize)
        struct.pack_into(bo + "H", data, 56, 2)
        struct.pack_into(bo + "IIQQQQQQ", data, ehsize, 1, 5, 0, 0, 0, total, total, 0x1000)
        struct.pack_into(
            bo + "IIQQQQQQ",
            data,
            ehsize + phentsize,
            2,
            6,
            dyn_off,
            dyn_off,
            dyn_off,
            len(entries) * entsize,
            len(entries) * entsize,
            8,
        )
    else:
        struct.pack_into(bo + "I", data, 28, ehsize)
        struct.pack_into(bo + "H", data, 42, phentsize)
        struct.pack_into(bo + "H", data, 44, 2)
        struct.pack_into(bo + "IIIIIIII", data, ehsize, 1, 0, 0, 0, total, total, 5, 0x1000)
        struct.pack_into(
            bo + "IIIIIIII",
            data,
            ehsize + phentsize,
            2,
            dyn_off,
            dyn_off,
            dyn_off,
            len(entries) * entsize,
            len(entries) * entsize,
            6,
            4,
        )

    data[strtab_off : strtab_off + len(strtab)] = strtab

    fmt: str = bo + ("qQ" if is64 is True else "iI")
    for i, (tag, val) in enumerate(entries):
        struct.pack_into(fmt, data, dyn_off + i * entsize, tag, val)

    return bytes(data)


def write_elf(path: pathlib.Path, needed: list[str], **kwargs: object) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(make_elf(needed, **kwargs))  # type: ignore[arg-type]
    return path


class GraphInspector:
    """Inspector over a synthetic dependency graph of stub files.

    :param graph: File name to the names it references.
    :param lib_dir: Directory holding the stub files.
    """

    def __init__(self, graph: dict[str, list[str]], lib_dir: pathlib.Path) -> None:
        self.graph: dict[str, list[str]] = graph
        self.lib_dir: pathlib.Path = lib_dir
        self.calls: list[pathlib.Path] = []
        self.unsupported: set[str] = set()

    def list_dependencies(self, path: pathlib.Path) -> list[DependencyReference]:
        self.calls.append(path)
        if path.name in self.unsupported:
            raise UnsupportedArtifact(f"not a binary: {path}")
        return [DependencyReference(owner=path, name=n) for n in self.graph.get(path.name, [])]

    def locate(self, reference: DependencyReference) -> pathlib.Path | None:
        candidate: pathlib.Path = self.lib_dir / reference.filename
        if candidate.exists() is True:
            return candidate
        return None


class RecordingRunner(ToolRunner):
    """Tool runner that records commands instead of running them."""

    def __init__(self, *, available: set[str] | None = None, failing: set[str] | None = None) -> None:
        super().__init__()
        self.tools: set[str] = available if available is not None else set()
        self.failing: set[str] = failing if failing is not None else set()
        self.commands: list[list[str]] = []

    def available(self, tool: str) -> bool:
        return tool in self.tools

    def run(self, cmd: list[str]) -> ToolResult:
        self.commands.append(list(cmd))
        if cmd[0] in self.failing:
            return ToolResult(command=tuple(cmd), returncode=1, stdout="", stderr="boom")
        return ToolResult(command=tuple(cmd), returncode=0, stdout="", stderr="")


def stub_files(lib_dir: pathlib.Path, names: list[str]) -> dict[str, pathlib.Path]:
    lib_dir.mkdir(parents=True, exist_ok=True)
    paths: dict[str, pathlib.Path] = {}
    for name in names:
        p: pathlib.Path = lib_dir / name
        p.write_bytes(f"stub:{name}".encode("utf-8"))
        paths[name] = p
    return paths


@pytest.fixture
def linux_profile() -> PlatformProfile:
    profile: PlatformProfile = resolve_platform_profile(system="linux", machine="x86_64")
    return dataclasses.replace(profile, plugins=PluginSelection(required=("libgstfoo",), optional=("libgstopt",)))


@pytest.fixture
def darwin_profile() -> PlatformProfile:
    profile: PlatformProfile = resolve_platform_profile(system="darwin", machine="arm64")
    return dataclasses.replace(profile, plugins=PluginSelection(required=("libgstfoo",)))


@pytest.fixture
def windows_profile() -> PlatformProfile:
    profile: PlatformProfile = resolve_platform_profile(system="windows", machine="AMD64")
    return dataclasses.replace(profile, plugins=PluginSelection(required=("libgstfoo",)))


@pytest.fixture(autouse=True)
def _restore_logger() -> Iterator[None]:
    """Undo CLI logging setup so ``caplog`` keeps seeing records."""

    logger = logging.getLogger("native_bundler")
    level: int = logger.level
    yield
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(level)
