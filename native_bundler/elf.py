"""ELF dynamic-section reader and dependency inspector.

Only the dynamic segment is read: the ``DT_NEEDED`` list, the ``DT_SONAME``, and
the ``DT_RPATH``/``DT_RUNPATH`` search directories. Both ELF classes and both
byte orders are supported.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
import pathlib
import struct

from native_bundler.errors import UnsupportedArtifact
from native_bundler.model import DependencyReference
from native_bundler.process import ToolRunner

ELF_MAGIC: bytes = b"\x7fELF"

_PT_LOAD: int = 1
_PT_DYNAMIC: int = 2

_DT_NULL: int = 0
_DT_NEEDED: int = 1
_DT_STRTAB: int = 5
_DT_STRSZ: int = 10
_DT_SONAME: int = 14
_DT_RPATH: int = 15
_DT_RUNPATH: int = 29

DEFAULT_LIBRARY_DIRS: tuple[str, ...] = (
    "/lib",
    "/usr/lib",
    "/lib64",
    "/usr/lib64",
    "/lib/x86_64-linux-gnu",
    "/usr/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
    "/usr/local/lib",
)


@dataclass(frozen=True, slots=True)
class ElfDynamicInfo:
    """Dynamic-linking metadata of one ELF file.

    :ivar elf_class: ``1`` for 32-bit, ``2`` for 64-bit.
    :ivar byte_order: ``1`` for little-endian, ``2`` for big-endian.
    :ivar machine: ``e_machine`` architecture code.
    :ivar soname: ``DT_SONAME`` if present.
    :ivar needed: ``DT_NEEDED`` entries in file order.
    :ivar rpath: ``DT_RPATH`` directories.
    :ivar runpath: ``DT_RUNPATH`` directories.
    """

    elf_class: int
    byte_order: int
    machine: int
    soname: str | None
    needed: tuple[str, ...]
    rpath: tuple[str, ...]
    runpath: tuple[str, ...]


def read_dynamic_info(data: bytes) -> ElfDynamicInfo | None:
    """Extract dynamic-linking metadata from ELF bytes.

    :param data: ELF file bytes.
    :returns: The metadata, or ``None`` if ``data`` is not an ELF file. Statically
        linked files yield an info with no ``needed`` entries.
    """

    if len(data) < 52:
        return None
    if data[0:4] != ELF_MAGIC:
        return None

    ei_class: int = data[4]
    ei_data: int = data[5]
    if ei_class not in (1, 2) or ei_data not in (1, 2):
        return None

    bo: str = "<" if ei_data == 1 else ">"
    is64: bool = ei_class == 2
    if is64 is True and len(data) < 64:
        return None

    word: str = "Q" if is64 is True else "I"
    sword: str = "q" if is64 is True else "i"
    word_size: int = 8 if is64 is True else 4

    try:
        e_machine: int = struct.unpack_from(bo + "H", data, 18)[0]
        if is64 is True:
            e_phoff: int = struct.unpack_from(bo + "Q", data, 32)[0]
            e_phentsize: int = struct.unpack_from(bo + "H", data, 54)[0]
            e_phnum: int = struct.unpack_from(bo + "H", data, 56)[0]
        else:
            e_phoff = struct.unpack_from(bo + "I", data, 28)[0]
            e_phentsize = struct.unpack_from(bo + "H", data, 42)[0]
            e_phnum = struct.unpack_from(bo + "H", data, 44)[0]
    except struct.error:
        return None

    empty: ElfDynamicInfo = ElfDynamicInfo(
        elf_class=ei_class,
        byte_order=ei_data,
        machine=e_machine,
        soname=None,
        needed=(),
        rpath=(),
        runpath=(),
    )

    load_segs: list[tuple[int, int, int]] = []
    dyn_off: int | None = None
    dyn_size: int | None = None

    i: int = 0
    while i < e_phnum:
        ph_base: int = e_phoff + i * e_phentsize
        try:
            p_type: int = struct.unpack_from(bo + "I", data, ph_base)[0]
            if is64 is True:
                p_offset: int = struct.unpack_from(bo + "Q", data, ph_base + 8)[0]
                p_vaddr: int = struct.unpack_from(bo + "Q", data, ph_base + 16)[0]
                p_filesz: int = struct.unpack_from(bo + "Q", data, ph_base + 32)[0]
            else:
                p_offset = struct.unpack_from(bo + "I", data, ph_base + 4)[0]
                p_vaddr = struct.unpack_from(bo + "I", data, ph_base + 8)[0]
                p_filesz = struct.unpack_from(bo + "I", data, ph_base + 16)[0]
        except struct.error:
            break

        if p_type == _PT_LOAD:
            load_segs.append((p_vaddr, p_filesz, p_offset))
        elif p_type == _PT_DYNAMIC:
            dyn_off = p_offset
            dyn_size = p_filesz

        i += 1

    if dyn_off is None or dyn_size is None:
        return empty

    dt_strtab: int | None = None
    dt_strsz: int | None = None
    soname_off: int | None = None
    rpath_off: int | None = None
    runpath_off: int | None = None
    needed_offs: list[int] = []

    entry_size: int = 2 * word_size
    dyn_end: int = dyn_off + dyn_size
    pos: int = dyn_off
    while pos + entry_size <= dyn_end:
        try:
            d_tag: int = struct.unpack_from(bo + sword, data, pos)[0]
            d_val: int = struct.unpack_from(bo + word, data, pos + word_size)[0]
        except struct.error:
            break

        if d_tag == _DT_NULL:
            break
        if d_tag == _DT_NEEDED:
            needed_offs.append(int(d_val))
        elif d_tag == _DT_STRTAB:
            dt_strtab = int(d_val)
        elif d_tag == _DT_STRSZ:
            dt_strsz = int(d_val)
        elif d_tag == _DT_SONAME:
            soname_off = int(d_val)
        elif d_tag == _DT_RPATH:
            rpath_off = int(d_val)
        elif d_tag == _DT_RUNPATH:
            runpath_off = int(d_val)

        pos += entry_size

    if dt_strtab is None or dt_strsz is None:
        return empty

    # DT_STRTAB holds a virtual address; map it back to a file offset.
    strtab_off: int | None = None
    for vaddr, filesz, off0 in load_segs:
        if dt_strtab >= vaddr and dt_strtab < vaddr + filesz:
            strtab_off = off0 + (dt_strtab - vaddr)
            break

    if strtab_off is None or strtab_off < 0:
        return empty

    strtab_end: int = min(strtab_off + dt_strsz, len(data))
    strtab: bytes = data[strtab_off:strtab_end]

    def read_cstr(off: int) -> str:
        if off < 0 or off >= len(strtab):
            return ""
        end: int = strtab.find(b"\x00", off)
        if end < 0:
            end = len(strtab)
        return strtab[off:end].decode("utf-8", errors="replace")

    def read_path_list(off: int | None) -> tuple[str, ...]:
        if off is None:
            return ()
        return tuple(p for p in read_cstr(off).split(":") if len(p) > 0)

    soname: str | None = None
    if soname_off is not None:
        s: str = read_cstr(soname_off)
        if len(s) > 0:
            soname = s

    needed: list[str] = []
    for off_needed in needed_offs:
        s2: str = read_cstr(off_needed)
        if len(s2) > 0:
            needed.append(s2)

    return ElfDynamicInfo(
        elf_class=ei_class,
        byte_order=ei_data,
        machine=e_machine,
        soname=soname,
        needed=tuple(needed),
        rpath=read_path_list(rpath_off),
        runpath=read_path_list(runpath_off),
    )


def parse_ldconfig_cache(output: str) -> dict[str, list[str]]:
    """Parse ``ldconfig -p`` output.

    :param output: Tool stdout.
    :returns: Library name to candidate paths, in cache order.
    """

    cache: dict[str, list[str]] = {}
    for line in output.splitlines():
        if "=>" not in line:
            continue
        left, right = line.split("=>", 1)
        parts: list[str] = left.split()
        if len(parts) == 0:
            continue
        cache.setdefault(parts[0], []).append(right.strip())
    return cache


def _expand_origin(directory: str, origin: pathlib.Path) -> str:
    return directory.replace("${ORIGIN}", str(origin)).replace("$ORIGIN", str(origin))


class ElfInspector:
    """Native Inspector backend for ELF binaries.

    :param search_dirs: Extra directories searched after the binary's own
        search paths (typically the native installation's library directory).
    :param runner: Runs ``ldconfig`` for the loader cache.
    :param environ: Environment used for ``LD_LIBRARY_PATH``.
    :param default_dirs: Trusted system directories searched last.
    """

    def __init__(
        self,
        *,
        search_dirs: tuple[pathlib.Path, ...] = (),
        runner: ToolRunner | None = None,
        environ: Mapping[str, str] | None = None,
        default_dirs: tuple[str, ...] = DEFAULT_LIBRARY_DIRS,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("native_bundler")
        self._logger: logging.Logger = logger
        self._search_dirs: tuple[pathlib.Path, ...] = search_dirs
        self._runner: ToolRunner = runner if runner is not None else ToolRunner(logger)
        self._environ: Mapping[str, str] = environ if environ is not None else os.environ
        self._default_dirs: tuple[str, ...] = default_dirs
        self._infos: dict[pathlib.Path, ElfDynamicInfo] = {}
        self._ld_cache: dict[str, list[str]] | None = None

    def info(self, path: pathlib.Path) -> ElfDynamicInfo:
        """Read (and memoize) the dynamic metadata of a file.

        :param path: File to read.
        :returns: Dynamic metadata.
        :raises UnsupportedArtifact: If the file is not ELF.
        """

        cached: ElfDynamicInfo | None = self._infos.get(path)
        if cached is not None:
            return cached

        try:
            data: bytes = path.read_bytes()
        except OSError as e:
            raise UnsupportedArtifact(f"Cannot read {path}: {e}") from e

        info: ElfDynamicInfo | None = read_dynamic_info(data)
        if info is None:
            raise UnsupportedArtifact(f"Not an ELF file: {path}")
        self._infos[path] = info
        return info

    def list_dependencies(self, path: pathlib.Path) -> list[DependencyReference]:
        info: ElfDynamicInfo = self.info(path)
        return [DependencyReference(owner=path, name=name) for name in info.needed]

    def locate(self, reference: DependencyReference) -> pathlib.Path | None:
        """Find the file the dynamic loader would bind ``reference`` to.

        :param reference: Reference declared by an ELF file.
        :returns: Existing path (not yet symlink-resolved), or ``None``.
        """

        if "/" in reference.name:
            candidate: pathlib.Path = pathlib.Path(reference.name)
            if candidate.is_absolute() is False:
                candidate = reference.owner.parent / candidate
            return candidate if candidate.is_file() is True else None

        owner_info: ElfDynamicInfo = self.info(reference.owner)
        origin: pathlib.Path = reference.owner.resolve().parent

        dirs: list[str] = []
        if len(owner_info.runpath) == 0:
            dirs.extend(_expand_origin(d, origin) for d in owner_info.rpath)
        dirs.extend(d for d in self._environ.get("LD_LIBRARY_PATH", "").split(":") if len(d) > 0)
        dirs.extend(_expand_origin(d, origin) for d in owner_info.runpath)
        dirs.extend(str(d) for d in self._search_dirs)

        for directory in dirs:
            found: pathlib.Path | None = self._candidate(pathlib.Path(directory) / reference.name, owner_info)
            if found is not None:
                return found

        for cached_path in self._ldconfig_cache().get(reference.name, []):
            found = self._candidate(pathlib.Path(cached_path), owner_info)
            if found is not None:
                return found

        for directory in self._default_dirs:
            found = self._candidate(pathlib.Path(directory) / reference.name, owner_info)
            if found is not None:
                return found

        return None

    def _candidate(self, path: pathlib.Path, owner_info: ElfDynamicInfo) -> pathlib.Path | None:
        """Accept ``path`` only if it is ELF for the owner's class, byte order and machine."""

        if path.is_file() is False:
            return None
        try:
            with open(path, "rb") as f:
                header: bytes = f.read(20)
        except OSError:
            return None
        if len(header) < 20 or header[0:4] != ELF_MAGIC:
            return None
        if header[4] != owner_info.elf_class or header[5] != owner_info.byte_order:
            return None
        bo: str = "<" if header[5] == 1 else ">"
        if struct.unpack_from(bo + "H", header, 18)[0] != owner_info.machine:
            return None
        return path

    def _ldconfig_cache(self) -> dict[str, list[str]]:
        if self._ld_cache is not None:
            return self._ld_cache

        self._ld_cache = {}
        for tool in ("ldconfig", "/sbin/ldconfig"):
            if self._runner.available(tool) is False:
                continue
            result = self._runner.run([tool, "-p"])
            if result.ok is True:
                self._ld_cache = parse_ldconfig_cache(result.stdout)
                break
            self._logger.debug(f"native-bundler: {result.diagnostic}")
        return self._ld_cache
