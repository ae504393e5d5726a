"""Builders for synthetic PE images used across the test modules."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

I386 = 0x14C
AMD64 = 0x8664

FILE_ALIGN = 0x200


def _align(x: int, a: int) -> int:
    return (x + a - 1) & ~(a - 1)


def _pad(b: bytes, a: int) -> bytes:
    return b + b"\x00" * (_align(len(b), a) - len(b))


@dataclass
class Sec:
    name: bytes
    va: int
    data: bytes = b""
    vsize: Optional[int] = None
    raw_size: Optional[int] = None
    bss: bool = False
    relocs: Sequence[Tuple[int, int, int]] = ()
    characteristics: int = 0x40000040


def build_pe(
    *,
    machine: int = I386,
    sections: Sequence[Sec] = (),
    directories: Optional[Dict[int, Tuple[int, int]]] = None,
    opt_size: Optional[int] = None,
    magic: Optional[int] = None,
    symbols: bytes = b"",
    nsymbols: int = 0,
    strings: bytes = b"",
    with_dos_stub: bool = True,
    e_lfanew: int = 0x80,
) -> bytes:
    pe64 = machine == AMD64
    if opt_size is None:
        opt_size = 0xF0 if pe64 else 0xE0

    head = e_lfanew + 4 if with_dos_stub else 0
    header_len = head + 20 + opt_size + 40 * len(sections)
    cur = _align(header_len, FILE_ALIGN)

    raws: List[bytes] = []
    ptrs: List[int] = []
    for s in sections:
        raw = b"" if s.bss else _pad(s.data, FILE_ALIGN)
        raws.append(raw)
        ptrs.append(0 if s.bss else cur)
        cur += len(raw)

    reloc_ptrs: List[int] = []
    reloc_blobs: List[bytes] = []
    for s in sections:
        blob = b"".join(struct.pack("<IIH", *r) for r in s.relocs)
        reloc_ptrs.append(cur if blob else 0)
        reloc_blobs.append(blob)
        cur += len(blob)

    sym_ptr = cur if (symbols or strings) else 0

    out = bytearray()
    if with_dos_stub:
        dos = bytearray(b"MZ" + b"\x00" * 58)
        dos += struct.pack("<I", e_lfanew)
        dos += b"\x00" * (e_lfanew - len(dos))
        out += dos
        out += b"PE\x00\x00"

    out += struct.pack("<HHIIIHH", machine, len(sections), 0x5F3759DF, sym_ptr, nsymbols, opt_size, 0x0102)

    opt = bytearray(opt_size)
    if opt_size in (0xE0, 0xF0):
        is64 = opt_size == 0xF0
        struct.pack_into("<H", opt, 0x00, magic if magic is not None else (0x20B if is64 else 0x10B))
        struct.pack_into("<I", opt, 0x10, 0x1000)  # AddressOfEntryPoint
        if is64:
            struct.pack_into("<Q", opt, 0x18, 0x140000000)
        else:
            struct.pack_into("<I", opt, 0x1C, 0x400000)
        struct.pack_into("<H", opt, 0x44, 2)  # Subsystem
        num_rva_off, dd_off = (0x6C, 0x70) if is64 else (0x5C, 0x60)
        struct.pack_into("<I", opt, num_rva_off, 16)
        for idx, (rva, size) in (directories or {}).items():
            struct.pack_into("<II", opt, dd_off + idx * 8, rva, size)
    out += opt

    for s, raw, ptr, rptr in zip(sections, raws, ptrs, reloc_ptrs):
        raw_size = s.raw_size if s.raw_size is not None else len(raw)
        vsize = s.vsize if s.vsize is not None else max(len(s.data), raw_size)
        out += struct.pack(
            "<8sIIIIIIHHI",
            s.name,
            vsize,
            s.va,
            raw_size,
            ptr,
            rptr,
            0,
            len(s.relocs),
            0,
            s.characteristics,
        )

    out += b"\x00" * (_align(header_len, FILE_ALIGN) - len(out))
    for raw in raws:
        out += raw
    for blob in reloc_blobs:
        out += blob
    if sym_ptr:
        out += symbols
        out += struct.pack("<I", len(strings) + 4) + strings
    return bytes(out)


def build_import_section(
    va: int,
    dlls: Sequence[Tuple[str, Sequence[Union[str, int]]]],
    *,
    pe64: bool = False,
) -> Tuple[bytes, int]:
    """
    Import directory at the start of a section at `va`; functions given as int are
    imported by ordinal. Returns (section bytes, directory size).
    """
    width = 8 if pe64 else 4
    flag = 0x8000000000000000 if pe64 else 0x80000000
    fmt = "<Q" if pe64 else "<I"

    dir_size = (len(dlls) + 1) * 20
    buf = bytearray(dir_size)

    thunk_offs = []
    for _, funcs in dlls:
        thunk_offs.append(len(buf))
        buf += b"\x00" * ((len(funcs) + 1) * width)

    for i, ((dll, funcs), thunk_off) in enumerate(zip(dlls, thunk_offs)):
        name_off = len(buf)
        buf += dll.encode("ascii") + b"\x00"
        for j, fn in enumerate(funcs):
            if isinstance(fn, int):
                val = flag | fn
            else:
                if len(buf) % 2:
                    buf += b"\x00"
                hn_off = len(buf)
                buf += struct.pack("<H", j) + fn.encode("ascii") + b"\x00"
                val = va + hn_off
            struct.pack_into(fmt, buf, thunk_off + j * width, val)
        struct.pack_into("<IIIII", buf, i * 20, va + thunk_off, 0, 0, va + name_off, va + thunk_off)

    return bytes(buf), dir_size


def build_rsrc_section(va: int, resources: Sequence[Tuple[Union[int, str], Union[int, str], int, bytes]]) -> bytes:
    """`.rsrc` contents for (type, name, language, data) leaves; str keys become named entries."""
    tree: Dict = {}
    for t, n, lang, data in resources:
        tree.setdefault(t, {}).setdefault(n, {})[lang] = data

    out = bytearray()
    pending: List[Tuple[int, bytes]] = []
    names: List[Tuple[int, str]] = []

    def alloc(size: int) -> int:
        off = len(out)
        out.extend(b"\x00" * size)
        return off

    def directory(count: int) -> int:
        off = alloc(16 + 8 * count)
        struct.pack_into("<HH", out, off + 12, 0, count)
        return off

    def entry(dir_off: int, idx: int, key: Union[int, str], target: int) -> None:
        ent = dir_off + 16 + 8 * idx
        if isinstance(key, str):
            names.append((ent, key))
            key = 0
        struct.pack_into("<II", out, ent, key, target)

    root = directory(len(tree))
    for i, (t, by_name) in enumerate(tree.items()):
        tdir = directory(len(by_name))
        entry(root, i, t, 0x80000000 | tdir)
        for j, (n, by_lang) in enumerate(by_name.items()):
            ndir = directory(len(by_lang))
            entry(tdir, j, n, 0x80000000 | ndir)
            for k, (lang, data) in enumerate(by_lang.items()):
                de = alloc(16)
                entry(ndir, k, lang, de)
                pending.append((de, data))

    for ent, name in names:
        off = len(out)
        out += struct.pack("<H", len(name)) + name.encode("utf-16le")
        struct.pack_into("<I", out, ent, 0x80000000 | off)

    for de, data in pending:
        while len(out) % 8:
            out.append(0)
        doff = alloc(len(data))
        out[doff : doff + len(data)] = data
        struct.pack_into("<III", out, de, va + doff, len(data), 0)

    return bytes(out)


def _u16z(s: str) -> bytes:
    return s.encode("utf-16le") + b"\x00\x00"


def _align4(b: bytes) -> bytes:
    return b + b"\x00" * ((-len(b)) & 3)


def vs_block(key: str, value: bytes, children: Sequence[bytes] = (), *, wtype: int = 1, gap: int = 0) -> bytes:
    """
    One VersionInfo record. Text values (wtype=1) declare their length in WCHARs.
    `gap` inserts that many extra zero dwords between children.
    """
    wvlen = len(value) // 2 if wtype == 1 else len(value)
    body = struct.pack("<HHH", 0, wvlen, wtype) + _u16z(key)
    body = _align4(body)
    body += value
    body = _align4(body)
    for child in children:
        body += child
        body = _align4(body)
        body += b"\x00" * (4 * gap)
    return struct.pack("<H", len(body)) + body[2:]


def fixed_file_info(file_version=(3, 14, 0, 0), product_version=(6, 28, 0, 0)) -> bytes:
    fv, pv = file_version, product_version
    return struct.pack(
        "<13I",
        0xFEEF04BD,
        0x00010000,
        (fv[0] << 16) | fv[1],
        (fv[2] << 16) | fv[3],
        (pv[0] << 16) | pv[1],
        (pv[2] << 16) | pv[3],
        0x3F,
        0,
        0x40004,
        1,
        0,
        0,
        0,
    )


def build_versioninfo(
    strings: Dict[str, str],
    *,
    table: str = "040904B0",
    with_fixed: bool = True,
    gap: int = 0,
    extra_tables: Sequence[Tuple[str, Dict[str, str]]] = (),
) -> bytes:
    def string_table(key: str, kv: Dict[str, str]) -> bytes:
        return vs_block(key, b"", [vs_block(k, _u16z(v)) for k, v in kv.items()], gap=gap)

    tables = [string_table(table, strings)] + [string_table(k, kv) for k, kv in extra_tables]
    sfi = vs_block("StringFileInfo", b"", tables, gap=gap)
    var = vs_block("VarFileInfo", b"", [vs_block("Translation", struct.pack("<HH", 0x409, 1200), wtype=0)])
    ffi = fixed_file_info() if with_fixed else b""
    return vs_block("VS_VERSION_INFO", ffi, [sfi, var], wtype=0, gap=gap)


MANIFEST_TEMPLATE = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<assembly xmlns="urn:schemas-microsoft-com:asm.v1" manifestVersion="1.0">
  <assemblyIdentity version="1.0.0.0" processorArchitecture="X86" name="itch.test" type="win32"/>
{trust}{deps}</assembly>
"""

TRUST_TEMPLATE = """  <trustInfo xmlns="urn:schemas-microsoft-com:asm.v3">
    <security>
      <requestedPrivileges>
        <requestedExecutionLevel level="{level}" uiAccess="false"/>
      </requestedPrivileges>
    </security>
  </trustInfo>
"""

COMMON_CONTROLS = """  <dependency>
    <dependentAssembly>
      <assemblyIdentity type="win32" name="Microsoft.Windows.Common-Controls" version="6.0.0.0" processorArchitecture="*" publicKeyToken="6595b64144ccf1df" language="*"/>
    </dependentAssembly>
  </dependency>
"""


def build_manifest(level: Optional[str] = "asInvoker", deps: str = COMMON_CONTROLS) -> bytes:
    trust = TRUST_TEMPLATE.format(level=level) if level is not None else ""
    return MANIFEST_TEMPLATE.format(trust=trust, deps=deps).encode("utf-8")


RSRC_VA = 0x3000
IDATA_VA = 0x2000


def build_probe_pe(
    *,
    machine: int = I386,
    imports: Sequence[Tuple[str, Sequence[Union[str, int]]]] = (("KERNEL32.dll", ("ExitProcess",)),),
    version: Optional[bytes] = None,
    manifest: Optional[bytes] = None,
    rsrc: Optional[bytes] = None,
) -> bytes:
    """A complete image with .text, .idata and (optionally) .rsrc sections."""
    pe64 = machine == AMD64
    sections = [Sec(b".text\x00\x00\x00", 0x1000, b"\xc3" * 0x10, characteristics=0x60000020)]
    directories: Dict[int, Tuple[int, int]] = {}

    if imports:
        idata, dir_size = build_import_section(IDATA_VA, imports, pe64=pe64)
        sections.append(Sec(b".idata\x00\x00", IDATA_VA, idata))
        directories[1] = (IDATA_VA, dir_size)

    leaves = []
    if version is not None:
        leaves.append((16, 1, 1033, version))
    if manifest is not None:
        leaves.append((24, 1, 1033, manifest))
    if rsrc is None and leaves:
        rsrc = build_rsrc_section(RSRC_VA, leaves)
    if rsrc is not None:
        sections.append(Sec(b".rsrc\x00\x00\x00", RSRC_VA, rsrc))
        directories[2] = (RSRC_VA, len(rsrc))

    return build_pe(machine=machine, sections=sections, directories=directories)
