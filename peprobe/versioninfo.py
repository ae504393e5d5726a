from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from peprobe.errors import LimitExceeded, MalformedVersionInfo, TruncatedRead

VS_VERSION_INFO_KEY = "VS_VERSION_INFO"
STRING_FILE_INFO_KEY = "StringFileInfo"
VAR_FILE_INFO_KEY = "VarFileInfo"
TRANSLATION_KEY = "Translation"

VS_FFI_SIGNATURE = 0xFEEF04BD

RECORD_HEADER_SIZE = 6  # wLength, wValueLength, wType

_FIXED_FILE_INFO = struct.Struct("<13I")


def _align4(x: int) -> int:
    return (x + 3) & ~3


def _read_utf16le_zstring(data: bytes, off: int, end: int) -> Tuple[str, int]:
    """
    Read a UTF-16LE NUL-terminated string in [off, end).
    Returns (string_without_null, offset_just_past_the_null).
    """
    i = off
    while i + 1 < end:
        if data[i] == 0 and data[i + 1] == 0:
            return data[off:i].decode("utf-16le", errors="replace"), i + 2
        i += 2
    raise TruncatedRead("Unterminated VersionInfo key.", offset=off)


def _utf16_value(raw: bytes) -> str:
    raw = raw[: len(raw) & ~1]
    return raw.decode("utf-16le", errors="replace").split("\x00", 1)[0]


@dataclass(frozen=True)
class VersionRecord:
    """One `(wLength, wValueLength, wType, key, value, children)` node."""

    length: int
    value_length: int
    type: int
    key: str
    value: bytes
    children: Tuple["VersionRecord", ...] = ()


@dataclass(frozen=True)
class FixedFileInfo:
    signature: int
    struc_version: int
    file_version_ms: int
    file_version_ls: int
    product_version_ms: int
    product_version_ls: int
    file_flags_mask: int
    file_flags: int
    file_os: int
    file_type: int
    file_subtype: int
    file_date_ms: int
    file_date_ls: int

    @staticmethod
    def _quad(ms: int, ls: int) -> str:
        return f"{ms >> 16}.{ms & 0xFFFF}.{ls >> 16}.{ls & 0xFFFF}"

    @property
    def file_version(self) -> str:
        return self._quad(self.file_version_ms, self.file_version_ls)

    @property
    def product_version(self) -> str:
        return self._quad(self.product_version_ms, self.product_version_ls)


@dataclass(frozen=True)
class VersionInfo:
    fixed: Optional[FixedFileInfo]
    # (language/codepage id, strings) in document order; ids may repeat.
    string_tables: List[Tuple[str, Dict[str, str]]] = field(default_factory=list)
    translations: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def properties(self) -> Dict[str, str]:
        """All string tables flattened into one map; later tables win on duplicate keys."""
        out: Dict[str, str] = {}
        for _, table in self.string_tables:
            out.update(table)
        return out


def _read_record(vs: bytes, off: int, limit: int, depth: int, max_depth: int) -> Tuple[VersionRecord, int]:
    """Read the record at `off`; it must end at or before `limit` (its parent's end)."""
    if depth > max_depth:
        raise LimitExceeded(f"VersionInfo nesting deeper than max_depth={max_depth}.", depth=depth)
    if off + RECORD_HEADER_SIZE > limit:
        raise TruncatedRead("VersionInfo record header truncated.", offset=off)

    wlen, wvlen, wtype = struct.unpack_from("<HHH", vs, off)
    if wlen < RECORD_HEADER_SIZE:
        raise MalformedVersionInfo(f"VersionInfo record length {wlen} is too small.", offset=off)
    end = off + wlen
    if end > limit:
        raise TruncatedRead(
            "VersionInfo record runs past the end of its parent.", offset=off, length=wlen, available=limit - off
        )

    key, header_end = _read_utf16le_zstring(vs, off + RECORD_HEADER_SIZE, end)

    # Text values count WCHARs, binary values count bytes.
    val_off = min(_align4(header_end), end)
    value_bytes = wvlen * 2 if wtype == 1 else wvlen
    val_end = val_off + value_bytes
    if val_end > end:
        if wtype != 1:
            raise TruncatedRead("VersionInfo binary value runs past its record.", key=key, offset=off)
        # Some linkers count text values in bytes; keep what the record holds.
        val_end = end
    value = vs[val_off:val_end]

    children: List[VersionRecord] = []
    cur = _align4(val_end)
    while cur + RECORD_HEADER_SIZE <= end:
        (child_len,) = struct.unpack_from("<H", vs, cur)
        if child_len == 0:
            # zero padding between records
            cur += 4
            continue
        child, child_end = _read_record(vs, cur, end, depth + 1, max_depth)
        children.append(child)
        cur = _align4(child_end)

    return VersionRecord(wlen, wvlen, wtype, key, value, tuple(children)), end


def read_version_tree(vs: bytes, *, max_depth: int = 8) -> VersionRecord:
    root, _ = _read_record(vs, 0, len(vs), 0, max_depth)
    if root.key != VS_VERSION_INFO_KEY:
        raise MalformedVersionInfo("Root key is not VS_VERSION_INFO.", root_key=root.key)
    return root


def _fixed_file_info(value: bytes) -> Optional[FixedFileInfo]:
    if len(value) < _FIXED_FILE_INFO.size:
        return None
    ffi = FixedFileInfo(*_FIXED_FILE_INFO.unpack_from(value))
    if ffi.signature != VS_FFI_SIGNATURE:
        return None
    return ffi


def decode_version_info(vs: bytes, *, max_depth: int = 8) -> VersionInfo:
    """
    Decode a VS_VERSIONINFO resource.

    Strings from every StringTable under StringFileInfo are collected per table, in
    document order, with the 8-hex-digit language/codepage id. VarFileInfo/Translation
    is decoded into (language, codepage) pairs. Other blocks are skipped.
    """
    root = read_version_tree(vs, max_depth=max_depth)

    tables: List[Tuple[str, Dict[str, str]]] = []
    translations: List[Tuple[int, int]] = []
    for block in root.children:
        if block.key == STRING_FILE_INFO_KEY:
            for st in block.children:
                tables.append((st.key, {s.key: _utf16_value(s.value) for s in st.children}))
        elif block.key == VAR_FILE_INFO_KEY:
            for var in block.children:
                if var.key != TRANSLATION_KEY:
                    continue
                raw = var.value[: len(var.value) & ~3]
                translations.extend(struct.iter_unpack("<HH", raw))

    return VersionInfo(fixed=_fixed_file_info(root.value), string_tables=tables, translations=translations)


def version_properties(vs: bytes, *, max_depth: int = 8) -> Dict[str, str]:
    return decode_version_info(vs, max_depth=max_depth).properties
