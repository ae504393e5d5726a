from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from peprobe.errors import (
    InvalidSignature,
    TruncatedRead,
    UnexpectedOptionalHeaderMagic,
    UnsupportedMachine,
)
from peprobe.source import ByteSource, SourceLike, as_source

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"

IMAGE_FILE_MACHINE_UNKNOWN = 0x0
IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664

SUPPORTED_MACHINES = (IMAGE_FILE_MACHINE_UNKNOWN, IMAGE_FILE_MACHINE_I386, IMAGE_FILE_MACHINE_AMD64)

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

# Data directory indices
DIR_IMPORT = 1
DIR_RESOURCE = 2

NUM_DATA_DIRECTORIES = 16

DOS_HEADER_PROBE = 96
COFF_HEADER_SIZE = 20
COFF_SYMBOL_SIZE = 18
SECTION_HEADER_SIZE = 40
RELOCATION_SIZE = 10

_COFF_HEADER = struct.Struct("<HHIIIHH")
_COFF_SYMBOL = struct.Struct("<8sIhHBB")
_SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")
_RELOCATION = struct.Struct("<IIH")
_DATA_DIRECTORY = struct.Struct("<II")

# Fixed part (everything before DataDirectory) of each optional header layout.
_OPT32 = struct.Struct("<HBB" + "I" * 9 + "H" * 6 + "I" * 4 + "HH" + "I" * 6)
_OPT64 = struct.Struct("<HBB" + "I" * 5 + "Q" + "II" + "H" * 6 + "I" * 4 + "HH" + "Q" * 4 + "II")

SIZEOF_OPTIONAL_HEADER32 = _OPT32.size + NUM_DATA_DIRECTORIES * _DATA_DIRECTORY.size  # 224
SIZEOF_OPTIONAL_HEADER64 = _OPT64.size + NUM_DATA_DIRECTORIES * _DATA_DIRECTORY.size  # 240

DWARF_SECTIONS = ("abbrev", "info", "line", "ranges", "str")


def _read_c_string(data: bytes, off: int, *, max_len: int = 512) -> str:
    """
    Read a NUL-terminated ASCII string at `off`.
    Raises TruncatedRead if `off` is out of range or no NUL is found within max_len bytes.
    """
    if off < 0 or off >= len(data):
        raise TruncatedRead(f"string offset {off:#x} outside {len(data):#x}-byte buffer", offset=off)
    end = min(len(data), off + max_len + 1)
    nul = data.find(b"\x00", off, end)
    if nul == -1:
        raise TruncatedRead(f"unterminated string at offset {off:#x}", offset=off)
    return data[off:nul].decode("ascii", errors="replace")


def _safe_ascii(b: bytes) -> str:
    return b.split(b"\x00", 1)[0].decode("ascii", errors="replace")


@dataclass(frozen=True)
class FileHeader:
    machine: int
    number_of_sections: int
    time_date_stamp: int
    pointer_to_symbol_table: int
    number_of_symbols: int
    size_of_optional_header: int
    characteristics: int


@dataclass(frozen=True)
class DataDirectory:
    virtual_address: int
    size: int


@dataclass(frozen=True)
class OptionalHeader32:
    magic: int
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    base_of_data: int
    image_base: int
    section_alignment: int
    file_alignment: int
    major_operating_system_version: int
    minor_operating_system_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    check_sum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]


@dataclass(frozen=True)
class OptionalHeader64:
    magic: int
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    image_base: int
    section_alignment: int
    file_alignment: int
    major_operating_system_version: int
    minor_operating_system_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    check_sum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]


OptionalHeader = Union[OptionalHeader32, OptionalHeader64]


@dataclass(frozen=True)
class StringTable:
    """COFF string table contents, without the leading 4-byte length."""

    raw: bytes = b""

    def string(self, start: int) -> str:
        # Offsets are relative to the table start, which includes the length field.
        if start < 4:
            raise TruncatedRead(f"string table offset {start} is inside the length field", offset=start)
        return _read_c_string(self.raw, start - 4, max_len=len(self.raw))


@dataclass(frozen=True)
class COFFSymbol:
    name: bytes
    value: int
    section_number: int
    type: int
    storage_class: int
    number_of_aux_symbols: int

    def full_name(self, st: StringTable) -> str:
        if self.name[:4] == b"\x00\x00\x00\x00":
            return st.string(struct.unpack_from("<I", self.name, 4)[0])
        return _safe_ascii(self.name)


@dataclass(frozen=True)
class Symbol:
    name: str
    value: int
    section_number: int
    type: int
    storage_class: int


@dataclass(frozen=True)
class Relocation:
    virtual_address: int
    symbol_table_index: int
    type: int


@dataclass(frozen=True)
class Section:
    """
    One section header plus a lazy, bounds-checked view of its raw bytes.

    Content lives in [offset, offset + size) of the source. A section whose raw-data
    pointer is zero (.bss style) reads as zero bytes and never touches the source; such
    reads are still capped at the source size.
    """

    name: str
    virtual_size: int
    virtual_address: int
    size: int
    offset: int
    pointer_to_relocations: int
    pointer_to_line_numbers: int
    number_of_relocations: int
    number_of_line_numbers: int
    characteristics: int
    relocations: Tuple[Relocation, ...] = ()
    _source: Optional[ByteSource] = field(default=None, repr=False, compare=False)

    @property
    def zero_filled(self) -> bool:
        return self.offset == 0

    def read_at(self, off: int, size: int) -> bytes:
        if off < 0 or size < 0 or off + size > self.size:
            raise TruncatedRead(
                f"read of {size} bytes at {off:#x} outside section {self.name!r} ({self.size:#x} bytes)",
                section=self.name,
                offset=off,
                size=size,
            )
        if self.zero_filled or self._source is None:
            if self._source is not None and size > self._source.size:
                raise TruncatedRead(
                    f"zero-filled read of {size} bytes from {self.name!r} exceeds source size {self._source.size:#x}",
                    section=self.name,
                    size=size,
                )
            return b"\x00" * size
        return self._source.read_at(self.offset + off, size)

    def data(self) -> bytes:
        return self.read_at(0, self.size)

    def contains_rva_range(self, start: int, end: int) -> bool:
        return self.virtual_address <= start and end <= self.virtual_address + self.virtual_size


@dataclass(frozen=True)
class PEImage:
    file_header: FileHeader
    optional_header: Optional[OptionalHeader]
    sections: Tuple[Section, ...]
    string_table: StringTable
    coff_symbols: Tuple[COFFSymbol, ...]
    symbols: Tuple[Symbol, ...]
    base: int = 0

    @property
    def machine(self) -> int:
        return self.file_header.machine

    @property
    def is_pe32_plus(self) -> bool:
        return isinstance(self.optional_header, OptionalHeader64)

    def data_directory(self, idx: int) -> Optional[DataDirectory]:
        """Return data directory `idx`, or None for object files or out-of-range indices."""
        oh = self.optional_header
        if oh is None or idx >= min(oh.number_of_rva_and_sizes, len(oh.data_directories)):
            return None
        return oh.data_directories[idx]

    def section(self, name: str) -> Optional[Section]:
        for s in self.sections:
            if s.name == name:
                return s
        return None

    def section_for_rva_range(self, start: int, size: int) -> Optional[Section]:
        for s in self.sections:
            if s.contains_rva_range(start, start + size):
                return s
        return None

    def dwarf_sections(self) -> Dict[str, bytes]:
        """
        Raw bytes of the .debug_* sections a DWARF reader needs, keyed by short name.
        No DWARF decoding happens here.
        """
        out: Dict[str, bytes] = {}
        for short in DWARF_SECTIONS:
            s = self.section(".debug_" + short)
            if s is None:
                continue
            b = s.data()
            if 0 < s.virtual_size < s.size:
                b = b[: s.virtual_size]
            out[short] = b

        return out


def _read_file_header(src: ByteSource, base: int) -> FileHeader:
    return FileHeader(*_COFF_HEADER.unpack(src.read_at(base, COFF_HEADER_SIZE)))


def _read_string_table(src: ByteSource, fh: FileHeader) -> StringTable:
    if fh.pointer_to_symbol_table == 0:
        return StringTable()
    off = fh.pointer_to_symbol_table + COFF_SYMBOL_SIZE * fh.number_of_symbols
    (length,) = struct.unpack("<I", src.read_at(off, 4))
    # The length includes the 4-byte field itself.
    if length <= 4:
        return StringTable()
    return StringTable(src.read_at(off + 4, length - 4))


def _read_coff_symbols(src: ByteSource, fh: FileHeader) -> Tuple[COFFSymbol, ...]:
    if fh.pointer_to_symbol_table == 0 or fh.number_of_symbols <= 0:
        return ()
    raw = src.read_at(fh.pointer_to_symbol_table, COFF_SYMBOL_SIZE * fh.number_of_symbols)
    return tuple(COFFSymbol(*rec) for rec in _COFF_SYMBOL.iter_unpack(raw))


def _remove_aux_symbols(all_syms: Tuple[COFFSymbol, ...], st: StringTable) -> Tuple[Symbol, ...]:
    out: List[Symbol] = []
    aux = 0
    for sym in all_syms:
        if aux > 0:
            aux -= 1
            continue
        out.append(Symbol(sym.full_name(st), sym.value, sym.section_number, sym.type, sym.storage_class))
        aux = sym.number_of_aux_symbols
    return tuple(out)


def _data_directories(raw: bytes) -> Tuple[DataDirectory, ...]:
    return tuple(DataDirectory(*dd) for dd in _DATA_DIRECTORY.iter_unpack(raw))


def _read_optional_header(src: ByteSource, off: int, size: int) -> Optional[OptionalHeader]:
    if size == SIZEOF_OPTIONAL_HEADER32:
        raw = src.read_at(off, size)
        oh32 = OptionalHeader32(*_OPT32.unpack_from(raw), _data_directories(raw[_OPT32.size :]))
        if oh32.magic != PE32_MAGIC:
            raise UnexpectedOptionalHeaderMagic(
                f"pe32 optional header has unexpected magic {oh32.magic:#x}", magic=oh32.magic
            )
        return oh32
    if size == SIZEOF_OPTIONAL_HEADER64:
        raw = src.read_at(off, size)
        oh64 = OptionalHeader64(*_OPT64.unpack_from(raw), _data_directories(raw[_OPT64.size :]))
        if oh64.magic != PE32P_MAGIC:
            raise UnexpectedOptionalHeaderMagic(
                f"pe32+ optional header has unexpected magic {oh64.magic:#x}", magic=oh64.magic
            )
        return oh64
    # Any other size: no usable optional header (legal for object files).
    return None


def _section_name(short: bytes, st: StringTable) -> str:
    if not short.startswith(b"/"):
        return _safe_ascii(short)
    digits = _safe_ascii(short[1:])
    try:
        start = int(digits, 10)
    except ValueError:
        raise TruncatedRead(f"section name {short!r} has a non-numeric string table offset")
    return st.string(start)


def _read_relocations(src: ByteSource, pointer: int, count: int) -> Tuple[Relocation, ...]:
    if count <= 0:
        return ()
    raw = src.read_at(pointer, RELOCATION_SIZE * count)
    return tuple(Relocation(*r) for r in _RELOCATION.iter_unpack(raw))


def parse_image(source: SourceLike, *, require_signature: bool = False) -> PEImage:
    """
    Decode the DOS stub, COFF header, optional header, section table, COFF string and
    symbol tables and per-section relocations.

    Without a DOS stub the data is treated as a bare COFF object, unless
    `require_signature` is set, in which case InvalidSignature is raised.
    Any short read raises TruncatedRead; no partial image is returned.
    """
    src = as_source(source)

    dos = src.read_upto(0, DOS_HEADER_PROBE)
    if dos[:2] == IMAGE_DOS_SIGNATURE:
        if len(dos) < 0x40:
            raise TruncatedRead("DOS header truncated; missing e_lfanew.", size=len(dos))
        (e_lfanew,) = struct.unpack_from("<I", dos, 0x3C)
        try:
            sig = src.read_at(e_lfanew, 4)
        except TruncatedRead:
            raise InvalidSignature("e_lfanew points outside file.", e_lfanew=e_lfanew)
        if sig != IMAGE_NT_SIGNATURE:
            raise InvalidSignature(f"Invalid PE COFF file signature of {sig!r}.", e_lfanew=e_lfanew)
        base = e_lfanew + 4
    elif require_signature:
        raise InvalidSignature("Missing MZ DOS signature; not a PE image.")
    else:
        base = 0

    fh = _read_file_header(src, base)
    if fh.machine not in SUPPORTED_MACHINES:
        raise UnsupportedMachine(
            f"Unrecognised COFF file header machine value of {fh.machine:#x}.", machine=fh.machine
        )

    st = _read_string_table(src, fh)
    coff_symbols = _read_coff_symbols(src, fh)
    symbols = _remove_aux_symbols(coff_symbols, st)

    opt_off = base + COFF_HEADER_SIZE
    oh = _read_optional_header(src, opt_off, fh.size_of_optional_header)

    sect_off = opt_off + fh.size_of_optional_header
    raw_headers = src.read_at(sect_off, SECTION_HEADER_SIZE * fh.number_of_sections)

    sections: List[Section] = []
    for rec in _SECTION_HEADER.iter_unpack(raw_headers):
        (short, vsize, va, raw_size, raw_ptr, ptr_relocs, ptr_lines, n_relocs, n_lines, chars) = rec
        sections.append(
            Section(
                name=_section_name(short, st),
                virtual_size=vsize,
                virtual_address=va,
                size=raw_size,
                offset=raw_ptr,
                pointer_to_relocations=ptr_relocs,
                pointer_to_line_numbers=ptr_lines,
                number_of_relocations=n_relocs,
                number_of_line_numbers=n_lines,
                characteristics=chars,
                relocations=_read_relocations(src, ptr_relocs, n_relocs),
                _source=src,
            )
        )

    return PEImage(
        file_header=fh,
        optional_header=oh,
        sections=tuple(sections),
        string_table=st,
        coff_symbols=coff_symbols,
        symbols=symbols,
        base=base,
    )
