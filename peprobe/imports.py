from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

from peprobe.errors import LimitExceeded, TruncatedRead
from peprobe.pe import DIR_IMPORT, IMAGE_FILE_MACHINE_AMD64, PEImage, _read_c_string

IMPORT_DESCRIPTOR_SIZE = 20

ORDINAL_FLAG32 = 0x80000000
ORDINAL_FLAG64 = 0x8000000000000000


@dataclass(frozen=True)
class ImportDescriptor:
    original_first_thunk: int
    time_date_stamp: int
    forwarder_chain: int
    name: int
    first_thunk: int


@dataclass(frozen=True)
class ImportedLibrary:
    name: str
    functions: Tuple[str, ...]
    ordinal_count: int


def _import_slice(image: PEImage) -> Optional[Tuple[bytes, int]]:
    """
    Bytes of the section holding the import directory, starting at the directory itself,
    plus the directory RVA. None when the image has no import directory or no section
    fully contains it.
    """
    dd = image.data_directory(DIR_IMPORT)
    if dd is None or dd.virtual_address == 0:
        return None
    ds = image.section_for_rva_range(dd.virtual_address, dd.size)
    if ds is None:
        return None
    start = dd.virtual_address - ds.virtual_address
    if start > ds.size:
        raise TruncatedRead(
            f"import directory at RVA {dd.virtual_address:#x} lies past the raw data of {ds.name!r}",
            import_rva=dd.virtual_address,
        )
    return ds.read_at(start, ds.size - start), dd.virtual_address


def _descriptors(block: bytes, *, max_dlls: int) -> List[ImportDescriptor]:
    out: List[ImportDescriptor] = []
    off = 0
    while off < len(block):
        if off + IMPORT_DESCRIPTOR_SIZE > len(block):
            raise TruncatedRead("Import descriptor table truncated.", desc_off=off)
        dt = ImportDescriptor(*struct.unpack_from("<IIIII", block, off))
        off += IMPORT_DESCRIPTOR_SIZE
        if dt.original_first_thunk == 0:
            break
        if len(out) >= max_dlls:
            raise LimitExceeded(f"Import DLL count exceeded max_dlls={max_dlls}.", max_dlls=max_dlls)
        out.append(dt)
    return out


def walk_imports(
    image: PEImage,
    *,
    max_dlls: int = 256,
    max_funcs_per_dll: int = 4096,
    max_name_len: int = 512,
    with_functions: bool = True,
) -> List[ImportedLibrary]:
    """
    Walk the import descriptors and their original-first-thunk arrays.

    Names are resolved relative to the import directory inside the containing section.
    Ordinal imports are counted but not resolved. With `with_functions=False` only the
    DLL names are read and the thunk arrays are left alone.
    """
    found = _import_slice(image)
    if found is None:
        return []
    block, dir_rva = found

    pe64 = image.machine == IMAGE_FILE_MACHINE_AMD64
    entry_size = 8 if pe64 else 4
    ordinal_flag = ORDINAL_FLAG64 if pe64 else ORDINAL_FLAG32
    fmt = "<Q" if pe64 else "<I"

    libs: List[ImportedLibrary] = []
    for dt in _descriptors(block, max_dlls=max_dlls):
        dll = _read_c_string(block, dt.name - dir_rva, max_len=max_name_len)
        if not with_functions:
            libs.append(ImportedLibrary(name=dll, functions=(), ordinal_count=0))
            continue

        thunk_off = dt.original_first_thunk - dir_rva
        if thunk_off < 0 or thunk_off >= len(block):
            raise TruncatedRead(
                "Import thunk RVA outside the import section.",
                dll=dll,
                thunk_rva=dt.original_first_thunk,
            )

        funcs: List[str] = []
        ordinals = 0
        for idx in range(max_funcs_per_dll + 1):
            ent_off = thunk_off + idx * entry_size
            if ent_off >= len(block):
                break
            if ent_off + entry_size > len(block):
                raise TruncatedRead("Import thunk table truncated.", dll=dll, thunk_off=thunk_off)
            (val,) = struct.unpack_from(fmt, block, ent_off)
            if val == 0:
                break
            if idx == max_funcs_per_dll:
                raise LimitExceeded(
                    f"Import function count for {dll} exceeded max_funcs_per_dll={max_funcs_per_dll}.",
                    dll=dll,
                )
            if val & ordinal_flag:
                ordinals += 1
                continue

            # IMAGE_IMPORT_BY_NAME: 2-byte hint, then the name
            ibn_rva = val & 0xFFFFFFFF
            funcs.append(_read_c_string(block, ibn_rva - dir_rva + 2, max_len=max_name_len))

        libs.append(ImportedLibrary(name=dll, functions=tuple(funcs), ordinal_count=ordinals))

    return libs


def imported_libraries(image: PEImage, **limits: int) -> List[str]:
    """Names of all DLLs the image expects to be linked with at load time."""
    return [lib.name for lib in walk_imports(image, with_functions=False, **limits)]


def imported_symbols(image: PEImage, **limits: int) -> List[str]:
    """`function:library` for every import resolved by name; ordinals are skipped."""
    return [f"{fn}:{lib.name}" for lib in walk_imports(image, **limits) for fn in lib.functions]
