from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional, Set, Tuple, Union

from peprobe.errors import LimitExceeded, MalformedResourceTree, TruncatedRead
from peprobe.pe import DIR_RESOURCE, PEImage, Section

# Resource type IDs (subset)
RT_VERSION = 16
RT_MANIFEST = 24

RESOURCE_DIRECTORY_SIZE = 16
RESOURCE_ENTRY_SIZE = 8

HIGH_BIT = 0x80000000


@dataclass(frozen=True)
class ResourceLeaf:
    data_rva: int
    size: int
    codepage: int


@dataclass(frozen=True)
class ResourceDirectory:
    characteristics: int
    time_date_stamp: int
    major_version: int
    minor_version: int
    entries: Tuple["ResourceEntry", ...]


@dataclass(frozen=True)
class ResourceEntry:
    """An entry is keyed by a name string or a numeric ID, never both."""

    id: Optional[int]
    name: Optional[str]
    child: Union[ResourceDirectory, ResourceLeaf]

    @property
    def is_directory(self) -> bool:
        return isinstance(self.child, ResourceDirectory)

    def key(self) -> Union[int, str]:
        return self.id if self.id is not None else (self.name or "")


@dataclass(frozen=True)
class ResourceRef:
    """A leaf reached through the type / name / language levels."""

    type: Union[int, str]
    name: Union[int, str]
    language: Union[int, str]
    leaf: ResourceLeaf


class _TreeReader:
    def __init__(self, data: bytes, root: int, *, max_nodes: int, max_depth: int) -> None:
        self.data = data
        self.root = root
        self.max_nodes = max_nodes
        self.max_depth = max_depth
        self.nodes = 0
        self.seen: Set[int] = set()

    def _u(self, fmt: str, rel: int, what: str) -> Tuple[int, ...]:
        off = self.root + rel
        if off < 0 or off + struct.calcsize(fmt) > len(self.data):
            raise TruncatedRead(f"Resource {what} out of bounds.", offset=rel)
        return struct.unpack_from(fmt, self.data, off)

    def name_string(self, rel: int) -> str:
        # IMAGE_RESOURCE_DIR_STRING_U: u16 length in characters, then UTF-16LE text
        (n,) = self._u("<H", rel, "name")
        raw_off = self.root + rel + 2
        if raw_off + n * 2 > len(self.data):
            raise TruncatedRead("Resource name string truncated.", offset=rel)
        return self.data[raw_off : raw_off + n * 2].decode("utf-16le", errors="replace")

    def directory(self, rel: int, depth: int) -> ResourceDirectory:
        if depth > self.max_depth:
            raise LimitExceeded(f"Resource tree deeper than max_depth={self.max_depth}.", depth=depth)
        if rel in self.seen:
            raise MalformedResourceTree("Resource directory visited twice (loop).", dir_rel=rel)
        self.seen.add(rel)

        chars, stamp, major, minor, n_named, n_id = self._u("<IIHHHH", rel, "directory")
        entries: List[ResourceEntry] = []
        for i in range(n_named + n_id):
            self.nodes += 1
            if self.nodes > self.max_nodes:
                raise LimitExceeded(f"Resource nodes exceeded max_nodes={self.max_nodes}.", max_nodes=self.max_nodes)

            name_or_id, off_to = self._u(
                "<II", rel + RESOURCE_DIRECTORY_SIZE + i * RESOURCE_ENTRY_SIZE, "directory entry"
            )
            if name_or_id & HIGH_BIT:
                rid, name = None, self.name_string(name_or_id & 0x7FFFFFFF)
            else:
                rid, name = name_or_id, None

            target = off_to & 0x7FFFFFFF
            child: Union[ResourceDirectory, ResourceLeaf]
            if off_to & HIGH_BIT:
                child = self.directory(target, depth + 1)
            else:
                data_rva, size, codepage, _reserved = self._u("<IIII", target, "data entry")
                child = ResourceLeaf(data_rva=data_rva, size=size, codepage=codepage)
            entries.append(ResourceEntry(id=rid, name=name, child=child))

        return ResourceDirectory(chars, stamp, major, minor, tuple(entries))


@dataclass(frozen=True)
class ResourceTree:
    """Parsed resource directory plus the section bytes its leaves point into."""

    root: ResourceDirectory
    section_va: int
    data: bytes

    def leaf_bytes(self, leaf: ResourceLeaf) -> bytes:
        off = leaf.data_rva - self.section_va
        if off < 0 or off + leaf.size > len(self.data):
            raise TruncatedRead(
                "Resource data extends beyond the resource section.",
                data_rva=leaf.data_rva,
                data_size=leaf.size,
            )
        return self.data[off : off + leaf.size]

    def find_type(self, type_id: Union[int, str]) -> Optional[ResourceDirectory]:
        for ent in self.root.entries:
            if ent.key() == type_id:
                if not isinstance(ent.child, ResourceDirectory):
                    raise MalformedResourceTree("Resource type entry is not a directory.", type=type_id)
                return ent.child
        return None

    def leaves(self, type_id: Union[int, str]) -> Iterator[ResourceRef]:
        """
        Yield every leaf under `type_id` in directory order, walking the name and
        language levels. A type absent from the tree yields nothing.
        """
        type_dir = self.find_type(type_id)
        if type_dir is None:
            return
        for name_ent in type_dir.entries:
            if not isinstance(name_ent.child, ResourceDirectory):
                raise MalformedResourceTree("Resource name entry is not a directory.", type=type_id)
            for lang_ent in name_ent.child.entries:
                if not isinstance(lang_ent.child, ResourceLeaf):
                    raise MalformedResourceTree(
                        "Language entry unexpectedly points to a directory.", type=type_id
                    )
                yield ResourceRef(type_id, name_ent.key(), lang_ent.key(), lang_ent.child)


def resource_section(image: PEImage) -> Optional[Tuple[Section, int]]:
    """
    The section holding the resource tree and the tree root's offset inside it.
    `.rsrc` is preferred; otherwise the section containing data directory 2 is used.
    """
    s = image.section(".rsrc")
    if s is not None:
        return s, 0
    dd = image.data_directory(DIR_RESOURCE)
    if dd is None or dd.virtual_address == 0:
        return None
    s = image.section_for_rva_range(dd.virtual_address, dd.size)
    if s is None:
        return None
    return s, dd.virtual_address - s.virtual_address


def parse_resources(
    image: PEImage,
    *,
    max_nodes: int = 2048,
    max_depth: int = 8,
) -> Optional[ResourceTree]:
    """Parse the resource tree, or return None when the image carries no resources."""
    found = resource_section(image)
    if found is None:
        return None
    section, root = found
    data = section.data()
    if root + RESOURCE_DIRECTORY_SIZE > len(data):
        raise TruncatedRead("Resource directory truncated.", resource_off=root)
    reader = _TreeReader(data, root, max_nodes=max_nodes, max_depth=max_depth)
    return ResourceTree(root=reader.directory(0, 0), section_va=section.virtual_address, data=data)
