from __future__ import annotations

import codecs
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from peprobe.errors import LimitExceeded, MalformedManifestXml
from peprobe.model import AssemblyInfo, DependentAssembly


@dataclass(frozen=True)
class Manifest:
    assembly_info: Optional[AssemblyInfo] = None
    dependent_assemblies: List[DependentAssembly] = field(default_factory=list)


def _local(tag: str) -> str:
    # Strip namespaces for tag matching
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _children(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in elem:
        if isinstance(child.tag, str) and _local(child.tag) == name:
            yield child


def _first(elem: Optional[ET.Element], *path: str) -> Optional[ET.Element]:
    for name in path:
        if elem is None:
            return None
        elem = next(_children(elem, name), None)
    return elem


def decode_manifest_text(raw: bytes) -> str:
    """Manifest resources are UTF-8 (BOM optional); a UTF-16 BOM is honoured too."""
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        text = raw.decode("utf-16", errors="replace").rstrip("\x00").strip()
        # The text is handed to the parser already decoded, so its encoding
        # declaration no longer applies.
        if text.startswith("<?xml") and "?>" in text:
            text = text.split("?>", 1)[1]
    else:
        text = raw.decode("utf-8-sig", errors="replace")
    # Resource data is often padded with NULs up to the section alignment.
    return text.rstrip("\x00").strip()


def parse_manifest(raw: bytes, *, max_bytes: int = 1_048_576) -> Manifest:
    """
    Extract trust and side-by-side metadata from an application manifest.

    `assembly/trustInfo/security/requestedPrivileges/requestedExecutionLevel@level` fills
    AssemblyInfo (left unset when there is no trustInfo); every
    `assembly/dependency/dependentAssembly/assemblyIdentity` becomes a DependentAssembly,
    in document order.
    """
    if len(raw) > max_bytes:
        raise LimitExceeded(f"Manifest size exceeds max_manifest_bytes={max_bytes}.", size=len(raw))

    text = decode_manifest_text(raw)
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise MalformedManifestXml(f"Manifest is not well-formed XML: {e}") from e

    assembly_info = None
    trust = _first(root, "trustInfo")
    if trust is not None:
        rel = _first(trust, "security", "requestedPrivileges", "requestedExecutionLevel")
        level = rel.get("level", "") if rel is not None else ""
        assembly_info = AssemblyInfo(requested_execution_level=level)

    deps: List[DependentAssembly] = []
    for dep in _children(root, "dependency"):
        for da in _children(dep, "dependentAssembly"):
            for ident in _children(da, "assemblyIdentity"):
                deps.append(
                    DependentAssembly(
                        name=ident.get("name", ""),
                        language=ident.get("language", ""),
                        processor_architecture=ident.get("processorArchitecture", ""),
                        public_key_token=ident.get("publicKeyToken", ""),
                    )
                )

    return Manifest(assembly_info=assembly_info, dependent_assemblies=deps)
