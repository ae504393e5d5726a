from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

from peprobe.config import AppConfig
from peprobe.errors import DecodeError, MissingParamsConfiguration, SubsystemError
from peprobe.imports import walk_imports
from peprobe.log import Consumer, logging_consumer
from peprobe.manifest import Manifest, parse_manifest
from peprobe.model import ARCH_386, ARCH_AMD64, PeInfo
from peprobe.pe import IMAGE_FILE_MACHINE_AMD64, IMAGE_FILE_MACHINE_I386, PEImage, parse_image
from peprobe.resources import RT_MANIFEST, RT_VERSION, ResourceTree, parse_resources
from peprobe.source import SourceLike, open_source
from peprobe.versioninfo import decode_version_info

ARCH_BY_MACHINE = {
    IMAGE_FILE_MACHINE_I386: ARCH_386,
    IMAGE_FILE_MACHINE_AMD64: ARCH_AMD64,
}

T = TypeVar("T")


@dataclass(frozen=True)
class ProbeLimits:
    max_name_len: int = 512
    max_import_dlls: int = 256
    max_funcs_per_dll: int = 4096
    max_resource_nodes: int = 2048
    max_resource_depth: int = 8
    max_versioninfo_depth: int = 8
    max_manifest_bytes: int = 1_048_576


@dataclass(frozen=True)
class ProbeParams:
    consumer: Consumer = field(default_factory=logging_consumer)
    # Turn every recoverable decode failure into a fatal error.
    strict: bool = False
    # Also collect `function:library` pairs for named imports.
    resolve_symbols: bool = False
    limits: ProbeLimits = ProbeLimits()


def params_from_config(cfg: AppConfig, consumer: Optional[Consumer] = None) -> ProbeParams:
    lim = cfg.limits
    return ProbeParams(
        consumer=consumer or logging_consumer(),
        strict=cfg.strict,
        resolve_symbols=cfg.resolve_symbols,
        limits=ProbeLimits(
            max_name_len=lim.max_name_len,
            max_import_dlls=lim.max_import_dlls,
            max_funcs_per_dll=lim.max_funcs_per_dll,
            max_resource_nodes=lim.max_resource_nodes,
            max_resource_depth=lim.max_resource_depth,
            max_versioninfo_depth=lim.max_versioninfo_depth,
            max_manifest_bytes=lim.max_manifest_bytes,
        ),
    )


def _recover(params: ProbeParams, context: str, step: Callable[[], T], default: T) -> T:
    """
    Run one recoverable step. Under strict policy a decode error becomes fatal,
    otherwise it is reported as a warning and `default` stands in for the result.
    """
    try:
        return step()
    except DecodeError as e:
        if params.strict:
            raise SubsystemError(context, e) from e
        params.consumer.warn(f"{context}: {e.message}")
        return default


def _imports(image: PEImage, params: ProbeParams) -> Tuple[List[str], List[str]]:
    lim = params.limits
    libs = walk_imports(
        image,
        max_dlls=lim.max_import_dlls,
        max_funcs_per_dll=lim.max_funcs_per_dll,
        max_name_len=lim.max_name_len,
        with_functions=params.resolve_symbols,
    )
    names = [lib.name for lib in libs]
    symbols = [f"{fn}:{lib.name}" for lib in libs for fn in lib.functions]

    params.consumer.info(f"{len(names)} imported libraries")
    ordinals = sum(lib.ordinal_count for lib in libs)
    if ordinals:
        params.consumer.debug(f"{ordinals} imports by ordinal left unresolved")
    return names, symbols


def _version_properties(tree: ResourceTree, params: ProbeParams) -> Dict[str, str]:
    props: Dict[str, str] = {}
    for ref in tree.leaves(RT_VERSION):
        params.consumer.debug(f"version info resource {ref.name} (language {ref.language})")
        vi = decode_version_info(tree.leaf_bytes(ref.leaf), max_depth=params.limits.max_versioninfo_depth)
        props.update(vi.properties)
    return props


def _manifest(tree: ResourceTree, params: ProbeParams) -> Manifest:
    assembly_info = None
    deps = []
    for ref in tree.leaves(RT_MANIFEST):
        params.consumer.debug(f"manifest resource {ref.name} (language {ref.language})")
        m = parse_manifest(tree.leaf_bytes(ref.leaf), max_bytes=params.limits.max_manifest_bytes)
        if m.assembly_info is not None:
            assembly_info = m.assembly_info
        deps.extend(m.dependent_assemblies)
    return Manifest(assembly_info=assembly_info, dependent_assemblies=deps)


def probe(source: SourceLike, params: Optional[ProbeParams]) -> PeInfo:
    """
    Inspect a PE image: architecture, imported libraries, version properties and
    manifest trust metadata.

    Structural failures always raise. Failures in the import, resource, version-info
    and manifest steps raise SubsystemError when `params.strict` is set, and otherwise
    only leave the matching fields empty.
    """
    if params is None:
        raise MissingParamsConfiguration("params must be set")
    consumer = params.consumer

    image = parse_image(source, require_signature=True)
    arch = ARCH_BY_MACHINE.get(image.machine, "")
    consumer.debug(f"machine {image.machine:#x}, {len(image.sections)} sections")

    imports, symbols = _recover(
        params, "while parsing imported libraries", lambda: _imports(image, params), ([], [])
    )

    props: Dict[str, str] = {}
    manifest = Manifest()
    lim = params.limits
    tree = _recover(
        params,
        "while parsing resources",
        lambda: parse_resources(image, max_nodes=lim.max_resource_nodes, max_depth=lim.max_resource_depth),
        None,
    )
    if tree is None:
        consumer.debug("no resources")
    else:
        props = _recover(params, "while parsing version info", lambda: _version_properties(tree, params), {})
        consumer.info(f"{len(props)} version properties")
        manifest = _recover(params, "while parsing manifest", lambda: _manifest(tree, params), Manifest())
        if manifest.assembly_info is not None:
            consumer.info(f"requested execution level: {manifest.assembly_info.requested_execution_level}")
        if manifest.dependent_assemblies:
            consumer.info(f"{len(manifest.dependent_assemblies)} dependent assemblies")

    return PeInfo(
        arch=arch,
        imports=imports,
        imported_symbols=symbols,
        version_properties=props,
        assembly_info=manifest.assembly_info,
        dependent_assemblies=manifest.dependent_assemblies,
    )


def probe_path(path: Union[str, Path], params: Optional[ProbeParams]) -> PeInfo:
    with open_source(path) as src:
        return probe(src, params)
