from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000

    # Decoding bounds for untrusted input
    max_name_len: int = 512
    max_import_dlls: int = 256
    max_funcs_per_dll: int = 4096
    max_resource_nodes: int = 2048
    max_resource_depth: int = 8
    max_versioninfo_depth: int = 8
    max_manifest_bytes: int = 1_048_576


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    strict: bool = False
    resolve_symbols: bool = False
    log_level: str = "info"
    limits: Limits = Limits()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
