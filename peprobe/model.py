from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ARCH_386 = "386"
ARCH_AMD64 = "amd64"

# Execution levels that make Windows show a UAC prompt.
# "highestAvailable" only elevates when the invoking user is an administrator;
# it is still reported as requiring elevation, matching installer expectations.
ELEVATED_EXECUTION_LEVELS = ("requireAdministrator", "highestAvailable")


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class AssemblyInfo(_Model):
    requested_execution_level: str = ""


class DependentAssembly(_Model):
    name: str = ""
    language: str = ""
    processor_architecture: str = ""
    public_key_token: str = ""


class PeInfo(_Model):
    arch: str = ""
    imports: List[str] = Field(default_factory=list)
    imported_symbols: List[str] = Field(default_factory=list)
    version_properties: Dict[str, str] = Field(default_factory=dict)
    assembly_info: Optional[AssemblyInfo] = None
    dependent_assemblies: List[DependentAssembly] = Field(default_factory=list)

    def requires_elevation(self) -> bool:
        if self.assembly_info is None:
            return False
        return self.assembly_info.requested_execution_level in ELEVATED_EXECUTION_LEVELS

    def to_json_dict(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True)
