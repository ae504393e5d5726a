import json

from peprobe.errors import SubsystemError, TruncatedRead
from peprobe.model import AssemblyInfo, DependentAssembly, PeInfo


def test_pe_info_defaults():
    info = PeInfo()
    assert info.arch == ""
    assert info.imports == []
    assert info.version_properties == {}
    assert info.assembly_info is None
    assert info.requires_elevation() is False


def test_pe_info_round_trip_validation():
    """A dumped PeInfo can be re-validated from its camelCase JSON."""
    info = PeInfo(
        arch="amd64",
        imports=["KERNEL32.dll"],
        version_properties={"CompanyName": "itch corp."},
        assembly_info=AssemblyInfo(requested_execution_level="asInvoker"),
        dependent_assemblies=[DependentAssembly(name="Microsoft.VC90.CRT", processor_architecture="amd64")],
    )
    raw = json.dumps(info.to_json_dict())
    again = PeInfo.model_validate_json(raw)
    assert again == info
    assert again.dependent_assemblies[0].processor_architecture == "amd64"


def test_subsystem_error_to_dict():
    cause = TruncatedRead("Resource directory out of bounds.", offset=16)
    err = SubsystemError("while parsing resources", cause)
    assert str(err) == "while parsing resources: Resource directory out of bounds."
    assert err.to_dict() == {
        "code": "E_PE_SUBSYSTEM",
        "message": "while parsing resources: Resource directory out of bounds.",
        "context": "while parsing resources",
        "cause": "E_PE_TRUNCATED",
    }
