from __future__ import annotations

from typing import Any, Dict


class PeprobeError(Exception):
    """Base class for every error raised while probing a binary."""

    code = "E_PE"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code, "message": self.message}
        d.update(self.extra)
        return d


# Structural errors: always fatal.


class InvalidSignature(PeprobeError):
    code = "E_PE_BAD_SIGNATURE"


class UnsupportedMachine(PeprobeError):
    code = "E_PE_UNSUPPORTED_MACHINE"


class UnexpectedOptionalHeaderMagic(PeprobeError):
    code = "E_PE_OPT_BAD_MAGIC"


class MissingParamsConfiguration(PeprobeError):
    code = "E_PE_MISSING_PARAMS"


# Decode errors: recoverable when raised by a subsystem (imports, resources, ...).


class DecodeError(PeprobeError):
    code = "E_PE_DECODE"


class TruncatedRead(DecodeError):
    code = "E_PE_TRUNCATED"


class MalformedResourceTree(DecodeError):
    code = "E_PE_RSRC_BAD_TREE"


class MalformedVersionInfo(DecodeError):
    code = "E_PE_VI_PARSE_FAILED"


class MalformedManifestXml(DecodeError):
    code = "E_PE_MANIFEST_BAD_XML"


class LimitExceeded(DecodeError):
    code = "E_PE_LIMIT_EXCEEDED"


class SubsystemError(PeprobeError):
    """A recoverable decode error promoted to fatal by strict mode."""

    code = "E_PE_SUBSYSTEM"

    def __init__(self, context: str, cause: DecodeError) -> None:
        super().__init__(f"{context}: {cause.message}", context=context, cause=cause.code)
        self.context = context
        self.cause = cause
