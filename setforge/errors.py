"""Exception hierarchy shared by the patch engine and the generation pipeline.

Every fault raised by setforge derives from :class:`SetforgeError` and carries
an ``error_code`` so log lines and CLI messages can be grepped by category.
:class:`CancellationError` sits outside that hierarchy: a user
cancelling a job is not a fault and must never be caught by a generic
``except SetforgeError`` handler or retried.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

# Download errors
DL_NETWORK_ERROR = "DL_001"
DL_TIMEOUT = "DL_002"
DL_INVALID_URL = "DL_003"
DL_FILE_NOT_FOUND = "DL_004"
DL_EXTRACT_FAILED = "DL_007"

# Package tool errors
VPK_EXTRACT_FAILED = "VPK_002"
VPK_FILE_NOT_FOUND = "VPK_004"
VPK_TOOL_NOT_FOUND = "VPK_006"
VPK_ITEMS_GAME_MISSING = "VPK_008"

# Patch errors
PATCH_BLOCK_NOT_FOUND = "PATCH_003"
PATCH_VALIDATION_FAILED = "PATCH_006"
PATCH_WRITE_FAILED = "PATCH_007"

# Generation errors
GEN_FAILED = "GEN_001"
GEN_INVALID_JOB = "GEN_002"
GEN_INDEX_NOT_FOUND = "GEN_007"


class SetforgeError(RuntimeError):
    """Base class for every fault raised by setforge."""

    default_code = GEN_FAILED

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        self.error_code = error_code or self.default_code
        self.detail = message
        super().__init__(f"[{self.error_code}] {message}")


class ValidationError(SetforgeError):
    """Raised when a job or command is given unusable input."""

    default_code = GEN_INVALID_JOB


class NotFoundError(SetforgeError):
    """Raised when an expected entry, manifest or file is absent."""

    default_code = PATCH_BLOCK_NOT_FOUND


class StructuralMismatchError(SetforgeError):
    """Raised when a replacement block is not compatible with the block it replaces."""

    default_code = PATCH_VALIDATION_FAILED

    def __init__(self, entry_id: str, reason: str) -> None:
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"entry {entry_id} rejected: {reason}")


class NetworkError(SetforgeError):
    """Raised once every mirror for an asset has been exhausted."""

    default_code = DL_NETWORK_ERROR

    def __init__(
        self,
        message: str,
        failures: Sequence[Tuple[str, BaseException]] = (),
        *,
        error_code: str | None = None,
    ) -> None:
        self.failures: List[Tuple[str, BaseException]] = list(failures)
        super().__init__(message, error_code=error_code)

    @property
    def last_cause(self) -> BaseException | None:
        return self.failures[-1][1] if self.failures else None


class ExtractionError(SetforgeError):
    """Raised when an archive is corrupt or the extraction tool fails."""

    default_code = DL_EXTRACT_FAILED


class PatchWriteError(SetforgeError):
    """Raised when the patched target file could not be written."""

    default_code = PATCH_WRITE_FAILED


class CancellationError(Exception):
    """Raised at a suspension point once cancellation has been requested."""
