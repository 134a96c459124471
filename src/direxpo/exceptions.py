from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from direxpo.config import SkippedFile


@dataclass(frozen=True)
class DirexpoError(Exception):
    """Base exception for errors in the direxpo package."""

    message: str = "Unexpected export error."
    status_code: ClassVar[int] = 500

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        """Render the error as the JSON body returned to API callers."""
        return {"error": self.message}


@dataclass(frozen=True)
class InvalidRequestError(DirexpoError):
    """Raised when the request body is missing or malformed."""

    status_code: ClassVar[int] = 400


@dataclass(frozen=True)
class NotFoundError(DirexpoError):
    """Raised when a requested export document does not exist."""

    message: str = "File not found"
    status_code: ClassVar[int] = 404


@dataclass(frozen=True)
class TargetPathError(DirexpoError):
    """Raised when the target path is missing, not a directory or inaccessible."""

    target_path: str = ""
    status_code: ClassVar[int] = 400


@dataclass(frozen=True)
class EmptySelectionError(DirexpoError):
    """Raised when a selection payload resolves to zero exportable files."""

    message: str = "No valid files selected"
    skipped: tuple[SkippedFile, ...] = field(default_factory=tuple)
    status_code: ClassVar[int] = 400

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "skipped": [s.model_dump(by_alias=True) for s in self.skipped],
        }


@dataclass(frozen=True)
class NoFilesMatchedError(DirexpoError):
    """Raised when discovery finds nothing to export."""

    message: str = (
        "No files matched the current filters. Try changing the File Type filter, "
        "adjusting the exclude list, or selecting files manually."
    )
    status_code: ClassVar[int] = 400


@dataclass(frozen=True)
class ExportCancelledError(DirexpoError):
    """Raised when an export is cancelled between two files."""

    message: str = "Export cancelled"
    status_code: ClassVar[int] = 499


@dataclass(frozen=True)
class FileReadError(DirexpoError):
    """Raised when a source file cannot be read while it is being exported."""

    rel_path: str = ""


@dataclass(frozen=True)
class FolderReadError(DirexpoError):
    """Raised when a directory listed for the picker cannot be read."""

    rel_path: str = ""
