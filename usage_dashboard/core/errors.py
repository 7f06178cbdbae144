"""
Error codes surfaced to report consumers.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Stable codes for failures that leave a report empty."""
    PROJECTS_DIR_NOT_FOUND = "PROJECTS_DIR_NOT_FOUND"
    PROJECTS_DIR_UNREADABLE = "PROJECTS_DIR_UNREADABLE"
    PROJECT_PROCESSING_ERROR = "PROJECT_PROCESSING_ERROR"
    INVALID_QUERY = "INVALID_QUERY"


@dataclass(frozen=True)
class ReportError:
    """Explicit error attached to an empty result."""
    code: ErrorCode
    message: str

    def to_dict(self):
        return {"code": self.code.value, "message": self.message}
