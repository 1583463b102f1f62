"""Error definitions for MCP tools.

This module defines structured error types with stable codes
that can be surfaced to MCP clients. The codes are the same ones
the core exceptions carry in their ``code`` attribute.
"""

from dataclasses import dataclass
from typing import Any

VALIDATION_ERROR = "validation"
BUILD_NOT_FOUND = "build_not_found"
NOT_FOUND = "not_found"
RETRY_NOT_ALLOWED = "retry_not_allowed"
EXTERNAL_API_ERROR = "external_api_error"
INTERNAL_ERROR = "internal_error"


@dataclass
class MCPError:
    """Structured error response for MCP tools.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        details: Optional additional error details.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


def make_error(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> MCPError:
    """Create an MCPError instance.

    Args:
        code: Stable error code.
        message: Human-readable message.
        details: Optional additional details.

    Returns:
        MCPError instance.
    """
    return MCPError(code=code, message=message, details=details)


def validation_error(message: str, details: dict[str, Any] | None = None) -> MCPError:
    """Create a validation error."""
    return make_error(VALIDATION_ERROR, message, details)


def build_not_found(build_id: int) -> MCPError:
    """Create a build not found error."""
    return make_error(
        BUILD_NOT_FOUND,
        f"Build not found: {build_id}",
        details={"build_id": build_id},
    )


def from_exception(error: Exception) -> MCPError:
    """Wrap a core exception, keeping its code when it has one."""
    return make_error(getattr(error, "code", INTERNAL_ERROR), str(error))


__all__ = [
    "BUILD_NOT_FOUND",
    "EXTERNAL_API_ERROR",
    "INTERNAL_ERROR",
    "MCPError",
    "NOT_FOUND",
    "RETRY_NOT_ALLOWED",
    "VALIDATION_ERROR",
    "build_not_found",
    "from_exception",
    "make_error",
    "validation_error",
]
