"""
Application error hierarchy.

Every handler raises one of these; the app renders them as
``{"success": false, "message": ..., **details}`` with the class status code.

    GracelogError (base)
    ├── ValidationError      → 400
    ├── DuplicateError       → 400
    ├── NotFoundError        → 404
    ├── ServiceUnavailable   → 503
    └── InternalError        → 500
"""
from typing import Any, Dict, List, Optional


class GracelogError(Exception):
    status_code = 500

    def __init__(self, message: str = "An unexpected error occurred", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **self.details}


class ValidationError(GracelogError):
    """Client input is missing or invalid."""

    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        missing_fields: Optional[List[str]] = None,
        errors: Optional[List[str]] = None,
    ):
        details: Dict[str, Any] = {}
        if missing_fields:
            details["missingFields"] = list(missing_fields)
        if errors:
            details["errors"] = list(errors)
        super().__init__(message, details)
        self.missing_fields = list(missing_fields or [])
        self.errors = list(errors or [])


class DuplicateError(GracelogError):
    status_code = 400


class NotFoundError(GracelogError):
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} with ID '{resource_id}' was not found")


class ServiceUnavailable(GracelogError):
    """The document store is not connected."""

    status_code = 503

    def __init__(self, message: str = "Database connection lost. Please try again in a moment."):
        super().__init__(message, {"error": "MongoDB not connected"})


class InternalError(GracelogError):
    """
    Anything unexpected. ``detail`` carries the underlying error text and is
    only rendered when the service runs in development mode.
    """

    status_code = 500

    def __init__(self, message: str = "Internal server error", detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail

    def to_response(self, expose_detail: bool = False) -> Dict[str, Any]:
        body = super().to_response()
        if expose_detail and self.detail:
            body["error"] = self.detail
        return body
