"""Exception hierarchy shared by the scanner components."""

from __future__ import annotations

from typing import Any, Dict


class ImgScanError(Exception):
    """Base error carrying a machine-readable code and an HTTP-like status."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(ImgScanError):
    """Malformed input the caller can correct."""

    code = "VALIDATION_ERROR"
    status = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ImgScanError):
    code = "NOT_FOUND"
    status = 404

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class FetchTimeoutError(ImgScanError):
    """A fetch, render or download exceeded its time bound."""

    code = "TIMEOUT"
    status = 408

    def __init__(self, message: str = "Operation timed out") -> None:
        super().__init__(message)


class ExternalServiceError(ImgScanError):
    """The target was unreachable, blocked us, or returned unusable content."""

    code = "EXTERNAL_SERVICE_ERROR"
    status = 502

    def __init__(self, message: str, service: str = "external") -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class FetchExhaustedError(ExternalServiceError):
    """Every fetch strategy, fallback included, has failed."""

    def __init__(self, message: str = "all fetch strategies failed") -> None:
        super().__init__(message, service="fetch")


class InternalError(ImgScanError):
    """Unexpected failure; the public payload never carries the detail."""

    def __init__(self, detail: str = "") -> None:
        super().__init__("Internal error")
        self.detail = detail
