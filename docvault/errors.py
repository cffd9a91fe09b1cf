"""Error taxonomy shared by the control-plane services and the HTTP surface."""

from __future__ import annotations

from typing import Iterable, Tuple


class DocVaultError(Exception):
    """Base class for every error the core reports to its callers."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.detail = message or self.public_message


class Unauthenticated(DocVaultError):
    status_code = 401
    public_message = "Authentication required"


class Forbidden(DocVaultError):
    status_code = 403
    public_message = "Insufficient permissions"


class NotFound(DocVaultError):
    status_code = 404
    public_message = "Not found"


class Conflict(DocVaultError):
    status_code = 409
    public_message = "Conflict"


class InvalidInput(DocVaultError):
    status_code = 400
    public_message = "Invalid input"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message)
        self.public_message = self.detail


class IncompleteUpload(DocVaultError):
    status_code = 409
    public_message = "Upload incomplete"

    def __init__(self, missing_parts: Iterable[int]) -> None:
        self.missing_parts: Tuple[int, ...] = tuple(sorted(missing_parts))
        super().__init__(f"Missing parts: {list(self.missing_parts)}")


class InvalidUploadSize(DocVaultError):
    status_code = 400
    public_message = "Invalid upload size"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message)
        self.public_message = self.detail


class DependencyFailure(DocVaultError):
    status_code = 502
    public_message = "Upstream dependency failed"


__all__ = [
    "Conflict",
    "DependencyFailure",
    "DocVaultError",
    "Forbidden",
    "IncompleteUpload",
    "InvalidInput",
    "InvalidUploadSize",
    "NotFound",
    "Unauthenticated",
]
