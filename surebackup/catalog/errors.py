"""Errors raised by the backup catalog client."""


class CatalogError(Exception):
    """Base error for backup catalog requests."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthenticationError(CatalogError):
    """Raised when no access token could be obtained."""


class TransientCatalogError(CatalogError):
    """Raised for throttling and server-side errors worth retrying."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class CatalogRequestError(CatalogError):
    """Raised for errors that retrying will not fix."""
