from __future__ import annotations


class IdentityProviderError(Exception):
    """The auth service rejected or failed an admin call."""

    def __init__(self, operation: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code
