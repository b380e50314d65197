"""Exceptions raised by dkan_query."""

from __future__ import annotations


class DkanQueryError(Exception):
    """Base class for library errors."""


class InvalidationRuleError(DkanQueryError):
    """An invalidation rule is malformed or cannot be resolved.

    Raised when a mutation is registered with a rule that is not a valid
    key prefix, or when a rule refers to a segment that the mutation's
    variables or result do not provide. Nothing is invalidated when this
    is raised.
    """


class RemoteApiError(DkanQueryError):
    """The remote catalog API answered with an error or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __repr__(self) -> str:
        return f"RemoteApiError({self.args[0]!r}, status_code={self.status_code!r})"
