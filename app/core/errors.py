"""Service-layer exceptions.

Route modules translate these into HTTP responses:

NotFoundError       -> 404  (absent, or outside the caller's school)
InvalidInputError   -> 400  (rejected before any write)
StorageFailureError -> 500  (raised after the transaction was rolled back)
"""
from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors raised by the posts core."""


class NotFoundError(ServiceError):
    """The resource does not exist in the caller's school.

    The message never says whether the ID exists in another school.
    """

    def __init__(self, resource: str, identifier: object) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class InvalidInputError(ServiceError):
    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class StorageFailureError(ServiceError):
    def __init__(self, message: str = "storage_failure") -> None:
        self.message = message
        super().__init__(message)
