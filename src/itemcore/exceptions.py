"""Error kinds raised by itemcore.

Every error here reaches the caller unchanged.  The orchestrator never
wraps collaborator or storage errors; asyncpg exceptions propagate as-is
after the enclosing transaction has rolled back.
"""

from __future__ import annotations


class ItemcoreError(Exception):
    """Base class for all itemcore errors."""


class InvalidPayloadError(ItemcoreError):
    """Raised when a write payload is structurally unusable."""


class InvalidQueryError(ItemcoreError):
    """Raised when a query or filter cannot be compiled."""


class JsonPathError(InvalidQueryError):
    """Raised when a JSON path cannot be parsed into segments."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid JSON path {path!r}: {reason}")


class UnknownCollectionError(InvalidQueryError):
    """Raised when a collection has no columns or no primary key."""

    def __init__(self, collection: str) -> None:
        self.collection = collection
        super().__init__(f"Collection {collection!r} does not exist or has no primary key")


class ForbiddenError(ItemcoreError):
    """Raised when the accountability lacks permission for an action, field or row."""


class UnprocessableFieldError(ItemcoreError):
    """Raised when a payload fails the validation rule attached to a permission.

    Attributes:
        collection: The collection being written.
        failed: The validation filter that did not match.
    """

    def __init__(self, collection: str, failed: dict) -> None:
        self.collection = collection
        self.failed = failed
        super().__init__(f"Payload for {collection!r} failed validation: {failed!r}")
