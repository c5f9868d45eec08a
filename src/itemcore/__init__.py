"""Schema-driven CRUD over PostgreSQL with dialect-aware JSON path reads."""

from itemcore.db import Database, transaction
from itemcore.exceptions import (
    ForbiddenError,
    InvalidPayloadError,
    InvalidQueryError,
    ItemcoreError,
    JsonPathError,
    UnknownCollectionError,
    UnprocessableFieldError,
)
from itemcore.services.items import ItemsService
from itemcore.types import Accountability, Action, Query

__version__ = "0.1.0"

__all__ = [
    "Accountability",
    "Action",
    "Database",
    "ForbiddenError",
    "InvalidPayloadError",
    "InvalidQueryError",
    "ItemcoreError",
    "ItemsService",
    "JsonPathError",
    "Query",
    "UnknownCollectionError",
    "UnprocessableFieldError",
    "transaction",
]
