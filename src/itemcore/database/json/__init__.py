"""JSON path compilers, one per SQL dialect."""

from __future__ import annotations

from typing import TYPE_CHECKING

from itemcore.database.json.base import (
    JsonHelper,
    get_filter_type,
    is_join_required,
    normalize_json_path,
    split_json_path,
)
from itemcore.database.json.oracle import Oracle12JsonHelper
from itemcore.database.json.postgres import PostgresJsonHelper

if TYPE_CHECKING:
    from itemcore.types import JsonFieldNode

JSON_HELPERS: dict[str, type[JsonHelper]] = {
    "postgres": PostgresJsonHelper,
    "oracle": Oracle12JsonHelper,
}


def get_json_helper(dialect: str, nodes: list[JsonFieldNode], primary_key: str) -> JsonHelper:
    """Instantiate the JSON helper registered for *dialect*."""
    try:
        helper_class = JSON_HELPERS[dialect]
    except KeyError:
        raise ValueError(f"No JSON helper for dialect {dialect!r}") from None
    return helper_class(nodes, primary_key)


__all__ = [
    "JSON_HELPERS",
    "JsonHelper",
    "Oracle12JsonHelper",
    "PostgresJsonHelper",
    "get_filter_type",
    "get_json_helper",
    "is_join_required",
    "normalize_json_path",
    "split_json_path",
]
