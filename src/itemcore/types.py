"""Shared value types passed between the orchestrator and its collaborators."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PrimaryKey = str | int
Item = dict[str, Any]
Operation = Literal["create", "read", "update", "delete"]


class Action(enum.StrEnum):
    """Mutation kind written to the activity table."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Accountability(BaseModel):
    """Who is performing an operation.

    ``None`` in place of an Accountability means a trusted system context.
    ``admin=True`` bypasses every authorization check.
    """

    model_config = ConfigDict(frozen=True)

    user: str | None = None
    role: str | None = None
    admin: bool = False
    ip: str | None = None
    user_agent: str | None = None


class Query(BaseModel):
    """Declarative read request.

    ``fields`` may contain ``json(<column>, <path>)`` entries; their output key
    is the field string itself unless ``alias`` maps a friendlier name to it.
    ``deep`` holds nested queries keyed by output key, used to filter the
    elements a JSON path returns.
    """

    model_config = ConfigDict(extra="forbid")

    fields: list[str] | None = None
    filter: dict[str, Any] | None = None
    sort: list[str] | None = None
    limit: int | None = None
    offset: int | None = None
    deep: dict[str, dict[str, Any]] = Field(default_factory=dict)
    alias: dict[str, str] = Field(default_factory=dict)


@dataclass
class JsonFieldNode:
    """A JSON path selection against one JSON column.

    Attributes:
        name: Column holding the JSON document.
        field_key: Output key the selected value is returned under.
        json_path: Path into the document, e.g. ``$.a[*].b``.
        query: Nested query; only ``filter`` is honoured.
    """

    name: str
    field_key: str
    json_path: str
    query: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivityRecord:
    """One append-only audit row."""

    action: Action
    action_by: str | None
    collection: str
    ip: str | None
    user_agent: str | None
    item: str
