"""Activity (audit trail) recording.

One ``itemcore_activity`` row is appended per affected primary key, on the
connection of the mutation being recorded.  Unlike fire-and-forget audit
logs, a failed insert here propagates so the surrounding transaction rolls
back together with the mutation it describes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from itemcore.types import Action, ActivityRecord

if TYPE_CHECKING:
    from itemcore.db import Executor
    from itemcore.types import Accountability, PrimaryKey

logger = logging.getLogger(__name__)

ACTIVITY_TABLE = "itemcore_activity"


def build_activity(
    action: Action,
    accountability: Accountability,
    collection: str,
    keys: Sequence[PrimaryKey],
) -> list[ActivityRecord]:
    """Build one :class:`ActivityRecord` per key, in key order."""
    return [
        ActivityRecord(
            action=action,
            action_by=accountability.user,
            collection=collection,
            ip=accountability.ip,
            user_agent=accountability.user_agent,
            item=str(key),
        )
        for key in keys
    ]


async def record_activity(
    conn: Executor,
    *,
    action: Action,
    accountability: Accountability | None,
    collection: str,
    keys: Sequence[PrimaryKey],
) -> list[ActivityRecord]:
    """Insert activity rows for *keys*.

    Parameters
    ----------
    conn:
        The transaction connection of the mutation being recorded.
    action:
        Mutation kind.
    accountability:
        Acting principal.  ``None`` (system context) records nothing.
    collection:
        Collection the keys belong to.
    keys:
        Affected primary keys; stored as text.
    """
    if accountability is None or not keys:
        return []

    records = build_activity(action, accountability, collection, keys)
    await conn.executemany(
        f"INSERT INTO {ACTIVITY_TABLE} "
        "(action, action_by, collection, ip, user_agent, item) "
        "VALUES ($1, $2, $3, $4, $5, $6)",
        [
            (str(r.action), r.action_by, r.collection, r.ip, r.user_agent, r.item)
            for r in records
        ],
    )
    logger.debug("Recorded %d %s activity row(s) for %s", len(records), action, collection)
    return records
