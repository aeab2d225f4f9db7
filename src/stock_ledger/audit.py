"""Append-only activity log.

Every mutating workflow in :mod:`stock_ledger.core_logic` calls
:func:`record` inside its own atomic unit, so an entry exists exactly when
the mutation it describes was applied.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import LogAction
from .data_manager import EntityKind, LogRow, UserRow

LOG_ID_PREFIX = "LOG"


def record(
    workbook: Workbook,
    actor: UserRow,
    action: Union[LogAction, str],
    details: str,
    *,
    when: Optional[datetime] = None,
) -> LogRow:
    """Append one immutable activity entry attributed to ``actor``.

    Args:
        workbook (Workbook): Store receiving the entry.
        actor (UserRow): User performing the action.
        action (LogAction | str): Action kind being logged.
        details (str): Human-readable description of what changed.
        when (datetime | None): Observed time, stored in UTC; defaults to now.

    Returns:
        LogRow: The entry that was appended.
    """

    when = data_manager.as_utc(when) if when is not None else datetime.now(UTC)
    action_value = action.value if isinstance(action, LogAction) else LogAction(action).value
    entry = LogRow(
        log_id=data_manager.generate_record_id(LOG_ID_PREFIX, when=when),
        timestamp_iso=when.isoformat(),
        user_id=actor.user_id,
        username=actor.username,
        action=action_value,
        details=details,
    )
    data_manager.upsert_record(workbook, EntityKind.LOG, entry)
    log.debug("Audit %s by '%s': %s", action_value, actor.username, details)
    return entry


def list_logs(workbook: Workbook, *, limit: Optional[int] = None) -> List[LogRow]:
    """Return activity entries newest first; ties keep the later insert first."""

    entries = list(data_manager.iter_logs(workbook))
    ordered = sorted(reversed(entries), key=lambda entry: entry.timestamp_iso, reverse=True)
    if limit is not None:
        return ordered[:limit]
    return ordered
