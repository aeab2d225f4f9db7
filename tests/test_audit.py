"""Tests for the append-only activity log."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from stock_ledger import audit, data_manager
from stock_ledger.constants import LogAction
from stock_ledger.data_manager import EntityKind


@pytest.fixture
def store():
    return data_manager.build_store_workbook()


def test_record_appends_entry_attributed_to_actor(store, admin):
    moment = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    entry = audit.record(store, admin, LogAction.DB_BACKUP, "Exported", when=moment)

    assert entry.timestamp_iso == moment.isoformat()
    assert (entry.user_id, entry.username) == (admin.user_id, admin.username)
    assert entry.log_id.startswith("LOG-")
    assert audit.list_logs(store) == [entry]


def test_record_accepts_action_string(store, admin):
    entry = audit.record(store, admin, "UPDATE_TAG", "Renamed")
    assert entry.action == LogAction.UPDATE_TAG.value


def test_record_rejects_unknown_action(store, admin):
    with pytest.raises(ValueError):
        audit.record(store, admin, "LAUNCH_ROCKET", "nope")
    assert audit.list_logs(store) == []


def test_list_logs_is_newest_first_with_limit(store, admin):
    start = datetime(2024, 1, 1, tzinfo=UTC)
    for offset, action in enumerate([LogAction.CREATE_PRODUCT, LogAction.UPDATE_PRODUCT, LogAction.DELETE_PRODUCT]):
        audit.record(store, admin, action, action.value, when=start + timedelta(minutes=offset))

    entries = audit.list_logs(store)

    assert [entry.action for entry in entries] == ["DELETE_PRODUCT", "UPDATE_PRODUCT", "CREATE_PRODUCT"]
    assert [entry.action for entry in audit.list_logs(store, limit=1)] == ["DELETE_PRODUCT"]


def test_list_logs_ties_show_later_insert_first(store, admin):
    moment = datetime(2024, 1, 1, tzinfo=UTC)
    audit.record(store, admin, LogAction.CREATE_TAG, "first", when=moment)
    audit.record(store, admin, LogAction.DELETE_TAG, "second", when=moment)

    assert [entry.details for entry in audit.list_logs(store)] == ["second", "first"]


def test_record_stores_timestamps_in_utc(store, admin):
    eastern = timezone(timedelta(hours=-5))
    audit.record(store, admin, LogAction.CREATE_TAG, "earlier", when=datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    later = audit.record(store, admin, LogAction.DELETE_TAG, "later", when=datetime(2024, 1, 1, 8, 0, tzinfo=eastern))
    naive = audit.record(store, admin, LogAction.UPDATE_TAG, "naive", when=datetime(2024, 1, 1, 14, 0))

    assert later.timestamp_iso == "2024-01-01T13:00:00+00:00"
    assert naive.timestamp_iso == "2024-01-01T14:00:00+00:00"
    assert [entry.details for entry in audit.list_logs(store)] == ["naive", "later", "earlier"]


def test_log_entries_cannot_be_rewritten_or_deleted(store, admin):
    entry = audit.record(store, admin, LogAction.DB_RESTORE, "Restored")

    with pytest.raises(ValueError):
        data_manager.upsert_record(store, EntityKind.LOG, entry)
    with pytest.raises(ValueError):
        data_manager.delete_record(store, EntityKind.LOG, entry.log_id)
