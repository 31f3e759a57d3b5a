from __future__ import annotations

from pathlib import Path

import allure

from ecm_harvest.storage.repository import SQLiteStore

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Durable Store"),
]


def _store(path: Path, **kwargs) -> SQLiteStore:
    store = SQLiteStore(path, **kwargs)
    store.init_schema()
    return store


def test_key_value_round_trip_survives_reopen(tmp_path: Path) -> None:
    store = _store(tmp_path / "kv.db")
    store.set("ecm_folders", [{"name": "Ärchiv - Sep 2026", "urls": ["https://x.test/a"]}])
    store.set("last_auto_fetch", "2026-09-30T06:00:00+00:00")
    store.set("last_auto_fetch", "2026-10-01T06:00:00+00:00")
    store.close()

    reopened = _store(tmp_path / "kv.db")
    assert reopened.get("ecm_folders") == [
        {"name": "Ärchiv - Sep 2026", "urls": ["https://x.test/a"]},
    ]
    assert reopened.get("last_auto_fetch") == "2026-10-01T06:00:00+00:00"
    assert reopened.get("missing", {}) == {}

    reopened.remove("ecm_folders")
    reopened.remove("ecm_folders")
    assert reopened.get("ecm_folders") is None
    reopened.close()


def test_execution_log_is_newest_first_and_capped(tmp_path: Path) -> None:
    store = _store(tmp_path / "exec.db", max_execution_logs=3)
    for number in range(5):
        store.add_execution_log(folder=f"Folder {number}", script="A", status="success")

    logs = store.list_execution_logs(limit=10)

    assert [entry.folder for entry in logs] == ["Folder 4", "Folder 3", "Folder 2"]
    assert store.list_execution_logs(limit=1)[0].folder == "Folder 4"
    store.close()


def test_error_log_keeps_details_and_filters_by_severity(tmp_path: Path) -> None:
    store = _store(tmp_path / "errors.db", max_error_logs=2)
    store.add_error_log(message="old", severity="warning", category="processing")
    store.add_error_log(
        message="write failed",
        severity="critical",
        category="storage",
        details={"stage": "scanning_types"},
    )
    store.add_error_log(message="item failed", severity="warning", category="processing")

    all_errors = store.list_error_logs(limit=10)
    critical = store.list_error_logs(limit=10, severity="critical")

    assert [entry.message for entry in all_errors] == ["item failed", "write failed"]
    assert len(critical) == 1
    assert critical[0].category == "storage"
    assert critical[0].details == {"stage": "scanning_types"}
    assert all_errors[0].details == {}
    store.close()
