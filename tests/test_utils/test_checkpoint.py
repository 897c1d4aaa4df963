"""
tests/test_utils/test_checkpoint.py — Tests for the import-session checkpoint.
"""

from __future__ import annotations

from civicdata_pipeline.pipelines.import_queue import ImportSession
from civicdata_pipeline.utils.checkpoint import (
    clear_session_snapshot,
    dismiss_pending_job,
    drop_pending_jobs,
    load_session_snapshot,
    save_session_snapshot,
)
from civicdata_shared.models import ImportQueueItem, PendingReconciliationJob


def _session() -> ImportSession:
    return ImportSession(
        items=[ImportQueueItem(dataset="acs/acs5", group="B01001", variable="B01001_001E", year=2023)],
        pending_jobs=[
            PendingReconciliationJob(id="item-1:2023", label="B01001_001E 2023", kind="import"),
            PendingReconciliationJob(id="stat-9", label="Population [Percent]", kind="derived"),
        ],
    )


class TestCheckpoint:
    def test_missing_snapshot_is_empty(self, tmp_path):
        assert load_session_snapshot(tmp_path) == {}

    def test_round_trip_restores_session(self, tmp_path):
        save_session_snapshot(_session().model_dump(mode="json"), tmp_path)
        restored = ImportSession.model_validate(load_session_snapshot(tmp_path))
        assert restored.items[0].variable == "B01001_001E"
        assert [job.kind for job in restored.pending_jobs] == ["import", "derived"]

    def test_dismiss_removes_one_job(self, tmp_path):
        save_session_snapshot(_session().model_dump(mode="json"), tmp_path)

        assert dismiss_pending_job("stat-9", tmp_path)
        assert not dismiss_pending_job("stat-9", tmp_path)
        jobs = load_session_snapshot(tmp_path)["pending_jobs"]
        assert [job["id"] for job in jobs] == ["item-1:2023"]

    def test_drop_reports_only_jobs_present(self, tmp_path):
        save_session_snapshot(_session().model_dump(mode="json"), tmp_path)

        dropped = drop_pending_jobs(["item-1:2023", "stat-9", "unknown"], tmp_path)

        assert sorted(dropped) == ["item-1:2023", "stat-9"]
        assert load_session_snapshot(tmp_path)["pending_jobs"] == []
        assert drop_pending_jobs(["stat-9"], tmp_path) == []

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        (tmp_path / "import_session.json").write_text("{not json")
        assert load_session_snapshot(tmp_path) == {}

    def test_clear(self, tmp_path):
        save_session_snapshot({"items": []}, tmp_path)
        clear_session_snapshot(tmp_path)
        assert not (tmp_path / "import_session.json").exists()
