"""Tests for the per-project shared state document."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from phase_runner.errors import LockHeldError, StateConflictError
from phase_runner.state.store import ProjectStateStore, default_state


@pytest.fixture
def store(tmp_path: Path) -> ProjectStateStore:
    return ProjectStateStore(tmp_path)


def test_load_missing_document_returns_defaults(store: ProjectStateStore) -> None:
    state = store.load("demo")
    assert state["revision"] == 0
    assert state["status"]["execution"] == "idle"
    assert state["agents"]["BACKEND"]["status"] == "idle"
    assert not store.state_path("demo").exists()


def test_every_write_stamps_and_bumps_revision(store: ProjectStateStore) -> None:
    first = store.initialize("demo")
    second = store.agent_start_work("demo", "BACKEND", "T1")

    assert first["revision"] == 1
    assert second["revision"] == 2
    on_disk = yaml.safe_load(store.state_path("demo").read_text(encoding="utf-8"))
    assert on_disk["revision"] == 2
    assert on_disk["updated_at"] == second["updated_at"]


def test_agent_start_and_complete_work(store: ProjectStateStore) -> None:
    store.agent_start_work("demo", "BACKEND", "T1")
    state = store.load("demo")
    assert state["agents"]["BACKEND"] == {
        "status": "working",
        "current_task": "T1",
        "last_activity": state["agents"]["BACKEND"]["last_activity"],
        "blocked_by": None,
    }
    assert state["current_work"]["tasks_in_progress"] == ["T1"]

    store.agent_complete_work("demo", "BACKEND", "T1", "Completed Build API")
    state = store.load("demo")
    assert state["agents"]["BACKEND"]["status"] == "idle"
    assert state["current_work"]["tasks_in_progress"] == []
    assert state["recent_activity"][0]["action"] == "completed"
    assert state["recent_activity"][0]["note"] == "Completed Build API"


def test_recent_activity_is_bounded_newest_first(store: ProjectStateStore) -> None:
    state = default_state()
    for idx in range(12):
        store.add_activity(state, {"agent": "QA", "action": f"step-{idx}"})

    assert len(state["recent_activity"]) == 10
    assert state["recent_activity"][0]["action"] == "step-11"
    assert state["recent_activity"][-1]["action"] == "step-2"


def test_second_lock_on_same_file_reports_holder(store: ProjectStateStore) -> None:
    store.add_lock("demo", "src/api.py", "BACKEND", "T1")

    with pytest.raises(LockHeldError) as excinfo:
        store.add_lock("demo", "src/api.py", "FRONTEND", "T2")

    assert excinfo.value.holder == "BACKEND"
    assert excinfo.value.task == "T1"
    assert "already locked by BACKEND (T1)" in str(excinfo.value)
    locks = store.load("demo")["active_locks"]
    assert len(locks) == 1
    assert locks[0]["expires_at"]


def test_release_lock_and_task_locks(store: ProjectStateStore) -> None:
    store.add_lock("demo", "a.py", "BACKEND", "T1")
    store.add_lock("demo", "b.py", "BACKEND", "T1")
    store.add_lock("demo", "c.py", "DATA", "T2")

    store.release_lock("demo", "c.py")
    store.add_lock("demo", "c.py", "QA", "T3")
    store.release_task_locks("demo", "T1")

    assert [lock["file"] for lock in store.load("demo")["active_locks"]] == ["c.py"]


def test_save_with_stale_revision_conflicts(store: ProjectStateStore) -> None:
    store.initialize("demo")
    mine = store.load("demo")
    store.set_onboarding_status("demo", "processing")

    with pytest.raises(StateConflictError):
        store.save("demo", mine, expected_revision=mine["revision"])

    fresh = store.load("demo")
    fresh["status"]["project"] = "paused"
    saved = store.save("demo", fresh, expected_revision=fresh["revision"])
    assert saved["status"]["project"] == "paused"


def test_unconditional_saves_keep_revision_monotonic(store: ProjectStateStore) -> None:
    store.initialize("demo")
    first = store.load("demo")
    second = store.load("demo")

    assert store.save("demo", first)["revision"] == 2
    assert store.save("demo", second)["revision"] == 3
    assert store.load("demo")["revision"] == 3


def test_concurrent_mutations_are_not_lost(store: ProjectStateStore) -> None:
    def start(idx: int) -> None:
        store.agent_start_work("demo", "BACKEND", f"T{idx}")

    threads = [threading.Thread(target=start, args=(idx,)) for idx in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    state = store.load("demo")
    assert sorted(state["current_work"]["tasks_in_progress"]) == sorted(f"T{idx}" for idx in range(8))
    assert state["revision"] == 8


def test_execution_mode_running_then_idle(store: ProjectStateStore) -> None:
    store.set_execution_mode("demo", "running", "feat-1", "Login", 2)
    state = store.load("demo")
    assert state["status"]["execution"] == "running"
    assert state["current_work"]["feature"] == "feat-1"
    assert state["current_work"]["phase"] == 2

    store.set_execution_mode("demo", "idle")
    state = store.load("demo")
    assert state["status"]["execution"] == "idle"
    assert state["current_work"]["feature"] is None
    assert state["recent_activity"][0]["action"] == "execution_stopped"

    with pytest.raises(ValueError):
        store.set_execution_mode("demo", "sprinting")


def test_blocker_lifecycle(store: ProjectStateStore) -> None:
    store.agent_blocked("demo", "FRONTEND", "T5", "T4", "Waiting on API schema")
    state = store.load("demo")
    assert state["agents"]["FRONTEND"]["status"] == "blocked"
    assert state["blockers"][0]["reason"] == "Waiting on API schema"

    store.clear_blocker("demo", "T5")
    state = store.load("demo")
    assert state["blockers"] == []
    assert state["agents"]["FRONTEND"]["status"] == "waiting"
    assert state["agents"]["FRONTEND"]["blocked_by"] is None


def test_sessions_queue_and_progress(store: ProjectStateStore) -> None:
    store.register_session("demo", "ORCHESTRATOR", "orch-1")
    store.register_session("demo", "DATA", "sess-9", task_id="T9", pid=1234)
    store.update_queue("demo", [{"task": "T10", "agent": "QA"}])
    store.sync_progress("demo", {"tasks_total": 4, "tasks_completed": 1, "tasks_pending": 3})

    state = store.load("demo")
    assert state["sessions"]["orchestrator"]["status"] == "active"
    assert state["sessions"]["agents"]["DATA"]["pid"] == 1234
    assert state["queue"]["next_tasks"] == [{"task": "T10", "agent": "QA"}]
    assert state["progress"]["tasks"]["total"] == 4

    store.unregister_session("demo", "DATA")
    store.unregister_session("demo", "ORCHESTRATOR")
    state = store.load("demo")
    assert "DATA" not in state["sessions"]["agents"]
    assert state["sessions"]["orchestrator"]["status"] == "completed"


def test_sync_contract_hashes(store: ProjectStateStore, tmp_path: Path) -> None:
    contracts = tmp_path / "demo" / "contracts"
    contracts.mkdir(parents=True)
    (contracts / "api-contracts.yaml").write_text("endpoints: []\n", encoding="utf-8")

    state = store.sync_contract_hashes("demo")

    assert state["contracts"]["api_contracts"]["hash"]
    assert state["contracts"]["design_tokens"]["hash"] is None


def test_unreadable_document_falls_back_to_defaults(store: ProjectStateStore) -> None:
    path = store.state_path("demo")
    path.parent.mkdir(parents=True)
    path.write_text("status: [unclosed\n", encoding="utf-8")
    assert store.load("demo")["status"]["execution"] == "idle"


def test_older_document_is_backfilled(store: ProjectStateStore) -> None:
    path = store.state_path("demo")
    path.parent.mkdir(parents=True)
    path.write_text("version: '1.0'\nstatus:\n  execution: running\n", encoding="utf-8")

    state = store.load("demo")

    assert state["status"]["execution"] == "running"
    assert state["status"]["onboarding"] == "not_started"
    assert state["active_locks"] == []


def test_summary_mentions_current_work(store: ProjectStateStore) -> None:
    store.set_execution_mode("demo", "running", "feat-1", "Login", 1)
    store.agent_start_work("demo", "BACKEND", "T1")

    summary = store.get_summary("demo")

    assert "# Project State: demo" in summary
    assert "- Execution: running" in summary
    assert "- Feature: feat-1" in summary
    assert "- BACKEND: working (T1)" in summary
