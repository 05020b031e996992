"""
Tests for workflow diagnostics.

Tests cover:
- State integrity and validation checks
- Lock checks
- Stuck-state detection
- Recommendations
- Diagnostics never repair anything
"""

import json
from datetime import timedelta

import psutil

from phaseflow.errors import NetworkError
from phaseflow.health import WorkflowDiagnostics
from phaseflow.recovery import RecoveryContext
from phaseflow.schema import WorkerStatus


class TestDiagnostics:
    """WorkflowDiagnostics.run()"""

    def test_no_workflow(self, orchestrator):
        report = WorkflowDiagnostics(orchestrator).run()

        assert report.overall_status == "ok"
        assert report.workflow == {"status": "No active workflow"}
        assert report.recommendations == []
        locks = next(c for c in report.components if c.name == "locks")
        assert locks.message == "Store is not file-backed"

    def test_healthy_workflow(self, orchestrator):
        state = orchestrator.start("new-project")
        orchestrator.save_checkpoint(name="first")

        report = WorkflowDiagnostics(orchestrator).run()

        assert report.overall_status == "ok"
        assert report.workflow["workflow_id"] == state.workflow_id
        assert report.validation_errors == []
        assert [c["checkpoint_id"] for c in report.checkpoints] == ["first"]

    def test_awaiting_approval_recommendation(self, orchestrator, advance_to_gate, clock):
        orchestrator.start("new-project")
        advance_to_gate(orchestrator, "post-research")

        report = WorkflowDiagnostics(orchestrator).run()
        assert "Workflow awaiting approval at post-research. Use --skip-approval to bypass" in report.recommendations
        assert report.gate_timeout["timed_out"] is False

        clock.advance(minutes=45)
        report = WorkflowDiagnostics(orchestrator).run()
        assert report.overall_status == "warning"
        assert report.gate_timeout["timed_out"] is True
        assert any("has timed out" in r for r in report.recommendations)

    def test_safe_mode_and_errors(self, orchestrator):
        state = orchestrator.start("new-project")
        orchestrator.enter_safe_mode("testing")
        orchestrator.recovery.handle(NetworkError("timeout"), RecoveryContext.from_state(state))

        report = WorkflowDiagnostics(orchestrator).run()

        assert report.workflow["safe_mode"] is True
        assert report.errors[0]["kind"] == "NETWORK_ERROR"
        assert "Workflow is in safe mode. Run --exit-safe-mode when issues are resolved" in report.recommendations
        assert "Recent errors detected. Review with --show-errors for details" in report.recommendations

    def test_invalid_state_is_reported_not_repaired(self, orchestrator, store):
        orchestrator.start("new-project")
        orchestrator.save_checkpoint(name="good")
        broken = store.load()
        broken.current_phase_index = 99
        store.save(broken)

        report = WorkflowDiagnostics(orchestrator).run()

        assert report.overall_status == "error"
        assert report.validation_errors
        assert report.recommendations[0] == (
            "State validation errors detected. Consider --restore-checkpoint or --reset-workflow"
        )
        assert store.load().current_phase_index == 99
        assert store.list_error_records() == []

    def test_corrupt_state_file(self, file_orchestrator):
        orchestrator = file_orchestrator
        orchestrator.start("new-project")
        orchestrator.paths.state_file().write_text("{corrupt")

        report = WorkflowDiagnostics(orchestrator).run()

        state_health = next(c for c in report.components if c.name == "state_file")
        assert state_health.status == "error"
        assert report.overall_status == "error"
        assert orchestrator.paths.state_file().read_text() == "{corrupt"

    def test_stale_lock_warning(self, file_orchestrator, monkeypatch):
        orchestrator = file_orchestrator
        orchestrator.start("new-project")
        orchestrator.paths.state_lock().write_text("999999")
        monkeypatch.setattr(psutil, "pid_exists", lambda pid: False)

        report = WorkflowDiagnostics(orchestrator).run()

        locks = next(c for c in report.components if c.name == "locks")
        assert locks.status == "warning"
        assert "999999" in locks.message
        assert report.overall_status == "warning"

    def test_report_serializes(self, file_orchestrator):
        file_orchestrator.start("new-project")
        report = WorkflowDiagnostics(file_orchestrator).run()
        data = json.loads(report.to_json())
        assert data["overall_status"] == "ok"
        assert {c["name"] for c in data["components"]} >= {"state_file", "validation", "locks"}


class TestStuckStateDetection:
    """Stalled phases, silent workers and gates about to time out."""

    def _component(self, report, name):
        return next(c for c in report.components if c.name == name)

    def test_fresh_phase_is_healthy(self, orchestrator, clock):
        orchestrator.start("new-project")
        clock.advance(minutes=9)

        report = WorkflowDiagnostics(orchestrator).run()

        assert report.overall_status == "ok"
        for name in ("phase_progress", "progress_activity", "workers"):
            assert self._component(report, name).status == "ok"

    def test_phase_stalled_with_low_progress(self, orchestrator, clock):
        orchestrator.start("new-project")
        orchestrator.update_progress(progress_percentage=5)
        clock.advance(minutes=16)

        report = WorkflowDiagnostics(orchestrator).run()

        phase = self._component(report, "phase_progress")
        assert phase.status == "warning"
        assert phase.message == "Phase \"discovery\" stalled at 5% for 16 minutes"
        assert report.overall_status == "warning"
        assert any("Phase discovery appears stuck" in r for r in report.recommendations)

    def test_nearly_finished_phase_is_not_stalled(self, orchestrator, clock):
        orchestrator.start("new-project")
        clock.advance(minutes=12)
        orchestrator.update_progress(progress_percentage=95)
        clock.advance(minutes=11)

        report = WorkflowDiagnostics(orchestrator).run()

        assert self._component(report, "phase_progress").status == "ok"
        activity = self._component(report, "progress_activity")
        assert activity.status == "warning"
        assert activity.message == "No progress change for 11 minutes"

    def test_progress_change_resets_stall_timer(self, orchestrator, clock):
        orchestrator.start("new-project")
        clock.advance(minutes=8)
        orchestrator.update_progress(progress_percentage=20)
        clock.advance(minutes=6)
        orchestrator.update_progress(progress_percentage=20)

        report = WorkflowDiagnostics(orchestrator).run()

        assert self._component(report, "progress_activity").status == "ok"

    def test_unresponsive_workers(self, orchestrator, clock):
        orchestrator.start("new-project")
        silent = WorkerStatus(name="note-taker", last_update=clock() - timedelta(minutes=8))
        orchestrator.update_progress(active_workers=["interviewer", silent])

        report = WorkflowDiagnostics(orchestrator).run()

        workers = self._component(report, "workers")
        assert workers.status == "warning"
        assert [w["name"] for w in workers.details["unresponsive"]] == ["note-taker"]
        assert "Unresponsive workers: note-taker. Use --retry-agent or --skip-agent" in report.recommendations

        orchestrator.retry_worker("note-taker")
        report = WorkflowDiagnostics(orchestrator).run()
        assert self._component(report, "workers").status == "ok"

    def test_gate_close_to_timeout(self, orchestrator, advance_to_gate, clock):
        orchestrator.start("new-project")
        advance_to_gate(orchestrator, "post-research")

        clock.advance(minutes=20)
        report = WorkflowDiagnostics(orchestrator).run()
        assert self._component(report, "approval_gate").status == "ok"
        assert self._component(report, "phase_progress").status == "ok"

        clock.advance(minutes=6)
        report = WorkflowDiagnostics(orchestrator).run()

        gate = self._component(report, "approval_gate")
        assert gate.status == "warning"
        assert report.gate_timeout["timed_out"] is False
        assert report.gate_timeout["remaining_minutes"] == 4
        assert (
            "Approval gate post-research times out in 4 minutes. "
            "Approve it or use --skip-approval to bypass"
        ) in report.recommendations
        assert self._component(report, "progress_activity").status == "ok"
