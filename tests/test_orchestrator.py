"""Tests for the session state machine, with a scripted operator and agent."""

import pytest

from conftest import FakeRunner, FakeUI, memory_record, step, write_store
from risral.orchestrator import BACKBRIEF_ACCEPTED, SessionAborted, SessionOrchestrator
from risral.state import COMPLETE, EXECUTION, PLANNING, REVIEW, FULL_PLAN_TASK_TITLE, Session, Task

INTENT = "Build a small order API with tests"

PLAN = """# Plan

## Approach

Thin HTTP layer over Postgres.

## Tasks

### 1. Set up database

Create the schema.

### 2. Write API

Expose endpoints.

## Success Criteria

- Must have: endpoints return JSON
"""


def make(config, workspace, ui, *steps):
    runner = FakeRunner(*steps)
    return SessionOrchestrator(config, ui, runner=runner, workspace=workspace), runner


def seed_session(workspace, session, tasks=()):
    workspace.ensure_exists()
    workspace.save_session(session)
    workspace.save_tasks(list(tasks))


def two_tasks(*statuses):
    statuses = statuses or ("pending", "pending")
    return [Task(index=i, title=f"Task {i}", description=f"do {i}", status=s) for i, s in enumerate(statuses)]


def started(orch, phase=PLANNING, tasks=()):
    """Put an orchestrator in the middle of a session without going through open_session."""
    orch.workspace.ensure_exists()
    orch.session = Session(phase=phase, total_tasks=len(tasks), plan_approved=phase != PLANNING)
    orch.tasks = list(tasks)
    orch.workspace.write(orch.workspace.intent_file, INTENT + "\n")
    return orch


def completes(workspace, index, summary):
    return step(files={workspace.completion_file(index): summary})


# =============================================================================
# Full runs
# =============================================================================


class TestFullSession:
    """Tests for a session driven from start to finish."""

    def test_happy_path(self, config, workspace):
        ui = FakeUI(answers=[INTENT, ""], confirms=[True])
        orch, runner = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output=PLAN),
            step(output="Findings.\n\nRecommendation: APPROVE"),
            completes(workspace, 0, "Created schema."),
            completes(workspace, 1, "Added endpoints."),
            step(output="No drift."),
        )

        session = orch.run()

        assert session.phase == COMPLETE
        assert session.plan_approved
        assert session.task_index == session.total_tasks == 2
        assert workspace.load_session().phase == COMPLETE
        assert [t.status for t in workspace.load_tasks()] == ["completed", "completed"]

        log = workspace.read_decision_log()
        assert "### Task 1: Set up database\n\nCreated schema." in log
        assert "### Task 2: Write API\n\nAdded endpoints." in log

        assert len(runner.invocations) == 6
        assert [inv.output_file for inv in runner.invocations] == [
            workspace.backbrief_file, workspace.plan_file, workspace.cross_check_file,
            None, None, workspace.review_file,
        ]
        assert all(inv.working_dir == config.project_dir for inv in runner.invocations)
        assert BACKBRIEF_ACCEPTED in runner.prompts[1]
        assert "Cross-check: APPROVED" in ui.texts("OK")
        assert ui.tables[-1] == ("Task Summary", [["✓", "1", "Set up database", "completed"],
                                                  ["✓", "2", "Write API", "completed"]])

    def test_each_task_sees_earlier_decisions(self, config, workspace):
        ui = FakeUI(answers=[INTENT, "Use Postgres 16"], confirms=[True])
        orch, runner = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output=PLAN),
            step(output="Recommendation: APPROVE"),
            completes(workspace, 0, "SCHEMA-DECISION"),
            completes(workspace, 1, "done"),
            step(output="review"),
        )
        orch.run()

        assert "Use Postgres 16" in runner.prompts[1]
        assert "SCHEMA-DECISION" not in runner.prompts[3]
        assert "SCHEMA-DECISION" in runner.prompts[4]
        assert "Current Task: 2 of 2" in runner.prompts[4]

    def test_revision_loop(self, config, workspace):
        ui = FakeUI(answers=[INTENT, "", "Split the API task in two"], confirms=[False, True])
        orch, runner = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output="first plan\n\n## Tasks\n\n1. Only — everything\n"),
            step(output="Recommendation: REVISE"),
            step(output=PLAN),
            step(output="Recommendation: APPROVE"),
            completes(workspace, 0, "a"),
            completes(workspace, 1, "b"),
            step(output="review"),
        )
        session = orch.run()

        assert session.phase == COMPLETE
        assert "Revision Requested" not in runner.prompts[1]
        assert "## Revision Requested" in runner.prompts[3]
        assert "Split the API task in two" in runner.prompts[3]
        assert "Cross-check: REVISION REQUESTED" in ui.texts("WARN")
        assert session.total_tasks == 2

    def test_rejection_without_feedback_aborts(self, config, workspace):
        ui = FakeUI(answers=[INTENT, "", ""], confirms=[False])
        orch, _ = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output=PLAN),
            step(output="Recommendation: ESCALATE"),
        )
        with pytest.raises(SessionAborted):
            orch.run()

        assert workspace.load_session().phase == PLANNING
        assert workspace.backbrief_feedback_file.exists()
        assert "Cross-check: ESCALATED" in ui.texts("ERR")

    def test_plan_without_tasks_runs_as_one_task(self, config, workspace):
        ui = FakeUI(answers=[INTENT, ""], confirms=[True, True])
        orch, runner = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output="# Plan\n\nJust do the thing.\n"),
            step(output="Recommendation: APPROVE"),
            completes(workspace, 0, "did the thing"),
            step(output="review"),
        )
        session = orch.run()

        assert session.total_tasks == 1
        assert [t.title for t in orch.tasks] == [FULL_PLAN_TASK_TITLE]
        assert orch.tasks[0].status == "completed"

    def test_plan_without_tasks_can_stop(self, config, workspace):
        ui = FakeUI(answers=[INTENT, ""], confirms=[True, False])
        orch, _ = make(
            config, workspace, ui,
            step(output="BACKBRIEF"),
            step(output="# Plan\n\nJust do the thing.\n"),
            step(output="no verdict here"),
        )
        with pytest.raises(SessionAborted):
            orch.run()
        assert workspace.load_session().phase == PLANNING
        assert "Cross-check gave no clear recommendation" in ui.texts("INFO")


# =============================================================================
# Agent steps
# =============================================================================


class TestAgentSteps:
    """Tests for output artifacts, exit codes and the reputation refresh."""

    def test_non_zero_exit_with_output_continues(self, config, workspace):
        ui = FakeUI(answers=[""])
        orch, _ = make(config, workspace, ui, step(output="BACKBRIEF", exit_code=1))
        started(orch).run_backbrief()

        assert "Backbrief exited with code 1" in ui.texts("WARN")
        assert workspace.read(workspace.backbrief_feedback_file) == BACKBRIEF_ACCEPTED + "\n"

    def test_stdout_fallback(self, config, workspace):
        ui = FakeUI(answers=["Yes, Postgres."])
        orch, _ = make(config, workspace, ui, step(stdout="BACKBRIEF FROM STDOUT\n"))
        started(orch).run_backbrief()

        assert workspace.read(workspace.backbrief_file) == "BACKBRIEF FROM STDOUT\n"
        assert "Agent did not write backbrief.md; saved its output there instead" in ui.texts("WARN")
        assert ui.shown[-1] == ("Backbrief", "BACKBRIEF FROM STDOUT\n")

    def test_missing_output_retry(self, config, workspace):
        ui = FakeUI(answers=[""], choices=["retry"])
        orch, runner = make(config, workspace, ui, step(), step(output="BACKBRIEF"))
        started(orch).run_backbrief()

        assert len(runner.invocations) == 2
        assert ui.offered == [["retry", "abort"]]
        assert workspace.read(workspace.backbrief_file) == "BACKBRIEF"

    def test_missing_output_abort(self, config, workspace):
        ui = FakeUI(choices=["abort"])
        orch, _ = make(config, workspace, ui, step())
        with pytest.raises(SessionAborted):
            started(orch).run_backbrief()
        assert not workspace.backbrief_feedback_file.exists()

    def test_stale_artifact_is_not_reused(self, config, workspace):
        """An output file left by an earlier attempt never counts as this step's output."""
        ui = FakeUI(choices=["abort"])
        orch, _ = make(config, workspace, ui, step())
        started(orch)
        workspace.write(workspace.backbrief_file, "STALE")
        with pytest.raises(SessionAborted):
            orch.run_backbrief()
        assert not workspace.backbrief_file.exists()

    def test_refresh_sees_memories_written_by_earlier_step(self, config, workspace):
        def adversary_writes_memory(invocation):
            write_store(config.data_dir / "memories.json", "memories",
                        [memory_record("mem-001", type="false_belief")])

        ui = FakeUI()
        orch, runner = make(config, workspace, ui, step(before=adversary_writes_memory), step())
        started(orch)
        orch.invoke("Cross-check", lambda: "first")
        orch.invoke("Backbrief", orch.prompts.backbrief)

        assert "### mem-001: FALSE BELIEF" in runner.prompts[1]
        assert "ONBOARDING-PROTOCOL-MARKER" not in runner.prompts[1]

    def test_corrupt_store_warns_and_continues(self, config, workspace):
        (config.data_dir / "memories.json").write_text("{broken", encoding="utf-8")
        ui = FakeUI()
        orch, runner = make(config, workspace, ui, step())
        started(orch)
        orch.invoke("Backbrief", orch.prompts.backbrief)

        assert any("memories.json could not be parsed" in w for w in ui.texts("WARN"))
        assert "*Failed to parse memories.json.*" in runner.prompts[0]

    def test_invocation_carries_config(self, config, workspace):
        config.model = "opus"
        config.max_budget = 3.0
        config.allowed_tools = ["Read"]
        orch, runner = make(config, workspace, FakeUI(), step())
        started(orch)
        orch.invoke("Task 1", lambda: "p")

        inv = runner.invocations[0]
        assert inv.model == "opus"
        assert inv.max_budget == 3.0
        assert inv.allowed_tools == ["Read"]
        assert inv.additional_dirs == [config.framework_dir, config.data_dir, config.session_dir]


# =============================================================================
# Execution
# =============================================================================


class TestExecution:
    """Tests for per-task execution and its completion signal."""

    def test_stdout_tail_goes_to_decision_log(self, config, workspace):
        ui = FakeUI()
        orch, _ = make(config, workspace, ui, step(stdout="x" * 3000 + "END"), completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks()).run_execution()

        log = workspace.read_decision_log()
        assert log.endswith("x" * 1997 + "END" + "\n\n### Task 2: Task 1\n\nok")
        assert "x" * 1998 + "END" not in log
        assert [t.status for t in orch.tasks] == ["completed", "completed"]
        assert orch.session.phase == REVIEW

    def test_completion_file_with_invalid_utf8(self, config, workspace):
        """A completion summary that is not valid UTF-8 still completes the task."""
        def write_latin1(invocation):
            workspace.completion_file(0).write_bytes(b"Renamed caf\xe9 table")

        ui = FakeUI()
        orch, _ = make(config, workspace, ui, step(before=write_latin1), completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks()).run_execution()

        assert [t.status for t in orch.tasks] == ["completed", "completed"]
        assert "Renamed caf\ufffd table" in workspace.read_decision_log()

    def test_stdout_with_failing_exit_marks_failed(self, config, workspace):
        ui = FakeUI()
        orch, _ = make(config, workspace, ui, step(stdout="crashed halfway", exit_code=2),
                       completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks()).run_execution()

        assert [t.status for t in orch.tasks] == ["failed", "completed"]
        assert "crashed halfway" in workspace.read_decision_log()
        assert "Execution finished: 1 completed, 1 failed out of 2" in ui.texts("INFO")

    def test_nothing_returned_mark_failed(self, config, workspace):
        ui = FakeUI(choices=["fail"])
        orch, runner = make(config, workspace, ui, step(), completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks()).run_execution()

        assert ui.offered == [["retry", "fail", "stop"]]
        assert [t.status for t in workspace.load_tasks()] == ["failed", "completed"]
        assert len(runner.invocations) == 2

    def test_nothing_returned_retry(self, config, workspace):
        ui = FakeUI(choices=["retry"])
        orch, runner = make(config, workspace, ui, step(), completes(workspace, 0, "second try"),
                            completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks()).run_execution()

        assert len(runner.invocations) == 3
        assert orch.tasks[0].status == "completed"

    def test_stop_leaves_task_resumable(self, config, workspace):
        ui = FakeUI(choices=["stop"])
        orch, _ = make(config, workspace, ui, step())
        with pytest.raises(SessionAborted):
            started(orch, EXECUTION, two_tasks()).run_execution()

        assert workspace.load_session().task_index == 0
        assert workspace.load_session().phase == EXECUTION
        assert [t.status for t in workspace.load_tasks()] == ["in_progress", "pending"]

    def test_stale_completion_file_is_discarded(self, config, workspace):
        ui = FakeUI(choices=["fail"])
        orch, _ = make(config, workspace, ui, step(), completes(workspace, 1, "ok"))
        started(orch, EXECUTION, two_tasks())
        workspace.write(workspace.completion_file(0), "left over from a crash")
        orch.run_execution()

        assert orch.tasks[0].status == "failed"
        assert "left over" not in workspace.read_decision_log()

    def test_no_tasks_moves_to_review(self, config, workspace):
        ui = FakeUI()
        orch, runner = make(config, workspace, ui)
        started(orch, EXECUTION).run_execution()

        assert orch.session.phase == REVIEW
        assert runner.invocations == []
        assert "No tasks found. Skipping execution." in ui.texts("WARN")


class TestReview:
    """Tests for the review phase."""

    def test_review_without_findings_still_completes(self, config, workspace):
        ui = FakeUI()
        orch, _ = make(config, workspace, ui, step())
        started(orch, REVIEW, two_tasks("completed", "failed")).run_review()

        assert orch.session.phase == COMPLETE
        assert "Review agent produced no findings" in ui.texts("WARN")
        assert ui.tables[-1][1][1] == ["✗", "2", "Task 1", "failed"]

    def test_review_reports_reputation(self, config, workspace):
        def review_adds_memory(invocation):
            write_store(config.data_dir / "memories.json", "memories",
                        [memory_record("mem-001"), memory_record("mem-002", status="deprecated")])

        ui = FakeUI()
        orch, runner = make(config, workspace, ui, step(output="drift found", before=review_adds_memory))
        started(orch, REVIEW, two_tasks("completed", "completed")).run_review()

        assert "Reputation: 1 active memories, 0 active patterns" in ui.texts("INFO")
        assert ui.shown[-1] == ("Review Findings", "drift found")
        assert "CLAUDE-MARKER" not in runner.prompts[0]


# =============================================================================
# Opening a session
# =============================================================================


class TestOpenSession:
    """Tests for resume, archive, delete and quit."""

    def test_fresh_start(self, config, workspace):
        ui = FakeUI()
        orch, _ = make(config, workspace, ui)
        session = orch.open_session()
        assert session.phase == PLANNING
        assert ui.offered == []
        assert workspace.load_session() == session

    def test_resume_execution_at_task_index(self, config, workspace):
        seed_session(workspace, Session(phase=EXECUTION, task_index=1, total_tasks=2, plan_approved=True),
                     two_tasks("completed", "pending"))
        workspace.write(workspace.plan_file, PLAN)
        ui = FakeUI(choices=["resume"])
        orch, runner = make(config, workspace, ui, completes(workspace, 1, "finished"), step(output="review"))

        session = orch.run()

        assert ui.offered[0] == ["resume", "archive", "delete", "quit"]
        assert len(runner.invocations) == 2
        assert "Current Task: 2 of 2" in runner.prompts[0]
        assert session.phase == COMPLETE

    def test_resume_planning_skips_answered_backbrief(self, config, workspace):
        seed_session(workspace, Session(phase=PLANNING))
        workspace.write(workspace.intent_file, INTENT)
        workspace.write(workspace.backbrief_file, "BACKBRIEF")
        workspace.write(workspace.backbrief_feedback_file, "FEEDBACK")
        ui = FakeUI(choices=["resume"], confirms=[True, True])
        orch, runner = make(
            config, workspace, ui,
            step(output=PLAN),
            step(output="Recommendation: APPROVE"),
            completes(workspace, 0, "a"),
            completes(workspace, 1, "b"),
            step(output="review"),
        )
        orch.run()

        assert "# CURRENT SESSION: PLANNING" in runner.prompts[0]
        assert "FEEDBACK" in runner.prompts[0]

    def test_new_intent_discards_derived_artifacts(self, config, workspace):
        ui = FakeUI(answers=["A completely different intent"], confirms=[False])
        orch, _ = make(config, workspace, ui)
        started(orch)
        workspace.write(workspace.backbrief_file, "BACKBRIEF")
        workspace.write(workspace.backbrief_feedback_file, "FEEDBACK")

        assert orch.collect_intent() == "A completely different intent"
        assert not workspace.backbrief_file.exists()
        assert not workspace.backbrief_feedback_file.exists()

    def test_complete_session_cannot_resume(self, config, workspace):
        seed_session(workspace, Session(phase=COMPLETE))
        ui = FakeUI(choices=["archive"])
        orch, _ = make(config, workspace, ui)

        session = orch.open_session()

        assert ui.offered[0] == ["archive", "delete", "quit"]
        assert session.phase == PLANNING
        archived = list(config.archive_dir.iterdir())
        assert len(archived) == 1
        assert (archived[0] / "state.json").exists()

    def test_delete(self, config, workspace):
        seed_session(workspace, Session(phase=REVIEW))
        workspace.write(workspace.plan_file, "old plan")
        ui = FakeUI(choices=["delete"])
        orch, _ = make(config, workspace, ui)

        orch.open_session()

        assert not workspace.plan_file.exists()
        assert workspace.load_session().phase == PLANNING

    def test_quit_leaves_session_untouched(self, config, workspace):
        original = Session(phase=EXECUTION, task_index=1, total_tasks=3, plan_approved=True)
        seed_session(workspace, original)
        ui = FakeUI(choices=["quit"])
        orch, _ = make(config, workspace, ui)

        with pytest.raises(SessionAborted):
            orch.open_session()
        assert workspace.load_session() == original

    def test_unreadable_state_cannot_resume(self, config, workspace):
        workspace.ensure_exists()
        workspace.state_file.write_text("not json", encoding="utf-8")
        ui = FakeUI(choices=["delete"])
        orch, _ = make(config, workspace, ui)

        orch.open_session()

        assert ui.offered[0] == ["archive", "delete", "quit"]
        assert any("unreadable" in w for w in ui.texts("WARN"))

    def test_leftover_files_without_state(self, config, workspace):
        workspace.ensure_exists()
        workspace.write(workspace.plan_file, "orphan plan")
        ui = FakeUI(choices=["archive"])
        orch, _ = make(config, workspace, ui)

        orch.open_session()

        assert ui.offered[0] == ["archive", "delete", "quit"]
        assert any("no state.json" in w for w in ui.texts("WARN"))
