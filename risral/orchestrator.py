"""
Session orchestration.

Drives one session through planning → execution → review → complete:

    planning   intent, backbrief, then plan / cross-check / approve until the
               operator approves; the plan is parsed into tasks
    execution  one fresh agent process per task, resumable at taskIndex
    review     one adversarial review of the whole run

Everything the next step needs is on disk before it starts, so an interrupt
at any prompt or agent call leaves a session that resumes where it stopped.
"""
import logging
from pathlib import Path
from typing import Callable, List, Optional

from risral.config import RisralConfig
from risral.memory import ReputationStore
from risral.parser import extract_recommendation, parse_tasks
from risral.prompt import PromptAssembler
from risral.runner import AgentInvocation, AgentRunner, RunResult
from risral.state import (
    COMPLETE, EXECUTION, PLANNING, REVIEW, Session, SessionWorkspace, Task, full_plan_task,
)
from risral.ui import Choice, ConsoleUI

logger = logging.getLogger(__name__)

MIN_INTENT_LENGTH = 10
STDOUT_TAIL_CHARS = 2000
BACKBRIEF_ACCEPTED = "The human accepted the backbrief with no additional feedback."

RECOMMENDATION_MESSAGES = {
    "APPROVE": ("success", "Cross-check: APPROVED"),
    "REVISE": ("warn", "Cross-check: REVISION REQUESTED"),
    "ESCALATE": ("error", "Cross-check: ESCALATED"),
}

TASK_STATUS_ICONS = {"completed": "✓", "failed": "✗"}


class SessionAborted(Exception):
    """The operator stopped at a decision point; the session stays on disk."""


class SessionOrchestrator:
    """Phase state machine for one session directory."""

    def __init__(
        self,
        config: RisralConfig,
        ui: ConsoleUI,
        runner: Optional[AgentRunner] = None,
        reputation: Optional[ReputationStore] = None,
        workspace: Optional[SessionWorkspace] = None,
    ):
        self.config = config
        self.ui = ui
        self.runner = runner or AgentRunner(config.agent_command)
        self.reputation = reputation or ReputationStore(config.data_dir)
        self.workspace = workspace or SessionWorkspace.create(config.session_dir)
        self.prompts = PromptAssembler(config, self.reputation, self.workspace)
        self.session: Optional[Session] = None
        self.tasks: List[Task] = []

    def run(self) -> Session:
        """Run from wherever the session stands until it is complete."""
        self.ui.banner("RISRAL", "Reputation-Inclusive Self-Referential Agentic Loop")
        self.ui.info(f"Project: {self.config.project_dir}")
        self.ui.info(f"Session: {self.workspace.path}")
        if self.config.skip_permissions:
            self.ui.info("Permissions: skipped (non-interactive agent runs)")

        self.session = self.open_session()
        self.ui.info(f"Current phase: {self.session.phase}")

        if self.session.phase == PLANNING:
            self.run_planning()
        if self.session.phase == EXECUTION:
            self.run_execution()
        if self.session.phase == REVIEW:
            self.run_review()

        self.ui.success("All phases complete. Reputation updates are in data/memories.json and data/patterns.json.")
        return self.session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open_session(self) -> Session:
        """Resume, archive or delete what is on disk, then start fresh if needed."""
        ws = self.workspace
        if ws.exists() or self._has_leftovers():
            session = self._load_existing()
            options: List[Choice] = []
            if session is not None and not session.is_terminal:
                progress = f"phase: {session.phase}"
                if session.phase == EXECUTION:
                    progress += f", task {session.task_index + 1} of {session.total_tasks}"
                options.append(("resume", "Resume", progress))
            options += [
                ("archive", "Archive", f"move to {self.config.archive_dir.name}/<timestamp>"),
                ("delete", "Delete", "remove the session directory"),
                ("quit", "Quit", "leave everything as it is"),
            ]
            choice = self.ui.choose("A previous session exists.", options)

            if choice == "resume":
                self.tasks = ws.load_tasks()
                self.ui.success(f"Resuming in {session.phase}")
                return session
            if choice == "archive":
                target = ws.archive(self.config.archive_dir)
                self.ui.success(f"Archived previous session to {target}")
            elif choice == "delete":
                ws.delete()
                self.ui.success("Deleted previous session")
            else:
                raise SessionAborted("Left the previous session untouched")

        ws.ensure_exists()
        session = Session.new()
        ws.save_session(session)
        return session

    def _has_leftovers(self) -> bool:
        path = self.workspace.path
        return path.is_dir() and any(path.iterdir())

    def _load_existing(self) -> Optional[Session]:
        """The stored session, or None when its records cannot be read."""
        ws = self.workspace
        try:
            session = ws.load_session()
            ws.load_tasks()
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            self.ui.warn(f"Session records in {ws.path} are unreadable ({e}); it cannot be resumed")
            return None
        if session is None:
            self.ui.warn(f"{ws.path} holds files but no state.json; it cannot be resumed")
        return session

    def save(self):
        self.session.touch()
        self.workspace.save_tasks(self.tasks)
        self.workspace.save_session(self.session)
        logger.debug("Saved session: phase=%s taskIndex=%d/%d",
                     self.session.phase, self.session.task_index, self.session.total_tasks)

    # ------------------------------------------------------------------
    # Agent steps
    # ------------------------------------------------------------------

    def invoke(self, label: str, build_prompt: Callable[[], str],
               output_file: Optional[Path] = None) -> RunResult:
        """Re-read the reputation store, build the prompt and run one agent process."""
        for warning in self.reputation.refresh():
            self.ui.warn(warning)
        invocation = AgentInvocation(
            prompt=build_prompt(),
            working_dir=self.config.project_dir,
            additional_dirs=self.config.additional_dirs,
            model=self.config.model,
            max_budget=self.config.max_budget,
            skip_permissions=self.config.skip_permissions,
            allowed_tools=self.config.allowed_tools,
            output_file=output_file,
        )
        echo = self.ui.stream if self.config.stream_output else None
        with self.ui.working(f"{label}..."):
            result = self.runner.run(invocation, echo=echo)

        if not result.succeeded:
            self.ui.warn(f"{label} exited with code {result.exit_code}")
        if output_file is not None and result.output_source == "stdout":
            self.ui.warn(f"Agent did not write {output_file.name}; saved its output there instead")
        return result

    def produce(self, label: str, build_prompt: Callable[[], str], output_file: Path) -> str:
        """Run a planning step until it yields its artifact, or the operator aborts."""
        while True:
            self.workspace.discard(output_file)
            result = self.invoke(label, build_prompt, output_file)
            if result.has_output:
                self.ui.success(f"{label} saved to {output_file}")
                return result.output
            self.ui.error(f"No {label.lower()} output: the agent wrote no file and printed nothing")
            choice = self.ui.choose("What now?", [
                ("retry", "Retry", f"run the {label.lower()} step again"),
                ("abort", "Abort", "stop here; resume later"),
            ])
            if choice == "abort":
                raise SessionAborted(f"No {label.lower()} output")

    # ------------------------------------------------------------------
    # Phase 1: Planning
    # ------------------------------------------------------------------

    def run_planning(self):
        ws = self.workspace
        self.ui.phase("Phase 1 — Planning", "Backbrief, plan, adversarial cross-check")

        self.collect_intent()
        if ws.backbrief_feedback_file.exists():
            self.ui.info("Backbrief already answered; going straight to the plan")
        else:
            self.run_backbrief()
        self.plan_loop()

        tasks = parse_tasks(ws.read(ws.plan_file))
        if not tasks:
            self.ui.warn("Could not parse tasks from plan.md: no '## Tasks' section with numbered items.")
            if not self.ui.confirm("Continue to execution with the whole plan as a single task?"):
                raise SessionAborted("Plan has no task list")
            tasks = [full_plan_task()]

        self.tasks = tasks
        self.session.total_tasks = len(tasks)
        self.session.task_index = 0
        self.session.plan_approved = True
        self.session.advance(EXECUTION)
        self.save()
        self.ui.success(f"Plan parsed into {len(tasks)} task(s). Moving to execution.")

    def collect_intent(self) -> str:
        ws = self.workspace
        existing = ws.read(ws.intent_file).strip()
        if existing:
            self.ui.show("Session Intent", existing, str(ws.intent_file))
            if self.ui.confirm("Keep this session intent?", default=True):
                return existing
            # A new intent invalidates everything derived from the old one.
            ws.discard(ws.backbrief_file, ws.backbrief_feedback_file, ws.plan_file, ws.cross_check_file)

        intent = self.ui.ask_multiline(
            "What's your intent for this session? Describe what you want to achieve and why.",
            min_length=MIN_INTENT_LENGTH,
        )
        ws.write(ws.intent_file, intent + "\n")
        return intent

    def run_backbrief(self):
        ws = self.workspace
        self.ui.phase("Backbrief", "The agent restates your intent and asks its questions")
        content = self.produce("Backbrief", self.prompts.backbrief, ws.backbrief_file)
        self.ui.show("Backbrief", content, str(ws.backbrief_file))

        feedback = self.ui.ask_multiline(
            "Respond to the backbrief: answer questions, correct misunderstandings, add context"
        )
        if not feedback:
            self.ui.info("Backbrief accepted as-is")
            feedback = BACKBRIEF_ACCEPTED
        ws.write(ws.backbrief_feedback_file, feedback + "\n")

    def plan_loop(self):
        """Plan, cross-check, show both; repeat with feedback until approved."""
        ws = self.workspace
        revision = 0
        feedback = ""
        while True:
            revision += 1
            note = f" (revision {revision})" if revision > 1 else ""
            self.ui.phase("Plan" + note, "The agent picks an approach and writes the plan")
            plan = self.produce("Planning", lambda: self.prompts.planning(feedback), ws.plan_file)
            self.ui.show("Plan", plan, str(ws.plan_file))

            self.ui.phase("Cross-check", "Adversarial review of the plan")
            findings = self.produce("Cross-check", self.prompts.cross_check, ws.cross_check_file)
            self.show_recommendation(extract_recommendation(findings))
            self.ui.show("Cross-Check Findings", findings, str(ws.cross_check_file))

            if self.ui.confirm("Approve this plan and proceed to execution?"):
                return
            feedback = self.ui.ask_multiline("What should be revised? (sent to the planning agent)")
            if not feedback:
                raise SessionAborted("Plan rejected without feedback")
            ws.discard(ws.plan_file, ws.cross_check_file)

    def show_recommendation(self, recommendation: Optional[str]):
        if recommendation is None:
            self.ui.info("Cross-check gave no clear recommendation")
            return
        method, message = RECOMMENDATION_MESSAGES[recommendation]
        getattr(self.ui, method)(message)

    # ------------------------------------------------------------------
    # Phase 2: Execution
    # ------------------------------------------------------------------

    def run_execution(self):
        ws = self.workspace
        if not self.tasks:
            self.tasks = ws.load_tasks()
        tasks = self.tasks
        start = self.session.task_index

        if not tasks:
            self.ui.warn("No tasks found. Skipping execution.")
        else:
            self.ui.phase("Phase 2 — Execution",
                          f"{len(tasks)} task(s), starting at task {min(start, len(tasks)) + 1}")
            for task in tasks[start:]:
                self.execute_task(task)
                self.session.task_index = task.index + 1
                self.save()

            completed = sum(1 for t in tasks if t.status == "completed")
            failed = sum(1 for t in tasks if t.status == "failed")
            self.ui.info(f"Execution finished: {completed} completed, {failed} failed out of {len(tasks)}")

        self.session.advance(REVIEW)
        self.save()

    def execute_task(self, task: Task):
        """One fresh agent process; the completion file is the success signal."""
        ws = self.workspace
        total = len(self.tasks)
        number = task.index + 1
        completion = ws.completion_file(task.index)

        while True:
            task.status = "in_progress"
            self.save()
            self.ui.phase(f"Task {number}/{total}", task.title)
            ws.discard(completion)
            result = self.invoke(
                f"Task {number}",
                lambda: self.prompts.execution(task, total, ws.read_decision_log()),
            )

            summary = ws.read(completion)
            if summary.strip():
                ws.append_decision_log(task, summary)
                task.finish("completed")
                self.ui.success(f"Task {number} completed")
                return

            if result.stdout.strip():
                ws.append_decision_log(task, result.stdout[-STDOUT_TAIL_CHARS:])
                task.finish("completed" if result.succeeded else "failed")
                self.ui.warn(f"Task {number} wrote no completion signal; "
                             f"recorded the end of its output in the decision log ({task.status})")
                return

            self.ui.error(f"Task {number} wrote no completion signal and printed nothing")
            choice = self.ui.choose("What now?", [
                ("retry", "Retry", "run this task again in a fresh process"),
                ("fail", "Mark failed", "record the failure and continue"),
                ("stop", "Stop", "resume later from this task"),
            ])
            if choice == "fail":
                task.finish("failed")
                return
            if choice == "stop":
                raise SessionAborted(f"Stopped at task {number}")

    # ------------------------------------------------------------------
    # Phase 3: Review
    # ------------------------------------------------------------------

    def run_review(self):
        ws = self.workspace
        if not self.tasks:
            self.tasks = ws.load_tasks()
        self.ui.phase("Phase 3 — Review", "Drift detection and reputation scoring")

        ws.discard(ws.review_file)
        result = self.invoke(
            "Review",
            lambda: self.prompts.review(self.tasks, ws.read_decision_log()),
            ws.review_file,
        )
        if result.has_output:
            self.ui.show("Review Findings", result.output, str(ws.review_file))
        else:
            self.ui.warn("Review agent produced no findings")

        self.show_task_summary()
        for warning in self.reputation.refresh():
            self.ui.warn(warning)
        self.ui.info(f"Reputation: {len(self.reputation.memories.included())} active memories, "
                     f"{len(self.reputation.patterns.included())} active patterns")

        self.session.advance(COMPLETE)
        self.save()

    def show_task_summary(self):
        rows = [
            [TASK_STATUS_ICONS.get(t.status, "?"), str(t.index + 1), t.title, t.status]
            for t in self.tasks
        ]
        self.ui.table("Task Summary", ["", "#", "Task", "Status"], rows)
