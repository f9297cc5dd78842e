"""
Session state.

A session lives in one directory and is described by two records,
state.json (the Session) and tasks.json (the Task sequence), next to the
free-text artifacts the agent writes. Records are rewritten whole on every
change; the session directory is only ever archived or deleted on request.
"""
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from risral.storage import read_text, write_json_atomic, write_text_atomic

logger = logging.getLogger(__name__)

# ============================================================================
# Records
# ============================================================================

PLANNING = "planning"
EXECUTION = "execution"
REVIEW = "review"
COMPLETE = "complete"

PHASES = (PLANNING, EXECUTION, REVIEW, COMPLETE)

TRANSITIONS: Dict[str, tuple] = {
    PLANNING: (EXECUTION,),
    EXECUTION: (REVIEW,),
    REVIEW: (COMPLETE,),
    COMPLETE: (),
}

TASK_STATUSES = ("pending", "in_progress", "completed", "failed")
TERMINAL_TASK_STATUSES = ("completed", "failed")


def now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class Session:
    """Phase cursor for one operator-initiated unit of work."""
    phase: str = PLANNING
    task_index: int = 0
    total_tasks: int = 0
    plan_approved: bool = False
    started_at: str = ""
    last_updated: str = ""

    @classmethod
    def new(cls) -> 'Session':
        stamp = now_iso()
        return cls(started_at=stamp, last_updated=stamp)

    @property
    def is_terminal(self) -> bool:
        return self.phase == COMPLETE

    def advance(self, phase: str):
        """Move to `phase`; only the linear planning → execution → review → complete path is allowed."""
        if phase not in TRANSITIONS.get(self.phase, ()):
            raise ValueError(f"Invalid phase transition: {self.phase} → {phase}")
        self.phase = phase
        self.touch()

    def touch(self):
        self.last_updated = now_iso()

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "taskIndex": self.task_index,
            "totalTasks": self.total_tasks,
            "planApproved": self.plan_approved,
            "startedAt": self.started_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Session':
        phase = data.get("phase", PLANNING)
        if phase not in PHASES:
            raise ValueError(f"Unknown phase in session record: {phase!r}")
        return cls(
            phase=phase,
            task_index=int(data.get("taskIndex", 0)),
            total_tasks=int(data.get("totalTasks", 0)),
            plan_approved=bool(data.get("planApproved", False)),
            started_at=data.get("startedAt", ""),
            last_updated=data.get("lastUpdated", ""),
        )


@dataclass
class Task:
    """One independently executable unit of an approved plan."""
    index: int
    title: str
    description: str
    status: str = "pending"
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def finish(self, status: str):
        if status not in TERMINAL_TASK_STATUSES:
            raise ValueError(f"Not a terminal task status: {status}")
        self.status = status
        self.completed_at = now_iso()

    def to_dict(self) -> dict:
        data = {
            "index": self.index,
            "title": self.title,
            "description": self.description,
            "status": self.status,
        }
        if self.completed_at:
            data["completedAt"] = self.completed_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Task':
        status = data.get("status", "pending")
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status!r}")
        return cls(
            index=int(data["index"]),
            title=data["title"],
            description=data.get("description", ""),
            status=status,
            completed_at=data.get("completedAt"),
        )


FULL_PLAN_TASK_TITLE = "Execute full plan"


def full_plan_task() -> Task:
    """Single stand-in task used when the approved plan has no parseable task list."""
    return Task(index=0, title=FULL_PLAN_TASK_TITLE,
                description="Execute the approved plan as a single task.")


# ============================================================================
# Session Workspace
# ============================================================================

@dataclass
class SessionWorkspace:
    """Paths of every artifact inside one session directory."""
    path: Path
    state_file: Path
    tasks_file: Path
    intent_file: Path
    backbrief_file: Path
    backbrief_feedback_file: Path
    plan_file: Path
    cross_check_file: Path
    review_file: Path
    decision_log_file: Path
    plan_output_file: Path

    @classmethod
    def create(cls, session_dir: Path) -> 'SessionWorkspace':
        return cls(
            path=session_dir,
            state_file=session_dir / "state.json",
            tasks_file=session_dir / "tasks.json",
            intent_file=session_dir / "intent.md",
            backbrief_file=session_dir / "backbrief.md",
            backbrief_feedback_file=session_dir / "backbrief-feedback.md",
            plan_file=session_dir / "plan.md",
            cross_check_file=session_dir / "cross-check.md",
            review_file=session_dir / "review.md",
            decision_log_file=session_dir / "decision-log.md",
            plan_output_file=session_dir / "plan-output.md",
        )

    def ensure_exists(self):
        self.path.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.state_file.exists()

    def completion_file(self, task_index: int) -> Path:
        """Signal file the agent writes when task `task_index` is done."""
        return self.path / f"task-{task_index}-complete.md"

    # --- Session record ---

    def load_session(self) -> Optional[Session]:
        if not self.state_file.exists():
            return None
        return Session.from_dict(json.loads(self.state_file.read_text(encoding='utf-8')))

    def save_session(self, session: Session):
        write_json_atomic(self.state_file, session.to_dict())

    # --- Task sequence ---

    def load_tasks(self) -> List[Task]:
        if not self.tasks_file.exists():
            return []
        return [Task.from_dict(t) for t in json.loads(self.tasks_file.read_text(encoding='utf-8'))]

    def save_tasks(self, tasks: List[Task]):
        write_json_atomic(self.tasks_file, [t.to_dict() for t in tasks])

    # --- Decision log ---

    def read_decision_log(self) -> str:
        return read_text(self.decision_log_file)

    def append_decision_log(self, task: Task, summary: str):
        """Record what one task decided; entries are numbered from 1."""
        entry = f"\n\n### Task {task.index + 1}: {task.title}\n\n{summary.strip()}"
        write_text_atomic(self.decision_log_file, self.read_decision_log() + entry)

    # --- Free-text artifacts ---

    def read(self, path: Path) -> str:
        return read_text(path)

    def write(self, path: Path, content: str):
        write_text_atomic(path, content)

    def discard(self, *paths: Path):
        for path in paths:
            if path.exists():
                path.unlink()

    # --- Lifecycle ---

    def archive(self, archive_root: Path) -> Path:
        """Move the whole session directory under a timestamped name."""
        archive_root.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        target = archive_root / timestamp
        suffix = 1
        while target.exists():
            suffix += 1
            target = archive_root / f"{timestamp}-{suffix}"
        self.path.rename(target)
        logger.debug("Archived %s to %s", self.path, target)
        return target

    def delete(self):
        if self.path.exists():
            shutil.rmtree(self.path)
        logger.debug("Deleted %s", self.path)
