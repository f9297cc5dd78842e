"""
Prompt assembly.

Each agent invocation gets one self-contained prompt, built in a fixed order:

    1. the operating-rules document for the role
    2. project intent
    3. formatted memories
    4. formatted patterns
    5. phase material (backbrief, feedback, plan, decision log, ...)
    6. where to write the result

The primary agent works under framework/CLAUDE.md. The adversarial roles
(cross-check and review) get framework/cross-check-mandate.md instead and
never see CLAUDE.md, so their judgement stays independent of the rules the
primary agent was given.
"""
from typing import List, Optional, Sequence, Tuple

from risral.config import PROJECT_INTENT_FILE, RisralConfig
from risral.memory import CONTRADICTION_FACTOR, REINFORCEMENT_RATE, ReputationStore
from risral.state import SessionWorkspace, Task
from risral.storage import read_text

RULES_FILE = "CLAUDE.md"
MANDATE_FILE = "cross-check-mandate.md"
ONBOARDING_FILE = "onboarding-protocol.md"

Section = Tuple[str, str]

NO_PROJECT_INTENT = "No project intent on file. Run 'risral init' to set one."

BACKBRIEF_INSTRUCTIONS = """\
You are in the backbrief step. Do not produce a plan yet.

1. Read the operating framework and your reputation store. Where a pattern flags a
   recurring failure, guard against it.
2. Restate the session intent in your own framing, not the human's words. Surface at
   least one assumption the human did not state and at least one gap or tension in
   the intent. Describe what "done" looks like in concrete terms.
3. Ask every question you need answered. This is your only chance: once the human
   responds you move to planning with no further questions.

Do not present technical options; the human is here to clarify intent."""

PLANNING_INSTRUCTIONS = """\
You have the human's response to your backbrief. Produce the plan.

1. Explore at least two approaches internally: what each optimizes for, what it
   sacrifices, what could go wrong, what it assumes about the future.
2. Pick the best approach. You are the technical authority; presenting a menu of
   options is deferral, not engineering.
3. Present the chosen approach as a concrete plan.

The plan MUST contain:
- **## Approach** — what you chose and why
- **## Tasks** — a numbered list of discrete tasks that can be executed independently,
  each with a clear title and description
- **## Success Criteria** — must-have / should-have / could-have / must-not-have

An adversarial cross-check agent will review the plan and update your reputation."""

EXECUTION_INSTRUCTIONS = """\
Execute the current task, and only the current task, to completion. You have full
autonomy: do not ask questions. Earlier tasks have already run in separate sessions;
the decision log above is everything they left you.

Where the task description and the code disagree, resolve it using the project intent
and record what you decided and why."""

CROSS_CHECK_INSTRUCTIONS = """\
Evaluate the planning output on every dimension of your mandate. For each dimension,
give a finding with cited evidence and a score action.

End with a summary recommendation: APPROVE, REVISE, or ESCALATE."""

REVIEW_INSTRUCTIONS = """\
Review the execution against the approved plan. Map every divergence between what was
planned and what was done, and record each as drift. Check every success criterion and
say whether it was met. Failed tasks are information, not a reason to stop."""


def score_update_rules(data_dir) -> str:
    """How an adversarial role may change the reputation files."""
    return (
        f"You may edit {data_dir / 'memories.json'} and {data_dir / 'patterns.json'} directly.\n"
        "\n"
        "- Update `last_updated` on the root object whenever you change a file.\n"
        "- Deprecate rather than delete: set `status` to \"deprecated\".\n"
        f"- On contradiction: new_score = old_score * {CONTRADICTION_FACTOR}\n"
        f"- On reinforcement: new_score = old_score + {REINFORCEMENT_RATE} * (1 - old_score), "
        "and increment `reinforcement_count`.\n"
        "- Create a memory for a false belief, a pattern seen more than once, a decision future "
        "sessions need, or human feedback that contradicts an existing memory. Do not create one "
        "for anything trivially re-discoverable from the code."
    )


def format_task_list(tasks: Sequence[Task]) -> str:
    if not tasks:
        return "*No tasks.*"
    return "\n".join(f"{t.index + 1}. {t.title} [{t.status}]" for t in tasks)


class PromptAssembler:
    """Builds the prompt for every phase from files and the reputation store handle."""

    def __init__(self, config: RisralConfig, reputation: ReputationStore, workspace: SessionWorkspace):
        self.config = config
        self.reputation = reputation
        self.workspace = workspace

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def framework_file(self, name: str) -> str:
        return read_text(self.config.framework_dir / name)

    def project_intent(self) -> str:
        return read_text(self.config.data_dir / PROJECT_INTENT_FILE).strip() or NO_PROJECT_INTENT

    def session_intent(self) -> str:
        return self.workspace.read(self.workspace.intent_file).strip() or "No session intent recorded."

    def compose(self, rules_file: str, title: str, material: List[Section],
                instructions: str, output_path) -> str:
        """Join the parts in their fixed order."""
        parts = [
            self.framework_file(rules_file).strip(),
            "---",
            f"# CURRENT SESSION: {title}",
            f"## Project Intent\n\n{self.project_intent()}",
            f"## Reputation Store (Project Memories)\n\n{self.reputation.memories.format()}",
            f"## Portable Behavioral Patterns\n\n{self.reputation.patterns.format()}",
        ]
        parts += [f"## {heading}\n\n{body.strip()}" for heading, body in material]
        parts.append(f"## Instructions\n\n{instructions}")
        parts.append(f"## Output\n\nWrite your result to: {output_path}")
        return "\n\n".join(p for p in parts if p) + "\n"

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def backbrief(self, cold_start: Optional[bool] = None) -> str:
        """Restate the intent and ask questions. Cold start adds the onboarding protocol."""
        if cold_start is None:
            cold_start = not self.reputation.has_active_memories()
        material: List[Section] = [("Session Intent", self.session_intent())]
        if cold_start:
            material.append(("Onboarding Protocol (no memories on file yet)",
                             self.framework_file(ONBOARDING_FILE) or "*Onboarding protocol not found.*"))
        return self.compose(RULES_FILE, "BACKBRIEF", material, BACKBRIEF_INSTRUCTIONS,
                            self.workspace.backbrief_file)

    def planning(self, revision_feedback: str = "") -> str:
        ws = self.workspace
        material: List[Section] = [
            ("Session Intent", self.session_intent()),
            ("Your Backbrief", ws.read(ws.backbrief_file) or "No backbrief found."),
            ("Human's Response to Your Backbrief",
             ws.read(ws.backbrief_feedback_file) or "No feedback provided; proceed with your understanding."),
        ]
        if revision_feedback.strip():
            material.append(("Revision Requested",
                             "The human rejected the previous plan. Their feedback:\n\n" + revision_feedback))
        return self.compose(RULES_FILE, "PLANNING", material, PLANNING_INSTRUCTIONS, ws.plan_file)

    def cross_check(self) -> str:
        ws = self.workspace
        material: List[Section] = [
            ("Session Intent", self.session_intent()),
            ("Primary Agent's Planning Output", ws.read(ws.plan_file) or "*No plan found.*"),
            ("Reputation Updates", score_update_rules(self.config.data_dir)),
        ]
        return self.compose(MANDATE_FILE, "CROSS-CHECK REVIEW", material, CROSS_CHECK_INSTRUCTIONS,
                            ws.cross_check_file)

    def execution(self, task: Task, total: int, decision_log: str) -> str:
        ws = self.workspace
        material: List[Section] = [
            ("Session Intent", self.session_intent()),
            ("Approved Plan", ws.read(ws.plan_file) or "*No plan found.*"),
            ("Decision Log (earlier tasks)", decision_log or "*No earlier tasks.*"),
            (f"Current Task: {task.index + 1} of {total} — {task.title}", task.description),
        ]
        instructions = (
            EXECUTION_INSTRUCTIONS + "\n\n"
            "When the task is done, write a short summary of what you did and every decision "
            "that diverged from the task description. That file is the completion signal."
        )
        return self.compose(RULES_FILE, f"EXECUTION — TASK {task.index + 1}", material, instructions,
                            ws.completion_file(task.index))

    def review(self, tasks: Sequence[Task], decision_log: str) -> str:
        ws = self.workspace
        material: List[Section] = [
            ("Session Intent", self.session_intent()),
            ("Approved Plan", ws.read(ws.plan_file) or "*No plan found.*"),
            ("Tasks", format_task_list(tasks)),
            ("Decision Log", decision_log or "*Empty.*"),
            ("Reputation Updates", score_update_rules(self.config.data_dir)),
        ]
        return self.compose(MANDATE_FILE, "REVIEW", material, REVIEW_INSTRUCTIONS, ws.review_file)
