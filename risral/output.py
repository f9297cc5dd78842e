"""
Plan export.

Builds plan-output.md: a single self-contained document carrying the
execution framing, both intents, the reputation store, the approved plan and
a per-task list, for handing an approved plan to an agent session that runs
outside the orchestrator.
"""
import logging
from pathlib import Path
from typing import List, Optional

from risral.config import PROJECT_INTENT_FILE, RisralConfig
from risral.memory import ReputationStore
from risral.parser import extract_section, parse_tasks
from risral.state import SessionWorkspace, Task
from risral.storage import read_text
from risral.ui import ConsoleUI

logger = logging.getLogger(__name__)

ECONOMICS_SECTION = """\
## Your Economics Are Not Human Economics

You are executing a plan produced by a human-agent planning session. The cost-benefit
heuristics you learned from human engineers do not apply to you:

- **Exploring is free.** Consider at least two ways to do each task before writing code.
- **Deferral is expensive.** If something within scope needs doing, do it now. There is
  no later that remembers this context.
- **Thoroughness is free.** Take the time the work actually requires.
- **Hedging costs nothing.** Say when you are uncertain and when you are guessing."""

EXECUTION_FRAMING = """\
## You Are Executing an Approved Plan

This plan went through intent alignment, a backbrief, an adversarial cross-check and
human approval. Execute it faithfully.

- Follow the plan. Each task carries enough context to implement.
- Do not skip or reorder tasks unless implementation reveals a concrete reason, such as
  a dependency that was not visible during planning.
- Resolve surprises using the project intent. Record what you found and what you decided.
- A task is done when it meets its description, not before.
- After each task, note every decision that diverged from the plan, and why."""

WHEN_DONE = (
    "Document any decisions you made that diverged from this task's description. "
    "Note what you found, what you decided, and why. Then move to the next task."
)


def assemble_plan_output(plan: str, tasks: List[Task], project_intent: str,
                         session_intent: str, reputation: ReputationStore) -> str:
    success_criteria = extract_section(plan, "Success Criteria") if plan else None

    sections = ["# Execution Context\n", ECONOMICS_SECTION, ""]
    if project_intent.strip():
        sections += ["## Project Intent\n", project_intent.strip(), ""]
    if session_intent.strip():
        sections += ["## Session Intent\n", session_intent.strip(), ""]
    sections += [EXECUTION_FRAMING, ""]
    sections += ["## Reputation Store (Memories)\n", reputation.memories.format(), ""]
    sections += ["## Behavioral Patterns\n", reputation.patterns.format(), ""]

    sections += ["---\n", "# The Plan\n", plan.strip() or "*No plan content found.*", ""]

    sections += ["---\n", "# Task List\n"]
    if not tasks:
        sections.append("*No tasks parsed from the plan.*")
    for task in tasks:
        sections += [f"## Task {task.index + 1}: {task.title}\n", task.description, ""]
        if success_criteria:
            sections += ["### Success Criteria\n", success_criteria, ""]
        sections += ["### When Done\n", WHEN_DONE, ""]

    return "\n".join(sections)


def export_plan(config: RisralConfig, ui: ConsoleUI,
                workspace: Optional[SessionWorkspace] = None) -> Optional[Path]:
    """Write plan-output.md for the current session; None when there is no plan."""
    ws = workspace or SessionWorkspace.create(config.session_dir)
    plan = ws.read(ws.plan_file)
    if not plan.strip():
        ui.error(f"No plan found at {ws.plan_file}. Run a planning session first.")
        return None

    tasks = ws.load_tasks() or parse_tasks(plan)
    reputation = ReputationStore(config.data_dir)
    for warning in reputation.refresh():
        ui.warn(warning)

    content = assemble_plan_output(
        plan=plan,
        tasks=tasks,
        project_intent=read_text(config.data_dir / PROJECT_INTENT_FILE),
        session_intent=ws.read(ws.intent_file),
        reputation=reputation,
    )
    ws.write(ws.plan_output_file, content)
    logger.debug("Wrote %d chars to %s", len(content), ws.plan_output_file)
    ui.success(f"Plan output written to {ws.plan_output_file}")
    ui.show("Plan Output", content, str(ws.plan_output_file))
    return ws.plan_output_file
