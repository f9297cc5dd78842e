"""
Operator commands outside the session loop: init, status and learn.
"""
import logging
import shutil
import subprocess
from typing import List, Optional

from risral.config import DEFAULT_FRAMEWORK_DIR, PROJECT_INTENT_FILE, REQUIRED_FRAMEWORK_FILES, RisralConfig
from risral.memory import (
    CORRUPT, MEMORY_TYPE_LABELS, MEMORY_TYPES, MISSING,
    Confidence, Memory, ReputationStore, memory_priority,
)
from risral.state import SessionWorkspace, now_iso
from risral.storage import read_text, write_text_atomic
from risral.ui import Choice, ConsoleUI

logger = logging.getLogger(__name__)
MIN_ANSWER_LENGTH = 10
NEW_OBSERVATION_CONFIDENCE = 0.5

# (section heading, question)
INTENT_QUESTIONS = [
    ("What this project is", "What is this project? Who is it for? What problem does it solve?"),
    ("Why it matters", "Why does it matter? What changes if this succeeds?"),
    ("What success looks like", "What does success look like? Describe concrete outcomes, not features."),
    ("What quality means here", "What does quality mean here? What standard are you holding to?"),
    ("What this project is NOT", "What is this project NOT? What's deliberately out of scope?"),
]


# ============================================================================
# init
# ============================================================================

def check_agent(config: RisralConfig, ui: ConsoleUI) -> bool:
    """Run `<agent> --version` to prove the CLI is installed."""
    command = config.agent_command + ["--version"]
    logger.debug("Checking agent CLI: %s", command)
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        ui.error(f"Agent CLI not usable ({command[0]}): {e}")
        return False
    if result.returncode != 0:
        ui.error(f"'{' '.join(command)}' exited with code {result.returncode}")
        return False
    ui.success(f"Agent CLI: {command[0]} {result.stdout.strip()}")
    return True


def install_framework(config: RisralConfig, ui: ConsoleUI):
    """Copy the packaged framework documents that are missing; never overwrite."""
    config.framework_dir.mkdir(parents=True, exist_ok=True)
    for name in REQUIRED_FRAMEWORK_FILES:
        target = config.framework_dir / name
        if target.exists():
            ui.success(f"framework/{name}")
        else:
            shutil.copyfile(DEFAULT_FRAMEWORK_DIR / name, target)
            ui.success(f"Created framework/{name}")


def create_stores(reputation: ReputationStore, ui: ConsoleUI):
    for store in (reputation.memories, reputation.patterns):
        if store.status == MISSING:
            store.save()
            ui.success(f"Created data/{store.filename}")
        elif store.status == CORRUPT:
            ui.warn(f"data/{store.filename} exists but cannot be parsed ({store.error}); left untouched")
        else:
            ui.success(f"data/{store.filename} already exists")


def build_intent_document(answers: List[str]) -> str:
    lines = ["# Project Intent", ""]
    for (heading, _), answer in zip(INTENT_QUESTIONS, answers):
        lines += [f"## {heading}", "", answer, ""]
    return "\n".join(lines)


def collect_project_intent(config: RisralConfig, ui: ConsoleUI) -> Optional[List[str]]:
    """Ask the five intent questions; None when the operator keeps the existing intent."""
    intent_path = config.data_dir / PROJECT_INTENT_FILE
    existing = read_text(intent_path)
    if existing:
        preview = "\n".join(existing.split("\n")[:10])
        ui.show("Existing project intent", preview, str(intent_path))
        if not ui.confirm("Update the project intent?"):
            ui.success("Keeping existing project intent")
            return None

    ui.show("Project Intent", "\n".join([
        "These questions help the agent understand what you're trying to achieve.",
        "Focus on outcomes and problems, not technical details or specific features.",
        "This is set once and guides every session.",
    ]))
    answers = [ui.ask(question, min_length=MIN_ANSWER_LENGTH) for _, question in INTENT_QUESTIONS]
    write_text_atomic(intent_path, build_intent_document(answers))
    ui.success(f"Project intent saved to data/{PROJECT_INTENT_FILE}")
    return answers


def run_init(config: RisralConfig, ui: ConsoleUI, verify_agent: bool = True) -> int:
    """Set up framework/, data/ and the project intent under the RISRAL home."""
    ui.banner("RISRAL — Project Setup", str(config.home))

    ui.phase("Checking environment")
    if verify_agent and not check_agent(config, ui):
        return 1

    ui.phase("Framework files")
    install_framework(config, ui)

    ui.phase("Data directory")
    config.data_dir.mkdir(parents=True, exist_ok=True)
    reputation = ReputationStore(config.data_dir)
    create_stores(reputation, ui)

    ui.phase("Project intent")
    answers = collect_project_intent(config, ui)
    if answers and reputation.memories.ok:
        reputation.memories.header["project"] = answers[0].split("\n")[0][:100]
        reputation.memories.save()

    ui.show("Ready", "\n".join([
        "Start a session:      risral run [project-dir]",
        "Review reputation:    risral status",
        "Feed back outcomes:   risral learn",
        "Export the plan:      risral export",
    ]))
    ui.success("RISRAL is ready.")
    return 0


# ============================================================================
# status
# ============================================================================

def _percent(score: float) -> str:
    return f"{score * 100:.0f}%"


def _clip(text: str, width: int = 70) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[:width - 3] + "..."


def show_session_status(config: RisralConfig, ui: ConsoleUI):
    ws = SessionWorkspace.create(config.session_dir)
    if not ws.exists():
        ui.info("No session in progress")
        return
    try:
        session = ws.load_session()
        tasks = ws.load_tasks()
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        ui.warn(f"Session records in {ws.path} are unreadable: {e}")
        return

    rows = [
        ["Phase", session.phase],
        ["Plan approved", "yes" if session.plan_approved else "no"],
        ["Tasks", f"{session.task_index} of {session.total_tasks} done"],
        ["Started", session.started_at],
        ["Last updated", session.last_updated],
    ]
    ui.table("Session", ["", ""], rows)
    if tasks:
        ui.table("Tasks", ["#", "Task", "Status"],
                 [[str(t.index + 1), t.title, t.status] for t in tasks])


def show_reputation_status(reputation: ReputationStore, ui: ConsoleUI):
    memories, patterns = reputation.memories, reputation.patterns
    for store in (memories, patterns):
        if store.status == MISSING:
            ui.warn(f"data/{store.filename} not found — run 'risral init' first")
        elif store.status == CORRUPT:
            ui.warn(f"data/{store.filename} could not be parsed: {store.error}")
        elif store.invalid:
            ui.warn(f"data/{store.filename}: {len(store.invalid)} malformed record(s) skipped")

    ranked = memories.ranked()
    if ranked:
        ui.table("Memories", ["ID", "Type", "Confidence", "Reinforced", "Priority", "Content"], [
            [m.id, MEMORY_TYPE_LABELS[m.type], _percent(m.confidence.score), str(m.reinforcement_count),
             f"{memory_priority(m):.2f}", _clip(m.content)]
            for m in ranked
        ])
    ui.info(f"{len(ranked)} active memories ({len(memories.records) - len(ranked)} excluded)")

    ranked_patterns = patterns.ranked()
    if ranked_patterns:
        ui.table("Patterns", ["ID", "Category", "Confidence", "Reinforced", "Origin", "Content"], [
            [p.id, p.category, _percent(p.confidence.score), str(p.reinforcement_count), p.origin,
             _clip(p.content)]
            for p in ranked_patterns
        ])
    ui.info(f"{len(ranked_patterns)} active patterns "
            f"({len(patterns.records) - len(ranked_patterns)} deprecated)")


def run_status(config: RisralConfig, ui: ConsoleUI) -> int:
    ui.banner("RISRAL — Status", str(config.home))
    show_session_status(config, ui)
    show_reputation_status(ReputationStore(config.data_dir), ui)
    return 0


# ============================================================================
# learn
# ============================================================================

UPDATE_ACTIONS: List[Choice] = [
    ("reinforce", "Reinforce", "it held up: confidence moves a tenth closer to 100%"),
    ("contradict", "Contradict", "it was wrong: confidence drops by a fifth"),
    ("deprecate", "Deprecate", "it no longer applies: kept on file, never shown again"),
]


def update_record(store, ui: ConsoleUI) -> bool:
    """Pick a record from `store` and apply one update rule to it."""
    candidates = [r for r in store.records if not r.is_deprecated]
    if not candidates:
        ui.info(f"No active records in {store.filename}")
        return False

    options: List[Choice] = [(r.id, f"{r.id}: {_clip(r.content, 60)}", _percent(r.confidence.score))
                             for r in candidates]
    record_id = ui.choose("Which record?", options)
    action = ui.choose("What happened?", UPDATE_ACTIONS)
    reasoning = ui.ask("Why? (stored as the confidence reasoning)", min_length=1)

    before = store.find(record_id).confidence.score
    record = getattr(store, action)(record_id, reasoning)
    store.save()
    ui.success(f"{record.id}: {action} — confidence {_percent(before)} → {_percent(record.confidence.score)}"
               f", status {record.status}")
    return True


def record_observation(reputation: ReputationStore, ui: ConsoleUI) -> Memory:
    store = reputation.memories
    mem_type = ui.choose("What kind of memory?",
                         [(t, MEMORY_TYPE_LABELS[t], "") for t in MEMORY_TYPES])
    content = ui.ask("What did you observe?", min_length=MIN_ANSWER_LENGTH)
    context = ui.ask("Context (where or when it happened)", default="")
    memory = Memory(
        id=store.next_id(),
        type=mem_type,
        content=content,
        context=context,
        source="operator (risral learn)",
        confidence=Confidence(NEW_OBSERVATION_CONFIDENCE, "Recorded by the operator"),
        created=now_iso(),
    )
    store.add(memory)
    store.save()
    ui.success(f"Recorded {memory.id} ({MEMORY_TYPE_LABELS[mem_type]})")
    return memory


def run_learn(config: RisralConfig, ui: ConsoleUI) -> int:
    """Let the operator feed real outcomes back into the reputation store."""
    ui.banner("RISRAL — Learn", "Feed outcomes back into reputation")
    reputation = ReputationStore(config.data_dir)
    for store in (reputation.memories, reputation.patterns):
        if not store.ok:
            ui.error(f"data/{store.filename} is {store.status}; run 'risral init' or repair the file")
            return 1

    while True:
        choice = ui.choose("What do you want to record?", [
            ("memory", "Update a memory", f"{len(reputation.memories.records)} on file"),
            ("pattern", "Update a pattern", f"{len(reputation.patterns.records)} on file"),
            ("observe", "Record a new observation", "adds a memory"),
            ("done", "Done", ""),
        ])
        if choice == "memory":
            update_record(reputation.memories, ui)
        elif choice == "pattern":
            update_record(reputation.patterns, ui)
        elif choice == "observe":
            record_observation(reputation, ui)
        else:
            return 0
