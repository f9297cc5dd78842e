"""
Plan parsing.

The agent writes its plan as free-form markdown. Tasks are pulled out of the
"## Tasks" section by an ordered chain of extraction strategies; the first
one that finds anything wins and nothing is merged across strategies. Every
strategy is a pure function `text -> list[Task]` that returns [] instead of
raising, and ordinals in the text are never trusted: tasks are re-indexed
0..n-1 in document order.
"""
import re
import textwrap
from typing import Callable, List, Optional, Sequence, Tuple

from risral.state import Task

Strategy = Callable[[str], List[Task]]

TASKS_HEADING_RE = re.compile(r"^##[ \t]+Tasks\b[^\n]*\n", re.IGNORECASE | re.MULTILINE)
SECTION_END_RE = re.compile(r"^(?:##[ \t]+[^#\n]|---)", re.MULTILINE)

# ### 1. Title / ### Task 1. Title / ### Task 1: Title
HEADING_TASK_RE = re.compile(r"^#{3,6}[ \t]*(?:Task[ \t]+)?(\d+)[.:][ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$",
                             re.IGNORECASE | re.MULTILINE)
NUMBERED_LINE_RE = re.compile(r"^([ \t]*)(\d+)\.\s+(.*)$")
# Em/en dash anywhere, a spaced hyphen, or a colon followed by whitespace.
INLINE_SEPARATOR_RE = re.compile(r"\s*[—–]\s*|\s+--?\s+|:\s+")


def strip_markup(text: str) -> str:
    """Drop emphasis and code markup so titles display the same everywhere."""
    text = text.replace("**", "").replace("__", "").replace("`", "")
    return text.strip().strip("*_").strip()


def extract_section(markdown: str, heading: str) -> Optional[str]:
    """Body of the first level-2 `heading` section, or None."""
    heading_re = re.compile(rf"^##[ \t]+{re.escape(heading)}\b[^\n]*\n", re.IGNORECASE | re.MULTILINE)
    match = heading_re.search(markdown)
    if not match:
        return None
    body = markdown[match.end():]
    end = SECTION_END_RE.search(body)
    if end:
        body = body[:end.start()]
    return body.strip()


def tasks_section(plan: str) -> Optional[str]:
    """The text under "## Tasks", up to the next level-2 heading or rule."""
    match = TASKS_HEADING_RE.search(plan)
    if not match:
        return None
    body = plan[match.end():]
    end = SECTION_END_RE.search(body)
    return body[:end.start()] if end else body


def _reindex(items: List[Tuple[str, str]]) -> List[Task]:
    return [Task(index=i, title=title, description=description)
            for i, (title, description) in enumerate(items)]


# ============================================================================
# Strategies
# ============================================================================

def parse_heading_tasks(text: str) -> List[Task]:
    """Sub-heading style: each `### N. Title` opens a task that runs to the next one."""
    matches = list(HEADING_TASK_RE.finditer(text))
    items = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        title = strip_markup(match.group(2))
        description = text[match.end():end].strip()
        items.append((title, description or title))
    return _reindex(items)


def split_inline_item(first_line: str) -> Tuple[str, str]:
    """Split `**Title** — rest` into (title, rest) at the first separator."""
    plain = first_line.replace("**", "").replace("__", "")
    match = INLINE_SEPARATOR_RE.search(plain)
    if not match or match.start() == 0:
        return strip_markup(plain), ""
    return strip_markup(plain[:match.start()]), plain[match.end():].strip()


def parse_inline_tasks(text: str) -> List[Task]:
    """Numbered-list style: `N. Title — description`, continuing until the next item."""
    items: List[dict] = []
    base_indent: Optional[int] = None
    for line in text.split("\n"):
        match = NUMBERED_LINE_RE.match(line)
        if match and (base_indent is None or len(match.group(1)) <= base_indent):
            if base_indent is None:
                base_indent = len(match.group(1))
            title, rest = split_inline_item(match.group(3).strip() or line.strip())
            items.append({"title": title, "rest": rest, "more": []})
        elif items:
            items[-1]["more"].append(line)

    qualifies = False
    parsed = []
    for item in items:
        continuation = textwrap.dedent("\n".join(item["more"])).strip()
        if item["rest"] or continuation:
            qualifies = True
        description = "\n".join(part for part in (item["rest"], continuation) if part)
        parsed.append((item["title"], description or item["title"]))
    return _reindex(parsed) if qualifies else []


def parse_bare_tasks(text: str) -> List[Task]:
    """Last resort: every `N. something` line is a task titled by its own text."""
    items = []
    for line in text.split("\n"):
        match = NUMBERED_LINE_RE.match(line)
        if match:
            content = match.group(3).strip().replace("**", "") or line.strip()
            items.append((content, content))
    return _reindex(items)


STRATEGIES: Tuple[Strategy, ...] = (parse_heading_tasks, parse_inline_tasks, parse_bare_tasks)


def parse_tasks(plan: str, strategies: Sequence[Strategy] = STRATEGIES) -> List[Task]:
    """Extract the ordered task list from a plan; [] when nothing numbered exists.

    Strategies run against the Tasks section (the whole plan when it has
    none). If the section yields nothing, the bare fallback is given the whole
    plan so numbered content anywhere still produces tasks.
    """
    section = tasks_section(plan)
    scope = plan if section is None else section
    for strategy in strategies:
        tasks = strategy(scope)
        if tasks:
            return tasks
    if section is not None:
        return parse_bare_tasks(plan)
    return []


# ============================================================================
# Cross-check verdicts
# ============================================================================

# Mildest first.
RECOMMENDATIONS = ("APPROVE", "REVISE", "ESCALATE")

_VERDICT = "(" + "|".join(RECOMMENDATIONS) + ")"

RECOMMENDATION_PATTERNS = [
    re.compile(r"RECOMMEND(?:ATION)?\W{0,4}\s*" + _VERDICT, re.IGNORECASE),
    re.compile(r"VERDICT\W{0,4}\s*" + _VERDICT, re.IGNORECASE),
    re.compile(r"DECISION\W{0,4}\s*" + _VERDICT, re.IGNORECASE),
    re.compile(r"\*\*" + _VERDICT + r"\*\*", re.IGNORECASE),
]


def extract_recommendation(findings: str) -> Optional[str]:
    """APPROVE / REVISE / ESCALATE from cross-check text, or None."""
    for pattern in RECOMMENDATION_PATTERNS:
        match = pattern.search(findings)
        if match:
            return match.group(1).upper()
    upper = findings.upper()
    for word in reversed(RECOMMENDATIONS):
        if word in upper:
            return word
    return None
