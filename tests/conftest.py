"""Pytest fixtures for RISRAL tests."""

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from risral.config import REQUIRED_FRAMEWORK_FILES, RisralConfig
from risral.runner import AgentInvocation, AgentRunner, RunResult
from risral.state import SessionWorkspace

STAMP = "2025-01-01T00:00:00+00:00"


class FakeUI:
    """Scripted operator: answers, confirmations and choices are consumed in order."""

    def __init__(self, answers=None, confirms=None, choices=None):
        self.answers = list(answers or [])
        self.confirms = list(confirms or [])
        self.choices = list(choices or [])
        self.messages: List[tuple] = []
        self.shown: List[tuple] = []
        self.tables: List[tuple] = []
        self.offered: List[List[str]] = []
        self.phases: List[str] = []
        self.stream_output = False

    def info(self, msg):
        self.messages.append(("INFO", msg))

    def success(self, msg):
        self.messages.append(("OK", msg))

    def warn(self, msg):
        self.messages.append(("WARN", msg))

    def error(self, msg):
        self.messages.append(("ERR", msg))

    def banner(self, title, subtitle=""):
        self.messages.append(("BANNER", title))

    def phase(self, name, description=""):
        self.phases.append(name)

    def show(self, title, content, file_path=None):
        self.shown.append((title, content))

    def table(self, title, columns, rows):
        self.tables.append((title, [list(r) for r in rows]))

    def stream(self, chunk):
        pass

    @contextmanager
    def working(self, message):
        yield

    def ask(self, message, min_length=0, default=None):
        answer = self.answers.pop(0)
        assert len(answer) >= min_length, f"scripted answer too short for {message!r}"
        return answer

    def ask_multiline(self, message, min_length=0):
        return self.ask(message, min_length)

    def confirm(self, message, default=False):
        return self.confirms.pop(0)

    def choose(self, message, options):
        values = [value for value, _, _ in options]
        self.offered.append(values)
        choice = self.choices.pop(0)
        assert choice in values, f"{choice!r} not offered: {values}"
        return choice

    def texts(self, level: str) -> List[str]:
        return [msg for lvl, msg in self.messages if lvl == level]


def step(output: Optional[str] = None, stdout: str = "", exit_code: int = 0,
         files: Optional[Dict[Path, str]] = None,
         before: Optional[Callable[[AgentInvocation], None]] = None):
    """One scripted agent run: optionally write files, then exit."""

    def run(invocation: AgentInvocation) -> RunResult:
        if before:
            before(invocation)
        if output is not None:
            invocation.output_file.write_text(output, encoding="utf-8")
        for path, content in (files or {}).items():
            path.write_text(content, encoding="utf-8")
        return RunResult(exit_code=exit_code, stdout=stdout, stderr="")

    return run


class FakeRunner:
    """Stands in for AgentRunner; output resolution is the real one."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.invocations: List[AgentInvocation] = []

    def run(self, invocation, echo=None):
        self.invocations.append(invocation)
        result = self.steps.pop(0)(invocation)
        return AgentRunner._resolve_output(invocation, result)

    @property
    def prompts(self) -> List[str]:
        return [inv.prompt for inv in self.invocations]


def write_store(path: Path, key: str, records: list, **header):
    data = {"schema_version": "1.0.0", "last_updated": STAMP, **header, key: records}
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def memory_record(id, type="observation", score=0.5, count=0, status="active", content=None):
    return {
        "id": id,
        "type": type,
        "content": content or f"content of {id}",
        "context": f"context of {id}",
        "source": "cross-check",
        "confidence": {"score": score, "reasoning": "seeded"},
        "reinforcement_count": count,
        "last_reinforced": "",
        "created": STAMP,
        "tags": [],
        "related_memories": [],
        "status": status,
    }


def pattern_record(id, score=0.5, status="active", category="deferral", content=None):
    return {
        "id": id,
        "category": category,
        "content": content or f"content of {id}",
        "countermeasure": f"countermeasure for {id}",
        "confidence": {"score": score, "reasoning": "seeded"},
        "reinforcement_count": 0,
        "last_reinforced": "",
        "created": STAMP,
        "origin": "seeded",
        "status": status,
    }


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A RISRAL home with framework files and empty stores."""
    home = tmp_path / "home"
    framework = home / "framework"
    framework.mkdir(parents=True)
    for name in REQUIRED_FRAMEWORK_FILES:
        marker = name.split(".")[0].upper()
        (framework / name).write_text(f"# {name}\n\n{marker}-MARKER\n", encoding="utf-8")
    data = home / "data"
    data.mkdir()
    write_store(data / "memories.json", "memories", [], project="demo", created=STAMP)
    write_store(data / "patterns.json", "patterns", [], description="portable")
    return home


@pytest.fixture
def project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def config(home: Path, project: Path) -> RisralConfig:
    return RisralConfig(home=home, project_dir=project, agent_command=["fake-agent"], stream_output=False)


@pytest.fixture
def workspace(config: RisralConfig) -> SessionWorkspace:
    return SessionWorkspace.create(config.session_dir)
