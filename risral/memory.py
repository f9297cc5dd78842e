"""
Reputation store.

Two JSON files carry the agent's reputation between sessions:

    memories.json — project-specific observations, decisions, false beliefs
                    and drift events
    patterns.json — portable behavioral tendencies with countermeasures

Both are read fresh before every prompt (the cross-check and review agents
edit them directly), filtered, ranked and rendered as markdown. Loading
never raises: a missing or malformed file becomes a store whose `status`
says so, and such a store refuses to be saved over.

Scores only move through two rules. Reinforcement closes a tenth of the gap
to 1 and never reaches it; contradiction takes a fifth off. Records are
deprecated, never removed.
"""
import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from risral.storage import write_json_atomic
from risral.state import now_iso

logger = logging.getLogger(__name__)

# Severity order: the most consequential kinds sort first.
MEMORY_TYPES = ("false_belief", "drift_event", "decision", "pattern", "observation")
MEMORY_TYPE_PRIORITY = {t: i for i, t in enumerate(MEMORY_TYPES)}
MEMORY_TYPE_LABELS = {
    "false_belief": "FALSE BELIEF",
    "drift_event": "DRIFT EVENT",
    "decision": "DECISION",
    "pattern": "PATTERN",
    "observation": "OBSERVATION",
}
RECORD_STATUSES = ("active", "deprecated", "challenged")

MIN_MEMORY_CONFIDENCE = 0.2
REINFORCEMENT_RATE = 0.1
CONTRADICTION_FACTOR = 0.8
MAX_CONFIDENCE = math.nextafter(1.0, 0.0)

SCHEMA_VERSION = "1.0.0"

OK = "ok"
MISSING = "missing"
CORRUPT = "corrupt"


class StoreError(Exception):
    """Raised when a store cannot be written without losing data."""


# ============================================================================
# Update rules
# ============================================================================

def reinforced_score(score: float) -> float:
    """score + 0.1 × (1 − score), kept strictly below 1."""
    return min(score + REINFORCEMENT_RATE * (1.0 - score), MAX_CONFIDENCE)


def contradicted_score(score: float) -> float:
    """score × 0.8, never negative."""
    return max(score * CONTRADICTION_FACTOR, 0.0)


def clamp_score(value: Any) -> float:
    score = float(value)
    if not math.isfinite(score):
        raise ValueError(f"confidence is not a finite number: {value!r}")
    return min(max(score, 0.0), 1.0)


# ============================================================================
# Records
# ============================================================================

@dataclass
class Confidence:
    score: float
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {"score": self.score, "reasoning": self.reasoning}

    @classmethod
    def from_value(cls, value: Any) -> 'Confidence':
        if isinstance(value, dict):
            return cls(score=clamp_score(value["score"]), reasoning=str(value.get("reasoning", "")))
        return cls(score=clamp_score(value))


@dataclass
class _ScoredRecord:
    id: str
    content: str
    confidence: Confidence
    reinforcement_count: int = 0
    last_reinforced: str = ""
    created: str = ""
    status: str = "active"
    # Keys this code does not model; written back untouched.
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_deprecated(self) -> bool:
        return self.status == "deprecated"

    def reinforce(self, reasoning: Optional[str] = None):
        self.confidence.score = reinforced_score(self.confidence.score)
        self.reinforcement_count += 1
        self.last_reinforced = now_iso()
        if reasoning:
            self.confidence.reasoning = reasoning

    def contradict(self, reasoning: Optional[str] = None):
        self.confidence.score = contradicted_score(self.confidence.score)
        if reasoning:
            self.confidence.reasoning = reasoning

    def deprecate(self, reasoning: Optional[str] = None):
        self.status = "deprecated"
        if reasoning:
            self.confidence.reasoning = reasoning


@dataclass
class Memory(_ScoredRecord):
    type: str = "observation"
    context: str = ""
    source: str = ""
    tags: List[str] = field(default_factory=list)
    related_memories: List[str] = field(default_factory=list)

    FIELDS = ("id", "type", "content", "context", "source", "confidence", "reinforcement_count",
              "last_reinforced", "created", "tags", "related_memories", "status")

    @property
    def priority(self) -> float:
        return memory_priority(self)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "context": self.context,
            "source": self.source,
            "confidence": self.confidence.to_dict(),
            "reinforcement_count": self.reinforcement_count,
            "last_reinforced": self.last_reinforced,
            "created": self.created,
            "tags": list(self.tags),
            "related_memories": list(self.related_memories),
            "status": self.status,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Memory':
        mem_type = data["type"]
        if mem_type not in MEMORY_TYPE_PRIORITY:
            raise ValueError(f"unknown memory type {mem_type!r}")
        status = data.get("status", "active")
        if status not in RECORD_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        return cls(
            id=str(data["id"]),
            type=mem_type,
            content=str(data["content"]),
            context=str(data.get("context", "")),
            source=str(data.get("source", "")),
            confidence=Confidence.from_value(data["confidence"]),
            reinforcement_count=max(int(data.get("reinforcement_count", 0)), 0),
            last_reinforced=str(data.get("last_reinforced", "")),
            created=str(data.get("created", "")),
            tags=list(data.get("tags", [])),
            related_memories=list(data.get("related_memories", [])),
            status=status,
            extra={k: v for k, v in data.items() if k not in cls.FIELDS},
        )


@dataclass
class Pattern(_ScoredRecord):
    category: str = ""
    countermeasure: str = ""
    origin: str = ""

    FIELDS = ("id", "category", "content", "countermeasure", "confidence", "reinforcement_count",
              "last_reinforced", "created", "origin", "status")

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "category": self.category,
            "content": self.content,
            "countermeasure": self.countermeasure,
            "confidence": self.confidence.to_dict(),
            "reinforcement_count": self.reinforcement_count,
            "last_reinforced": self.last_reinforced,
            "created": self.created,
            "origin": self.origin,
            "status": self.status,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Pattern':
        status = data.get("status", "active")
        if status not in RECORD_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        return cls(
            id=str(data["id"]),
            category=str(data["category"]),
            content=str(data["content"]),
            countermeasure=str(data.get("countermeasure", "")),
            confidence=Confidence.from_value(data["confidence"]),
            reinforcement_count=max(int(data.get("reinforcement_count", 0)), 0),
            last_reinforced=str(data.get("last_reinforced", "")),
            created=str(data.get("created", "")),
            origin=str(data.get("origin", "")),
            status=status,
            extra={k: v for k, v in data.items() if k not in cls.FIELDS},
        )


# ============================================================================
# Filtering, ranking, formatting
# ============================================================================

def memory_priority(mem: Memory) -> float:
    return mem.confidence.score * (mem.reinforcement_count + 1)


def is_memory_included(mem: Memory) -> bool:
    return not mem.is_deprecated and mem.confidence.score >= MIN_MEMORY_CONFIDENCE


def is_pattern_included(pat: Pattern) -> bool:
    return not pat.is_deprecated


def rank_memories(memories: List[Memory]) -> List[Memory]:
    """Group by severity (false beliefs first), then priority descending."""
    return sorted(memories, key=lambda m: (MEMORY_TYPE_PRIORITY[m.type], -memory_priority(m)))


def rank_patterns(patterns: List[Pattern]) -> List[Pattern]:
    return sorted(patterns, key=lambda p: -p.confidence.score)


def _confidence_line(record: _ScoredRecord) -> str:
    line = f"{record.confidence.score * 100:.0f}%"
    if record.reinforcement_count > 0:
        line += f" | reinforced {record.reinforcement_count}x"
    return line


def format_memory(mem: Memory) -> str:
    status_tag = " [CHALLENGED]" if mem.status == "challenged" else ""
    return (
        f"### {mem.id}: {MEMORY_TYPE_LABELS[mem.type]}{status_tag}\n"
        f"**Confidence:** {_confidence_line(mem)} | **Source:** {mem.source}\n"
        f"**Context:** {mem.context}\n"
        f"\n"
        f"{mem.content}"
    )


def format_pattern(pat: Pattern) -> str:
    status_tag = " [CHALLENGED]" if pat.status == "challenged" else ""
    return (
        f"### {pat.id}: {pat.category.upper()}{status_tag}\n"
        f"**Confidence:** {_confidence_line(pat)} | **Origin:** {pat.origin}\n"
        f"\n"
        f"{pat.content}\n"
        f"\n"
        f"**Countermeasure:** {pat.countermeasure}"
    )


# ============================================================================
# Stores
# ============================================================================

class _ScoredStore:
    """One JSON file of scored records: {..., <records_key>: [...]}."""

    filename = ""
    records_key = ""
    id_prefix = ""
    record_type: type
    empty_message = ""
    corrupt_message = ""
    all_excluded_message = ""

    def __init__(self, path: Path):
        self.path = path
        self.status = MISSING
        self.error = ""
        self.header: Dict[str, Any] = {}
        self.records: List[Any] = []
        self.invalid: List[Any] = []
        self.reload()

    @classmethod
    def load(cls, data_dir: Path):
        return cls(data_dir / cls.filename)

    def reload(self):
        """Re-read the file; the status records what happened."""
        self.header, self.records, self.invalid, self.error = {}, [], [], ""
        if not self.path.exists():
            self.status = MISSING
            return
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            raw_records = data.get(self.records_key) or []
            if not isinstance(raw_records, list):
                raise ValueError(f"'{self.records_key}' is not a list")
        except (OSError, UnicodeDecodeError, ValueError) as e:
            self.status = CORRUPT
            self.error = str(e)
            logger.warning("Failed to parse %s: %s", self.path, e)
            return

        self.status = OK
        self.header = {k: v for k, v in data.items() if k != self.records_key}
        for raw in raw_records:
            try:
                self.records.append(self.record_type.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                self.invalid.append(raw)
                logger.warning("Skipping malformed record in %s: %s", self.path.name, e)

    # --- Projection ---

    @property
    def ok(self) -> bool:
        return self.status == OK

    def is_included(self, record) -> bool:
        raise NotImplementedError

    def rank(self, records: list) -> list:
        raise NotImplementedError

    def render(self, record) -> str:
        raise NotImplementedError

    def included(self) -> list:
        return [r for r in self.records if self.is_included(r)]

    def ranked(self) -> list:
        return self.rank(self.included())

    def summary(self, count: int, excluded: int) -> str:
        raise NotImplementedError

    def format(self) -> str:
        """Markdown for prompt injection. Never mutates the records."""
        if self.status == CORRUPT:
            return self.corrupt_message
        if not self.records:
            return self.empty_message
        ranked = self.ranked()
        if not ranked:
            return self.all_excluded_message
        sections = "\n\n---\n\n".join(self.render(r) for r in ranked)
        return f"{self.summary(len(ranked), len(self.records) - len(ranked))}\n\n{sections}"

    # --- Updates ---

    def find(self, record_id: str):
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def _require(self, record_id: str):
        record = self.find(record_id)
        if record is None:
            raise KeyError(f"No record {record_id!r} in {self.filename}")
        return record

    def reinforce(self, record_id: str, reasoning: Optional[str] = None):
        record = self._require(record_id)
        record.reinforce(reasoning)
        return record

    def contradict(self, record_id: str, reasoning: Optional[str] = None):
        record = self._require(record_id)
        record.contradict(reasoning)
        return record

    def deprecate(self, record_id: str, reasoning: Optional[str] = None):
        record = self._require(record_id)
        record.deprecate(reasoning)
        return record

    def next_id(self) -> str:
        numbers = [0]
        for record in self.records:
            match = re.search(r"(\d+)$", record.id)
            if match:
                numbers.append(int(match.group(1)))
        return f"{self.id_prefix}-{max(numbers) + 1:03d}"

    def add(self, record):
        if self.find(record.id) is not None:
            raise ValueError(f"Duplicate id {record.id!r}")
        self.records.append(record)
        return record

    def new_header(self) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self):
        """Write the whole file, including records this code could not parse."""
        if self.status == CORRUPT:
            raise StoreError(f"Refusing to overwrite unreadable {self.path}: {self.error}")
        header = dict(self.header) if self.header else self.new_header()
        header["last_updated"] = now_iso()
        header[self.records_key] = [r.to_dict() for r in self.records] + list(self.invalid)
        write_json_atomic(self.path, header)
        self.header = {k: v for k, v in header.items() if k != self.records_key}
        self.status = OK


class MemoryStore(_ScoredStore):
    filename = "memories.json"
    records_key = "memories"
    id_prefix = "mem"
    record_type = Memory
    empty_message = "*No memories on file.*"
    corrupt_message = "*Failed to parse memories.json.*"
    all_excluded_message = "*All memories are deprecated or below confidence threshold.*"

    def is_included(self, record: Memory) -> bool:
        return is_memory_included(record)

    def rank(self, records: List[Memory]) -> List[Memory]:
        return rank_memories(records)

    def render(self, record: Memory) -> str:
        return format_memory(record)

    def summary(self, count: int, excluded: int) -> str:
        return f"**{count} active memories** ({excluded} excluded)"

    def new_header(self) -> Dict[str, Any]:
        stamp = now_iso()
        return {"schema_version": SCHEMA_VERSION, "project": "", "created": stamp, "last_updated": stamp}


class PatternStore(_ScoredStore):
    filename = "patterns.json"
    records_key = "patterns"
    id_prefix = "pat"
    record_type = Pattern
    empty_message = "*No behavioral patterns on file.*"
    corrupt_message = "*Failed to parse patterns.json.*"
    all_excluded_message = "*All patterns are deprecated.*"

    def is_included(self, record: Pattern) -> bool:
        return is_pattern_included(record)

    def rank(self, records: List[Pattern]) -> List[Pattern]:
        return rank_patterns(records)

    def render(self, record: Pattern) -> str:
        return format_pattern(record)

    def summary(self, count: int, excluded: int) -> str:
        return f"**{count} active patterns**"

    def new_header(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "description": "Portable behavioral patterns — these travel across projects.",
            "last_updated": now_iso(),
        }


class ReputationStore:
    """Memories and patterns for one project, handed to whoever builds prompts."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.memories = MemoryStore.load(data_dir)
        self.patterns = PatternStore.load(data_dir)

    def refresh(self) -> List[str]:
        """Re-read both files; returns warnings worth showing the operator."""
        warnings = []
        for store in (self.memories, self.patterns):
            store.reload()
            if store.status == CORRUPT:
                warnings.append(f"{store.filename} could not be parsed ({store.error}); treating it as empty")
            elif store.invalid:
                warnings.append(f"{store.filename}: skipped {len(store.invalid)} malformed record(s)")
        return warnings

    def has_active_memories(self) -> bool:
        return bool(self.memories.included())
