"""
Whole-file persistence helpers.

Every artifact the orchestrator owns is rewritten as a complete file: the
new content goes to a temporary sibling and is moved over the target with
os.replace, so an interrupt never leaves a half-written state.json,
tasks.json or reputation store behind.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any


def read_text(path: Path) -> str:
    """Read a UTF-8 file, or return "" if it does not exist.

    Undecodable bytes become U+FFFD: agents write these files and may not
    write valid UTF-8.
    """
    if path.exists():
        return path.read_text(encoding='utf-8', errors='replace')
    return ""


def write_text_atomic(path: Path, content: str):
    """Replace `path` with `content` in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_json_atomic(path: Path, data: Any):
    write_text_atomic(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
