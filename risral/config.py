"""
Configuration.

Settings are layered: packaged defaults (config.yaml next to this file),
then <home>/risral.yaml, then environment variables, then command-line
flags. Directory layout under the RISRAL home:

    framework/  — CLAUDE.md, cross-check-mandate.md, onboarding-protocol.md
    data/       — memories.json, patterns.json, project-intent.md
    session/    — the current session (created on demand)
    sessions/   — archived sessions
"""
import os
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

SCRIPT_DIR = Path(__file__).parent
CONFIG_FILE = SCRIPT_DIR / "config.yaml"
DEFAULT_FRAMEWORK_DIR = SCRIPT_DIR / "framework"
USER_CONFIG_NAME = "risral.yaml"

REQUIRED_FRAMEWORK_FILES = [
    "CLAUDE.md",
    "cross-check-mandate.md",
    "onboarding-protocol.md",
]

REQUIRED_DATA_FILES = ["memories.json", "patterns.json"]
PROJECT_INTENT_FILE = "project-intent.md"


class ConfigurationError(Exception):
    """Missing directories or files; fatal before any phase runs."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass
class RisralConfig:
    home: Path
    project_dir: Path
    agent_command: List[str] = field(default_factory=lambda: ["claude"])
    model: Optional[str] = None
    max_budget: Optional[float] = None
    skip_permissions: bool = True
    allowed_tools: List[str] = field(default_factory=list)
    max_display_lines: int = 40
    stream_output: bool = True

    @property
    def framework_dir(self) -> Path:
        return self.home / "framework"

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def session_dir(self) -> Path:
        return self.home / "session"

    @property
    def archive_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def additional_dirs(self) -> List[Path]:
        """Directories every agent invocation may read and write besides the project."""
        return [self.framework_dir, self.data_dir, self.session_dir]


def load_yaml_file(path: Path) -> dict:
    """Parse a settings file; anything but a mapping is a ConfigurationError."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError([f"Invalid {path}: {e}"]) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError([f"Invalid {path}: top level must be a mapping, not {type(data).__name__}"])
    return data


def merge_settings(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge nested dicts key by key; `override` wins."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def split_command(command: Any) -> List[str]:
    if isinstance(command, (list, tuple)):
        return [str(part) for part in command]
    return shlex.split(str(command))


def load_config(
    home: Optional[Path] = None,
    project_dir: Optional[Path] = None,
    model: Optional[str] = None,
    max_budget: Optional[float] = None,
    skip_permissions: Optional[bool] = None,
    environ: Optional[Dict[str, str]] = None,
) -> RisralConfig:
    """Resolve the effective configuration. Explicit arguments are CLI flags."""
    env = os.environ if environ is None else environ

    if home is None:
        home = Path(env["RISRAL_HOME"]) if env.get("RISRAL_HOME") else Path.cwd()
    home = home.expanduser().resolve()

    settings = load_yaml_file(CONFIG_FILE)
    user_config = home / USER_CONFIG_NAME
    if user_config.exists():
        settings = merge_settings(settings, load_yaml_file(user_config))

    agent = settings.get("agent") or {}
    ui = settings.get("ui") or {}
    for name, section in (("agent", agent), ("ui", ui)):
        if not isinstance(section, dict):
            raise ConfigurationError([f"Invalid {user_config}: '{name}' must be a mapping"])

    command = env.get("RISRAL_AGENT_CMD") or agent.get("command") or "claude"
    resolved_model = model or env.get("RISRAL_MODEL") or agent.get("model")
    budget = max_budget if max_budget is not None else agent.get("max_budget_usd")
    skip = skip_permissions if skip_permissions is not None else bool(agent.get("skip_permissions", True))

    return RisralConfig(
        home=home,
        project_dir=(project_dir or Path.cwd()).expanduser().resolve(),
        agent_command=split_command(command),
        model=resolved_model,
        max_budget=float(budget) if budget is not None else None,
        skip_permissions=skip,
        allowed_tools=list(agent.get("allowed_tools") or []),
        max_display_lines=int(ui.get("max_display_lines", 40)),
        stream_output=bool(ui.get("stream_agent_output", True)),
    )


def validate_config(config: RisralConfig, check_agent: bool = True) -> List[str]:
    """Return every configuration problem found; empty means ready to run."""
    errors: List[str] = []

    if not config.framework_dir.is_dir():
        errors.append(f"Framework directory not found: {config.framework_dir}")
    else:
        for name in REQUIRED_FRAMEWORK_FILES:
            if not (config.framework_dir / name).exists():
                errors.append(f"Required framework file missing: framework/{name}")

    if not config.data_dir.is_dir():
        errors.append(f"Data directory not found: {config.data_dir} — run 'risral init' first")
    else:
        for name in REQUIRED_DATA_FILES:
            if not (config.data_dir / name).exists():
                errors.append(f"Required data file missing: data/{name} — run 'risral init' first")

    if not config.project_dir.is_dir():
        errors.append(f"Project directory not found: {config.project_dir}")

    if check_agent and not shutil.which(config.agent_command[0]):
        errors.append(f"Agent CLI not found on PATH: {config.agent_command[0]}")

    return errors
