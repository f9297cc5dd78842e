"""
Agent invocation.

Every step spawns one fresh agent process. The prompt goes in on stdin (a
large context would overflow the OS argument limit), stdout is echoed while
it is collected, and nothing survives between calls except the files the
agent was told to write. A non-zero exit is a warning, not an error: the
caller carries on with whatever output exists.
"""
import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from risral.storage import read_text, write_text_atomic

logger = logging.getLogger(__name__)

Echo = Callable[[str], None]


@dataclass
class AgentInvocation:
    prompt: str
    working_dir: Path
    additional_dirs: List[Path] = field(default_factory=list)
    model: Optional[str] = None
    max_budget: Optional[float] = None
    skip_permissions: bool = False
    allowed_tools: List[str] = field(default_factory=list)
    # Where the agent was told to write its result; stdout fills in when it doesn't.
    output_file: Optional[Path] = None


@dataclass
class RunResult:
    exit_code: int
    stdout: str
    stderr: str
    output: str = ""
    output_source: str = ""  # "file", "stdout" or "" when nothing usable came back

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def has_output(self) -> bool:
        return bool(self.output.strip())


class AgentRunner:
    """Runs the agent CLI in print mode, one process per invocation."""

    def __init__(self, command: List[str]):
        self.command = list(command)

    def build_args(self, invocation: AgentInvocation) -> List[str]:
        args = self.command + ["-p"]
        if invocation.model:
            args += ["--model", invocation.model]
        if invocation.max_budget:
            args += ["--max-budget-usd", str(invocation.max_budget)]
        if invocation.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if invocation.allowed_tools:
            args += ["--allowed-tools", *invocation.allowed_tools]
        for directory in invocation.additional_dirs:
            args += ["--add-dir", str(directory)]
        return args

    def run(self, invocation: AgentInvocation, echo: Optional[Echo] = None) -> RunResult:
        """Run to completion, then resolve the step's output artifact."""
        args = self.build_args(invocation)
        logger.debug("Spawning agent: %s (cwd=%s, %d prompt chars)",
                     " ".join(args), invocation.working_dir, len(invocation.prompt))

        try:
            proc = subprocess.Popen(
                args,
                cwd=invocation.working_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=dict(os.environ),
            )
        except OSError as e:
            logger.warning("Could not start agent %s: %s", args[0], e)
            result = RunResult(exit_code=127, stdout="", stderr=str(e))
            return self._resolve_output(invocation, result)

        stderr_parts: List[str] = []
        writer = threading.Thread(target=self._feed_prompt, args=(proc, invocation.prompt), daemon=True)
        reader = threading.Thread(target=lambda: stderr_parts.append(proc.stderr.read()), daemon=True)
        writer.start()
        reader.start()

        stdout_parts: List[str] = []
        try:
            for line in proc.stdout:
                stdout_parts.append(line)
                if echo:
                    echo(line)
            exit_code = proc.wait()
        except KeyboardInterrupt:
            self._stop(proc)
            raise
        writer.join()
        reader.join()

        result = RunResult(exit_code=exit_code, stdout="".join(stdout_parts), stderr="".join(stderr_parts))
        if exit_code != 0:
            logger.warning("Agent exited with code %d: %s", exit_code, result.stderr.strip()[-500:])
        return self._resolve_output(invocation, result)

    @staticmethod
    def _stop(proc: subprocess.Popen):
        """Stop a running agent process."""
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()

    @staticmethod
    def _feed_prompt(proc: subprocess.Popen, prompt: str):
        try:
            proc.stdin.write(prompt)
            proc.stdin.close()
        except BrokenPipeError:
            # The agent exited before reading everything; its exit code tells the story.
            logger.debug("Agent closed stdin early")

    @staticmethod
    def _resolve_output(invocation: AgentInvocation, result: RunResult) -> RunResult:
        target = invocation.output_file
        if target is None:
            result.output, result.output_source = result.stdout, ("stdout" if result.stdout.strip() else "")
            return result
        written = read_text(target)
        if written.strip():
            result.output = written
            result.output_source = "file"
        elif result.stdout.strip():
            write_text_atomic(target, result.stdout)
            result.output = result.stdout
            result.output_source = "stdout"
            logger.debug("Agent did not write %s; saved its stdout instead", target.name)
        return result
