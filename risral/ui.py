"""
Human interaction surface.

Everything the operator sees or answers goes through here: timestamped log
lines, content panels, free-text questions, yes/no confirmations and
labeled choices. The orchestrator only talks to a `ConsoleUI`, so tests can
swap in a scripted stand-in.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.rule import Rule
from rich.table import Table

console = Console()

# (value, label, hint)
Choice = Tuple[str, str, str]


def log(msg: str, level: str = "INFO", out: Optional[Console] = None):
    """Log with timestamp and styled output."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    styles = {
        "INFO": ("ℹ️", "bright_blue"),
        "OK": ("✅", "green"),
        "WARN": ("⚠️", "yellow"),
        "ERR": ("❌", "red bold"),
        "AGENT": ("🤖", "cyan"),
        "HUMAN": ("👤", "magenta"),
    }
    symbol, style = styles.get(level, ("•", "white"))
    (out or console).print(f"[dim]{timestamp}[/dim] {symbol} [{style}]{escape(msg)}[/{style}]")


def truncate_lines(content: str, max_lines: int, file_path: Optional[str] = None) -> str:
    """Cut `content` to `max_lines`, pointing at the full file when one is known."""
    lines = content.split("\n")
    if file_path is None or len(lines) <= max_lines:
        return content
    hidden = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n\n... {hidden} more lines — see {file_path}"


class ConsoleUI:
    """Terminal implementation of the operator surface, built on rich."""

    def __init__(self, out: Optional[Console] = None, max_lines: int = 40, stream_output: bool = True):
        self.console = out or console
        self.max_lines = max_lines
        self.stream_output = stream_output

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def info(self, msg: str):
        log(msg, "INFO", self.console)

    def success(self, msg: str):
        log(msg, "OK", self.console)

    def warn(self, msg: str):
        log(msg, "WARN", self.console)

    def error(self, msg: str):
        log(msg, "ERR", self.console)

    def banner(self, title: str, subtitle: str = ""):
        body = f"[bold]{escape(title)}[/bold]"
        if subtitle:
            body += f"\n[dim]{escape(subtitle)}[/dim]"
        self.console.print(Panel(body, border_style="bright_blue"))

    def phase(self, name: str, description: str = ""):
        label = f"[bold cyan]{escape(name)}[/bold cyan]"
        if description:
            label += f" [dim]— {escape(description)}[/dim]"
        self.console.print(Rule(label, align="left"))

    def show(self, title: str, content: str, file_path: Optional[str] = None):
        """Show a block of content, truncated with a pointer to the full file."""
        shown = truncate_lines(content.rstrip(), self.max_lines, file_path)
        self.console.print(Panel(escape(shown), title=title, border_style="bright_black"))

    def table(self, title: str, columns: Sequence[str], rows: Sequence[Sequence[str]]):
        table = Table(title=title, title_style="bold", show_lines=False)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(escape(str(cell)) for cell in row))
        self.console.print(table)

    def stream(self, chunk: str):
        """Echo agent output as it arrives."""
        self.console.out(chunk, end="", highlight=False)

    @contextmanager
    def working(self, message: str) -> Iterator[None]:
        """Spinner while the agent runs, unless its output is being streamed."""
        if self.stream_output:
            log(message, "AGENT", self.console)
            yield
        else:
            with self.console.status(message):
                yield

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def ask(self, message: str, min_length: int = 0, default: Optional[str] = None) -> str:
        """Free-text answer of at least `min_length` non-blank characters."""
        while True:
            answer = Prompt.ask(f"[bold cyan]>[/bold cyan] {escape(message)}",
                                default=default, console=self.console)
            answer = (answer or "").strip()
            if len(answer) >= min_length:
                return answer
            if min_length == 1:
                self.console.print("[yellow]Please provide a response.[/yellow]")
            else:
                self.console.print(f"[yellow]Please write at least {min_length} characters.[/yellow]")

    def ask_multiline(self, message: str, min_length: int = 0) -> str:
        """Several lines of text, ended by an empty line."""
        while True:
            self.console.print(f"[bold]{escape(message)}[/bold] (end with empty line):")
            lines = []
            while True:
                line = input()
                if line == "":
                    break
                lines.append(line)
            text = "\n".join(lines).strip()
            if len(text) >= min_length:
                return text
            self.console.print(f"[yellow]Please write at least {min_length} characters.[/yellow]")

    def confirm(self, message: str, default: bool = False) -> bool:
        return Confirm.ask(escape(message), default=default, console=self.console)

    def choose(self, message: str, options: Sequence[Choice]) -> str:
        """Pick one of `options`; returns the chosen value."""
        lines: List[str] = []
        for i, (_, label, hint) in enumerate(options, 1):
            line = f"  [bold]{i}[/bold]. {escape(label)}"
            if hint:
                line += f" [dim]— {escape(hint)}[/dim]"
            lines.append(line)
        self.console.print(f"[bold]{escape(message)}[/bold]\n" + "\n".join(lines))
        numbers = [str(i) for i in range(1, len(options) + 1)]
        choice = Prompt.ask("Choose", choices=numbers, console=self.console)
        return options[int(choice) - 1][0]
