"""
RISRAL command line.

Usage:
  risral run [project-dir]      plan, execute and review one session
  risral init                   set up framework/, data/ and the project intent
  risral status                 show the session and the reputation store
  risral learn                  feed real outcomes back into the reputation store
  risral export                 write session/plan-output.md for an outside agent
"""
import argparse
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler

from risral import __version__
from risral.commands import run_init, run_learn, run_status
from risral.config import ConfigurationError, RisralConfig, load_config, validate_config
from risral.orchestrator import SessionAborted, SessionOrchestrator
from risral.output import export_plan
from risral.ui import ConsoleUI, console, log

EPILOG = """
Lifecycle of 'risral run':
  1. You state your intent for the session
  2. Backbrief: the agent restates it and asks its questions
  3. The agent plans; an adversarial agent cross-checks the plan
  4. You approve the plan, or send it back with feedback
  5. The agent executes task by task, one fresh process per task
  6. A review agent maps drift and updates reputation scores

Directory layout under --home (default: $RISRAL_HOME or the current directory):
  framework/   CLAUDE.md, cross-check-mandate.md, onboarding-protocol.md
  data/        memories.json, patterns.json, project-intent.md
  session/     the current session
  sessions/    archived sessions

Settings come from risral/config.yaml, then <home>/risral.yaml, then
RISRAL_AGENT_CMD / RISRAL_MODEL, then the flags below.
"""


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def common_options(suppress: bool = False) -> argparse.ArgumentParser:
    """--home and --verbose, accepted before or after the subcommand."""
    # Subcommands must not reset what was given before them.
    default = argparse.SUPPRESS if suppress else None
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--home', type=Path, default=default,
                        help='RISRAL home holding framework/, data/ and session/')
    common.add_argument('--verbose', action='store_true', default=default if suppress else False,
                        help='Verbose output')
    return common


def build_parser() -> argparse.ArgumentParser:
    common = common_options(suppress=True)

    parser = argparse.ArgumentParser(
        prog="risral",
        description="RISRAL — Reputation-Inclusive Self-Referential Agentic Loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
        parents=[common_options()],
    )
    parser.add_argument('--version', action='version', version=f'risral {__version__}')
    parser.set_defaults(command=None, project_dir=None, model=None, max_budget=None, no_skip_permissions=False)

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')

    run = sub.add_parser('run', parents=[common], help='Run a session (default)')
    run.add_argument('project_dir', nargs='?', type=Path,
                     help='Project the agent works in (default: current directory)')
    run.add_argument('--model', type=str, help='Model passed to the agent CLI')
    run.add_argument('--max-budget', type=float, metavar='USD', help='Budget ceiling per agent invocation')
    run.add_argument('--no-skip-permissions', action='store_true',
                     help='Let the agent CLI ask for permissions (default: skipped)')

    sub.add_parser('init', parents=[common], help='Set up framework, data stores and project intent')
    sub.add_parser('status', parents=[common], help='Show session and reputation state')
    sub.add_parser('learn', parents=[common], help='Reinforce, contradict or deprecate memories')
    sub.add_parser('export', parents=[common], help='Write the approved plan as one self-contained document')
    return parser


def run_session(config: RisralConfig, ui: ConsoleUI) -> int:
    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)
    SessionOrchestrator(config, ui).run()
    return 0


def dispatch(command: str, config: RisralConfig, ui: ConsoleUI) -> int:
    if command == 'init':
        return run_init(config, ui)
    if command == 'status':
        return run_status(config, ui)
    if command == 'learn':
        return run_learn(config, ui)
    if command == 'export':
        return 0 if export_plan(config, ui) else 1
    return run_session(config, ui)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.max_budget is not None and args.max_budget <= 0:
        parser.error("--max-budget must be > 0")

    try:
        config = load_config(
            home=args.home,
            project_dir=args.project_dir,
            model=args.model,
            max_budget=args.max_budget,
            skip_permissions=False if args.no_skip_permissions else None,
        )
        ui = ConsoleUI(max_lines=config.max_display_lines, stream_output=config.stream_output)
        sys.exit(dispatch(args.command or 'run', config, ui))
    except ConfigurationError as e:
        console.print("[red bold]Configuration errors:[/red bold]")
        for error in e.errors:
            console.print(f"  - {error}", markup=False)
        sys.exit(1)
    except SessionAborted as e:
        log(f"{e}. The session is saved; 'risral run' offers to resume it.", "INFO")
        sys.exit(0)
    except (KeyboardInterrupt, EOFError):
        log("Interrupted by user", "WARN")
        sys.exit(1)


if __name__ == "__main__":
    main()
