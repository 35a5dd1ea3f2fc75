from __future__ import annotations

import argparse
import json
import os
import shlex
import shutil
import sys
import time
from pathlib import Path
from typing import Callable

from . import __version__
from .hook import install_hook_settings
from .runtime.config import CoworkConfig
from .runtime.config_io import ConfigError, load_config
from .runtime.event_bus import EventBus
from .runtime.logging_setup import configure_logging
from .runtime.orchestrator import Orchestrator, TurnRejected, TurnState
from .runtime.process_runner import SpawnError
from .runtime.project import RuntimePaths
from .runtime.protocol import MessageRole
from .runtime.stores import FileSessionStore, replace_surrogates

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 5

HELP_TEXT = """Commands:
  /help        Show this help.
  /clear       Clear the conversation history for this directory.
  /reset       Start a fresh agent session (history is kept).
  /cd DIR      Switch to another working directory.
  /exit        Quit.
Ctrl+C cancels a running turn."""

ReadLine = Callable[[str], str]


def _configure_text_io() -> None:
    """
    Best-effort I/O normalization for interactive terminals.

    With errors='surrogateescape' on stdin, invalid bytes from the terminal survive as
    surrogate codepoints and later crash UTF-8 encoding on the way to the agent or disk.
    """

    try:
        if hasattr(sys.stdin, "reconfigure"):
            sys.stdin.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="backslashreplace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="backslashreplace")
    except Exception:
        return


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cowork",
        description="Chat with a coding agent in a working directory, approving its actions as it goes.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session.")
    chat_parser.add_argument("--cwd", default=None, help="Working directory (default: current directory).")
    chat_parser.add_argument(
        "--last",
        action="store_true",
        help="Reopen the most recently used working directory.",
    )
    chat_parser.add_argument("--verbose", action="store_true", help="Also log to stderr.")
    chat_parser.set_defaults(func=_cmd_chat)

    history_parser = subparsers.add_parser("history", help="Show or clear the stored conversation.")
    history_parser.add_argument("--cwd", default=None, help="Working directory (default: current directory).")
    history_parser.add_argument("--clear", action="store_true", help="Delete the stored conversation.")
    history_parser.add_argument("--json", action="store_true", help="Print the stored session as JSON.")
    history_parser.set_defaults(func=_cmd_history)

    hook_parser = subparsers.add_parser("hook", help="Approval hook utilities.")
    hook_subparsers = hook_parser.add_subparsers(dest="hook_command", required=True)
    hook_install_parser = hook_subparsers.add_parser("install", help="Write the agent settings file for the hook.")
    hook_install_parser.add_argument("--settings", default=None, help="Settings file to write.")
    hook_install_parser.add_argument("--command", default=None, help="Hook command line (default: autodetect).")
    hook_install_parser.set_defaults(func=_cmd_hook_install)

    return parser


def _load_config_or_report() -> CoworkConfig | None:
    try:
        return load_config()
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return None


def _default_hook_command() -> str:
    found = shutil.which("cowork-hook")
    if found:
        return shlex.quote(found)
    return f"{shlex.quote(sys.executable)} -m cowork.hook"


def _cmd_chat(args: argparse.Namespace) -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_CONFIG_ERROR
    paths = RuntimePaths.for_data_dir(config.data_dir).ensure()
    configure_logging(paths.logs_dir, verbose=bool(args.verbose))

    session_store = FileSessionStore(paths.sessions_dir, state_dir=paths.state_dir)
    working_dir = _resolve_working_dir(args.cwd, last=bool(args.last), store=session_store)
    try:
        settings_path = install_hook_settings(
            paths.hook_settings_path,
            _default_hook_command(),
            timeout_s=config.hook_timeout_s,
        )
    except (OSError, ValueError) as e:
        print(f"Failed to install approval hook: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    from .ui.console_ui import ConsoleUI

    event_bus = EventBus()
    orchestrator = Orchestrator(
        config,
        event_bus=event_bus,
        session_store=session_store,
        settings_path=settings_path,
    )
    try:
        orchestrator.set_working_dir(working_dir)
    except TurnRejected as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    ui = ConsoleUI()
    event_bus.subscribe(ui.handle_event)
    ui.start()
    try:
        orchestrator.start()
        ui.print_header(working_dir=str(orchestrator.working_dir), session_id=orchestrator.agent_session_id)
        ui.print_history(orchestrator.messages)
        return _run_chat_loop(orchestrator=orchestrator, ui=ui, read_line=_make_line_reader(paths))
    finally:
        orchestrator.close()
        ui.drain()
        ui.stop()


def _resolve_working_dir(raw: str | None, *, last: bool, store: FileSessionStore) -> Path:
    if raw:
        return Path(raw).expanduser()
    if last:
        remembered = store.last_working_dir()
        if remembered is not None:
            return remembered
    return Path.cwd()


def _make_line_reader(paths: RuntimePaths) -> ReadLine:
    def _is_tty() -> bool:
        try:
            return bool(sys.stdin.isatty() and sys.stdout.isatty())
        except Exception:
            return False

    # Let callers (and tests) force plain input mode.
    plain = str(os.environ.get("COWORK_PLAIN_INPUT") or "").strip() in {"1", "true", "yes", "on"}
    if plain or not _is_tty():
        return input

    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter
    from prompt_toolkit.history import FileHistory

    session: PromptSession = PromptSession(
        history=FileHistory(str(paths.state_dir / "history.txt")),
        completer=WordCompleter(["/help", "/clear", "/reset", "/cd", "/exit"], sentence=True),
    )

    def _read(prompt_text: str) -> str:
        return session.prompt(prompt_text)

    return _read


def _run_chat_loop(*, orchestrator: Orchestrator, ui, read_line: ReadLine) -> int:
    while True:
        ui.drain()
        try:
            user_text = read_line("> ")
        except EOFError:
            return EXIT_OK
        except KeyboardInterrupt:
            continue

        text = replace_surrogates(user_text).strip()
        if not text:
            continue
        if text.startswith("/"):
            if _handle_slash_command(text, orchestrator=orchestrator, ui=ui):
                return EXIT_OK
            continue

        try:
            orchestrator.send_message(text)
        except TurnRejected as e:
            ui.notice(f"{e.code.value}: {e}", level="error")
            continue
        except SpawnError:
            # Already reported to the UI as a spawn_failed RunError.
            continue
        _wait_for_turn(orchestrator=orchestrator, ui=ui, read_line=read_line)


def _handle_slash_command(text: str, *, orchestrator: Orchestrator, ui) -> bool:
    """Run one slash command; True means the loop should exit."""

    name, _, rest = text.partition(" ")
    name = name.lower()
    try:
        if name in {"/exit", "/quit"}:
            return True
        if name == "/help":
            ui.notice(HELP_TEXT, level="dim")
        elif name == "/clear":
            orchestrator.clear_history()
            ui.notice("History cleared.", level="dim")
        elif name == "/reset":
            orchestrator.reset_session()
            ui.notice("The next message starts a new agent session.", level="dim")
        elif name == "/cd":
            target = rest.strip()
            if not target:
                ui.notice("Usage: /cd DIR", level="warn")
                return False
            orchestrator.set_working_dir(Path(target))
            ui.print_header(working_dir=str(orchestrator.working_dir), session_id=orchestrator.agent_session_id)
            ui.print_history(orchestrator.messages)
        else:
            ui.notice(f"Unknown command: {name} (try /help)", level="warn")
    except TurnRejected as e:
        ui.notice(f"{e.code.value}: {e}", level="error")
    return False


def _wait_for_turn(*, orchestrator: Orchestrator, ui, read_line: ReadLine, poll_s: float = 0.05) -> None:
    asked: set[str] = set()
    while orchestrator.state is not TurnState.IDLE:
        try:
            for request in orchestrator.pending_approvals:
                if request.approval_id in asked:
                    continue
                asked.add(request.approval_id)
                ui.drain()
                try:
                    answer = read_line(f"Allow: {request.description}? [y/N] ")
                except EOFError:
                    answer = ""
                approved = answer.strip().lower() in {"y", "yes"}
                if not orchestrator.respond_to_approval(request.approval_id, approved):
                    ui.notice("That approval was already settled.", level="warn")
            time.sleep(poll_s)
        except KeyboardInterrupt:
            orchestrator.cancel()
            return


def _cmd_history(args: argparse.Namespace) -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_CONFIG_ERROR
    paths = RuntimePaths.for_data_dir(config.data_dir)
    store = FileSessionStore(paths.sessions_dir, state_dir=paths.state_dir)
    working_dir = Path(args.cwd).expanduser() if args.cwd else Path.cwd()
    if not working_dir.is_dir():
        print(f"Not a directory: {working_dir}", file=sys.stderr)
        return EXIT_ERROR

    if args.clear:
        store.delete(working_dir)
        print(f"Cleared history for {working_dir.resolve()}")
        return EXIT_OK

    state = store.load(working_dir)
    if args.json:
        print(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        return EXIT_OK
    if not state.messages:
        print("(no history)")
        return EXIT_OK
    for m in state.messages:
        role = "You" if m.role == MessageRole.USER.value else "Assistant"
        print(f"[{m.timestamp}] {role}: {m.content}")
    return EXIT_OK


def _cmd_hook_install(args: argparse.Namespace) -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_CONFIG_ERROR
    paths = RuntimePaths.for_data_dir(config.data_dir)
    target = Path(args.settings).expanduser() if args.settings else paths.hook_settings_path
    command = args.command or _default_hook_command()
    try:
        written = install_hook_settings(target, command, timeout_s=config.hook_timeout_s)
    except (OSError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR
    print(f"Hook settings written to {written}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
