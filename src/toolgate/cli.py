"""Console entrypoint for toolgate.

Inspects session journals and configuration. The runtime itself is a library;
the CLI only looks at what it left behind.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from pydantic import ValidationError

from toolgate import __version__
from toolgate.config import LogLevel, Settings, default_config_path, load_settings
from toolgate.journal import JournalEntry, delete_session, iter_entries, list_sessions, session_path, timelines
from toolgate.logging import _to_logging_level


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolgate",
        description="Inspect toolgate session journals and configuration",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show version and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging on stderr (root=INFO, toolgate=DEBUG).",
    )
    parser.add_argument(
        "--log-level",
        choices=[e.value for e in LogLevel],
        dest="log_level",
        help="Log level override",
    )
    parser.add_argument("--config-path", dest="config_path", help="Path to config.toml")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sessions_parser = subparsers.add_parser("sessions", help="List/show/remove session journals")
    sessions_sub = sessions_parser.add_subparsers(dest="sessions_cmd", required=True)
    sessions_sub.add_parser("list", help="List sessions")
    show_parser = sessions_sub.add_parser("show", help="Show a session journal")
    show_parser.add_argument("session_id", help="Session id")
    rm_parser = sessions_sub.add_parser("rm", help="Delete a session")
    rm_parser.add_argument("session_id", help="Session id")

    timeline_parser = subparsers.add_parser("timeline", help="Per-call event timelines of a session")
    timeline_parser.add_argument("session_id", help="Session id")
    timeline_parser.add_argument("--call", dest="call_id", help="Only show this call id")

    config_parser = subparsers.add_parser("config", help="Config helpers")
    config_sub = config_parser.add_subparsers(dest="config_cmd", required=True)
    config_sub.add_parser("path", help="Print config path")
    config_sub.add_parser("print", help="Print resolved settings")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = _collect_overrides(args)
    settings = load_settings(cli_overrides=overrides, config_path=args.config_path)

    _configure_base_logging(debug_enabled=args.debug, toolgate_level=settings.log_level)

    if args.command == "sessions":
        return _run_sessions(args)
    if args.command == "timeline":
        return _run_timeline(args)
    if args.command == "config":
        return _run_config(settings, args)

    parser.error(f"unknown command {args.command}")
    return 1


def _run_sessions(args: argparse.Namespace) -> int:
    if args.sessions_cmd == "list":
        for info in list_sessions():
            print(f"{info.session_id} {info.modified_at.isoformat()} {info.size_bytes}B {info.path}")
        return 0
    if args.sessions_cmd == "show":
        path = session_path(args.session_id)
        if not path.exists():
            print("not found", file=sys.stderr)
            return 1
        print(path.read_text(encoding="utf-8"), end="")
        return 0
    if args.sessions_cmd == "rm":
        if not delete_session(args.session_id):
            print("not found", file=sys.stderr)
            return 1
        return 0
    return 1


def _run_timeline(args: argparse.Namespace) -> int:
    path = session_path(args.session_id)
    if not path.exists():
        print("not found", file=sys.stderr)
        return 1
    try:
        grouped = timelines(iter_entries(path))
    except ValidationError as exc:
        print(f"invalid journal {path}: {exc.error_count()} bad entries", file=sys.stderr)
        return 1

    if args.call_id is not None:
        if args.call_id not in grouped:
            print(f"no events for call {args.call_id}", file=sys.stderr)
            return 1
        grouped = {args.call_id: grouped[args.call_id]}

    for call_id, entries in grouped.items():
        print(format_timeline(call_id, entries))
    return 0


def format_timeline(call_id: str, entries: list[JournalEntry]) -> str:
    tool_name = entries[0].tool_name if entries else "?"
    steps = " -> ".join(_describe(entry) for entry in entries)
    flags: list[str] = []
    if not any(entry.terminal for entry in entries):
        flags.append("incomplete")
    sequences = [entry.sequence for entry in entries]
    if sequences != sorted(set(sequences)):
        flags.append("out of order")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"{call_id} ({tool_name}): {steps}{suffix}"


def _describe(entry: JournalEntry) -> str:
    if entry.event_type == "error":
        return f"error({entry.payload.get('kind')}: {entry.payload.get('message')})"
    return entry.event_type


def _run_config(settings: Settings, args: argparse.Namespace) -> int:
    if args.config_cmd == "path":
        print(args.config_path or default_config_path())
        return 0
    if args.config_cmd == "print":
        print(settings.model_dump_json(indent=2))
        return 0
    return 1


def _collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    default_log_level = LogLevel.DEBUG.value if args.debug else None
    return {"log_level": args.log_level or default_log_level}


def _configure_base_logging(*, debug_enabled: bool, toolgate_level: LogLevel | str) -> None:
    root_level = logging.INFO if debug_enabled else logging.WARNING

    logging.basicConfig(
        level=root_level,
        stream=sys.__stderr__,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )

    logging.getLogger("toolgate").setLevel(_to_logging_level(toolgate_level))


if __name__ == "__main__":
    sys.exit(main())
