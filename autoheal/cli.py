"""
autoheal CLI -- operator commands for the self-healing controller.

Usage:
    python -m autoheal <command> [options]

Examples:
    python -m autoheal classify "Unterminated string in JSON at position 42"
    python -m autoheal sweep --site yalla-london
    python -m autoheal sweeper --json
    python -m autoheal log --outcome recovered --hours 6
    python -m autoheal summary --hours 24
    python -m autoheal reset draft-42 --phase drafting --strategy json_repair
    python -m autoheal phases
    python -m autoheal purge --days 90 --dry-run

Data locations come from the ``AUTOHEAL_*`` environment variables (see
``autoheal.config``).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import timedelta
from typing import Any, List, Optional

from autoheal import __version__
from autoheal.classifier import diagnose, is_retryable
from autoheal.hooks import FailureHooks, build_hooks
from autoheal.phases import PHASE_ORDER, Phase, TERMINAL_PHASES
from autoheal.recovery import RecoveryStrategy, reset_item, resolve_reset_phase
from autoheal.recovery_log import EventType, Outcome, RecoveryLogEntry
from autoheal.utils import now_iso, now_utc, truncate

CLI_SOURCE = "cli"

# ANSI colour codes
_NO_COLOR = os.environ.get("NO_COLOR") or not sys.stdout.isatty()

_RESET = "" if _NO_COLOR else "\033[0m"
_BOLD = "" if _NO_COLOR else "\033[1m"
_DIM = "" if _NO_COLOR else "\033[2m"
_RED = "" if _NO_COLOR else "\033[31m"
_GREEN = "" if _NO_COLOR else "\033[32m"
_YELLOW = "" if _NO_COLOR else "\033[33m"
_CYAN = "" if _NO_COLOR else "\033[36m"

_OUTCOME_COLORS = {
    Outcome.RECOVERED.value: _GREEN,
    Outcome.WILL_RETRY.value: _CYAN,
    Outcome.LOGGED.value: _YELLOW,
    Outcome.NOT_RECOVERABLE.value: _RED,
    Outcome.CRITICAL_ALERT.value: _RED + _BOLD,
}


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_header(title: str) -> None:
    print(f"\n{_BOLD}{title}{_RESET}")
    print(f"{_DIM}{'=' * len(title)}{_RESET}")


def _format_entry(entry: RecoveryLogEntry) -> str:
    outcome = Outcome(entry.outcome).value
    color = _OUTCOME_COLORS.get(outcome, "")
    line = (
        f"{_DIM}{entry.detected_at[:19]}{_RESET}  "
        f"{color}{outcome:<16}{_RESET}"
        f"{EventType(entry.event_type).value:<20}"
        f"{entry.target:<28} {truncate(entry.diagnosis, 80)}"
    )
    if entry.fix_applied:
        line += f"\n{'':>56}{_DIM}fix: {truncate(entry.fix_applied, 100)}{_RESET}"
    return line


def _parse_enum(enum_cls: Any, value: Optional[str], label: str) -> Any:
    if value is None:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        print(f"Unknown {label}: {value}")
        print(f"Valid values: {', '.join(e.value for e in enum_cls)}")
        raise SystemExit(2)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_classify(hooks: FailureHooks, args: argparse.Namespace) -> int:
    d = diagnose(" ".join(args.text))
    data = {
        "category": d.category.value,
        "retryable": is_retryable(d.category),
        "reset_phase": d.reset_phase.value,
        "explanation": d.explanation,
        "fix": d.fix_description,
    }
    if args.json:
        _print_json(data)
        return 0
    mark = f"{_GREEN}retryable{_RESET}" if data["retryable"] else f"{_RED}not retryable{_RESET}"
    print(f"{_BOLD}{data['category']}{_RESET} ({mark})")
    print(f"  {data['explanation']}")
    print(f"  {_DIM}sweep action: {data['fix']}{_RESET}")
    return 0


def _cmd_sweep(hooks: FailureHooks, args: argparse.Namespace) -> int:
    count = hooks.sweep_sync(args.site)
    if args.json:
        _print_json({"recovered": count, "site_id": args.site})
    else:
        print(f"Targeted sweep recovered {count} item(s) (site={args.site or 'all'}).")
    return 0


def _cmd_sweeper(hooks: FailureHooks, args: argparse.Namespace) -> int:
    result = hooks.agent().run_sync()
    if args.json:
        _print_json(result.to_dict())
        return 0 if result.success else 1

    _print_header("Sweeper Agent")
    print(result.message)
    for action in result.recovered:
        print(
            f"  {_GREEN}+{_RESET} {action.item_id} ({action.keyword}, {action.locale}): "
            f"{action.previous_phase} -> {action.new_phase}"
        )
        print(f"    {_DIM}{truncate(action.problem, 120)}{_RESET}")
    print(f"\n{_DIM}{result.skipped} skipped, {result.duration_ms:.0f}ms{_RESET}")
    return 0 if result.success else 1


def _cmd_log(hooks: FailureHooks, args: argparse.Namespace) -> int:
    event_type = _parse_enum(EventType, args.event_type, "event type")
    outcome = _parse_enum(Outcome, args.outcome, "outcome")
    entries = hooks.log.search(
        event_type=event_type,
        outcome=outcome,
        target=args.target,
        start_time=now_utc() - timedelta(hours=args.hours),
        limit=args.limit,
    )
    if args.json:
        _print_json([e.to_dict() for e in entries])
        return 0
    if not entries:
        print("No recovery log entries found matching criteria.")
        return 0
    for entry in entries:
        print(_format_entry(entry))
    print(f"\n--- {len(entries)} entries ---")
    return 0


def _cmd_summary(hooks: FailureHooks, args: argparse.Namespace) -> int:
    summary = hooks.log.summary(hours=args.hours)
    if args.json:
        _print_json(summary)
        return 0

    _print_header(f"Recovery Summary (last {args.hours:g}h)")
    print(f"Total entries:      {summary['total_entries']}")
    print(f"Items recovered:    {summary['recovered_targets']}")
    print(f"Critical alerts:    {summary['critical_alerts']}")
    for key, title in (("by_outcome", "Outcomes"), ("by_event_type", "Events"), ("by_category", "Categories")):
        counts = summary[key]
        if not counts:
            continue
        print(f"\n{title}:")
        for name, count in sorted(counts.items(), key=lambda kv: -kv[1]):
            print(f"  {name:<22} {count}")
    return 0


def _cmd_reset(hooks: FailureHooks, args: argparse.Namespace) -> int:
    """Manual operator reset.  Logged as a recovery so the loop guard sees it."""
    strategy = _parse_enum(RecoveryStrategy, args.strategy, "strategy")
    item = hooks.store.get(args.item_id)
    if item is None:
        print(f"{_RED}Item {args.item_id} not found{_RESET}")
        return 1

    failed_phase = _parse_enum(Phase, args.phase, "phase") or item.phase
    if failed_phase in TERMINAL_PHASES:
        print(f"{_RED}Item is {item.current_phase}; pass --phase to choose where to resume{_RESET}")
        return 2

    if not args.force and hooks.guard.was_recently_recovered(item.id):
        print(f"{_YELLOW}Item {item.id} was already recovered recently; use --force to reset anyway{_RESET}")
        return 1

    if not reset_item(hooks.store, item.id, failed_phase, strategy):
        print(f"{_RED}Reset failed for {item.id}{_RESET}")
        return 1

    target = resolve_reset_phase(failed_phase, strategy)
    hooks.log.record(
        event_type=EventType.AUTO_RECOVERY,
        source=CLI_SOURCE,
        target=item.id,
        failure_description=f'Manual reset of item "{item.keyword or item.id}" from {item.current_phase}',
        diagnosis="Operator requested reset",
        error_category=diagnose(item.rejection_reason or item.last_error).category,
        fix_applied=f'Reset to "{target.value}" with fresh attempt counter (strategy: {strategy.value})',
        reactivated_at=now_iso(),
        outcome=Outcome.RECOVERED,
        context={"previous_phase": item.current_phase, "strategy": strategy.value},
    )
    print(f"{_GREEN}Item {item.id} reset to {target.value}{_RESET}")
    return 0


def _cmd_phases(hooks: FailureHooks, args: argparse.Namespace) -> int:
    if args.json:
        _print_json([p.value for p in PHASE_ORDER])
        return 0
    _print_header("Production Phases")
    for idx, phase in enumerate(PHASE_ORDER):
        print(f"  {idx}. {phase.value}")
    print(f"\n  {_DIM}terminal: {Phase.PUBLISHED.value}, {Phase.REJECTED.value}{_RESET}")
    return 0


def _cmd_purge(hooks: FailureHooks, args: argparse.Namespace) -> int:
    if args.dry_run:
        candidates = hooks.log.expired_files(args.days)
        if not candidates:
            print(f"No recovery log files older than {args.days} days to purge.")
            return 0
        print(f"Would purge {len(candidates)} file(s):")
        for path in candidates:
            print(f"  {path.name}")
        return 0

    deleted = hooks.log.purge_old(days=args.days)
    if deleted:
        print(f"Purged {deleted} recovery log file(s) older than {args.days} days.")
    else:
        print(f"No recovery log files older than {args.days} days to purge.")
    return 0


_COMMANDS = {
    "classify": _cmd_classify,
    "sweep": _cmd_sweep,
    "sweeper": _cmd_sweeper,
    "log": _cmd_log,
    "summary": _cmd_summary,
    "reset": _cmd_reset,
    "phases": _cmd_phases,
    "purge": _cmd_purge,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoheal",
        description="Self-healing controller for the article production pipeline",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp = subparsers.add_parser("classify", help="Classify failure text")
    sp.add_argument("text", nargs="+", help="Error text to classify")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("sweep", help="Run the targeted sweep")
    sp.add_argument("--site", type=str, default=None, help="Restrict to one site id")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("sweeper", help="Run the full sweeper agent")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("log", help="Search the recovery log")
    sp.add_argument("--event-type", type=str, default=None, help="Filter by event type")
    sp.add_argument("--outcome", type=str, default=None, help="Filter by outcome")
    sp.add_argument("--target", type=str, default=None, help="Filter by target (exact)")
    sp.add_argument("--hours", type=float, default=24.0, help="Look back N hours (default: 24)")
    sp.add_argument("--limit", type=int, default=50, help="Max results (default: 50)")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("summary", help="Recovery summary report")
    sp.add_argument("--hours", type=float, default=24.0, help="Look back N hours (default: 24)")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("reset", help="Manually reset an item")
    sp.add_argument("item_id", type=str, help="Item id")
    sp.add_argument("--phase", type=str, default=None, help="Phase that failed (default: current phase)")
    sp.add_argument(
        "--strategy", type=str, default=RecoveryStrategy.RETRY.value,
        help="retry, json_repair or reprocess (default: retry)",
    )
    sp.add_argument("--force", action="store_true", help="Ignore the loop guard")

    sp = subparsers.add_parser("phases", help="List production phases")
    sp.add_argument("--json", action="store_true", help="Output as JSON")

    sp = subparsers.add_parser("purge", help="Purge old recovery log files")
    sp.add_argument("--days", type=int, default=90, help="Delete files older than N days (default: 90)")
    sp.add_argument("--dry-run", action="store_true", help="Show what would be purged without deleting")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point.  Returns an exit code (0 ok, 1 error, 2 usage error)."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    level = logging.DEBUG if args.verbose else logging.WARNING
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("autoheal"):
            logging.getLogger(name).setLevel(level)

    hooks = build_hooks()
    try:
        return _COMMANDS[args.command](hooks, args)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 1
    except KeyboardInterrupt:
        print("\nAborted.")
        return 130
