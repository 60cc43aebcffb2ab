"""chdbg CLI: post-mortem debugger for chdesc traces.

Usage:
    chdbg info <trace>              Load a trace and summarise it
    chdbg list <trace>              List decoded opcodes
    chdbg render <trace>            Render the chdesc graph as Graphviz text
    chdbg find <trace> max|min      Find the position with most/fewest chdescs
    chdbg config                    Show current configuration
    chdbg version                   Print version

Examples:
    chdbg info kernel.trace --json
    chdbg list kernel.trace --start 100 --stop 120 --stack
    chdbg render kernel.trace --at 5000 --grouping block-owner -o state.dot
    chdbg find kernel.trace max --start 1000
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from chdbg.core.config import get_settings
from chdbg.core.errors import ReplayError, TraceError
from chdbg.core.logging import TraceLogFilter, setup_logging
from chdbg.core.types import GroupingMode, SearchMode
from chdbg.replay.debugger import Debugger
from chdbg.replay.search import find_chdesc_count
from chdbg.render.grouping import parse_grouping
from chdbg.render.sink import DotSink
from chdbg.render.view import render_state

VERSION = "0.9.0"


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN}      _         _ _
  ___| |__   __| | |__   __ _
 / __| '_ \ / _` | '_ \ / _` |
| (__| | | | (_| | |_) | (_| |
 \___|_| |_|\__,_|_.__/ \__, |
                        |___/{_RESET}
  {_DIM}chdesc trace debugger v{VERSION}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_trace_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("trace", help="Path to a binary trace file")
    parser.add_argument(
        "--count", "-n", type=int, default=None,
        help="Decode at most this many opcodes (default: CHDBG_MAX_OPCODES or all)",
    )
    parser.add_argument(
        "--byte-order", choices=["big", "little"], default=None,
        help="Integer byte order of the trace (default: from settings)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chdbg",
        description="chdbg: post-mortem debugger for chdesc traces",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── info ─────────────────────────────────────────────────────────────────
    info_p = sub.add_parser("info", help="Load a trace and summarise it")
    _add_trace_args(info_p)
    info_p.add_argument("--at", type=int, default=None, help="Replay position (default: end)")
    info_p.add_argument("--chdescs", action="store_true", help="Also list live chdescs")
    info_p.add_argument("--json", action="store_true", help="Emit JSON")

    # ── list ─────────────────────────────────────────────────────────────────
    list_p = sub.add_parser("list", help="List decoded opcodes")
    _add_trace_args(list_p)
    list_p.add_argument("--start", type=int, default=0, help="First opcode index")
    list_p.add_argument("--stop", type=int, default=None, help="Last opcode index (inclusive)")
    list_p.add_argument("--stack", action="store_true", help="Show call site and stack")
    list_p.add_argument("--json", action="store_true", help="Emit JSON")

    # ── render ───────────────────────────────────────────────────────────────
    render_p = sub.add_parser("render", help="Render the chdesc graph as Graphviz text")
    _add_trace_args(render_p)
    render_p.add_argument("--at", type=int, default=None, help="Replay position (default: end)")
    render_p.add_argument(
        "--grouping", "-g",
        choices=[mode.value for mode in GroupingMode],
        default=None,
        help="Cluster nesting (default: from settings)",
    )
    render_p.add_argument("--free", action="store_true", help="Draw free-list next pointers")
    render_p.add_argument("--output", "-o", help="Write output to file instead of stdout")

    # ── find ─────────────────────────────────────────────────────────────────
    find_p = sub.add_parser("find", help="Find the position with most/fewest live chdescs")
    _add_trace_args(find_p)
    find_p.add_argument("mode", choices=[mode.value for mode in SearchMode])
    find_p.add_argument("--start", type=int, default=0, help="First position to consider")
    find_p.add_argument("--stop", type=int, default=None, help="Last position to consider")
    find_p.add_argument("--json", action="store_true", help="Emit JSON")

    # ── config / version ─────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")
    sub.add_parser("version", help="Print version")

    return parser


# ── Loading ──────────────────────────────────────────────────────────────────


def _load(args: argparse.Namespace) -> Debugger | None:
    """Open and decode the trace named on the command line.

    Header problems are fatal; a bad record mid-trace is reported and the
    opcodes before it stay usable.
    """
    settings = get_settings()
    path = Path(args.trace)
    if not path.is_file():
        print(_c(f"Error: trace '{path}' does not exist.", _RED), file=sys.stderr)
        return None

    count = args.count
    if count is None and settings.max_opcodes > 0:
        count = settings.max_opcodes
    byte_order = args.byte_order or settings.byte_order

    try:
        debugger = Debugger.load(
            path.read_bytes(),
            name=path.name,
            count=count,
            byte_order=byte_order,
            intern_stacks=settings.intern_stacks,
        )
    except TraceError as exc:
        print(_c(f"Error: cannot read {path.name}: {exc}", _RED), file=sys.stderr)
        return None

    if debugger.error is not None:
        print(
            _c(
                f"Bad input ({debugger.error}) while reading {path.name}; "
                f"{debugger.opcode_count} opcodes OK",
                _YELLOW,
            ),
            file=sys.stderr,
        )
    return debugger


def _seek(debugger: Debugger, position: int | None) -> bool:
    """Replay to ``position`` (end when None). False if replay hit a broken invariant."""
    try:
        if position is None:
            debugger.replay_all()
        else:
            debugger.jump(position)
    except ReplayError as exc:
        print(
            _c(f"Error: replay stopped at opcode #{debugger.applied - 1}: {exc}", _RED),
            file=sys.stderr,
        )
        return False
    return True


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ── Info command ─────────────────────────────────────────────────────────────


def _run_info(args: argparse.Namespace) -> int:
    debugger = _load(args)
    if debugger is None:
        return 1
    ok = _seek(debugger, args.at)

    report = debugger.report()
    summary = debugger.summarize()
    if args.json:
        payload: dict[str, Any] = {
            "report": report.model_dump(mode="json"),
            "state": summary.model_dump(mode="json"),
        }
        if args.chdescs:
            payload["chdescs"] = [chdesc.model_dump(mode="json") for chdesc in debugger.chdesc_summaries()]
        _dump(payload)
        return 0 if ok else 1

    print(f"\n{_BOLD}{debugger}{_RESET}")
    print(
        f"  Revisions: tool {report.tool_revision}, opcodes {report.opcode_revision}"
        f"  |  Bytes: {report.offset}  |  Stacks: {report.stacks}"
    )
    status = _c("complete", _GREEN) if report.complete else _c("partial", _YELLOW)
    print(f"  Load: {status}")
    print(
        f"  Chdescs: {_c(str(summary.chdescs), _CYAN)}"
        f"  |  Bdescs: {summary.bdescs}"
        f"  |  Dangling: {summary.dangling}"
        f"  |  Free list: {summary.free_list}"
    )
    if summary.by_type:
        parts = [f"{count} {kind}" for kind, count in summary.by_type.items()]
        print(f"  {_DIM}{' · '.join(parts)}{_RESET}")
    if args.chdescs:
        print()
        for chdesc in debugger.state.chdescs.values():
            print(f"  {chdesc}")
    print()
    return 0 if ok else 1


# ── List command ─────────────────────────────────────────────────────────────


def _run_list(args: argparse.Namespace) -> int:
    debugger = _load(args)
    if debugger is None:
        return 1

    last = debugger.opcode_count - 1
    stop = last if args.stop is None else min(args.stop, last)
    indices = range(max(0, args.start), stop + 1)

    if args.json:
        _dump([debugger.opcode_summary(index).model_dump(mode="json") for index in indices])
        return 0

    for index in indices:
        opcode = debugger.get_opcode(index)
        prefix = _c(f"#{index:>6}", _DIM)
        if args.stack:
            print(f"{prefix} {opcode.describe()}")
        else:
            print(f"{prefix} {opcode}")
    return 0


# ── Render command ───────────────────────────────────────────────────────────


def _run_render(args: argparse.Namespace) -> int:
    settings = get_settings()
    debugger = _load(args)
    if debugger is None:
        return 1
    ok = _seek(debugger, args.at)

    grouper = parse_grouping(
        args.grouping or settings.grouping,
        settings.block_cluster_color,
        settings.owner_cluster_color,
    )
    render_free = args.free or settings.render_free_list

    if args.output:
        with open(args.output, "w", encoding="utf-8") as output:
            render_state(debugger, DotSink(output, settings.graph_rankdir), grouper, render_free)
        if not args.quiet:
            print(f"  Written to {_c(args.output, _CYAN)}", file=sys.stderr)
    else:
        render_state(debugger, DotSink(sys.stdout, settings.graph_rankdir), grouper, render_free)
    return 0 if ok else 1


# ── Find command ─────────────────────────────────────────────────────────────


def _run_find(args: argparse.Namespace) -> int:
    debugger = _load(args)
    if debugger is None:
        return 1
    try:
        result = find_chdesc_count(debugger, args.mode, args.start, args.stop)
    except ReplayError as exc:
        print(_c(f"Error: replay failed during search: {exc}", _RED), file=sys.stderr)
        return 1

    if args.json:
        _dump(result.model_dump(mode="json"))
        return 0
    word = "Maximal" if result.mode == SearchMode.MAX else "Minimal"
    print(
        f"  {word} chdesc count in [{result.start}, {result.stop}]: "
        f"{_c(str(result.count), _CYAN)} at position {_c(str(result.position), _BOLD)}"
    )
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings."""
    s = get_settings()
    print(f"\n{_BOLD}chdbg Configuration{_RESET}\n")
    values = s.model_dump(mode="json")
    for field_name in sorted(values):
        val = values[field_name]
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        print(f"chdbg {VERSION}")
        return 0

    settings = get_settings()
    setup_logging(settings.app_env, "DEBUG" if settings.debug else settings.log_level)
    trace = getattr(args, "trace", None)
    if trace:
        for handler in logging.getLogger().handlers:
            handler.addFilter(TraceLogFilter(Path(trace).name))

    if not args.no_banner and not args.quiet and args.command in (None, "info", "config"):
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "config":
        return _run_config()

    if args.command == "info":
        return _run_info(args)

    if args.command == "list":
        return _run_list(args)

    if args.command == "render":
        return _run_render(args)

    if args.command == "find":
        return _run_find(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
