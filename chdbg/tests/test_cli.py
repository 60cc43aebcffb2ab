"""Tests for the chdbg CLI tool (chdbg/cli/main.py).

Covers:
- Argument parsing (info, list, render, find, config, version)
- Text and JSON output
- Partial loads and unreadable traces
- Banner suppression
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from chdbg.cli.main import BANNER, VERSION, _run_config, build_parser, main
from chdbg.trace.writer import TraceWriter


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _no_logging_setup():
    """Keep main() from replacing the test run's log handlers."""
    with patch("chdbg.cli.main.setup_logging"):
        yield


@pytest.fixture
def parser() -> argparse.ArgumentParser:
    return build_parser()


@pytest.fixture
def trace_file(tmp_path: Path, sample_trace: bytes) -> Path:
    path = tmp_path / "sample.trace"
    path.write_bytes(sample_trace)
    return path


@pytest.fixture
def cut_trace_file(tmp_path: Path, sample_trace: bytes) -> Path:
    path = tmp_path / "cut.trace"
    path.write_bytes(sample_trace[:-5])
    return path


# ── Parser ───────────────────────────────────────────────────────────────


class TestParser:
    """Argument parsing."""

    def test_version_flag(self, parser: argparse.ArgumentParser):
        assert parser.parse_args(["--version"]).version is True

    def test_info(self, parser: argparse.ArgumentParser):
        args = parser.parse_args(["info", "t.bin", "--at", "5", "--json"])
        assert (args.command, args.trace, args.at, args.json) == ("info", "t.bin", 5, True)

    def test_count(self, parser: argparse.ArgumentParser):
        assert parser.parse_args(["list", "t.bin", "-n", "100"]).count == 100

    def test_render_grouping_choices(self, parser: argparse.ArgumentParser):
        assert parser.parse_args(["render", "t.bin", "-g", "owner-block"]).grouping == "owner-block"
        with pytest.raises(SystemExit):
            parser.parse_args(["render", "t.bin", "-g", "diagonal"])

    def test_find_mode(self, parser: argparse.ArgumentParser):
        args = parser.parse_args(["find", "t.bin", "min", "--start", "3"])
        assert (args.mode, args.start, args.stop) == ("min", 3, None)

    def test_byte_order(self, parser: argparse.ArgumentParser):
        assert parser.parse_args(["info", "t.bin", "--byte-order", "little"]).byte_order == "little"


# ── Commands ─────────────────────────────────────────────────────────────


class TestInfo:
    """The info command."""

    def test_text(self, trace_file: Path, capsys):
        assert main(["--no-banner", "info", str(trace_file)]) == 0
        out = capsys.readouterr().out
        assert "Debugging sample.trace, read 11 opcodes, applied 11" in out
        assert "tool 4258, opcodes 4260" in out

    def test_json(self, trace_file: Path, capsys):
        assert main(["info", str(trace_file), "--json", "--at", "6", "--chdescs"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["report"]["opcodes"] == 11
        assert payload["state"]["applied"] == 6
        assert payload["state"]["dangling"] == 1
        assert len(payload["chdescs"]) == 4

    def test_partial_trace(self, cut_trace_file: Path, capsys):
        assert main(["--no-banner", "info", str(cut_trace_file)]) == 0
        err = capsys.readouterr().err
        assert "Bad input (" in err
        assert "while reading cut.trace; 10 opcodes OK" in err

    def test_missing_file(self, tmp_path: Path, capsys):
        assert main(["--no-banner", "info", str(tmp_path / "nope")]) == 1
        assert "does not exist" in capsys.readouterr().err

    def test_unsupported_revision(self, tmp_path: Path, capsys):
        path = tmp_path / "old.trace"
        path.write_bytes(TraceWriter(tool_revision=2000, opcode_revision=2000).write_header().getvalue())
        assert main(["--no-banner", "info", str(path)]) == 1
        assert "use debugger revision 3474" in capsys.readouterr().err

    def test_replay_failure_exit_code(self, tmp_path: Path, capsys):
        w = TraceWriter().write_header()
        w.record("KDB_CHDESC_CREATE_NOOP", chdesc=0x10)
        w.record("KDB_CHDESC_CREATE_NOOP", chdesc=0x10)
        path = tmp_path / "dup.trace"
        path.write_bytes(w.getvalue())
        assert main(["--no-banner", "info", str(path)]) == 1
        assert "replay stopped at opcode #1" in capsys.readouterr().err


class TestList:
    """The list command."""

    def test_range(self, trace_file: Path, capsys):
        assert main(["list", str(trace_file), "--start", "3", "--stop", "4"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 2
        assert "KDB_CHDESC_ADD_BEFORE: source = 0x00000010, target = 0x00000020" in lines[0]

    def test_stack(self, trace_file: Path, capsys):
        main(["list", str(trace_file), "--start", "3", "--stop", "3", "--stack"])
        out = capsys.readouterr().out
        assert "from traced() at trace.c:1" in out
        assert "[1] 0x80002000" in out

    def test_json(self, trace_file: Path, capsys):
        main(["list", str(trace_file), "--json", "--count", "2"])
        payload = json.loads(capsys.readouterr().out)
        assert [entry["name"] for entry in payload] == ["KDB_INFO_BD_NAME", "KDB_CHDESC_CREATE_NOOP"]
        assert payload[0]["params"]["name"] == "sda"


class TestRender:
    """The render command."""

    def test_stdout(self, trace_file: Path, capsys):
        assert main(["render", str(trace_file), "--grouping", "block"]) == 0
        out = capsys.readouterr().out
        assert out.startswith('digraph "chdescs" {')
        assert "subgraph" in out

    def test_output_file(self, trace_file: Path, tmp_path: Path):
        target = tmp_path / "state.dot"
        assert main(["-q", "render", str(trace_file), "--at", "4", "-o", str(target)]) == 0
        text = target.read_text()
        assert "after #3" in text
        assert "->" in text

    @patch.dict(os.environ, {"CHDBG_GRAPH_RANKDIR": "LR"})
    def test_rankdir_from_settings(self, trace_file: Path, capsys):
        main(["render", str(trace_file)])
        assert "rankdir=LR;" in capsys.readouterr().out


class TestFind:
    """The find command."""

    def test_text(self, trace_file: Path, capsys):
        assert main(["find", str(trace_file), "max"]) == 0
        out = capsys.readouterr().out
        assert "Maximal chdesc count in [0, 11]" in out

    def test_json(self, trace_file: Path, capsys):
        main(["find", str(trace_file), "min", "--start", "3", "--json"])
        assert json.loads(capsys.readouterr().out) == {
            "mode": "min", "start": 3, "stop": 11, "position": 3, "count": 2,
        }


class TestMain:
    """Dispatch, banner, config and version."""

    def test_version_print(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"chdbg {VERSION}"

    def test_version_command(self, capsys):
        assert main(["version"]) == 0
        assert VERSION in capsys.readouterr().out

    def test_no_command_shows_help(self, capsys):
        assert main(["--no-banner"]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_banner_shown_on_stderr(self, capsys):
        main([])
        assert BANNER.strip() in capsys.readouterr().err

    @patch("chdbg.cli.main._run_config")
    def test_config_dispatch(self, mock_config):
        mock_config.return_value = 0
        assert main(["--no-banner", "config"]) == 0
        mock_config.assert_called_once()

    @patch.dict(os.environ, {"CHDBG_GROUPING": "owner-block"})
    def test_config_command_runs(self, capsys):
        assert _run_config() == 0
        out = capsys.readouterr().out
        assert "grouping:" in out
        assert "owner-block" in out
