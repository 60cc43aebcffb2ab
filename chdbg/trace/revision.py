"""Stream revision compatibility gate.

Every trace starts with two revision numbers: the revision of the debug
module that wrote it and the revision of its opcode definitions. Rules are
evaluated top to bottom and the first match wins. A match on a rejecting
rule fails with UnsupportedStreamRevision and its remediation advice; a
match on the accepting rule yields the record layout to decode with.
Anything unmatched is rejected with remediation 0 ("use a newer debugger").

Remediation values:
    N > 0   use debugger revision N
    0       use a newer debugger
    -1      no debugger revision can read this stream
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chdbg.core.errors import UnsupportedStreamRevision
from chdbg.trace.decoder import TraceReader

logger = logging.getLogger(__name__)

# Inclusive revision range; None on either end is unbounded
Range = tuple[int | None, int | None]

ANY: Range = (None, None)


@dataclass(frozen=True)
class RecordLayout:
    """Optional parts of an opcode record for one stream revision."""

    names: bool = False   # opcode name string after the opcode id
    stack: bool = True    # zero-terminated call stack after the values


@dataclass(frozen=True)
class RevisionRule:
    tool: Range
    opcode: Range
    remediation: int = 0
    layout: RecordLayout | None = None  # set only on accepting rules

    @property
    def accepts(self) -> bool:
        return self.layout is not None

    def matches(self, tool_revision: int, opcode_revision: int) -> bool:
        return _in_range(tool_revision, self.tool) and _in_range(opcode_revision, self.opcode)


def _in_range(value: int, bounds: Range) -> bool:
    low, high = bounds
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def exact(revision: int) -> Range:
    return (revision, revision)


# ── Known revisions ──────────────────────────────────────────────────────────

TOOL_REVISION = 4258
OPCODE_REVISION = 4260

CURRENT_LAYOUT = RecordLayout(names=False, stack=True)

REVISION_RULES: list[RevisionRule] = [
    # Text-mode streams from before the binary protocol existed
    RevisionRule(tool=(None, 1499), opcode=ANY, remediation=-1),
    # Old flag layout and collection opcodes
    RevisionRule(tool=(1500, 3474), opcode=(None, 3474), remediation=3474),
    # Opcode names in every record, no call stacks
    RevisionRule(tool=(3475, 4257), opcode=(3475, 4259), remediation=4257),
    RevisionRule(tool=exact(TOOL_REVISION), opcode=exact(OPCODE_REVISION), layout=CURRENT_LAYOUT),
    # Newer producers renumbered the chdesc modules
    RevisionRule(tool=(TOOL_REVISION + 1, None), opcode=ANY, remediation=0),
]


def check_revision(
    tool_revision: int,
    opcode_revision: int,
    rules: list[RevisionRule] | None = None,
) -> RecordLayout:
    """Return the record layout for a revision pair or raise UnsupportedStreamRevision."""
    for rule in rules if rules is not None else REVISION_RULES:
        if not rule.matches(tool_revision, opcode_revision):
            continue
        if rule.layout is not None:
            logger.debug("Accepted stream revision %d/%d", tool_revision, opcode_revision)
            return rule.layout
        raise UnsupportedStreamRevision(tool_revision, opcode_revision, rule.remediation)
    raise UnsupportedStreamRevision(tool_revision, opcode_revision, 0)


def read_revision(reader: TraceReader, rules: list[RevisionRule] | None = None) -> tuple[int, int, RecordLayout]:
    """Read the two header revisions and gate them."""
    tool_revision = reader.read_u32("tool revision")
    opcode_revision = reader.read_u32("opcode revision")
    layout = check_revision(tool_revision, opcode_revision, rules)
    return tool_revision, opcode_revision, layout
