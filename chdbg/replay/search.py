"""Searches across replay positions."""

from __future__ import annotations

import logging

from chdbg.core.types import FindResult, SearchMode
from chdbg.replay.debugger import Debugger

logger = logging.getLogger(__name__)


def find_chdesc_count(
    debugger: Debugger,
    mode: SearchMode | str = SearchMode.MAX,
    start: int = 0,
    stop: int | None = None,
) -> FindResult:
    """Find the first position in [start, stop] with the max or min live chdesc count.

    Positions are replay positions (number of opcodes applied). The debugger
    is returned to the position it was at before the search.
    """
    mode = SearchMode(mode)
    total = debugger.opcode_count
    stop = total if stop is None else min(stop, total)
    start = max(0, min(start, stop))
    original = debugger.applied

    debugger.jump(start)
    best = debugger.state.chdesc_count
    best_position = start
    for position in range(start + 1, stop + 1):
        debugger.jump(position)
        count = debugger.state.chdesc_count
        better = count > best if mode == SearchMode.MAX else count < best
        if better:
            best = count
            best_position = position

    debugger.jump(original)
    logger.debug("find %s in [%d, %d]: %d chdescs at #%d", mode.value, start, stop, best, best_position)
    return FindResult(mode=mode, start=start, stop=stop, position=best_position, count=best)
