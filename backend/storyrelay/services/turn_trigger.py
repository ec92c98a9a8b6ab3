from __future__ import annotations

DEFAULT_COMPACTION_INTERVAL = 10


def should_compact(
    completed: int, last_compacted: int, interval: int = DEFAULT_COMPACTION_INTERVAL
) -> bool:
    """Decide whether memory compaction is due after a completed turn.

    Fires on every multiple of the interval, and also whenever a full interval
    of turns has gone uncompacted (a failed or skipped run is retried on the
    next turn). An interval below 1 disables compaction.
    """

    if interval < 1 or completed < interval:
        return False
    return completed % interval == 0 or completed - last_compacted >= interval
