from __future__ import annotations

import pytest

from storyrelay.services.turn_trigger import should_compact


@pytest.mark.parametrize(
    ("completed", "last_compacted", "expected"),
    [
        (0, 0, False),
        (9, 0, False),
        (10, 0, True),
        (11, 0, True),
        (15, 10, False),
        (19, 10, False),
        (20, 10, True),
        (20, 0, True),
        (10, 10, True),
        (25, 11, True),
        (25, 20, False),
    ],
)
def test_should_compact_default_interval(completed: int, last_compacted: int, expected: bool) -> None:
    assert should_compact(completed, last_compacted) is expected


def test_should_compact_custom_interval() -> None:
    assert should_compact(5, 0, interval=5) is True
    assert should_compact(4, 0, interval=5) is False
    assert should_compact(7, 5, interval=5) is False


def test_should_compact_disabled_interval() -> None:
    assert should_compact(100, 0, interval=0) is False
