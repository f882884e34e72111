"""Line-level change counting between two text snapshots."""

from __future__ import annotations

from retrace.models.undo import LineChangeCounts

DEFAULT_CELL_LIMIT = 250_000
"""Largest trimmed ``before * after`` product that still gets an exact LCS."""


def split_lines(text: str) -> list[str]:
    """
    Split text into lines, normalising CRLF.

    A single trailing newline terminates the last line rather than starting an
    empty one, so ``"a\\nb\\n"`` has two lines and ``""`` has none.
    """
    if not text:
        return []
    normalized = text.replace("\r\n", "\n")
    lines = normalized.split("\n")
    if normalized.endswith("\n"):
        lines.pop()
    return lines


def _common_prefix(before: list[str], after: list[str]) -> int:
    limit = min(len(before), len(after))
    shared = 0
    while shared < limit and before[shared] == after[shared]:
        shared += 1
    return shared


def _common_suffix(before: list[str], after: list[str], prefix: int) -> int:
    # Never reach back into lines already claimed by the prefix.
    limit = min(len(before), len(after)) - prefix
    shared = 0
    while shared < limit and before[-1 - shared] == after[-1 - shared]:
        shared += 1
    return shared


def lcs_length(before: list[str], after: list[str]) -> int:
    """
    Length of the longest common subsequence of two line lists.

    Uses two rolling rows sized by the shorter sequence, so memory is
    ``O(min(n, m))`` while time stays ``O(n * m)``.
    """
    rows, columns = (before, after) if len(before) >= len(after) else (after, before)
    width = len(columns)
    previous = [0] * (width + 1)
    current = [0] * (width + 1)

    for row_value in rows:
        for j in range(1, width + 1):
            if row_value == columns[j - 1]:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous, current = current, previous
        current[0] = 0

    return previous[width]


def diff_line_counts(
    before: str,
    after: str,
    *,
    cell_limit: int = DEFAULT_CELL_LIMIT,
) -> LineChangeCounts:
    """
    Count lines added and removed going from ``before`` to ``after``.

    Algorithm:
    1. Identical texts short-circuit to zero.
    2. If either side has no lines, the other side is entirely added/removed.
    3. Strip the common prefix and suffix so only the changed middle is compared.
    4. If the trimmed region is larger than ``cell_limit`` cells, estimate from the
       trimmed lengths (``approximate=True``) instead of running the LCS.
    5. Otherwise ``added = len(after) - lcs`` and ``removed = len(before) - lcs``.

    Args:
        before: The text as it is now.
        after: The text it would become.
        cell_limit: Maximum ``len(before) * len(after)`` for an exact count.

    Returns:
        LineChangeCounts for the transition.
    """
    if before == after:
        return LineChangeCounts()

    before_lines = split_lines(before)
    after_lines = split_lines(after)
    if not before_lines or not after_lines:
        return LineChangeCounts(added=len(after_lines), removed=len(before_lines))

    prefix = _common_prefix(before_lines, after_lines)
    suffix = _common_suffix(before_lines, after_lines, prefix)
    before_mid = before_lines[prefix : len(before_lines) - suffix]
    after_mid = after_lines[prefix : len(after_lines) - suffix]

    if not before_mid or not after_mid:
        return LineChangeCounts(added=len(after_mid), removed=len(before_mid))

    if len(before_mid) * len(after_mid) > cell_limit:
        shared = min(len(before_mid), len(after_mid))
        return LineChangeCounts(
            added=max(0, len(after_mid) - shared),
            removed=max(0, len(before_mid) - shared),
            approximate=True,
        )

    shared = lcs_length(before_mid, after_mid)
    return LineChangeCounts(
        added=max(0, len(after_mid) - shared),
        removed=max(0, len(before_mid) - shared),
    )
