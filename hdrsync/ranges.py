"""Cached runs of verified headers awaiting to be appended to a store."""

from __future__ import annotations

import logging

from .interface import Header

_log = logging.getLogger(__name__)


class HeaderRange:
    """A contiguous, ascending run of headers beginning at height ``start``."""

    def __init__(self, header: Header) -> None:
        self.start = header.height
        self._headers: list[Header] = [header]

    def __len__(self) -> int:
        return len(self._headers)

    def append(self, *args: Header) -> None:
        """Add headers continuing the range."""
        self._headers.extend(args)

    def empty(self) -> bool:
        """Report whether the range holds no headers."""
        return not self._headers

    def head(self) -> Header | None:
        """Return the highest header of the range, if any."""
        return self._headers[-1] if self._headers else None

    def before(self, end: int) -> tuple[list[Header], int]:
        """Remove and return the headers up to and including height ``end``.

        Return the removed headers together with their count.
        """
        amount = len(self._headers)
        if self.start + amount >= end:
            amount = max(0, min(amount, end - self.start + 1))
        taken, self._headers = self._headers[:amount], self._headers[amount:]
        if self._headers:
            self.start = self._headers[0].height
        return taken, len(taken)


class Ranges:
    """Non-overlapping, non-adjacent header ranges kept in ascending order."""

    def __init__(self) -> None:
        self._ranges: list[HeaderRange] = []

    def head(self) -> Header | None:
        """Return the highest header across all ranges, if any."""
        if not self._ranges:
            return None
        return self._ranges[-1].head()

    def add(self, header: Header) -> None:
        """Extend the last range with ``header`` or start a new range with it.

        Headers not above the current highest one are dropped.
        """
        head = self.head()
        if head is not None and head.height >= header.height:
            _log.warning(
                "received headers in wrong order: head=%d got=%d", head.height, header.height
            )
            return
        if head is not None and header.height == head.height + 1:
            self._ranges[-1].append(header)
        else:
            self._ranges.append(HeaderRange(header))

    def first_range_within(self, start: int, end: int) -> HeaderRange | None:
        """Return the first range if it begins within ``[start, end]``."""
        first = self.first()
        if first is not None and start <= first.start <= end:
            return first
        return None

    def first(self) -> HeaderRange | None:
        """Return the first non-empty range, discarding empty ones before it."""
        while self._ranges:
            candidate = self._ranges[0]
            if not candidate.empty():
                return candidate
            self._ranges.pop(0)
        return None