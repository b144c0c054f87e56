"""
WAL file names and segment arithmetic.

A regular WAL segment name is 24 upper-case hex digits: timeline, log
and segment number, 8 digits each. Each log holds 0x100000000 bytes of
WAL, so the number of segments per log depends on the segment size the
cluster was initialized with (16 MiB by default, 256 segments per log).

Other files live in the archive too and are valid restore targets, but
have no successor:
    - timeline history files: 00000002.history
    - backup labels: 000000010000000000000002.00000028.backup
    - partial segments: 000000010000000000000002.partial

Invariants:
    - next_segments(n) returns exactly n names, the first being self,
      each strictly greater than the previous one
    - PostgreSQL < 9.3 never uses segment 0xFF of a log
    - Running out of segment numbers is a ValueError, never a wraparound

How to change safely:
    - Segment ordering must match the lexical order of the names
    - Boundary tests live in tests/unit/test_wal_segment.py
"""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_SEGMENT_SIZE = 16 * 1024 * 1024
MIN_SEGMENT_SIZE = 1024 * 1024
MAX_SEGMENT_SIZE = 1024 * 1024 * 1024

LOG_SIZE = 0x100000000
MAX_COUNTER = 0xFFFFFFFF

# PostgreSQL 9.3 started using the last segment of each log
PG_VERSION_USES_FF_SEGMENT = 90300

SEGMENT_RE = re.compile(r"^([0-9A-F]{8})([0-9A-F]{8})([0-9A-F]{8})$")
HISTORY_RE = re.compile(r"^[0-9A-F]{8}\.history$")
BACKUP_LABEL_RE = re.compile(r"^[0-9A-F]{24}\.[0-9A-F]{8}\.backup$")
PARTIAL_RE = re.compile(r"^[0-9A-F]{24}\.partial$")


def is_segment_name(name: str) -> bool:
    """Whether ``name`` is a regular, sequenceable WAL segment."""
    return SEGMENT_RE.match(name) is not None


def is_wal_file(name: str) -> bool:
    """Whether ``name`` is any file PostgreSQL archives."""
    return any(
        regex.match(name)
        for regex in (SEGMENT_RE, HISTORY_RE, BACKUP_LABEL_RE, PARTIAL_RE)
    )


def segments_per_log(segment_size: int = DEFAULT_SEGMENT_SIZE) -> int:
    """Number of segments in a log for the given segment size.

    Raises:
        ValueError: If the size is not a power of two between 1 MiB and 1 GiB
    """
    if (
        segment_size < MIN_SEGMENT_SIZE
        or segment_size > MAX_SEGMENT_SIZE
        or segment_size & (segment_size - 1) != 0
    ):
        raise ValueError(f"invalid WAL segment size: {segment_size}")
    return LOG_SIZE // segment_size


@dataclass(frozen=True, order=True)
class Segment:
    """A regular WAL segment.

    Attributes:
        tli: Timeline ID
        log: Log number
        seg: Segment number within the log
    """

    tli: int
    log: int
    seg: int

    @classmethod
    def from_name(cls, name: str) -> Segment:
        """Parse a segment name.

        Raises:
            ValueError: If ``name`` is not a regular segment name
        """
        match = SEGMENT_RE.match(name)
        if match is None:
            raise ValueError(f"not a WAL segment name: {name!r}")
        return cls(*(int(part, 16) for part in match.groups()))

    @property
    def name(self) -> str:
        return f"{self.tli:08X}{self.log:08X}{self.seg:08X}"

    def next(self, pg_version: int | None = None, segment_size: int | None = None) -> Segment:
        """The segment following this one on the same timeline.

        Args:
            pg_version: Server version number (e.g. 90200); None means a
                current version
            segment_size: WAL segment size in bytes; None means 16 MiB

        Raises:
            ValueError: If this is the last segment of the timeline
        """
        per_log = segments_per_log(segment_size or DEFAULT_SEGMENT_SIZE)
        last_seg = per_log - 1
        if pg_version is not None and pg_version < PG_VERSION_USES_FF_SEGMENT:
            last_seg = min(last_seg, 0xFE)

        if self.seg < last_seg:
            return Segment(self.tli, self.log, self.seg + 1)
        if self.log >= MAX_COUNTER:
            raise ValueError(f"no WAL segment follows {self.name}")
        return Segment(self.tli, self.log + 1, 0)

    def next_segments(
        self,
        count: int,
        pg_version: int | None = None,
        segment_size: int | None = None,
    ) -> list[Segment]:
        """This segment followed by the next ``count - 1`` ones.

        Raises:
            ValueError: If the timeline runs out of segments
        """
        if count <= 0:
            return []
        result = [self]
        while len(result) < count:
            result.append(result[-1].next(pg_version=pg_version, segment_size=segment_size))
        return result

    def __str__(self) -> str:
        return self.name
