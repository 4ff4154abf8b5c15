"""
Incremental reads of append-only log files.

A CLI log cursor remembers how far into a file we have read, the file size
at that time, and a hash of the bytes already read. Comparing those against
the file on disk tells us whether we can read just the tail.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from lorekeep.utils.hashing import calculate_partial_hash

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Type of file change detected."""

    APPEND = "append"  # New content added to end (read the tail only)
    TRUNCATE = "truncate"  # File shrank or vanished (full reread)
    REWRITE = "rewrite"  # Already-read content changed (full reread)
    UNCHANGED = "unchanged"


@dataclass
class TailRead:
    """Complete lines read from a byte offset."""

    lines: list[bytes]
    start_offset: int
    end_offset: int  # Offset just past the last complete line consumed
    file_size: int


def detect_file_change_type(
    file_path: Path,
    last_offset: int,
    last_file_size: int,
    last_partial_hash: Optional[str],
) -> ChangeType:
    """
    Detect what type of change occurred to a file since the last read.

    Args:
        file_path: Path to the file to check
        last_offset: Byte offset where reading last stopped
        last_file_size: File size at last read
        last_partial_hash: SHA-256 hash of content up to last_offset

    Returns:
        ChangeType indicating the type of change detected
    """
    if not file_path.exists():
        return ChangeType.TRUNCATE

    current_size = file_path.stat().st_size

    if current_size == last_file_size:
        return ChangeType.UNCHANGED

    if current_size < last_file_size or current_size < last_offset:
        return ChangeType.TRUNCATE

    if last_partial_hash:
        if calculate_partial_hash(file_path, last_offset) != last_partial_hash:
            return ChangeType.REWRITE

    return ChangeType.APPEND


def read_complete_lines(file_path: Path, start_offset: int) -> TailRead:
    """
    Read newline-terminated lines from start_offset to end of file.

    A trailing line without a newline is still being written and is left
    for the next read.

    Raises:
        OSError: If the file cannot be read
    """
    with open(file_path, "rb") as f:
        f.seek(start_offset)
        data = f.read()
    file_size = start_offset + len(data)

    last_newline = data.rfind(b"\n")
    if last_newline == -1:
        return TailRead(lines=[], start_offset=start_offset, end_offset=start_offset, file_size=file_size)

    complete = data[: last_newline + 1]
    lines = complete.split(b"\n")[:-1]
    return TailRead(
        lines=lines,
        start_offset=start_offset,
        end_offset=start_offset + len(complete),
        file_size=file_size,
    )
