"""Hashing helpers for incremental file reads and signature keys."""

import hashlib
from pathlib import Path


def calculate_content_hash(content: str | bytes) -> str:
    """
    Calculate SHA-256 hash of content.

    Args:
        content: String or bytes content to hash

    Returns:
        Hexadecimal string representation of the SHA-256 hash (64 characters)
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def calculate_partial_hash(file_path: Path, offset: int, chunk_size: int = 8192) -> str:
    """
    Calculate SHA-256 hash of file content up to a byte offset.

    Used to tell a clean append apart from a rewrite of already-read content.

    Args:
        file_path: Path to the file
        offset: Byte offset to read up to

    Returns:
        Hex-encoded SHA-256 hash of content from start to offset

    Raises:
        ValueError: If offset is negative or exceeds file size
    """
    if offset < 0:
        raise ValueError(f"Offset must be non-negative, got {offset}")

    file_size = file_path.stat().st_size
    if offset > file_size:
        raise ValueError(f"Offset {offset} exceeds file size {file_size} for {file_path}")

    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        bytes_read = 0
        while bytes_read < offset:
            chunk = f.read(min(chunk_size, offset - bytes_read))
            if not chunk:
                break
            sha256.update(chunk)
            bytes_read += len(chunk)

    return sha256.hexdigest()
