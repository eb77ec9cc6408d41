"""
Chunk planning for multi-part uploads.

A file of N bytes uploaded in chunks of C bytes is split into ceil(N / C)
chunks, each exactly C bytes except the last, whose lengths sum to N.
"""

import math
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class Chunk:
    """One block of a chunked upload."""
    index: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        """Offset of the last byte (inclusive)."""
        return self.offset + self.length - 1


def plan_chunks(total_size: int, chunk_size: int) -> List[Chunk]:
    """
    Split a file into chunks.

    Args:
        total_size: File size in bytes
        chunk_size: Maximum chunk size in bytes

    Returns:
        Ordered list of chunks (a single empty chunk for an empty file)

    Raises:
        ValueError: If chunk_size is not positive or total_size is negative
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    if total_size < 0:
        raise ValueError(f"File size cannot be negative, got {total_size}")
    if total_size == 0:
        return [Chunk(0, 0, 0)]

    count = math.ceil(total_size / chunk_size)
    return [
        Chunk(index, index * chunk_size, min(chunk_size, total_size - index * chunk_size))
        for index in range(count)
    ]


def read_chunk(path: str, chunk: Chunk) -> bytes:
    """Read one chunk from disk."""
    with open(path, 'rb') as f:
        f.seek(chunk.offset)
        return f.read(chunk.length)


def align_chunk_size(chunk_size: int, multiple: int, minimum: int = 0) -> int:
    """Round a chunk size down to a multiple (never below one multiple or the minimum)."""
    aligned = max(multiple, (chunk_size // multiple) * multiple)
    return max(aligned, minimum)
