"""Chunk collection and reassembly."""

import threading
from typing import Callable, Dict, Iterable, List, Optional

from common.constants import PROGRESS_BATCH_SIZE
from common.exceptions import IncompleteUploadError
from common.records import Chunk


class ChunkCollector:
    """
    Keeps the first chunk seen per index for one cartridge.

    Chunks of other cartridges and indices beyond the expected count are
    ignored.
    """

    def __init__(self, cartridge_id: int, expected: int):
        self.cartridge_id = cartridge_id
        self.expected = expected
        self.bytes = 0
        self._chunks: Dict[int, Chunk] = {}
        self._lock = threading.Lock()

    def add(self, chunk: Chunk) -> bool:
        """
        Offer a chunk.

        Returns:
            True if the chunk was new and kept
        """
        if chunk.cartridge_id != self.cartridge_id or chunk.chunk_index >= self.expected:
            return False
        with self._lock:
            if chunk.chunk_index in self._chunks:
                return False
            self._chunks[chunk.chunk_index] = chunk
            self.bytes += chunk.length
            return True

    @property
    def count(self) -> int:
        return len(self._chunks)

    @property
    def complete(self) -> bool:
        return len(self._chunks) >= self.expected

    def missing(self) -> List[int]:
        with self._lock:
            return [i for i in range(self.expected) if i not in self._chunks]

    def chunks(self) -> List[Chunk]:
        with self._lock:
            return [self._chunks[i] for i in sorted(self._chunks)]


def reconstruct(
    chunks: Iterable[Chunk],
    total_size: int,
    on_batch: Optional[Callable[[int, int], None]] = None,
    batch_size: int = PROGRESS_BATCH_SIZE,
) -> bytes:
    """
    Reassemble file content from chunks in any order.

    Duplicates collapse to the first occurrence per index; chunks are joined
    in index order and the result is cut to `total_size`.

    Args:
        chunks: Chunks of one cartridge
        total_size: Size announced by the header
        on_batch: Called with (chunks processed, bytes assembled) every `batch_size` chunks
        batch_size: Progress batch size

    Returns:
        Exactly `total_size` bytes

    Raises:
        IncompleteUploadError: If the chunks hold fewer than `total_size` bytes
    """
    first_seen: Dict[int, Chunk] = {}
    for chunk in chunks:
        first_seen.setdefault(chunk.chunk_index, chunk)

    buffer = bytearray()
    for count, index in enumerate(sorted(first_seen), start=1):
        buffer += first_seen[index].data
        if on_batch is not None and count % batch_size == 0:
            on_batch(count, len(buffer))

    if len(buffer) < total_size:
        raise IncompleteUploadError(f"Reassembled {len(buffer)} bytes, header announces {total_size}")
    return bytes(buffer[:total_size])
