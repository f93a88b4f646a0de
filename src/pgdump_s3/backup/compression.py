"""Incremental gzip decoding for streamed dumps."""

import zlib
from collections.abc import Iterator

from pgdump_s3.errors import DecompressionError

_GZIP_WBITS = zlib.MAX_WBITS | 16

MAX_PIECE_SIZE = 256 * 1024


class GzipStreamDecoder:
    """Decompresses a gzip stream fed in arbitrary chunks.

    Handles concatenated gzip members.  Output comes back in pieces of at
    most ``max_piece_size`` bytes, so a highly compressible chunk never
    expands into one large buffer.  Corrupt input raises
    ``DecompressionError`` while iterating ``decompress()``; input that stops
    before a member's trailer raises it from ``finish()``.

    Usage:
        decoder = GzipStreamDecoder()
        for chunk in chunks:
            for piece in decoder.decompress(chunk):
                sink.write(piece)
        sink.write(decoder.finish())
    """

    def __init__(self, max_piece_size: int = MAX_PIECE_SIZE) -> None:
        self._max_piece = max_piece_size
        self._decoder = zlib.decompressobj(_GZIP_WBITS)
        self._member_started = False
        self._members = 0

    def decompress(self, data: bytes) -> Iterator[bytes]:
        while True:
            if data:
                self._member_started = True
            try:
                piece = self._decoder.decompress(data, self._max_piece)
            except zlib.error as e:
                raise DecompressionError(f"corrupt compressed stream: {e}") from e
            if piece:
                yield piece

            if self._decoder.eof:
                # Member complete; anything left over starts the next one
                data = self._decoder.unused_data
                self._members += 1
                self._decoder = zlib.decompressobj(_GZIP_WBITS)
                self._member_started = False
                if not data:
                    return
                continue

            data = self._decoder.unconsumed_tail
            # A full piece with no input left may still have output pending
            if not data and len(piece) < self._max_piece:
                return

    def finish(self) -> bytes:
        """Flush and verify the stream ended on a member boundary."""
        if not self._member_started:
            if self._members == 0:
                raise DecompressionError("compressed stream is empty")
            return b""
        try:
            tail = self._decoder.flush()
        except zlib.error as e:
            raise DecompressionError(f"corrupt compressed stream: {e}") from e
        if not self._decoder.eof:
            raise DecompressionError("compressed stream is truncated")
        return tail
