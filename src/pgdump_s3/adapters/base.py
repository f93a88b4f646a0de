"""Object storage protocol definition.

Defines the ``ObjectStorage`` Protocol that storage adapters implement.
Both operations stream: uploads consume an async iterator of byte chunks and
downloads return an async-iterable ``ObjectStream``, so arbitrarily large
dumps never have to fit in memory.

Usage:
    from pgdump_s3.adapters.base import ObjectStorage

    async def copy(storage: ObjectStorage, key: str, chunks) -> None:
        result = await storage.put_object_streaming(key, chunks)
        stream = await storage.get_object(result.key)
        try:
            async for chunk in stream:
                ...
        finally:
            await stream.aclose()
"""

from collections.abc import AsyncIterator
from typing import Protocol

from pydantic import BaseModel


class UploadResult(BaseModel):
    """Outcome of a completed streaming upload."""

    key: str
    location: str
    size: int


class ObjectStream(Protocol):
    """Async byte stream over a stored object's body.

    Iterating yields non-empty chunks until the body is exhausted.
    ``aclose()`` releases the underlying connection and must be called on
    every exit path.
    """

    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class ObjectStorage(Protocol):
    """Object storage interface used by the dump and restore pipelines.

    Implementations must be safe to share across pipeline runs.
    """

    bucket: str

    async def put_object_streaming(
        self, key: str, chunks: AsyncIterator[bytes]
    ) -> UploadResult:
        """Upload an object from a stream of chunks.

        Consumes ``chunks`` until it is exhausted, then finalizes the object.

        Args:
            key: Destination object key.
            chunks: Async iterator of byte chunks, in order.

        Returns:
            ``UploadResult`` with the final location and byte count.

        Raises:
            TransferError: If the upload fails.  No object is left behind.
        """
        ...

    async def get_object(self, key: str) -> ObjectStream:
        """Open an object for streaming download.

        Args:
            key: Object key.

        Returns:
            ``ObjectStream`` the caller must ``aclose()``.

        Raises:
            ObjectNotFoundError: If the key does not exist.
            TransferError: For any other storage failure.
        """
        ...
