"""Resource streamer -- split large resource payloads into chunks."""

from __future__ import annotations

from typing import Iterable, Iterator

from flipagent.config import MIN_RESOURCE_CHUNK_BYTES
from flipagent.mcp.base import ResourceContent


def chunk_resource_contents(content: ResourceContent, chunk_size: int) -> Iterator[ResourceContent]:
    """Yield ``content`` as an ordered sequence of chunks.

    Content that is already chunked, or whose payload fits in one chunk,
    is yielded unchanged.  Otherwise every slice but the last carries
    ``complete=False`` and the last carries ``complete=True``.
    """
    chunk_size = max(MIN_RESOURCE_CHUNK_BYTES, chunk_size)
    if content.is_chunked:
        yield content
        return

    payload = content.text if content.text is not None else content.blob
    if not payload or len(payload) <= chunk_size:
        yield content
        return

    for start in range(0, len(payload), chunk_size):
        end = start + chunk_size
        yield ResourceContent(
            uri=content.uri,
            mime_type=content.mime_type,
            chunk=payload[start:end],
            complete=end >= len(payload),
        )


class ResourceStream:
    """Restartable, lazy sequence of chunks for one ``resources/read`` result.

    The underlying request has already completed; iterating only slices
    the in-memory payload, so abandoning an iteration part-way has no
    effect on the source connection.
    """

    def __init__(self, contents: Iterable[ResourceContent], chunk_size: int):
        self._contents = tuple(contents)
        self.chunk_size = max(MIN_RESOURCE_CHUNK_BYTES, chunk_size)

    def __iter__(self) -> Iterator[ResourceContent]:
        for content in self._contents:
            yield from chunk_resource_contents(content, self.chunk_size)

    @property
    def contents(self) -> tuple[ResourceContent, ...]:
        return self._contents

    def read_all(self) -> str:
        """Concatenate every chunk payload in order."""
        return "".join(chunk.payload or "" for chunk in self)
