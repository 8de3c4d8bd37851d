"""
Line framing for streamed response bodies.

Turns chunks of arbitrary size and alignment into complete lines. No JSON
awareness: this is a pure text-framing step in front of the batch parser.
"""

from typing import Iterable, Iterator, List, Optional, Union
import codecs


class LineSplitter:
    """Incremental splitter that carries a partial line across chunks."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._remainder: Optional[str] = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        """Add a chunk and return the lines it completed.

        Args:
            chunk: Raw bytes or decoded text

        Returns:
            Complete lines, trailing whitespace trimmed
        """
        if self._remainder is None:
            raise ValueError("LineSplitter already flushed")

        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        data = self._remainder + chunk

        lines = data.split("\n")
        self._remainder = lines.pop()
        return [line.rstrip() for line in lines]

    def flush(self) -> str:
        """Return the buffered remainder. Can only be called once."""
        if self._remainder is None:
            raise ValueError("LineSplitter already flushed")
        tail = self._remainder + self._decoder.decode(b"", final=True)
        self._remainder = None
        return tail


def split_lines(chunks: Iterable[Union[bytes, str]], encoding: str = "utf-8") -> Iterator[str]:
    """Lazily yield the lines of a chunked stream.

    The final remainder is yielded once at end of input, even when empty.
    """
    splitter = LineSplitter(encoding)
    for chunk in chunks:
        if not chunk:
            continue
        yield from splitter.feed(chunk)
    yield splitter.flush()
