"""
Streaming batch parser for one-shot changes responses.

A non-continuous ``_changes`` response is a JSON object whose ``results``
array is written one record per line::

    {"results":[
    {"seq":"1-g1A...","id":"a","changes":[{"rev":"1-x"}]},
    {"seq":"2-g1A...","id":"b","changes":[{"rev":"1-y"}]}
    ],
    "last_seq":"2-g1A...","pending":0}

Records are decoded line by line and released in batches so memory stays
bounded by the batch size. The framing lines do not decode; the trailer is
scanned for ``last_seq`` only.
"""

from typing import Iterable, Iterator, List, Optional
import json
import re

from pydantic import ValidationError

from .models import ChangeRecord, Cursor

DEFAULT_LAST_SEQ = "0"

# Quoted JSON string or a bare token up to the next separator
_LAST_SEQ_PATTERN = re.compile(r'"last_seq"\s*:\s*("(?:[^"\\]|\\.)*"|[^,}\s]+)')


def extract_last_seq(line: str) -> Optional[Cursor]:
    """Pull the last_seq value out of a trailer line.

    Returns:
        The literal value (string, or int for numeric cursors), or None if the
        line does not have the trailer shape
    """
    match = _LAST_SEQ_PATTERN.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except ValueError:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    return None


def decode_record(line: str) -> Optional[ChangeRecord]:
    """Decode one line as a change record, or None if it is not one."""
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    try:
        return ChangeRecord.model_validate(obj)
    except ValidationError:
        return None


class BatchParser:
    """Accumulates decoded records and releases them in batches."""

    def __init__(self, batch_size: int):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.buffer: List[ChangeRecord] = []
        self.last_seq: Cursor = DEFAULT_LAST_SEQ
        self.records_parsed = 0

    def feed(self, line: str) -> Optional[List[ChangeRecord]]:
        """Consume one line.

        Returns:
            A full batch when the buffer reached batch_size, otherwise None
        """
        if line.endswith(","):
            line = line[:-1]
        if not line:
            return None

        record = decode_record(line)
        if record is None:
            last_seq = extract_last_seq(line)
            if last_seq is not None:
                self.last_seq = last_seq
            return None

        self.buffer.append(record)
        self.records_parsed += 1
        if len(self.buffer) >= self.batch_size:
            batch = self.buffer
            self.buffer = []
            return batch
        return None

    def flush(self) -> Optional[List[ChangeRecord]]:
        """Release whatever is buffered, or None if the buffer is empty."""
        if not self.buffer:
            return None
        batch = self.buffer
        self.buffer = []
        return batch

    def iter_batches(self, lines: Iterable[str]) -> Iterator[List[ChangeRecord]]:
        """Yield batches as lines arrive, then the final short batch if any.

        ``last_seq`` holds the terminal cursor once the generator is exhausted.
        """
        for line in lines:
            batch = self.feed(line)
            if batch is not None:
                yield batch
        batch = self.flush()
        if batch is not None:
            yield batch
