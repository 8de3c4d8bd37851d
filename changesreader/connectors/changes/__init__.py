"""
Changes feed module for CouchDB-compatible document stores.
"""

from .models import ChangeRecord, ChangesRequest, Cursor, PollConfig, ReaderState, NOW
from .events import EventChannel, Change, BatchReady, CursorAdvanced, Failed, Finished, Message
from .liner import LineSplitter, split_lines
from .batcher import BatchParser, extract_last_seq
from .transport import (
    Transport, RequestsTransport, ChangesReaderError, ChangesRequestError,
    ChangesTransportError, MalformedResponseError, is_fatal
)
from .reader import ChangesReader, ReaderStatus, create_reader_from_settings

__all__ = [
    "ChangeRecord",
    "ChangesRequest",
    "Cursor",
    "PollConfig",
    "ReaderState",
    "NOW",
    "EventChannel",
    "Change",
    "BatchReady",
    "CursorAdvanced",
    "Failed",
    "Finished",
    "Message",
    "LineSplitter",
    "split_lines",
    "BatchParser",
    "extract_last_seq",
    "Transport",
    "RequestsTransport",
    "ChangesReaderError",
    "ChangesRequestError",
    "ChangesTransportError",
    "MalformedResponseError",
    "is_fatal",
    "ChangesReader",
    "ReaderStatus",
    "create_reader_from_settings",
]
