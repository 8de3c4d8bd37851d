"""
Reader for the changes feed of CouchDB-compatible document stores.
"""

from .connectors.changes import (
    ChangesReader,
    ChangeRecord,
    PollConfig,
    EventChannel,
    RequestsTransport,
    ChangesRequestError,
    create_reader_from_settings,
)

__version__ = "0.1.0"

__all__ = [
    "ChangesReader",
    "ChangeRecord",
    "PollConfig",
    "EventChannel",
    "RequestsTransport",
    "ChangesRequestError",
    "create_reader_from_settings",
]
