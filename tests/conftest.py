"""Shared fixtures for the changes reader tests."""

import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from changesreader.connectors.changes import ChangesRequest

FIXTURES = Path(__file__).parent / "fixtures"


class ScriptedTransport:
    """Transport answering requests from a script of payloads and exceptions.

    Once the script is used up, requests behave like an idle long-poll: a short
    pause, then an empty result at the same cursor.
    """

    def __init__(self, responses=None, chunks=None):
        self.responses: List[Any] = list(responses or [])
        self.chunks: List[Any] = list(chunks or [])
        self.requests: List[ChangesRequest] = []
        self.gate = threading.Event()
        self.gate.set()
        self.in_flight = threading.Event()

    def request(self, req: ChangesRequest) -> Dict[str, Any]:
        self.requests.append(req)
        self.in_flight.set()
        self.gate.wait(timeout=5)
        self.in_flight.clear()
        if not self.responses:
            time.sleep(0.01)
            return {"results": [], "last_seq": req.query["since"], "pending": 0}
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def stream(self, req: ChangesRequest):
        self.requests.append(req)
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


class Recorder:
    """Collects every message published on a channel, in order."""

    def __init__(self, channel):
        self.messages = []
        channel.subscribe(self.messages.append)

    def events(self):
        return [m.event for m in self.messages]

    def payloads(self, event):
        return [m.payload for m in self.messages if m.event == event]


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def make_changes(count: int, prefix: str = "doc", start: int = 0, seq: bool = False) -> List[Dict[str, Any]]:
    return [
        {
            "seq": f"{start + i + 1}-0" if seq else None,
            "id": f"{prefix}{i}",
            "changes": [{"rev": "1-1"}]
        }
        for i in range(count)
    ]


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def spool_body() -> bytes:
    return (FIXTURES / "changes.json").read_bytes()
