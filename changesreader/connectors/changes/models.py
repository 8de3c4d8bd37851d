"""
Data models for the CouchDB changes feed reader.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Opaque position in the change log. CouchDB 2+ uses strings, 1.x integers.
Cursor = Union[str, int]

NOW = "now"

DEFAULT_BATCH_SIZE = 100
DEFAULT_TIMEOUT_MS = 60000
DEFAULT_HEARTBEAT_MS = 5000

# seq_interval multiplier applied when fast_changes is enabled
FAST_CHANGES_FACTOR = 10


class ChangeRecord(BaseModel):
    """One entry of the changes feed.

    Fields the server sends beyond the documented ones are kept as extras.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(..., description="Document id")
    changes: List[Any] = Field(default_factory=list, description="Revision markers, leaf revisions first")
    seq: Optional[Any] = Field(None, description="Per-record sequence token, null when seq_interval is in effect")
    deleted: bool = Field(default=False, description="True when the change is a deletion")
    doc: Optional[Dict[str, Any]] = Field(None, description="Document body when include_docs was requested")

    def to_json_dict(self) -> Dict[str, Any]:
        """Return the record as the server sent it."""
        return self.model_dump(exclude_unset=True)


class PollConfig(BaseModel):
    """Configuration for one run of the changes reader."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, description="Changes requested per HTTP request")
    since: Cursor = Field(default=NOW, description="Cursor to start from")
    include_docs: bool = Field(default=False, description="Include document bodies")
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, description="Long-poll hold time in milliseconds")
    heartbeat: int = Field(default=DEFAULT_HEARTBEAT_MS, description="Server keep-alive interval in milliseconds")
    fast_changes: bool = Field(default=False, description="Widen seq_interval for cheaper, coarser cursors")
    selector: Optional[Dict[str, Any]] = Field(None, description="Mango selector used to filter changes")
    extra_query: Dict[str, Any] = Field(default_factory=dict, description="Passthrough query parameters")
    wait: bool = Field(default=False, description="Pause after each batch until resume() is called")

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("batch_size must be positive")
        return v

    @field_validator("timeout", "heartbeat")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timeout and heartbeat must be non-negative")
        return v

    @field_validator("since")
    @classmethod
    def validate_since(cls, v: Cursor) -> Cursor:
        if isinstance(v, str) and not v:
            raise ValueError("since must not be empty")
        return v

    @property
    def seq_interval(self) -> int:
        if self.fast_changes:
            return self.batch_size * FAST_CHANGES_FACTOR
        return self.batch_size


@dataclass
class ReaderState:
    """Mutable state of a single run. Built on entry, discarded on exit."""

    config: PollConfig
    cursor: Cursor
    mode: str = "start"
    stop_on_empty: bool = False
    keep_going: bool = True
    run_id: str = ""
    requests_made: int = 0

    @classmethod
    def for_run(cls, config: PollConfig, stop_on_empty: bool, run_id: str, mode: str = "start") -> "ReaderState":
        return cls(
            config=config,
            cursor=config.since,
            mode=mode,
            stop_on_empty=stop_on_empty,
            run_id=run_id
        )


@dataclass(frozen=True)
class ChangesRequest:
    """A request handed to the transport."""

    method: str
    path: str
    query: Dict[str, Any]
    body: Optional[Dict[str, Any]] = None
