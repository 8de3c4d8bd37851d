"""
CouchDB changes feed reader.

Follows a database's ``_changes`` feed with repeated long-poll requests,
republishing every change, every batch and every cursor advance to an
EventChannel. Transient server failures are retried forever; client errors
end the run.

Modes:
1. start() - follow the feed indefinitely
2. get()   - drain everything currently available, then end
3. spool() - one streamed request for the whole range, parsed in batches
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import quote
import threading
import uuid

from prometheus_client import Counter

from .batcher import BatchParser
from .events import BatchReady, Change, CursorAdvanced, EventChannel, Failed, Finished
from .liner import split_lines
from .models import ChangeRecord, ChangesRequest, PollConfig, ReaderState
from .transport import MalformedResponseError, RequestsTransport, Transport, is_fatal
from ...utils.logging import CorrelationContext, get_logger

logger = get_logger(__name__)

changes_records_total = Counter(
    'changesreader_records_total',
    'Total change records delivered',
    ['database']
)

changes_batches_total = Counter(
    'changesreader_batches_total',
    'Total batches delivered',
    ['database', 'mode']
)

changes_cursor_advances_total = Counter(
    'changesreader_cursor_advances_total',
    'Total cursor advances',
    ['database']
)

changes_request_errors_total = Counter(
    'changesreader_request_errors_total',
    'Total failed changes requests',
    ['database', 'kind']
)


class ReaderStatus(str, Enum):
    """Reader status enumeration."""
    IDLE = "idle"
    ACTIVE = "active"


ConfigLike = Union[PollConfig, Mapping[str, Any], None]


def _coerce_config(config: ConfigLike, overrides: Dict[str, Any]) -> PollConfig:
    if config is None:
        return PollConfig(**overrides)
    if isinstance(config, PollConfig):
        if not overrides:
            return config
        return PollConfig(**{**config.model_dump(), **overrides})
    return PollConfig(**{**dict(config), **overrides})


def _decode_results(results: Any) -> List[ChangeRecord]:
    if results is None:
        return []
    if not isinstance(results, list):
        raise MalformedResponseError(f"'results' must be a list, got {type(results).__name__}")
    try:
        return [ChangeRecord.model_validate(r) for r in results]
    except ValueError as e:
        raise MalformedResponseError(f"Invalid change record in response: {e}") from e


class ChangesReader:
    """
    Monitor a CouchDB database's changes feed.

    One reader runs at most one loop at a time, on a daemon worker thread.
    Subscriber callbacks run on that thread, so a slow subscriber delays the
    next request but never races it.

    Example:
        >>> reader = ChangesReader("orders", RequestsTransport("http://localhost:5984"))
        >>> reader.channel.on("batch", handle_batch).on("seq", save_cursor)
        >>> reader.start(since="now", include_docs=True)
        >>> ...
        >>> reader.stop()
    """

    def __init__(self, db: str, transport: Transport):
        """
        Initialize the reader.

        Args:
            db: Database name
            transport: Object performing the HTTP requests
        """
        if not db:
            raise ValueError("db must be a non-empty database name")

        self.db = db
        self.transport = transport
        self.path = f"{quote(db, safe='')}/_changes"

        self._lock = threading.Lock()
        self._resume = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state: Optional[ReaderState] = None
        self._channel = EventChannel()

    @property
    def status(self) -> ReaderStatus:
        return ReaderStatus.ACTIVE if self._state is not None else ReaderStatus.IDLE

    @property
    def active(self) -> bool:
        return self._state is not None

    @property
    def channel(self) -> EventChannel:
        """The channel the current (or next) run publishes to."""
        return self._channel

    @property
    def cursor(self) -> Optional[Any]:
        """Cursor of the active run, None when idle."""
        state = self._state
        return state.cursor if state is not None else None

    def start(self, config: ConfigLike = None, **options: Any) -> EventChannel:
        """
        Follow the changes feed indefinitely.

        Args:
            config: PollConfig or mapping of its fields
            **options: PollConfig fields overriding config

        Returns:
            The run's EventChannel; the existing one if a run is already active
        """
        return self._launch("start", self._poll_loop, config, options, stop_on_empty=False)

    def get(self, config: ConfigLike = None, **options: Any) -> EventChannel:
        """Drain the changes currently available, then emit 'end'."""
        return self._launch("get", self._poll_loop, config, options, stop_on_empty=True)

    def spool(self, config: ConfigLike = None, **options: Any) -> EventChannel:
        """Fetch everything from the cursor in a single streamed request."""
        return self._launch("spool", self._spool_loop, config, options, stop_on_empty=True)

    def stop(self) -> None:
        """
        Ask the active run to stop.

        Cooperative: an in-flight request is not cancelled; the loop exits at
        its next checkpoint.
        """
        state = self._state
        if state is None:
            return
        logger.info(
            f"Stop requested for changes reader on {self.db}",
            extra={"database": self.db, "run_id": state.run_id}
        )
        state.keep_going = False
        self._resume.set()

    def resume(self) -> None:
        """Let a run started with wait=True request the next batch."""
        self._resume.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the worker thread to finish.

        Returns:
            True if no run is active afterwards
        """
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            return not thread.is_alive()
        return self._state is None

    def _launch(
        self,
        mode: str,
        loop: Callable[[ReaderState, EventChannel], Optional[BaseException]],
        config: ConfigLike,
        options: Dict[str, Any],
        stop_on_empty: bool
    ) -> EventChannel:
        with self._lock:
            if self._state is not None:
                return self._channel

            poll_config = _coerce_config(config, options)
            state = ReaderState.for_run(
                poll_config,
                stop_on_empty=stop_on_empty,
                run_id=str(uuid.uuid4()),
                mode=mode
            )
            channel = self._channel
            self._state = state
            self._resume.clear()
            self._thread = threading.Thread(
                target=self._run,
                args=(loop, state, channel),
                name=f"changesreader-{mode}-{self.db}",
                daemon=True
            )
            self._thread.start()
            return channel

    def _run(
        self,
        loop: Callable[[ReaderState, EventChannel], Optional[BaseException]],
        state: ReaderState,
        channel: EventChannel
    ) -> None:
        outcome: Optional[BaseException] = None
        with CorrelationContext(state.run_id):
            logger.info(
                f"Changes reader {state.mode} started on {self.db}",
                extra={
                    "database": self.db,
                    "mode": state.mode,
                    "since": state.cursor,
                    "batch_size": state.config.batch_size,
                    "include_docs": state.config.include_docs,
                    "selector": state.config.selector is not None
                }
            )
            try:
                outcome = loop(state, channel)
            except Exception as e:
                logger.exception(
                    f"Changes reader {state.mode} on {self.db} aborted: {e}",
                    extra={"database": self.db, "mode": state.mode, "cursor": state.cursor}
                )
                outcome = e
            finally:
                with self._lock:
                    self._state = None
                    self._channel = EventChannel()
                channel.close(outcome)
                logger.info(
                    f"Changes reader {state.mode} stopped on {self.db}",
                    extra={
                        "database": self.db,
                        "mode": state.mode,
                        "cursor": state.cursor,
                        "requests": state.requests_made,
                        "outcome": repr(outcome) if outcome else None
                    }
                )

    def _base_query(self, state: ReaderState) -> Dict[str, Any]:
        config = state.config
        return {
            "since": state.cursor,
            "include_docs": config.include_docs,
            "seq_interval": config.seq_interval,
        }

    def _finish_request(self, state: ReaderState, query: Dict[str, Any]) -> ChangesRequest:
        config = state.config
        # CouchDB rejects a POST to _changes without a JSON body (415)
        body: Dict[str, Any] = {}
        if config.selector is not None:
            query["filter"] = "_selector"
            body["selector"] = config.selector
        query.update(config.extra_query)
        return ChangesRequest(method="POST", path=self.path, query=query, body=body)

    def build_poll_request(self, state: ReaderState) -> ChangesRequest:
        """Long-poll request for the next slice after state.cursor."""
        config = state.config
        query = {
            "feed": "longpoll",
            "timeout": config.timeout,
            "limit": config.batch_size,
            "heartbeat": config.heartbeat,
        }
        query.update(self._base_query(state))
        return self._finish_request(state, query)

    def build_spool_request(self, state: ReaderState) -> ChangesRequest:
        """Single request for everything from state.cursor to the end of the log."""
        return self._finish_request(state, self._base_query(state))

    def _report_failure(self, state: ReaderState, channel: EventChannel, error: Exception) -> bool:
        fatal = is_fatal(error)
        kind = "fatal" if fatal else "transient"
        changes_request_errors_total.labels(database=self.db, kind=kind).inc()

        extra = {
            "database": self.db,
            "cursor": state.cursor,
            "error": str(error),
            "error_type": type(error).__name__,
            "status_code": getattr(error, "status_code", None),
            "kind": kind
        }
        if fatal:
            logger.error(f"Fatal error reading changes from {self.db}: {error}", extra=extra)
        else:
            logger.warning(f"Transient error reading changes from {self.db}, retrying: {error}", extra=extra)

        channel.emit(Failed(error, fatal=fatal))
        return fatal

    def _poll_loop(self, state: ReaderState, channel: EventChannel) -> Optional[BaseException]:
        """Long-poll until stopped, a fatal error, or (in get mode) a short batch."""
        config = state.config

        while state.keep_going:
            req = self.build_poll_request(state)
            state.requests_made += 1
            try:
                data = self.transport.request(req)
                if not isinstance(data, Mapping):
                    raise MalformedResponseError(f"Expected a JSON object, got {type(data).__name__}")
                results = data.get("results")
                records = _decode_results(results)
            except Exception as e:
                if self._report_failure(state, channel, e):
                    state.keep_going = False
                    return e
                continue

            if records:
                for record in records:
                    channel.emit(Change(record))
                channel.emit(BatchReady(records))
                changes_records_total.labels(database=self.db).inc(len(records))
                changes_batches_total.labels(database=self.db, mode=state.mode).inc()

            last_seq = data.get("last_seq")
            if last_seq is not None and last_seq != state.cursor:
                state.cursor = last_seq
                changes_cursor_advances_total.labels(database=self.db).inc()
                channel.emit(CursorAdvanced(last_seq))

            logger.debug(
                f"Poll returned {len(records)} changes",
                extra={
                    "database": self.db,
                    "cursor": state.cursor,
                    "changes": len(records),
                    "pending": data.get("pending")
                }
            )

            if state.stop_on_empty and results is not None and len(records) < config.batch_size:
                channel.emit(Finished(state.cursor))
                state.keep_going = False
            elif records and config.wait and state.keep_going:
                self._resume.wait()
                self._resume.clear()

        return None

    def _spool_loop(self, state: ReaderState, channel: EventChannel) -> Optional[BaseException]:
        """Stream one full-range response through the line splitter and batch parser."""
        parser = BatchParser(state.config.batch_size)
        req = self.build_spool_request(state)
        state.requests_made += 1

        failure: Optional[Exception] = None
        try:
            chunks = self.transport.stream(req)
        except Exception as e:
            chunks = None
            failure = e

        if chunks is not None:
            batches = parser.iter_batches(split_lines(chunks))
            try:
                while state.keep_going:
                    try:
                        batch = next(batches)
                    except StopIteration:
                        break
                    except Exception as e:
                        failure = e
                        break
                    self._deliver_spooled(state, channel, batch)
            finally:
                batches.close()

        if failure is not None:
            if self._report_failure(state, channel, failure):
                return failure
            logger.warning(
                f"Spool of {self.db} ended early, treating as end of available data",
                extra={"database": self.db, "records": parser.records_parsed}
            )

        if not state.keep_going:
            return failure

        # Records buffered before a broken stream are still delivered
        tail = parser.flush()
        if tail is not None:
            self._deliver_spooled(state, channel, tail)

        state.cursor = parser.last_seq
        channel.emit(Finished(parser.last_seq))
        logger.info(
            f"Spooled {parser.records_parsed} changes from {self.db}",
            extra={"database": self.db, "records": parser.records_parsed, "last_seq": parser.last_seq}
        )
        return failure

    def _deliver_spooled(self, state: ReaderState, channel: EventChannel, batch: List[ChangeRecord]) -> None:
        channel.emit(BatchReady(batch))
        changes_records_total.labels(database=self.db).inc(len(batch))
        changes_batches_total.labels(database=self.db, mode=state.mode).inc()


def create_reader_from_settings(settings=None, transport: Optional[Transport] = None) -> ChangesReader:
    """
    Create a ChangesReader from the environment-driven settings.

    Args:
        settings: Optional Settings instance (defaults to get_settings())
        transport: Optional transport (defaults to a RequestsTransport for settings.couch)

    Returns:
        ChangesReader instance
    """
    from ...config.settings import get_settings

    settings = settings or get_settings()
    couch = settings.couch
    if transport is None:
        auth = (couch.username, couch.password) if couch.username else None
        transport = RequestsTransport(
            couch.url,
            auth=auth,
            verify=couch.verify_ssl,
            timeout_slack=couch.request_timeout_slack
        )
    return ChangesReader(couch.database, transport)
