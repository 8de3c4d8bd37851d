"""Unit tests for the long-poll changes reader."""

import time

import pytest

from changesreader.connectors.changes import (
    BatchReady, Change, ChangeRecord, ChangesReader, ChangesRequestError, ChangesTransportError,
    CursorAdvanced, Failed, Finished, MalformedResponseError, PollConfig, ReaderStatus
)

from conftest import Recorder, ScriptedTransport, make_changes, wait_for


@pytest.fixture
def reader(transport):
    return ChangesReader("changesreader", transport)


def stop_on(reader, channel, event):
    channel.on(event, lambda payload: reader.stop())


class TestPolling:
    """Test continuous polling."""

    def test_one_poll_no_changes(self, reader, transport):
        """Test an empty response only advances the cursor."""
        transport.responses = [{"results": [], "last_seq": "1-0", "pending": 0}]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert recorder.events() == ["seq"]
        assert recorder.payloads("seq") == ["1-0"]
        assert len(transport.requests) == 1

        req = transport.requests[0]
        assert req.method == "POST"
        assert req.path == "changesreader/_changes"
        assert req.body == {}
        assert req.query == {
            "feed": "longpoll",
            "timeout": 60000,
            "since": "now",
            "limit": 100,
            "heartbeat": 5000,
            "seq_interval": 100,
            "include_docs": False,
        }

    def test_one_poll_multi_changes(self, reader, transport):
        """Test five records yield five changes, one batch, then the cursor."""
        changes = make_changes(5)
        transport.responses = [{"results": changes, "last_seq": "1-0", "pending": 0}]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert recorder.events() == ["change"] * 5 + ["batch", "seq"]
        assert [c.to_json_dict() for c in recorder.payloads("change")] == changes
        batch = recorder.payloads("batch")[0]
        assert [c.id for c in batch] == ["doc0", "doc1", "doc2", "doc3", "doc4"]
        assert recorder.payloads("seq") == ["1-0"]

    def test_typed_messages(self, reader, transport):
        """Test subscribers receive one message type per event."""
        transport.responses = [{"results": make_changes(1), "last_seq": "1-0"}]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert [type(m) for m in recorder.messages] == [Change, BatchReady, CursorAdvanced]
        assert isinstance(recorder.messages[0].record, ChangeRecord)

    def test_multiple_polls_follow_cursor(self, reader, transport):
        """Test each request resumes from the last received cursor."""
        change = {"seq": None, "id": "a", "changes": ["1-1"]}
        transport.responses = [
            {"results": [], "last_seq": "1-0", "pending": 0},
            {"results": [], "last_seq": "1-0", "pending": 0},
            {"results": [change], "last_seq": "2-0", "pending": 0},
        ]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "change")

        reader.start(timeout=1000)

        assert reader.join(timeout=5)
        assert [r.query["since"] for r in transport.requests] == ["now", "1-0", "1-0"]
        assert all(r.query["timeout"] == 1000 for r in transport.requests)
        assert recorder.payloads("seq") == ["1-0", "2-0"]
        assert recorder.payloads("change")[0].to_json_dict() == change

    def test_seq_only_on_difference(self, reader, transport):
        """Test an unchanged last_seq does not emit seq."""
        transport.responses = [
            {"results": [], "last_seq": "5-0"},
            {"results": [], "last_seq": "6-0"},
        ]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start(since="5-0")

        assert reader.join(timeout=5)
        assert recorder.payloads("seq") == ["6-0"]
        assert len(transport.requests) == 2

    def test_batch_size_and_since(self, reader, transport):
        """Test batch_size drives limit and seq_interval, since the first cursor."""
        transport.responses = [{"results": [], "last_seq": "1-0"}]
        stop_on(reader, reader.channel, "seq")

        reader.start(batch_size=44, since="thedawnoftime")

        assert reader.join(timeout=5)
        query = transport.requests[0].query
        assert query["limit"] == 44
        assert query["seq_interval"] == 44
        assert query["since"] == "thedawnoftime"

    def test_fast_changes_widens_seq_interval(self, reader, transport):
        """Test fast_changes widens the sequence-interval hint."""
        transport.responses = [{"results": [], "last_seq": "1-0"}]
        stop_on(reader, reader.channel, "seq")

        reader.start(fast_changes=True)

        assert reader.join(timeout=5)
        assert transport.requests[0].query["seq_interval"] == 1000
        assert transport.requests[0].query["limit"] == 100

    def test_selector_and_extra_query(self, reader, transport):
        """Test a selector switches to filtered mode and extra query is passed through."""
        transport.responses = [{"results": [], "last_seq": "1-0"}]
        stop_on(reader, reader.channel, "seq")

        reader.start(selector={"name": "fred"}, extra_query={"conflicts": True}, include_docs=True)

        assert reader.join(timeout=5)
        req = transport.requests[0]
        assert req.query["filter"] == "_selector"
        assert req.query["conflicts"] is True
        assert req.query["include_docs"] is True
        assert req.body == {"selector": {"name": "fred"}}

    def test_config_object(self, reader, transport):
        """Test a PollConfig can be passed directly, with keyword overrides."""
        transport.responses = [{"results": [], "last_seq": "1-0"}]
        stop_on(reader, reader.channel, "seq")

        reader.start(PollConfig(batch_size=10, heartbeat=1000), since="3-0")

        assert reader.join(timeout=5)
        query = transport.requests[0].query
        assert (query["limit"], query["heartbeat"], query["since"]) == (10, 1000, "3-0")

    def test_database_name_quoted(self, transport):
        """Test special characters in the database name are escaped in the path."""
        reader = ChangesReader("a/b+c", transport)
        transport.responses = [{"results": [], "last_seq": "1-0"}]
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert transport.requests[0].path == "a%2Fb%2Bc/_changes"

    def test_empty_database_name(self, transport):
        """Test a database name is required."""
        with pytest.raises(ValueError, match="non-empty database name"):
            ChangesReader("", transport)


class TestLifecycle:
    """Test the Idle/Active state machine."""

    def test_start_while_active_returns_same_channel(self, reader, transport):
        """Test a second start is a no-op returning the existing channel."""
        transport.gate.clear()
        first = reader.start()
        assert wait_for(transport.in_flight.is_set)

        assert reader.status == ReaderStatus.ACTIVE
        assert reader.start(batch_size=5) is first
        assert reader.get() is first

        reader.stop()
        transport.gate.set()
        assert reader.join(timeout=5)
        assert len(transport.requests) == 1
        assert transport.requests[0].query["limit"] == 100

    def test_stop_does_not_cancel_in_flight_request(self, reader, transport):
        """Test stop waits for the in-flight request and delivers its results."""
        transport.responses = [{"results": make_changes(2), "last_seq": "2-0"}]
        transport.gate.clear()
        recorder = Recorder(reader.channel)

        channel = reader.start()
        assert wait_for(transport.in_flight.is_set)
        reader.stop()
        assert reader.active
        transport.gate.set()

        assert channel.wait(timeout=5)
        assert len(transport.requests) == 1
        assert recorder.events() == ["change", "change", "batch", "seq"]
        assert channel.outcome is None

    def test_stop_when_idle(self, reader):
        """Test stop on an idle reader is harmless."""
        reader.stop()
        assert reader.status == ReaderStatus.IDLE

    def test_state_reset_between_runs(self, reader, transport):
        """Test configuration from one run does not leak into the next."""
        transport.responses = [{"results": [], "last_seq": "7-0"}]
        first = reader.get(batch_size=10, since="0", include_docs=True)
        assert first.wait(timeout=5)
        assert reader.status == ReaderStatus.IDLE
        assert reader.cursor is None

        transport.responses = [{"results": [], "last_seq": "8-0"}]
        second_channel = reader.channel
        stop_on(reader, second_channel, "seq")
        second = reader.start()

        assert second is second_channel
        assert second is not first
        assert reader.join(timeout=5)
        query = transport.requests[-1].query
        assert (query["limit"], query["since"], query["include_docs"]) == (100, "now", False)

    def test_invalid_config(self, reader):
        """Test invalid configuration is rejected before a run starts."""
        with pytest.raises(ValueError, match="batch_size must be positive"):
            reader.start(batch_size=0)
        assert reader.status == ReaderStatus.IDLE

    def test_subscriber_exception_ends_run(self, reader, transport):
        """Test a raising callback ends the run and becomes its outcome."""
        transport.responses = [{"results": make_changes(1), "last_seq": "1-0"}]
        boom = RuntimeError("subscriber failed")

        def explode(change):
            raise boom

        channel = reader.channel.on("change", explode)
        reader.start()

        assert channel.wait(timeout=5)
        assert channel.outcome is boom
        assert reader.status == ReaderStatus.IDLE


class TestGet:
    """Test finite drain mode."""

    def test_stop_on_no_changes(self, reader, transport):
        """Test an empty first response ends the drain."""
        transport.responses = [{"results": [], "last_seq": "1-0", "pending": 0}]
        recorder = Recorder(reader.channel)

        channel = reader.get(batch_size=45, since="thedawnoftime")

        assert channel.wait(timeout=5)
        assert recorder.events() == ["seq", "end"]
        assert recorder.payloads("end") == ["1-0"]
        assert len(transport.requests) == 1

    def test_small_batch_stop(self, reader, transport):
        """Test a batch shorter than batch_size ends the drain."""
        batch1 = make_changes(45, prefix="a", seq=True)
        batch2 = make_changes(5, prefix="b", start=45, seq=True)
        transport.responses = [
            {"results": batch1, "last_seq": "45-0", "pending": 2},
            {"results": batch2, "last_seq": "50-0", "pending": 0},
        ]
        recorder = Recorder(reader.channel)

        channel = reader.get(batch_size=45, since="now")

        assert channel.wait(timeout=5)
        assert recorder.payloads("seq") == ["45-0", "50-0"]
        assert recorder.payloads("end") == ["50-0"]
        assert recorder.events()[-2:] == ["seq", "end"]
        assert [len(b) for b in recorder.payloads("batch")] == [45, 5]
        assert [r.query["since"] for r in transport.requests] == ["now", "45-0"]

    def test_zero_stop(self, reader, transport):
        """Test full batches continue until an empty one arrives."""
        transport.responses = [
            {"results": make_changes(3, prefix="a"), "last_seq": "3-0"},
            {"results": make_changes(3, prefix="b"), "last_seq": "6-0"},
            {"results": [], "last_seq": "6-0"},
        ]
        recorder = Recorder(reader.channel)

        channel = reader.get(batch_size=3)

        assert channel.wait(timeout=5)
        assert recorder.payloads("seq") == ["3-0", "6-0"]
        assert recorder.payloads("end") == ["6-0"]
        assert len(transport.requests) == 3

    def test_missing_results_does_not_end(self, reader, transport):
        """Test a response without a results list does not count as short."""
        transport.responses = [
            {"last_seq": "1-0"},
            {"results": [], "last_seq": "1-0"},
        ]
        recorder = Recorder(reader.channel)

        channel = reader.get()

        assert channel.wait(timeout=5)
        assert len(transport.requests) == 2
        assert recorder.events() == ["seq", "end"]

    def test_wait_mode_pauses_until_resume(self, reader, transport):
        """Test wait=True holds the next request until resume()."""
        transport.responses = [
            {"results": make_changes(2), "last_seq": "2-0"},
            {"results": make_changes(1, prefix="x"), "last_seq": "3-0"},
        ]
        recorder = Recorder(reader.channel)

        channel = reader.get(batch_size=2, wait=True)

        assert wait_for(lambda: "seq" in recorder.events())
        time.sleep(0.05)
        assert len(transport.requests) == 1

        reader.resume()
        assert channel.wait(timeout=5)
        assert len(transport.requests) == 2
        assert recorder.payloads("end") == ["3-0"]

    def test_stop_releases_wait_mode_pause(self, reader, transport):
        """Test stop() during a wait=True pause ends the run without another request."""
        transport.responses = [
            {"results": make_changes(2), "last_seq": "2-0"},
            {"results": make_changes(1, prefix="x"), "last_seq": "3-0"},
        ]
        recorder = Recorder(reader.channel)

        channel = reader.get(batch_size=2, wait=True)

        assert wait_for(lambda: "seq" in recorder.events())
        reader.stop()

        assert channel.wait(timeout=5)
        assert len(transport.requests) == 1
        assert recorder.events() == ["change", "change", "batch", "seq"]
        assert channel.outcome is None
        assert not reader.active


class TestErrors:
    """Test error classification."""

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_fatal_errors(self, reader, transport, status_code):
        """Test client errors are reported once and end the run."""
        error = ChangesRequestError(status_code, reason="nope", error="bad_request")
        transport.responses = [error]
        recorder = Recorder(reader.channel)

        channel = reader.start()

        assert channel.wait(timeout=5)
        assert recorder.events() == ["error"]
        assert recorder.payloads("error")[0].status_code == status_code
        assert recorder.messages[0].fatal is True
        assert channel.outcome is error
        assert channel.outcome.reason == "nope"
        assert len(transport.requests) == 1
        assert reader.status == ReaderStatus.IDLE

    def test_bad_since_value(self, reader, transport):
        """Test a malformed cursor surfaces the server's reason."""
        transport.responses = [ChangesRequestError(
            400, reason="Malformed sequence supplied in 'since' parameter.", error="bad_request"
        )]
        channel = reader.start(since="badtoken")

        assert channel.wait(timeout=5)
        assert channel.outcome.status_code == 400
        assert "Malformed sequence" in channel.outcome.reason

    @pytest.mark.parametrize("error", [
        ChangesRequestError(500),
        ChangesRequestError(503, reason="maintenance"),
        ChangesRequestError(429, reason="You've exceeded your current limit", error="too_many_requests"),
        ChangesTransportError("connection reset"),
        MalformedResponseError("not json"),
    ])
    def test_survives_transient_errors(self, reader, transport, error):
        """Test transient errors are reported once and retried at the same cursor."""
        change = {"seq": None, "id": "a", "changes": ["1-1"]}
        transport.responses = [
            {"results": [], "last_seq": "1-0", "pending": 0},
            error,
            {"results": [change], "last_seq": "2-0", "pending": 0},
        ]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "change")

        channel = reader.start(timeout=1000)

        assert channel.wait(timeout=5)
        assert recorder.events() == ["seq", "error", "change", "batch", "seq"]
        assert recorder.payloads("error") == [error]
        assert recorder.messages[1].fatal is False
        assert [r.query["since"] for r in transport.requests] == ["now", "1-0", "1-0"]
        assert channel.outcome is None

    def test_survives_non_object_response(self, reader, transport):
        """Test a response that is not a JSON object is a transient failure."""
        transport.responses = [
            '{ results: [], last_seq: "1-0", pending: 0',
            {"results": [{"id": "a", "changes": []}], "last_seq": "1-0"},
        ]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "change")

        reader.start()

        assert reader.join(timeout=5)
        assert recorder.events() == ["error", "change", "batch", "seq"]
        assert isinstance(recorder.payloads("error")[0], MalformedResponseError)
        assert all(r.query["since"] == "now" for r in transport.requests)

    def test_invalid_records_are_transient(self, reader, transport):
        """Test a results list with invalid records is retried, not delivered."""
        transport.responses = [
            {"results": [{"no_id": True}], "last_seq": "1-0"},
            {"results": "oops", "last_seq": "1-0"},
            {"results": [], "last_seq": "1-0"},
        ]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert recorder.events() == ["error", "error", "seq"]
        assert all(isinstance(e, MalformedResponseError) for e in recorder.payloads("error"))

    def test_error_before_consequence(self, reader, transport):
        """Test the error event is delivered while the run is still active."""
        transport.responses = [ChangesRequestError(401)]
        seen = []
        channel = reader.channel.on("error", lambda e: seen.append(reader.active))

        reader.start()

        assert channel.wait(timeout=5)
        assert seen == [True]
        assert not reader.active

    def test_retries_without_ceiling(self, transport):
        """Test many consecutive transient failures never end the run."""
        reader = ChangesReader("db", transport)
        transport.responses = [ChangesRequestError(500)] * 50 + [{"results": [], "last_seq": "1-0"}]
        recorder = Recorder(reader.channel)
        stop_on(reader, reader.channel, "seq")

        reader.start()

        assert reader.join(timeout=5)
        assert len(recorder.payloads("error")) == 50
        assert len(transport.requests) == 51
