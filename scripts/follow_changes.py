#!/usr/bin/env python3
"""
Follow a CouchDB changes feed and print every change as a JSON line,
followed by a final {"last_seq": ...} line with the cursor reached.

Connection settings come from the environment (COUCH_URL, COUCH_DATABASE,
COUCH_USERNAME, COUCH_PASSWORD) or a .env file; polling defaults from the
CHANGES_* variables. Command-line flags override both.

Examples:
    python scripts/follow_changes.py start --since now
    python scripts/follow_changes.py get --since 0 --batch-size 500
    python scripts/follow_changes.py spool --selector '{"type": "order"}'
"""

import json
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from changesreader.config.settings import get_settings
from changesreader.connectors.changes import ChangesReader, create_reader_from_settings
from changesreader.utils.logging import configure_logging, get_logger

logger = get_logger("changesreader.scripts.follow_changes")


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Follow a CouchDB changes feed")
    parser.add_argument("mode", choices=["start", "get", "spool"], help="start: follow forever, get: drain and exit, spool: one streamed request")
    parser.add_argument("--database", help="Database name (overrides COUCH_DATABASE)")
    parser.add_argument("--since", help="Cursor to start from ('now', '0' or a sequence token)")
    parser.add_argument("--batch-size", type=int, help="Changes per request")
    parser.add_argument("--include-docs", action="store_true", help="Include document bodies")
    parser.add_argument("--fast-changes", action="store_true", help="Cheaper, coarser cursors")
    parser.add_argument("--selector", help="Mango selector as JSON")
    parser.add_argument("--timeout", type=int, help="Long-poll timeout in milliseconds")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json_output)

    overrides = {}
    if args.since is not None:
        overrides["since"] = args.since
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.include_docs:
        overrides["include_docs"] = True
    if args.fast_changes:
        overrides["fast_changes"] = True
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    if args.selector:
        try:
            overrides["selector"] = json.loads(args.selector)
        except ValueError as e:
            print(f"--selector is not valid JSON: {e}", file=sys.stderr)
            return 2

    config = settings.changes.to_poll_config(**overrides)
    reader = create_reader_from_settings(settings)
    if args.database:
        reader = ChangesReader(args.database, reader.transport)

    def print_change(change):
        print(json.dumps(change.to_json_dict()), flush=True)

    def print_batch(batch):
        for change in batch:
            print_change(change)

    last_seq = {"cursor": config.since}

    def track_cursor(seq):
        last_seq["cursor"] = seq
        logger.info(f"Cursor advanced to {seq}", extra={"cursor": seq})

    def track_end(seq):
        last_seq["cursor"] = seq
        logger.info(f"Reached end at {seq}", extra={"cursor": seq})

    channel = reader.channel
    if args.mode == "spool":
        channel.on("batch", print_batch)
    else:
        channel.on("change", print_change)
    channel.on("seq", track_cursor)
    channel.on("end", track_end)

    def handle_signal(signum, frame):
        logger.info(f"Received shutdown signal {signum}")
        reader.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    getattr(reader, args.mode)(config)

    # Join in slices so signal handlers get a chance to run
    while not reader.join(timeout=0.5):
        pass

    print(json.dumps({"last_seq": last_seq["cursor"]}), flush=True)
    if channel.outcome is not None:
        print(f"Stopped: {channel.outcome}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
