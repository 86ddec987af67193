#!/usr/bin/env python3
"""
Change stream demo.

Watches one or more directories and logs every batch of change events.
The last checkpoint is written to a file on exit, and read back on the
next run, so changes made while the demo was not running are reported
when it starts again.

Usage:
    python examples/watch_demo.py /path/to/folder [/another/folder]
    python examples/watch_demo.py --latency 0.5 --db demo.db ./documents
"""

import argparse
import logging
import signal
import time
from pathlib import Path

from fsstream import (
    SINCE_NOW,
    CreateFlags,
    EventBatch,
    SinkError,
    StreamConfig,
    StreamManager,
    describe,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("watch_demo")


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def print_batch(batch: EventBatch) -> None:
    logger.info("Batch of %d event(s), ids %d..%d", len(batch), batch.first_id, batch.last_id)
    for event in batch:
        if event.is_history_done:
            logger.info("  -- history replay complete --")
        elif event.must_rescan:
            logger.info("  rescan %s", event.path)
        else:
            logger.info("  %-8d %s [%s]", event.id, event.path, describe(event.flags))


def report_error(error: SinkError) -> None:
    logger.error("Sink failed: %s", error)


def load_checkpoint(path: Path) -> int:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return SINCE_NOW


def main():
    parser = argparse.ArgumentParser(description="Log filesystem change batches")
    parser.add_argument("paths", nargs="+", help="Directories to watch")
    parser.add_argument("--db", default="fsstream.db", help="Event journal path")
    parser.add_argument("--latency", type=float, default=0.5, help="Coalescing latency in seconds")
    parser.add_argument("--checkpoint-file", default=".fsstream-checkpoint", help="Where to keep the resume point")
    parser.add_argument("--directories-only", action="store_true", help="Report changed directories, not files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = StreamConfig.from_env()
    config.db_path = Path(args.db)
    checkpoint_file = Path(args.checkpoint_file)
    since = load_checkpoint(checkpoint_file)
    flags = CreateFlags.NONE if args.directories_only else CreateFlags.FILE_EVENTS

    shutdown = GracefulShutdown()

    with StreamManager(config, on_error=report_error) as manager:
        with manager.create(args.paths, since=since, latency=args.latency, flags=flags) as handle:
            handle.register_sink(print_batch)
            handle.start()
            logger.info("Watching %s (since=%d), press Ctrl+C to stop", list(handle.paths), since)

            while not shutdown.should_exit:
                time.sleep(0.5)
                status = handle.status()
                if status.last_error is not None and not status.is_active:
                    logger.error("Stream failed: %s", status.last_error)
                    break

        checkpoint = handle.current_checkpoint()
        checkpoint_file.write_text(str(checkpoint))
        logger.info("Saved checkpoint %d to %s", checkpoint, checkpoint_file)


if __name__ == "__main__":
    main()
