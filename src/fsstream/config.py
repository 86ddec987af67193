"""Configuration for the fsstream package."""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .flags import CreateFlags


class DeliveryPolicy(Enum):
    """How the event bridge hands batches to a sink."""
    QUEUED = "queued"  # per-stream FIFO served by a worker thread
    INLINE = "inline"  # sink runs on the native delivery thread


@dataclass
class StreamConfig:
    """
    Configuration options for stream managers.

    Attributes:
        db_path: Path to the SQLite event journal
        default_latency_ms: Coalescing latency used when create() gets none
        default_flags: Creation flags used when create() gets none
        delivery_policy: Whether sinks run on a worker or inline
        sink_queue_size: Max queued batches per stream (0 = unbounded)
        stop_timeout_ms: How long stop() lets pending batches drain before
            dropping them (the batch in progress is always waited for)
        snapshot_roots: Whether to store root snapshots for gap-free resume
        replay_batch_size: Max events per batch during history replay
        max_pending_events: Pending paths per window before coarsening to a rescan
    """
    db_path: Path = field(default_factory=lambda: Path("fsstream.db"))
    default_latency_ms: int = 500
    default_flags: CreateFlags = CreateFlags.FILE_EVENTS
    delivery_policy: DeliveryPolicy = DeliveryPolicy.QUEUED
    sink_queue_size: int = 0
    stop_timeout_ms: int = 5000
    snapshot_roots: bool = True
    replay_batch_size: int = 1000
    max_pending_events: int = 10000

    @property
    def default_latency(self) -> float:
        return self.default_latency_ms / 1000.0

    @property
    def stop_timeout(self) -> float:
        return self.stop_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, prefix: str = "FSSTREAM_") -> "StreamConfig":
        """
        Build a config with overrides from environment variables.

        Recognized: ``<prefix>DB_PATH``, ``<prefix>LATENCY_MS``,
        ``<prefix>DELIVERY_POLICY``, ``<prefix>SINK_QUEUE_SIZE``,
        ``<prefix>SNAPSHOT_ROOTS``. Unset variables keep the defaults.
        """
        config = cls()
        env = os.environ

        if env.get(f"{prefix}DB_PATH"):
            config.db_path = Path(env[f"{prefix}DB_PATH"])
        if env.get(f"{prefix}LATENCY_MS"):
            config.default_latency_ms = int(env[f"{prefix}LATENCY_MS"])
        if env.get(f"{prefix}DELIVERY_POLICY"):
            config.delivery_policy = DeliveryPolicy(env[f"{prefix}DELIVERY_POLICY"].lower())
        if env.get(f"{prefix}SINK_QUEUE_SIZE"):
            config.sink_queue_size = int(env[f"{prefix}SINK_QUEUE_SIZE"])
        if env.get(f"{prefix}SNAPSHOT_ROOTS"):
            config.snapshot_roots = env[f"{prefix}SNAPSHOT_ROOTS"].lower() in ("1", "true", "yes", "on")

        return config
