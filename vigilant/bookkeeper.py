"""Bookkeeping of checkpoints seen on Bitcoin but not yet reported."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from vigilant.checkpoint import RawCheckpoint


@dataclass
class CheckpointRecord:
    raw_checkpoint: RawCheckpoint
    first_seen_btc_height: int

    def id(self) -> str:
        """Hex digest of the raw checkpoint."""
        return self.raw_checkpoint.hash().hex()

    def epoch_num(self) -> int:
        return self.raw_checkpoint.epoch_num


class CheckpointsBookkeeper:
    """Thread-safe set of checkpoint records keyed by checkpoint id."""

    def __init__(self) -> None:
        self._records: dict[str, CheckpointRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: CheckpointRecord) -> None:
        """Add a record, keeping the one first seen at the lower height."""
        record_id = record.id()
        with self._lock:
            existing = self._records.get(record_id)
            if existing is None or existing.first_seen_btc_height > record.first_seen_btc_height:
                self._records[record_id] = record

    def remove(self, record_id: str) -> None:
        with self._lock:
            self._records.pop(record_id, None)

    def get_all(self) -> list[CheckpointRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)