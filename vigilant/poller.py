"""Polling of sealed checkpoints from Babylon."""

from __future__ import annotations

import queue
from typing import Any, Optional, Protocol

from vigilant.checkpoint import CheckpointStatus, RawCheckpointWithMeta


class BabylonQueryClient(Protocol):
    def raw_checkpoint_list(
        self, status: CheckpointStatus, pagination: Optional[Any]
    ) -> list[RawCheckpointWithMeta]:
        """Return raw checkpoints with the given status."""
        ...


class Poller:
    """Queries sealed checkpoints and queues the oldest one."""

    def __init__(self, client: BabylonQueryClient, buffer_size: int) -> None:
        self._client = client
        self.buffer_size = buffer_size
        self._queue: "queue.Queue[RawCheckpointWithMeta]" = queue.Queue(maxsize=buffer_size)

    def poll_sealed_checkpoints(self) -> Optional[RawCheckpointWithMeta]:
        """Queue the sealed checkpoint with the lowest epoch; return it, or None if none."""
        sealed = self._client.raw_checkpoint_list(CheckpointStatus.SEALED, None)
        if not sealed:
            return None
        oldest = min(sealed, key=lambda ckpt: ckpt.ckpt.epoch_num)
        self._queue.put(oldest)
        return oldest

    def next_checkpoint(self, timeout: Optional[float] = None) -> Optional[RawCheckpointWithMeta]:
        """Take the next queued checkpoint, or None when ``timeout`` elapses."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None