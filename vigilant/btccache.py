"""Indexed Bitcoin blocks and a bounded, height-ordered cache of them."""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field
from typing import Optional

from vigilant.errors import (
    EmptyCacheError,
    InvalidMaxEntriesError,
    TooManyEntriesError,
    UnsortedBlocksError,
)
from vigilant.wire import BlockHeader, MsgTx, double_sha256


@dataclass(frozen=True)
class SpvProof:
    """Merkle inclusion proof of a transaction in a block."""

    btc_transaction: bytes
    btc_transaction_index: int
    merkle_nodes: bytes
    confirming_btc_header: bytes


@dataclass
class IndexedBlock:
    """A block together with its height."""

    height: int
    header: BlockHeader
    txs: list[MsgTx] = field(default_factory=list)

    def block_hash(self) -> bytes:
        return self.header.block_hash()

    def gen_spv_proof(self, tx_idx: int) -> SpvProof:
        """Build a Merkle proof for the transaction at ``tx_idx``."""
        if tx_idx < 0:
            raise ValueError("transaction index should not be negative")
        if tx_idx >= len(self.txs):
            raise ValueError(
                f"transaction index is out of scope: idx={tx_idx}, len(Txs)={len(self.txs)}"
            )

        nodes = []
        level = [tx.tx_hash() for tx in self.txs]
        index = tx_idx
        while len(level) > 1:
            if len(level) % 2:
                level.append(level[-1])
            nodes.append(level[index ^ 1])
            level = [double_sha256(left + right) for left, right in zip(level[::2], level[1::2])]
            index //= 2

        return SpvProof(
            btc_transaction=self.txs[tx_idx].serialize(),
            btc_transaction_index=tx_idx,
            merkle_nodes=b"".join(nodes),
            confirming_btc_header=self.header.serialize(),
        )


class BTCCache:
    """Thread-safe bounded cache of blocks ordered by height."""

    def __init__(self, max_entries: int) -> None:
        if max_entries <= 0:
            raise InvalidMaxEntriesError()
        self._max_entries = max_entries
        self._blocks: list[IndexedBlock] = []
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def init(self, blocks: list[IndexedBlock]) -> None:
        """Add blocks, which must be sorted by height, to the cache."""
        with self._lock:
            if len(blocks) > self._max_entries:
                raise TooManyEntriesError()
            if any(later.height < earlier.height for earlier, later in zip(blocks, blocks[1:])):
                raise UnsortedBlocksError()
            for block in blocks:
                self._add(block)

    def add(self, block: IndexedBlock) -> None:
        """Append a block, evicting the oldest one when full."""
        with self._lock:
            self._add(block)

    def _add(self, block: IndexedBlock) -> None:
        if len(self._blocks) > self._max_entries:
            raise TooManyEntriesError()
        if len(self._blocks) == self._max_entries:
            del self._blocks[0]
        self._blocks.append(block)

    def first(self) -> Optional[IndexedBlock]:
        with self._lock:
            return self._blocks[0] if self._blocks else None

    def tip(self) -> Optional[IndexedBlock]:
        with self._lock:
            return self._blocks[-1] if self._blocks else None

    def remove_last(self) -> None:
        with self._lock:
            if not self._blocks:
                raise EmptyCacheError()
            self._blocks.pop()

    def remove_all(self) -> None:
        with self._lock:
            self._blocks = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)

    def get_last_blocks(self, stop_height: int) -> list[IndexedBlock]:
        """Return the blocks from ``stop_height`` up to the tip."""
        with self._lock:
            if not self._blocks:
                raise EmptyCacheError()
            first_height = self._blocks[0].height
            last_height = self._blocks[-1].height
            if stop_height < first_height or last_height < stop_height:
                raise ValueError(
                    f"the given stopHeight {stop_height} is out of range "
                    f"[{first_height}, {last_height}] of BTC cache"
                )
            start = next(
                (i for i, block in reversed(list(enumerate(self._blocks))) if block.height == stop_height),
                0,
            )
            return self._blocks[start:]

    def get_all_blocks(self) -> list[IndexedBlock]:
        with self._lock:
            return list(self._blocks)

    def trim_confirmed_blocks(self, k: int) -> list[IndexedBlock]:
        """Keep the last ``k`` blocks and return the older ones, oldest first."""
        with self._lock:
            excess = len(self._blocks) - k
            if excess <= 0:
                return []
            confirmed = self._blocks[:excess]
            self._blocks = self._blocks[excess:]
            return confirmed

    def find_block(self, height: int) -> Optional[IndexedBlock]:
        """Binary-search the block with the given height."""
        with self._lock:
            if not self._blocks:
                return None
            if height < self._blocks[0].height or self._blocks[-1].height < height:
                return None
            idx = bisect.bisect_left(self._blocks, height, key=lambda block: block.height)
            if idx < len(self._blocks) and self._blocks[idx].height == height:
                return self._blocks[idx]
            return None

    def resize(self, max_entries: int) -> None:
        with self._lock:
            if max_entries <= 0:
                raise InvalidMaxEntriesError()
            self._max_entries = max_entries

    def trim(self) -> None:
        """Keep only the latest ``max_entries`` blocks."""
        with self._lock:
            if len(self._blocks) < self._max_entries:
                return
            self._blocks = self._blocks[len(self._blocks) - self._max_entries:]