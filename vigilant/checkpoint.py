"""Checkpoint records exchanged with Babylon and the Bitcoin transactions carrying them."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Optional, Sequence

from vigilant.btccache import IndexedBlock, SpvProof
from vigilant.wire import MsgTx

NUMBER_OF_PARTS = 2


class CheckpointStatus(IntEnum):
    ACCUMULATING = 0
    SEALED = 1
    SUBMITTED = 2
    CONFIRMED = 3
    FINALIZED = 4


@dataclass(frozen=True)
class RawCheckpoint:
    """A checkpoint of one Babylon epoch."""

    epoch_num: int
    block_hash: bytes
    bitmap: bytes = b""
    bls_multi_sig: bytes = b""

    def hash(self) -> bytes:
        """SHA-256 over the epoch number and all checkpoint fields."""
        payload = (
            struct.pack(">Q", self.epoch_num)
            + self.block_hash
            + self.bitmap
            + self.bls_multi_sig
        )
        return hashlib.sha256(payload).digest()


@dataclass
class RawCheckpointWithMeta:
    ckpt: RawCheckpoint
    status: CheckpointStatus = CheckpointStatus.ACCUMULATING
    power_sum: int = 0


@dataclass
class BtcTxInfo:
    """A Bitcoin transaction sent as part of a checkpoint."""

    tx: MsgTx
    size: int = 0
    fee: int = 0
    tx_id: Optional[bytes] = None


@dataclass
class CheckpointInfo:
    """A checkpoint together with the two transactions that carry it."""

    epoch: int = 0
    ts: Optional[datetime] = None
    tx1: Optional[BtcTxInfo] = None
    tx2: Optional[BtcTxInfo] = None


@dataclass(frozen=True)
class InsertBTCSpvProofMsg:
    submitter: str
    proofs: tuple[SpvProof, ...]


@dataclass(frozen=True)
class InsertHeadersMsg:
    signer: str
    headers: tuple[bytes, ...]


def new_insert_btc_spv_proof_msg(submitter: str, proofs: Sequence[SpvProof]) -> InsertBTCSpvProofMsg:
    """Build the message reporting SPV proofs of both checkpoint transactions."""
    if len(proofs) != NUMBER_OF_PARTS:
        raise ValueError(
            f"incorrect number of proofs: want {NUMBER_OF_PARTS}, got {len(proofs)}"
        )
    return InsertBTCSpvProofMsg(submitter=submitter, proofs=tuple(proofs))


def new_insert_headers_msg(signer: str, blocks: Sequence[IndexedBlock]) -> InsertHeadersMsg:
    """Build the message inserting the serialized headers of ``blocks``."""
    return InsertHeadersMsg(
        signer=signer,
        headers=tuple(block.header.serialize() for block in blocks),
    )