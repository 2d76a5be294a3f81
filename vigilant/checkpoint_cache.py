"""Encoding of checkpoints into OP_RETURN data and matching of checkpoint halves."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Optional

from vigilant.btccache import IndexedBlock, SpvProof
from vigilant.checkpoint import NUMBER_OF_PARTS, RawCheckpoint
from vigilant.wire import OP_RETURN, MsgTx, extract_op_return_data

TAG_LENGTH = 4
HEADER_LENGTH = TAG_LENGTH + 1
EPOCH_LENGTH = 8
BLOCK_HASH_LENGTH = 32
BITMAP_LENGTH = 13
ADDRESS_LENGTH = 20
BLS_SIG_LENGTH = 48
FIRST_PART_HASH_LENGTH = 10
FIRST_PART_LENGTH = HEADER_LENGTH + EPOCH_LENGTH + BLOCK_HASH_LENGTH + BITMAP_LENGTH + ADDRESS_LENGTH
SECOND_PART_LENGTH = HEADER_LENGTH + BLS_SIG_LENGTH + FIRST_PART_HASH_LENGTH
CURRENT_VERSION = 0

_FIRST_DATA_LENGTH = FIRST_PART_LENGTH - HEADER_LENGTH
_SECOND_DATA_LENGTH = SECOND_PART_LENGTH - HEADER_LENGTH
_PART_LENGTHS = (FIRST_PART_LENGTH, SECOND_PART_LENGTH)


def _checksum(first_data: bytes) -> bytes:
    return hashlib.sha256(first_data).digest()[:FIRST_PART_HASH_LENGTH]


def _require_length(name: str, value: bytes, expected: int) -> None:
    if len(value) != expected:
        raise ValueError(f"{name} must be {expected} bytes, got {len(value)}")


@dataclass(frozen=True)
class BabylonData:
    """Checkpoint data of one OP_RETURN output, header stripped."""

    data: bytes
    index: int


@dataclass(frozen=True)
class CheckpointFormatter:
    """Encodes and decodes checkpoints for a given tag and format version."""

    tag: bytes
    version: int = CURRENT_VERSION

    def __post_init__(self) -> None:
        if len(self.tag) != TAG_LENGTH:
            raise ValueError(f"tag must be {TAG_LENGTH} bytes, got {len(self.tag)}")
        if not 0 <= self.version <= 0xF:
            raise ValueError(f"unsupported format version {self.version}")

    def _header(self, part: int) -> bytes:
        return bytes(self.tag) + bytes([(part << 4) | self.version])

    def encode(self, ckpt: RawCheckpoint, submitter_address: bytes) -> tuple[bytes, bytes]:
        """Split a checkpoint into the data of its two OP_RETURN outputs."""
        _require_length("block hash", ckpt.block_hash, BLOCK_HASH_LENGTH)
        _require_length("bitmap", ckpt.bitmap, BITMAP_LENGTH)
        _require_length("BLS signature", ckpt.bls_multi_sig, BLS_SIG_LENGTH)
        _require_length("submitter address", submitter_address, ADDRESS_LENGTH)
        if not 0 <= ckpt.epoch_num < 1 << 64:
            raise ValueError(f"epoch {ckpt.epoch_num} does not fit in 64 bits")
        first_data = (
            struct.pack(">Q", ckpt.epoch_num)
            + ckpt.block_hash
            + ckpt.bitmap
            + submitter_address
        )
        second_data = ckpt.bls_multi_sig + _checksum(first_data)
        return self._header(0) + first_data, self._header(1) + second_data

    def _part_data(self, part: int, data: bytes) -> bytes:
        if len(data) != _PART_LENGTHS[part]:
            raise ValueError(f"invalid length {len(data)} for part {part}")
        if data[:TAG_LENGTH] != self.tag:
            raise ValueError("data does not carry the expected tag")
        header = data[TAG_LENGTH]
        if header & 0xF != self.version:
            raise ValueError(f"unexpected format version {header & 0xF}")
        if header >> 4 != part:
            raise ValueError(f"unexpected part index {header >> 4}")
        return data[HEADER_LENGTH:]

    def parse(self, data: bytes) -> BabylonData:
        """Recognise OP_RETURN data as one of the checkpoint parts."""
        for part in range(NUMBER_OF_PARTS):
            try:
                return BabylonData(self._part_data(part, data), part)
            except ValueError:
                continue
        raise ValueError("not valid babylon data")

    def connect_parts(self, first: bytes, second: bytes) -> bytes:
        """Join the data of both parts after checking the first part's checksum."""
        if len(first) != _FIRST_DATA_LENGTH:
            raise ValueError(f"first part must be {_FIRST_DATA_LENGTH} bytes, got {len(first)}")
        if len(second) != _SECOND_DATA_LENGTH:
            raise ValueError(f"second part must be {_SECOND_DATA_LENGTH} bytes, got {len(second)}")
        split = len(second) - FIRST_PART_HASH_LENGTH
        if _checksum(first) != second[split:]:
            raise ValueError("parts do not match")
        return first + second[:split]

    def decode(self, connected: bytes) -> tuple[RawCheckpoint, bytes]:
        """Decode joined checkpoint data into the checkpoint and submitter address."""
        _require_length("checkpoint data", connected, _FIRST_DATA_LENGTH + BLS_SIG_LENGTH)
        (epoch,) = struct.unpack(">Q", connected[:EPOCH_LENGTH])
        pos = EPOCH_LENGTH
        block_hash = connected[pos:pos + BLOCK_HASH_LENGTH]
        pos += BLOCK_HASH_LENGTH
        bitmap = connected[pos:pos + BITMAP_LENGTH]
        pos += BITMAP_LENGTH
        address = connected[pos:pos + ADDRESS_LENGTH]
        pos += ADDRESS_LENGTH
        signature = connected[pos:]
        return RawCheckpoint(epoch, block_hash, bitmap, signature), address


@dataclass
class CkptSegment:
    """One checkpoint part found in a transaction of a block."""

    babylon_data: BabylonData
    tx_idx: int
    assoc_block: Optional[IndexedBlock] = None

    @property
    def data(self) -> bytes:
        return self.babylon_data.data

    @property
    def index(self) -> int:
        return self.babylon_data.index


def _single_op_return_data(tx: MsgTx) -> bytes:
    scripts = [out.pk_script for out in tx.tx_out if out.pk_script[:1] == bytes([OP_RETURN])]
    if len(scripts) != 1:
        raise ValueError(f"expected exactly one OP_RETURN output, found {len(scripts)}")
    return extract_op_return_data(scripts[0])


def new_ckpt_segment(
    formatter: CheckpointFormatter,
    block: Optional[IndexedBlock],
    tx: MsgTx,
    tx_idx: int,
) -> Optional[CkptSegment]:
    """Return the checkpoint segment carried by ``tx``, or None if it carries none."""
    try:
        babylon_data = formatter.parse(_single_op_return_data(tx))
    except ValueError:
        return None
    return CkptSegment(babylon_data, tx_idx, block)


@dataclass
class Ckpt:
    """A complete checkpoint made of matched segments."""

    segments: list[CkptSegment]
    epoch: int

    def gen_spv_proofs(self) -> list[SpvProof]:
        if len(self.segments) != NUMBER_OF_PARTS:
            raise ValueError(
                f"incorrect number of segments: want {NUMBER_OF_PARTS}, got {len(self.segments)}"
            )
        proofs = []
        for segment in self.segments:
            if segment.assoc_block is None:
                raise ValueError("segment has no associated block")
            proofs.append(segment.assoc_block.gen_spv_proof(segment.tx_idx))
        return proofs


class CheckpointCache:
    """Collects checkpoint segments and pairs them into complete checkpoints."""

    def __init__(self, formatter: CheckpointFormatter) -> None:
        self.formatter = formatter
        self.checkpoints: list[Ckpt] = []
        self.segments: dict[int, dict[bytes, CkptSegment]] = {
            part: {} for part in range(NUMBER_OF_PARTS)
        }

    def add_segment(self, segment: CkptSegment) -> None:
        if not 0 <= segment.index < NUMBER_OF_PARTS:
            block = segment.assoc_block.block_hash()[::-1].hex() if segment.assoc_block else "unknown"
            raise ValueError(
                f"the index of the ckpt segment in block {block} is out of scope: "
                f"got {segment.index}, at most {NUMBER_OF_PARTS - 1}"
            )
        self.segments[segment.index][hashlib.sha256(segment.data).digest()] = segment

    def add_checkpoint(self, ckpt: Ckpt) -> None:
        self.checkpoints.append(ckpt)

    def match(self) -> None:
        """Pair first and second segments into checkpoints ordered by epoch."""
        firsts, seconds = self.segments[0], self.segments[1]
        for hash1, seg1 in list(firsts.items()):
            for hash2, seg2 in list(seconds.items()):
                try:
                    connected = self.formatter.connect_parts(seg1.data, seg2.data)
                    raw, _ = self.formatter.decode(connected)
                except ValueError:
                    continue
                self.add_checkpoint(Ckpt([seg1, seg2], raw.epoch_num))
                del firsts[hash1]
                del seconds[hash2]
                break
        self.checkpoints.sort(key=lambda ckpt: ckpt.epoch)

    def pop_earliest_checkpoint(self) -> Optional[Ckpt]:
        return self.checkpoints.pop(0) if self.checkpoints else None

    def num_segments(self) -> int:
        return sum(len(segments) for segments in self.segments.values())

    def num_checkpoints(self) -> int:
        return len(self.checkpoints)

    def has_checkpoints(self) -> bool:
        return bool(self.checkpoints)