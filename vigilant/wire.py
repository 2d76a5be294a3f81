"""Bitcoin wire structures: transactions, block headers and scripts."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Optional

HASH_SIZE = 32
TX_VERSION = 1
MAX_TX_IN_SEQUENCE_NUM = 0xFFFFFFFF
WITNESS_SCALE_FACTOR = 4
MAX_SCRIPT_ELEMENT_SIZE = 520
BLOCK_HEADER_SIZE = 80

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60
OP_RETURN = 0x6A

_WITNESS_MARKER = 0x00
_WITNESS_FLAG = 0x01
_HEADER_FORMAT = "<i32s32sIII"


def double_sha256(data: bytes) -> bytes:
    """Return SHA-256 applied twice to ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _var_bytes(data: bytes) -> bytes:
    return _varint(len(data)) + data


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read(self, n: int) -> bytes:
        if n > self.remaining:
            raise ValueError("unexpected end of data")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def unpack(self, fmt: str) -> int:
        (value,) = struct.unpack(fmt, self.read(struct.calcsize(fmt)))
        return value

    def varint(self) -> int:
        prefix = self.unpack("<B")
        if prefix < 0xFD:
            return prefix
        fmt, minimum = {0xFD: ("<H", 0xFD), 0xFE: ("<I", 0x10000), 0xFF: ("<Q", 0x100000000)}[prefix]
        value = self.unpack(fmt)
        if value < minimum:
            raise ValueError(f"non-canonical varint {value:#x} - discriminant {prefix:#x}")
        return value

    def count(self) -> int:
        n = self.varint()
        if n > self.remaining:
            raise ValueError(f"element count {n} exceeds remaining data")
        return n

    def var_bytes(self) -> bytes:
        return self.read(self.varint())


@dataclass
class OutPoint:
    """Reference to a previous transaction output; ``hash`` is in internal byte order."""

    hash: bytes = bytes(HASH_SIZE)
    index: int = 0

    def serialize(self) -> bytes:
        return self.hash + struct.pack("<I", self.index)


@dataclass
class TxIn:
    previous_outpoint: OutPoint = field(default_factory=OutPoint)
    signature_script: bytes = b""
    sequence: int = MAX_TX_IN_SEQUENCE_NUM
    witness: list[bytes] = field(default_factory=list)


@dataclass
class TxOut:
    value: int = 0
    pk_script: bytes = b""


@dataclass
class MsgTx:
    """A Bitcoin transaction."""

    version: int = TX_VERSION
    tx_in: list[TxIn] = field(default_factory=list)
    tx_out: list[TxOut] = field(default_factory=list)
    lock_time: int = 0

    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.tx_in)

    def _encode(self, with_witness: bool) -> bytes:
        parts = [struct.pack("<i", self.version)]
        if with_witness:
            parts.append(bytes([_WITNESS_MARKER, _WITNESS_FLAG]))
        parts.append(_varint(len(self.tx_in)))
        for txin in self.tx_in:
            parts.append(txin.previous_outpoint.serialize())
            parts.append(_var_bytes(txin.signature_script))
            parts.append(struct.pack("<I", txin.sequence))
        parts.append(_varint(len(self.tx_out)))
        for txout in self.tx_out:
            parts.append(struct.pack("<q", txout.value))
            parts.append(_var_bytes(txout.pk_script))
        if with_witness:
            for txin in self.tx_in:
                parts.append(_varint(len(txin.witness)))
                parts.extend(_var_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def serialize(self) -> bytes:
        """Encode the transaction, including witness data when present."""
        return self._encode(self.has_witness())

    @classmethod
    def deserialize(cls, data: bytes) -> "MsgTx":
        """Decode a transaction; raises ValueError on malformed input."""
        reader = _Reader(data)
        version = reader.unpack("<i")
        count = reader.count()
        with_witness = False
        if count == 0:
            flag = reader.unpack("<B")
            if flag != _WITNESS_FLAG:
                raise ValueError(f"witness tx but flag byte is {flag:#x}")
            with_witness = True
            count = reader.count()

        tx_in = []
        for _ in range(count):
            outpoint = OutPoint(reader.read(HASH_SIZE), reader.unpack("<I"))
            script = reader.var_bytes()
            tx_in.append(TxIn(outpoint, script, reader.unpack("<I")))

        tx_out = []
        for _ in range(reader.count()):
            value = reader.unpack("<q")
            tx_out.append(TxOut(value, reader.var_bytes()))

        if with_witness:
            for txin in tx_in:
                txin.witness = [reader.var_bytes() for _ in range(reader.count())]

        lock_time = reader.unpack("<I")
        if reader.remaining:
            raise ValueError(f"{reader.remaining} trailing bytes after transaction")
        return cls(version, tx_in, tx_out, lock_time)

    def tx_hash(self) -> bytes:
        """Return the transaction id (witness excluded) in internal byte order."""
        return double_sha256(self._encode(False))

    def virtual_size(self) -> int:
        base_size = len(self._encode(False))
        total_size = len(self.serialize())
        weight = base_size * (WITNESS_SCALE_FACTOR - 1) + total_size
        return (weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR


@dataclass
class BlockHeader:
    version: int = 0
    prev_block: bytes = bytes(HASH_SIZE)
    merkle_root: bytes = bytes(HASH_SIZE)
    timestamp: int = 0
    bits: int = 0
    nonce: int = 0

    def serialize(self) -> bytes:
        return struct.pack(
            _HEADER_FORMAT,
            self.version,
            self.prev_block,
            self.merkle_root,
            self.timestamp,
            self.bits,
            self.nonce,
        )

    @classmethod
    def deserialize(cls, data: bytes) -> "BlockHeader":
        if len(data) != BLOCK_HEADER_SIZE:
            raise ValueError(f"block header must be {BLOCK_HEADER_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack(_HEADER_FORMAT, data))

    def block_hash(self) -> bytes:
        """Return the block hash in internal byte order."""
        return double_sha256(self.serialize())


def serialize_msg_tx(tx: MsgTx) -> bytes:
    return tx.serialize()


def deserialize_msg_tx(data: bytes) -> MsgTx:
    return MsgTx.deserialize(data)


def _push_data(data: bytes) -> bytes:
    size = len(data)
    if size > MAX_SCRIPT_ELEMENT_SIZE:
        raise ValueError(
            f"adding a data element of {size} bytes would exceed the maximum "
            f"allowed script element size of {MAX_SCRIPT_ELEMENT_SIZE}"
        )
    if size == 0 or (size == 1 and data[0] == 0):
        return bytes([OP_0])
    if size == 1 and 1 <= data[0] <= 16:
        return bytes([OP_1 - 1 + data[0]])
    if size == 1 and data[0] == 0x81:
        return bytes([OP_1NEGATE])
    if size <= 75:
        return bytes([size]) + data
    if size <= 0xFF:
        return bytes([OP_PUSHDATA1, size]) + data
    if size <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", size) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", size) + data


def op_return_script(data: bytes) -> bytes:
    """Build an ``OP_RETURN <data>`` script with a minimal push."""
    return bytes([OP_RETURN]) + _push_data(data)


def _read_push(script: bytes, pos: int) -> tuple[bytes, int]:
    opcode = script[pos]
    pos += 1
    if opcode == OP_0:
        return b"", pos
    if opcode == OP_1NEGATE:
        return b"\x81", pos
    if OP_1 <= opcode <= OP_16:
        return bytes([opcode - OP_1 + 1]), pos
    if opcode < OP_PUSHDATA1:
        size = opcode
    else:
        width = {OP_PUSHDATA1: 1, OP_PUSHDATA2: 2, OP_PUSHDATA4: 4}.get(opcode)
        if width is None:
            raise ValueError(f"opcode {opcode:#x} is not a data push")
        if pos + width > len(script):
            raise ValueError("truncated push length")
        size = int.from_bytes(script[pos:pos + width], "little")
        pos += width
    if pos + size > len(script):
        raise ValueError("push exceeds script length")
    return script[pos:pos + size], pos + size


def extract_op_return_data(script: bytes) -> bytes:
    """Return the data carried by a standard ``OP_RETURN`` script."""
    if len(script) < 2 or script[0] != OP_RETURN:
        raise ValueError("script is not a standard OP_RETURN script")
    data, end = _read_push(script, 1)
    if end != len(script):
        raise ValueError("OP_RETURN script must carry exactly one data push")
    return data


def calculate_tx_virtual_size(tx: Optional[MsgTx]) -> int:
    if tx is None:
        raise ValueError("tx param nil")
    return tx.virtual_size()


def merkle_root(tx_hashes: list[bytes]) -> bytes:
    """Compute the Bitcoin merkle root of the given hashes."""
    if not tx_hashes:
        return bytes(HASH_SIZE)
    level = list(tx_hashes)
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [double_sha256(left + right) for left, right in zip(level[::2], level[1::2])]
    return level[0]