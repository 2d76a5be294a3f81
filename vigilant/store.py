"""Persistent storage of the last submitted checkpoint."""

from __future__ import annotations

import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Optional, Union

from vigilant.errors import VigilanteError
from vigilant.wire import MsgTx

_CHECKPOINT_BUCKET = "storedckpt"
_LAST_SUBMITTED_KEY = b"lastsubckpt"

_FIELD_TX1 = 1
_FIELD_TX2 = 2
_FIELD_EPOCH = 3
_WIRE_VARINT = 0
_WIRE_BYTES = 2


class CorruptedDBError(VigilanteError):
    default_message = "db is corrupted"


def _encode_varint(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint must not be negative")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _key(field_number: int, wire_type: int) -> bytes:
    return _encode_varint((field_number << 3) | wire_type)


@dataclass
class StoredCheckpoint:
    """The two transactions of a checkpoint and its epoch."""

    tx1: MsgTx
    tx2: MsgTx
    epoch: int

    def to_bytes(self) -> bytes:
        """Encode as tagged, length-delimited fields."""
        parts = []
        for number, tx in ((_FIELD_TX1, self.tx1), (_FIELD_TX2, self.tx2)):
            raw = tx.serialize()
            parts.append(_key(number, _WIRE_BYTES) + _encode_varint(len(raw)) + raw)
        parts.append(_key(_FIELD_EPOCH, _WIRE_VARINT) + _encode_varint(self.epoch))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "StoredCheckpoint":
        """Decode data produced by ``to_bytes``; raises ValueError when malformed."""
        fields: dict[int, Union[int, bytes]] = {}
        pos = 0
        while pos < len(data):
            key, pos = _decode_varint(data, pos)
            number, wire_type = key >> 3, key & 0x7
            if wire_type == _WIRE_VARINT:
                fields[number], pos = _decode_varint(data, pos)
            elif wire_type == _WIRE_BYTES:
                size, pos = _decode_varint(data, pos)
                if pos + size > len(data):
                    raise ValueError("truncated field")
                fields[number] = data[pos:pos + size]
                pos += size
            else:
                raise ValueError(f"unsupported wire type {wire_type}")

        tx1 = fields.get(_FIELD_TX1, b"")
        tx2 = fields.get(_FIELD_TX2, b"")
        epoch = fields.get(_FIELD_EPOCH, 0)
        if not isinstance(tx1, bytes) or not isinstance(tx2, bytes) or not isinstance(epoch, int):
            raise ValueError("field has unexpected type")
        return cls(MsgTx.deserialize(tx1), MsgTx.deserialize(tx2), epoch)


class SubmitterStore:
    """Key-value store, backed by SQLite, for the submitter's state."""

    def __init__(self, path: Union[str, "os.PathLike[str]"]) -> None:
        self._conn = sqlite3.connect(os.fspath(path), check_same_thread=False)
        self._lock = threading.Lock()
        self._create_buckets()

    def _create_buckets(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("CREATE TABLE IF NOT EXISTS buckets (name TEXT PRIMARY KEY)")
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS entries ("
                "bucket TEXT NOT NULL, key BLOB NOT NULL, value BLOB NOT NULL, "
                "PRIMARY KEY (bucket, key))"
            )
            self._conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (_CHECKPOINT_BUCKET,))

    def _require_bucket(self, bucket: str) -> None:
        row = self._conn.execute("SELECT 1 FROM buckets WHERE name = ?", (bucket,)).fetchone()
        if row is None:
            raise CorruptedDBError()

    def _get(self, key: bytes, bucket: str) -> Optional[bytes]:
        with self._lock:
            self._require_bucket(bucket)
            row = self._conn.execute(
                "SELECT value FROM entries WHERE bucket = ? AND key = ?", (bucket, key)
            ).fetchone()
        return None if row is None else bytes(row[0])

    def _put(self, key: bytes, value: bytes, bucket: str) -> None:
        with self._lock, self._conn:
            self._require_bucket(bucket)
            self._conn.execute(
                "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
                (bucket, key, value),
            )

    def latest_checkpoint(self) -> Optional[StoredCheckpoint]:
        """Return the last stored checkpoint, or None if nothing was stored."""
        data = self._get(_LAST_SUBMITTED_KEY, _CHECKPOINT_BUCKET)
        return None if data is None else StoredCheckpoint.from_bytes(data)

    def put_checkpoint(self, ckpt: StoredCheckpoint) -> None:
        self._put(_LAST_SUBMITTED_KEY, ckpt.to_bytes(), _CHECKPOINT_BUCKET)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SubmitterStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()