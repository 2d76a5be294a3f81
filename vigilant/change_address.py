"""Decoding of wallet addresses and choice of the change address."""

from __future__ import annotations

import random
from enum import Enum
from typing import Sequence, Union

from vigilant.networks import BtcNetwork
from vigilant.wire import double_sha256

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_HASH160_SIZE = 20

_LEGACY_IDS = {
    BtcNetwork.MAINNET: (0x00, 0x05),
    BtcNetwork.TESTNET: (0x6F, 0xC4),
    BtcNetwork.REGTEST: (0x6F, 0xC4),
    BtcNetwork.SIGNET: (0x6F, 0xC4),
    BtcNetwork.SIMNET: (0x3F, 0x7B),
}


class AddressKind(Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"

    @property
    def is_segwit_bech32(self) -> bool:
        return self in (AddressKind.P2WPKH, AddressKind.P2WSH)


def _polymod(values: Sequence[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i, gen in enumerate(_BECH32_GENERATOR):
            if (top >> i) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: Sequence[int], from_bits: int, to_bits: int) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if bits >= from_bits or (acc << (to_bits - bits)) & maxv:
        raise ValueError("invalid padding in bech32 data")
    return bytes(out)


def _bech32_decode(address: str) -> tuple[str, list[int], int]:
    if address.lower() != address and address.upper() != address:
        raise ValueError("bech32 string has mixed case")
    address = address.lower()
    sep = address.rfind("1")
    if sep < 1 or sep + 7 > len(address) or len(address) > 90:
        raise ValueError("invalid bech32 string length")
    hrp, encoded = address[:sep], address[sep + 1:]
    try:
        data = [_BECH32_CHARSET.index(c) for c in encoded]
    except ValueError:
        raise ValueError("invalid character in bech32 string") from None
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (_BECH32_CONST, _BECH32M_CONST):
        raise ValueError("invalid bech32 checksum")
    return hrp, data[:-6], const


def _decode_segwit(address: str, network: BtcNetwork) -> AddressKind:
    hrp, data, const = _bech32_decode(address)
    if hrp != network.bech32_hrp():
        raise ValueError(f"address {address} is not for network {network}")
    if not data:
        raise ValueError("empty witness data")
    version = data[0]
    program = _convert_bits(data[1:], 5, 8)
    if not 2 <= len(program) <= 40:
        raise ValueError(f"invalid witness program length {len(program)}")
    if version == 0:
        if const != _BECH32_CONST:
            raise ValueError("witness version 0 must use bech32 encoding")
        if len(program) == 20:
            return AddressKind.P2WPKH
        if len(program) == 32:
            return AddressKind.P2WSH
        raise ValueError(f"unsupported witness program length {len(program)}")
    if const != _BECH32M_CONST:
        raise ValueError("witness version 1+ must use bech32m encoding")
    if version == 1 and len(program) == 32:
        return AddressKind.P2TR
    raise ValueError(f"unsupported witness version {version}")


def _base58_check_decode(address: str) -> tuple[int, bytes]:
    value = 0
    for c in address:
        digit = _BASE58_ALPHABET.find(c)
        if digit < 0:
            raise ValueError(f"invalid base58 character {c!r}")
        value = value * 58 + digit
    body = value.to_bytes((value.bit_length() + 7) // 8, "big")
    leading = len(address) - len(address.lstrip("1"))
    decoded = bytes(leading) + body
    if len(decoded) < 5:
        raise ValueError("invalid format: version and/or checksum bytes missing")
    payload, checksum = decoded[:-4], decoded[-4:]
    if double_sha256(payload)[:4] != checksum:
        raise ValueError("checksum error")
    return payload[0], payload[1:]


def _known_hrps() -> set[str]:
    return {network.bech32_hrp() for network in BtcNetwork}


def classify_address(address: str, network: Union[BtcNetwork, str]) -> AddressKind:
    """Decode ``address`` for ``network`` and return its kind; raise ValueError if invalid."""
    net = BtcNetwork(network)
    sep = address.rfind("1")
    if sep > 1 and address[:sep].lower() in _known_hrps():
        return _decode_segwit(address, net)

    net_id, hash160 = _base58_check_decode(address)
    if len(hash160) != _HASH160_SIZE:
        raise ValueError(f"unknown address type: {address}")
    pkh_id, sh_id = _LEGACY_IDS[net]
    if net_id == pkh_id:
        return AddressKind.P2PKH
    if net_id == sh_id:
        return AddressKind.P2SH
    raise ValueError(f"address {address} is not for network {net}")


def select_change_address(addresses: Sequence[str], network: Union[BtcNetwork, str]) -> str:
    """Pick a change address from addresses that have received funds.

    SegWit bech32 addresses take priority: the last one is returned. Otherwise
    one of the remaining addresses is picked at random.
    """
    if not addresses:
        raise ValueError("no available addresses found in the wallet")

    segwit: list[str] = []
    legacy: list[str] = []
    for address in addresses:
        kind = classify_address(address, network)
        (segwit if kind.is_segwit_bech32 else legacy).append(address)

    if segwit:
        return segwit[-1]
    return random.choice(legacy)