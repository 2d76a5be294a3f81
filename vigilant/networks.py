"""Supported Bitcoin networks."""

from __future__ import annotations

from enum import Enum


class BtcNetwork(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIMNET = "simnet"
    REGTEST = "regtest"
    SIGNET = "signet"

    def __str__(self) -> str:
        return self.value

    def bech32_hrp(self) -> str:
        """Human-readable part used by bech32 addresses on this network."""
        return _BECH32_HRP[self]


_BECH32_HRP = {
    BtcNetwork.MAINNET: "bc",
    BtcNetwork.TESTNET: "tb",
    BtcNetwork.SIMNET: "sb",
    BtcNetwork.REGTEST: "bcrt",
    BtcNetwork.SIGNET: "tb",
}


def valid_net_params() -> frozenset[str]:
    """Names of all supported networks."""
    return frozenset(network.value for network in BtcNetwork)