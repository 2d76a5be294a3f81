"""Fee arithmetic used when building and re-sending checkpoint transactions."""

from __future__ import annotations

from vigilant.wire import WITNESS_SCALE_FACTOR

SATOSHI_PER_BITCOIN = 100_000_000
MAX_SATOSHI = 21_000_000 * SATOSHI_PER_BITCOIN
DUST_THRESHOLD = 546
CHANGE_POSITION = 1


def fee_per_kw_to_kvb(fee_per_kw: int) -> int:
    """Convert a fee rate in satoshis per kilo-weight to satoshis per kilo-vbyte."""
    return fee_per_kw * WITNESS_SCALE_FACTOR


def calc_min_relay_fee(relay_fee_per_kvb: int, vsize: int) -> int:
    """Minimum fee for a transaction of ``vsize`` vbytes to be relayed.

    The result is capped at the largest valid monetary amount.
    """
    fee = relay_fee_per_kvb * vsize // 1000
    return min(fee, MAX_SATOSHI)


def calculate_bumped_fee(fee: int, multiplier: float) -> int:
    """Scale ``fee`` by ``multiplier``, rounding half away from zero."""
    scaled = fee * multiplier
    if scaled < 0:
        return int(scaled - 0.5)
    return int(scaled + 0.5)


def should_resend(prev_fee: int, prev_size: int, bumped_fee: int, relay_fee_per_kvb: int) -> bool:
    """Whether ``bumped_fee`` is high enough to replace the previous transaction."""
    required = prev_fee + calc_min_relay_fee(relay_fee_per_kvb, prev_size)
    return bumped_fee >= required


def clamp_fee_rate(rate: int, minimum: int, maximum: int) -> int:
    """Cap ``rate`` at ``maximum``, then raise it to at least ``minimum``."""
    if rate > maximum:
        rate = maximum
    if rate < minimum:
        rate = minimum
    return rate