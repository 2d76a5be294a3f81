"""Re-sending checkpoint transactions recorded in the store after a restart."""

from __future__ import annotations

from typing import Callable, Optional

from vigilant.store import StoredCheckpoint
from vigilant.wire import MsgTx

GetLatestCheckpoint = Callable[[], Optional[StoredCheckpoint]]
GetRawTransaction = Callable[[bytes], object]
SendTransaction = Callable[[MsgTx], bytes]


def maybe_resend_from_store(
    epoch: int,
    get_latest_checkpoint: GetLatestCheckpoint,
    get_raw_transaction: GetRawTransaction,
    send_transaction: SendTransaction,
) -> bool:
    """Make sure both stored transactions of ``epoch`` are known to the node.

    Returns True when the stored checkpoint belongs to ``epoch``; each of its
    transactions that the node does not know is sent again. Returns False when
    nothing is stored or the stored checkpoint is for another epoch. Errors
    from loading the checkpoint or from sending propagate.
    """
    stored = get_latest_checkpoint()
    if stored is None or stored.epoch != epoch:
        return False

    for tx in (stored.tx1, stored.tx2):
        try:
            get_raw_transaction(tx.tx_hash())
        except Exception:
            send_transaction(tx)
    return True