"""Building, sending and re-sending the Bitcoin transactions that carry checkpoints."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from vigilant.change_address import select_change_address
from vigilant.checkpoint import (
    BtcTxInfo,
    CheckpointInfo,
    CheckpointStatus,
    RawCheckpoint,
    RawCheckpointWithMeta,
)
from vigilant.checkpoint_cache import CheckpointFormatter
from vigilant.errors import VigilanteError
from vigilant.fees import (
    CHANGE_POSITION,
    DUST_THRESHOLD,
    SATOSHI_PER_BITCOIN,
    calc_min_relay_fee,
    calculate_bumped_fee,
    clamp_fee_rate,
    fee_per_kw_to_kvb,
    should_resend,
)
from vigilant.networks import BtcNetwork
from vigilant.resend import maybe_resend_from_store
from vigilant.store import StoredCheckpoint, SubmitterStore
from vigilant.wire import (
    MAX_TX_IN_SEQUENCE_NUM,
    TX_VERSION,
    MsgTx,
    OutPoint,
    TxIn,
    TxOut,
    calculate_tx_virtual_size,
    op_return_script,
)

logger = logging.getLogger(__name__)

_RBF_SEQUENCE = MAX_TX_IN_SEQUENCE_NUM - 2
_MAX_TARGET_BLOCKS = 0xFFFFFFFF


class BTCWallet(Protocol):
    """The wallet operations the relayer relies on."""

    def get_raw_transaction(self, tx_hash: bytes) -> MsgTx:
        """Return a known transaction; raise if the node does not know it."""
        ...

    def send_raw_transaction(self, tx: MsgTx, allow_high_fees: bool) -> bytes:
        """Broadcast ``tx`` and return its hash."""
        ...

    def fund_raw_transaction(
        self, tx: MsgTx, fee_rate_btc_per_kvb: float, change_position: int
    ) -> tuple[MsgTx, int]:
        """Add inputs and change to ``tx``; return the funded tx and its fee in satoshis."""
        ...

    def get_raw_change_script(self, wallet_name: str) -> bytes:
        """Return the output script of a fresh change address."""
        ...

    def sign_raw_transaction_with_wallet(self, tx: MsgTx) -> tuple[MsgTx, bool]:
        """Sign ``tx``; return the signed tx and whether all inputs were signed."""
        ...

    def wallet_passphrase(self, passphrase: str, timeout_seconds: int) -> None:
        """Unlock the wallet."""
        ...

    def tx_in_chain(self, tx_hash: bytes, pk_script: bytes) -> bool:
        """Whether the transaction is already included in the chain."""
        ...

    def list_unspent(self) -> list[str]:
        """Addresses of the wallet's unspent outputs."""
        ...


class FeeEstimator(Protocol):
    def estimate_fee_per_kw(self, target_blocks: int) -> int:
        """Estimated fee rate in satoshis per kilo-weight."""
        ...

    def relay_fee_per_kw(self) -> int:
        """Minimum relay fee rate in satoshis per kilo-weight."""
        ...


@dataclass
class RelayerConfig:
    """Settings of the relayer; fee rates are in satoshis per kilo-vbyte."""

    network: BtcNetwork = BtcNetwork.MAINNET
    wallet_name: str = ""
    wallet_pass: str = ""
    wallet_lock_time: int = 10
    resend_interval_seconds: int = 300
    resubmit_fee_multiplier: float = 1.0
    target_block_num: int = 1
    default_fee: int = 20000
    tx_fee_min: int = 1000
    tx_fee_max: int = 200000


def _txid(tx_hash: Optional[bytes]) -> str:
    return tx_hash[::-1].hex() if tx_hash else "<none>"


def _has_standard_address(script: bytes) -> bool:
    n = len(script)
    if n == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return True
    if n == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return True
    if n == 22 and script[:2] == b"\x00\x14":
        return True
    if n == 34 and script[:2] in (b"\x00\x20", b"\x51\x20"):
        return True
    if n in (35, 67) and script[0] == n - 2 and script[-1] == 0xAC:
        return True
    return False


class Relayer:
    """Turns sealed checkpoints into two chained Bitcoin transactions."""

    def __init__(
        self,
        wallet: BTCWallet,
        estimator: FeeEstimator,
        store: SubmitterStore,
        formatter: CheckpointFormatter,
        submitter_address: bytes,
        config: RelayerConfig,
    ) -> None:
        self.wallet = wallet
        self.estimator = estimator
        self.store = store
        self.formatter = formatter
        self.submitter_address = submitter_address
        self.config = config
        self.last_submitted_checkpoint = CheckpointInfo()
        self.invalid_checkpoint_count = 0
        self.resent_checkpoint_count = 0
        self.failed_resent_checkpoint_count = 0

    def _is_sealed(self, ckpt: RawCheckpointWithMeta) -> bool:
        if ckpt.status != CheckpointStatus.SEALED:
            logger.error("The checkpoint for epoch %d is not sealed", ckpt.ckpt.epoch_num)
            self.invalid_checkpoint_count += 1
            return False
        return True

    def _store_checkpoint(self, info: CheckpointInfo) -> None:
        assert info.tx1 is not None and info.tx2 is not None
        self.store.put_checkpoint(StoredCheckpoint(info.tx1.tx, info.tx2.tx, info.epoch))

    def send_checkpoint_to_btc(self, ckpt: RawCheckpointWithMeta) -> None:
        """Send the checkpoint as two transactions, or only the second one if that failed before."""
        epoch = ckpt.ckpt.epoch_num
        if not self._is_sealed(ckpt):
            return

        if self._should_send_complete(epoch) or self._should_send_tx2(epoch):
            processed = maybe_resend_from_store(
                epoch,
                self.store.latest_checkpoint,
                self.wallet.get_raw_transaction,
                self._send_tx,
            )
            if processed:
                return

        if self._should_send_complete(epoch):
            logger.info("Submitting a raw checkpoint for epoch %d", epoch)
            submitted = self._convert_ckpt_to_two_tx_and_submit(ckpt.ckpt)
        elif self._should_send_tx2(epoch):
            logger.info(
                "Retrying to send tx2 for epoch %d, tx1 %s",
                epoch,
                _txid(self.last_submitted_checkpoint.tx1.tx_id if self.last_submitted_checkpoint.tx1 else None),
            )
            submitted = self._retry_send_tx2(ckpt.ckpt)
        else:
            return

        self.last_submitted_checkpoint = submitted
        self._store_checkpoint(submitted)

    def maybe_resubmit_second_checkpoint_tx(self, ckpt: RawCheckpointWithMeta) -> None:
        """Resend the second transaction with a bumped fee once the resend interval has passed."""
        epoch = ckpt.ckpt.epoch_num
        if not self._is_sealed(ckpt):
            return

        last = self.last_submitted_checkpoint
        if epoch < last.epoch:
            logger.error(
                "The checkpoint for epoch %d is lower than the last submission for epoch %d",
                epoch,
                last.epoch,
            )
            self.invalid_checkpoint_count += 1
            return
        if last.tx1 is None or last.tx2 is None:
            return

        if last.ts is None:
            elapsed = math.inf
        else:
            elapsed = (datetime.now(timezone.utc) - last.ts).total_seconds()
        if elapsed < self.config.resend_interval_seconds:
            return

        tx2 = last.tx2
        bumped_fee = calculate_bumped_fee(tx2.fee, self.config.resubmit_fee_multiplier)
        if not should_resend(tx2.fee, tx2.size, bumped_fee, self._relay_fee_per_kvb()):
            return

        logger.debug(
            "Resending the second tx of the checkpoint %d, old fee: %d satoshis, txid: %s",
            epoch,
            tx2.fee,
            _txid(tx2.tx_id),
        )
        try:
            resubmitted = self._resend_second_tx(tx2, bumped_fee)
        except Exception as err:
            self.failed_resent_checkpoint_count += 1
            raise VigilanteError(
                f"failed to re-send the second tx of the checkpoint {last.epoch}: {err}"
            ) from err
        if resubmitted is None:
            return

        self.resent_checkpoint_count += 1
        logger.info(
            "Successfully re-sent the second tx of the checkpoint %d, txid: %s, bumped fee: %d satoshis",
            last.epoch,
            _txid(resubmitted.tx_id),
            resubmitted.fee,
        )
        last.tx2 = resubmitted
        self._store_checkpoint(last)

    def _should_send_complete(self, epoch: int) -> bool:
        last = self.last_submitted_checkpoint
        return last.tx1 is None or last.epoch < epoch

    def _should_send_tx2(self, epoch: int) -> bool:
        last = self.last_submitted_checkpoint
        return (last.tx1 is not None or last.epoch < epoch) and last.tx2 is None

    def _relay_fee_per_kvb(self) -> int:
        return fee_per_kw_to_kvb(self.estimator.relay_fee_per_kw())

    def _min_relay_fee(self, vsize: int) -> int:
        return calc_min_relay_fee(self._relay_fee_per_kvb(), vsize)

    def _resend_second_tx(self, tx2: BtcTxInfo, bumped_fee: int) -> Optional[BtcTxInfo]:
        change = tx2.tx.tx_out[CHANGE_POSITION]
        if self.wallet.tx_in_chain(tx2.tx_id, change.pk_script):
            logger.debug("Transaction %s is already confirmed", _txid(tx2.tx_id))
            return None

        balance = change.value
        if bumped_fee > balance:
            logger.debug(
                "the bumped fee %d satoshis for the second tx is more than UTXO amount %d satoshis",
                bumped_fee,
                balance,
            )
            bumped_fee = balance
        change.value = balance - bumped_fee

        signed = self._sign_tx(tx2.tx)
        tx_id = self._send_tx(signed)
        tx2.tx = signed
        tx2.fee = bumped_fee
        tx2.tx_id = tx_id
        return tx2

    def _sign_tx(self, tx: MsgTx) -> MsgTx:
        self.wallet.wallet_passphrase(self.config.wallet_pass, self.config.wallet_lock_time)
        signed, all_signed = self.wallet.sign_raw_transaction_with_wallet(tx)
        if not all_signed:
            raise VigilanteError("transaction is only partially signed")
        return signed

    def _encode_checkpoint_data(self, ckpt: RawCheckpoint) -> tuple[bytes, bytes]:
        return self.formatter.encode(ckpt, self.submitter_address)

    def _log_submission(self, tx1: BtcTxInfo, tx2: BtcTxInfo, epoch: int) -> None:
        logger.info(
            "Sent two txs to BTC for checkpointing epoch %d, first txid: %s, second txid: %s",
            epoch,
            _txid(tx1.tx.tx_hash()),
            _txid(tx2.tx.tx_hash()),
        )

    def _convert_ckpt_to_two_tx_and_submit(self, ckpt: RawCheckpoint) -> CheckpointInfo:
        data1, data2 = self._encode_checkpoint_data(ckpt)
        tx1, tx2 = self.chain_two_tx_and_send(data1, data2)
        self._log_submission(tx1, tx2, ckpt.epoch_num)
        return CheckpointInfo(ckpt.epoch_num, datetime.now(timezone.utc), tx1, tx2)

    def _retry_send_tx2(self, ckpt: RawCheckpoint) -> CheckpointInfo:
        _, data2 = self._encode_checkpoint_data(ckpt)
        tx1 = self.last_submitted_checkpoint.tx1
        if tx1 is None:
            raise VigilanteError("tx1 is nil")
        tx2 = self._build_and_send_tx(data2, tx1.tx)
        self._log_submission(tx1, tx2, ckpt.epoch_num)
        return CheckpointInfo(ckpt.epoch_num, datetime.now(timezone.utc), tx1, tx2)

    def _build_and_send_tx(self, data: bytes, parent: Optional[MsgTx]) -> BtcTxInfo:
        try:
            info = self._build_tx_with_data(data, parent)
        except Exception as err:
            raise VigilanteError(f"failed to add data to tx: {err}") from err
        try:
            info.tx_id = self._send_tx(info.tx)
        except Exception as err:
            raise VigilanteError(f"failed to send tx to BTC: {err}") from err
        return info

    def chain_two_tx_and_send(self, data1: bytes, data2: bytes) -> tuple[BtcTxInfo, BtcTxInfo]:
        """Send a transaction for each data part; the second spends the first's change."""
        tx1 = self._build_and_send_tx(data1, None)
        self.last_submitted_checkpoint.tx1 = tx1
        tx2 = self._build_and_send_tx(data2, tx1.tx)
        return tx1, tx2

    def _build_tx_with_data(self, data: bytes, first_tx: Optional[MsgTx]) -> BtcTxInfo:
        tx = MsgTx(version=TX_VERSION)
        is_second = first_tx is not None
        if first_tx is not None:
            outpoint = OutPoint(first_tx.tx_hash(), CHANGE_POSITION)
            tx.tx_in.append(TxIn(outpoint, b"", _RBF_SEQUENCE))
        tx.tx_out.append(TxOut(0, op_return_script(data)))

        fee_rate = self._get_fee_rate() / SATOSHI_PER_BITCOIN
        funded, funded_fee = self.wallet.fund_raw_transaction(tx, fee_rate, CHANGE_POSITION)

        has_change = len(funded.tx_out) > CHANGE_POSITION
        if not is_second and not has_change:
            change_script = self.wallet.get_raw_change_script(self.config.wallet_name)
            funded.tx_out.append(TxOut(DUST_THRESHOLD, change_script))

        logger.debug("Building a BTC tx using %s with data %s", _txid(funded.tx_hash()), data.hex())

        if has_change:
            if not _has_standard_address(funded.tx_out[CHANGE_POSITION].pk_script):
                raise VigilanteError("no change address found")

        tx_size = calculate_tx_virtual_size(funded)
        change_amount = funded.tx_out[CHANGE_POSITION].value if has_change else 0
        min_relay_fee = self._min_relay_fee(tx_size)

        if has_change and change_amount < min_relay_fee:
            raise VigilanteError(
                "the value of the utxo is not sufficient for relaying the tx. "
                f"Require: {min_relay_fee}. Have: {change_amount}"
            )

        tx_fee = max(funded_fee, min_relay_fee)
        if has_change and change_amount < tx_fee:
            raise VigilanteError(
                "the value of the utxo is not sufficient for paying the calculated fee of the tx. "
                f"Calculated: {tx_fee}. Have: {change_amount}"
            )

        try:
            signed = self._sign_tx(funded)
        except Exception as err:
            raise VigilanteError(f"failed to sign tx: {err}") from err

        change = change_amount - tx_fee
        if has_change and change < DUST_THRESHOLD:
            raise VigilanteError(f"change amount is {change} less then dust treshold {DUST_THRESHOLD}")

        logger.debug(
            "Successfully composed a BTC tx: tx fee: %d, output value: %d, tx size: %d, hex: %s",
            tx_fee,
            change_amount,
            tx_size,
            signed.serialize().hex(),
        )
        return BtcTxInfo(tx=signed, size=tx_size, fee=tx_fee)

    def _get_fee_rate(self) -> int:
        """Estimated fee rate in satoshis per kilo-vbyte, kept within the configured bounds."""
        target = self.config.target_block_num
        if not 0 <= target <= _MAX_TARGET_BLOCKS:
            raise ValueError(f"targetBlockNum ({target}) is out of uint32 range")
        try:
            fee_per_kw = self.estimator.estimate_fee_per_kw(target)
        except Exception as err:
            logger.error(
                "failed to estimate transaction fee. Using default fee %d: %s",
                self.config.default_fee,
                err,
            )
            return self.config.default_fee
        rate = fee_per_kw_to_kvb(fee_per_kw)
        logger.debug("current tx fee rate is %d", rate)
        return clamp_fee_rate(rate, self.config.tx_fee_min, self.config.tx_fee_max)

    def _send_tx(self, tx: MsgTx) -> bytes:
        logger.debug("Sending tx %s to BTC", _txid(tx.tx_hash()))
        tx_id = self.wallet.send_raw_transaction(tx, True)
        logger.debug("Successfully sent tx %s to BTC", _txid(tx.tx_hash()))
        return tx_id

    def get_change_address(self) -> str:
        """Pick a change address among the wallet's funded addresses."""
        addresses: Sequence[str] = self.wallet.list_unspent()
        return select_change_address(addresses, self.config.network)