import copy
from datetime import datetime, timedelta, timezone

import pytest

from vigilant.checkpoint import CheckpointStatus, RawCheckpoint, RawCheckpointWithMeta
from vigilant.checkpoint_cache import CheckpointFormatter
from vigilant.errors import VigilanteError
from vigilant.fees import DUST_THRESHOLD, SATOSHI_PER_BITCOIN, calculate_bumped_fee
from vigilant.networks import BtcNetwork
from vigilant.relayer import Relayer, RelayerConfig
from vigilant.store import StoredCheckpoint, SubmitterStore
from vigilant.wire import MsgTx, OutPoint, TxIn, TxOut, extract_op_return_data

TAG = b"bbnt"
SUBMITTER = bytes(range(20))
P2WPKH = bytes([0x00, 0x14]) + bytes(range(20))


class FakeWallet:
    def __init__(self, change_value=100_000, fee=500, add_change=True):
        self.change_value = change_value
        self.fee = fee
        self.add_change = add_change
        self.all_signed = True
        self.sent = []
        self.known = set()
        self.in_chain = False
        self.fail_on_send = set()
        self.fee_rates = []
        self.unspent = []

    def get_raw_transaction(self, tx_hash):
        if tx_hash not in self.known:
            raise LookupError("transaction not found")
        return None

    def send_raw_transaction(self, tx, allow_high_fees):
        if len(self.sent) in self.fail_on_send:
            self.fail_on_send.discard(len(self.sent))
            raise RuntimeError("send error")
        self.sent.append(copy.deepcopy(tx))
        return tx.tx_hash()

    def fund_raw_transaction(self, tx, fee_rate, change_position):
        self.fee_rates.append(fee_rate)
        funded = copy.deepcopy(tx)
        if not funded.tx_in:
            funded.tx_in.append(TxIn(OutPoint(bytes([0x11]) * 32, 0)))
        if self.add_change:
            funded.tx_out.append(TxOut(self.change_value, P2WPKH))
        return funded, self.fee

    def get_raw_change_script(self, wallet_name):
        return P2WPKH

    def sign_raw_transaction_with_wallet(self, tx):
        return copy.deepcopy(tx), self.all_signed

    def wallet_passphrase(self, passphrase, timeout_seconds):
        pass

    def tx_in_chain(self, tx_hash, pk_script):
        return self.in_chain

    def list_unspent(self):
        return list(self.unspent)


class FakeEstimator:
    def __init__(self, fee_per_kw=250, relay_per_kw=253, fail=False):
        self.fee_per_kw = fee_per_kw
        self.relay_per_kw = relay_per_kw
        self.fail = fail

    def estimate_fee_per_kw(self, target_blocks):
        if self.fail:
            raise RuntimeError("estimation failed")
        return self.fee_per_kw

    def relay_fee_per_kw(self):
        return self.relay_per_kw


def make_config(**overrides):
    values = dict(
        network=BtcNetwork.MAINNET,
        wallet_name="wallet",
        resend_interval_seconds=300,
        resubmit_fee_multiplier=2.0,
        target_block_num=1,
        default_fee=2000,
        tx_fee_min=1000,
        tx_fee_max=50000,
    )
    values.update(overrides)
    return RelayerConfig(**values)


def sealed(epoch, status=CheckpointStatus.SEALED):
    raw = RawCheckpoint(epoch, bytes([epoch % 256]) * 32, bytes(13), bytes(48))
    return RawCheckpointWithMeta(raw, status)


@pytest.fixture
def store(tmp_path):
    with SubmitterStore(tmp_path / "db.sqlite") as s:
        yield s


def make_relayer(store, wallet=None, estimator=None, **cfg):
    return Relayer(
        wallet or FakeWallet(),
        estimator or FakeEstimator(),
        store,
        CheckpointFormatter(TAG),
        SUBMITTER,
        make_config(**cfg),
    )


def test_send_complete_checkpoint(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    ckpt = sealed(5)
    relayer.send_checkpoint_to_btc(ckpt)

    assert len(wallet.sent) == 2
    tx1, tx2 = wallet.sent
    data1, data2 = CheckpointFormatter(TAG).encode(ckpt.ckpt, SUBMITTER)
    assert extract_op_return_data(tx1.tx_out[0].pk_script) == data1
    assert extract_op_return_data(tx2.tx_out[0].pk_script) == data2
    assert tx2.tx_in[0].previous_outpoint == OutPoint(tx1.tx_hash(), 1)
    assert tx2.tx_in[0].sequence == 0xFFFFFFFF - 2

    last = relayer.last_submitted_checkpoint
    assert last.epoch == 5
    assert last.tx1.tx_id == tx1.tx_hash()
    assert last.tx2.tx_id == tx2.tx_hash()

    stored = store.latest_checkpoint()
    assert stored.epoch == 5
    assert stored.tx1.tx_hash() == tx1.tx_hash()
    assert stored.tx2.tx_hash() == tx2.tx_hash()


def test_same_epoch_is_not_sent_twice(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5))
    relayer.send_checkpoint_to_btc(sealed(5))
    assert len(wallet.sent) == 2


def test_unsealed_checkpoint_is_ignored(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5, CheckpointStatus.SUBMITTED))
    assert wallet.sent == []
    assert relayer.invalid_checkpoint_count == 1


def test_resends_stored_transactions_after_restart(store):
    first = FakeWallet()
    make_relayer(store, first).send_checkpoint_to_btc(sealed(7))
    tx1, tx2 = first.sent

    wallet = FakeWallet()
    wallet.known.add(tx1.tx_hash())
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(7))

    assert [tx.tx_hash() for tx in wallet.sent] == [tx2.tx_hash()]
    assert relayer.last_submitted_checkpoint.tx1 is None


def test_change_too_small_for_relay_fee(store):
    wallet = FakeWallet(change_value=10)
    relayer = make_relayer(store, wallet)
    with pytest.raises(VigilanteError, match="not sufficient for relaying"):
        relayer.send_checkpoint_to_btc(sealed(1))
    assert wallet.sent == []


def test_change_below_dust_after_fee(store):
    wallet = FakeWallet(change_value=DUST_THRESHOLD + 100, fee=500)
    relayer = make_relayer(store, wallet)
    with pytest.raises(VigilanteError, match="dust"):
        relayer.send_checkpoint_to_btc(sealed(1))
    assert wallet.sent == []


def test_partially_signed_transaction_is_rejected(store):
    wallet = FakeWallet()
    wallet.all_signed = False
    relayer = make_relayer(store, wallet)
    with pytest.raises(VigilanteError, match="partially signed"):
        relayer.send_checkpoint_to_btc(sealed(1))
    assert wallet.sent == []


def test_missing_change_gets_dust_output(store):
    wallet = FakeWallet(add_change=False)
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(3))
    tx1 = wallet.sent[0]
    assert tx1.tx_out[1].value == DUST_THRESHOLD
    assert tx1.tx_out[1].pk_script == P2WPKH
    assert len(wallet.sent[1].tx_out) == 1


def test_failed_second_send_keeps_first_tx(store):
    wallet = FakeWallet()
    wallet.fail_on_send.add(1)
    relayer = make_relayer(store, wallet)
    with pytest.raises(VigilanteError, match="failed to send tx to BTC"):
        relayer.send_checkpoint_to_btc(sealed(4))
    last = relayer.last_submitted_checkpoint
    assert last.tx1.tx_id == wallet.sent[0].tx_hash()
    assert last.tx2 is None
    assert store.latest_checkpoint() is None


def test_resubmit_bumps_fee_of_second_tx(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5))
    last = relayer.last_submitted_checkpoint
    old_fee = last.tx2.fee
    old_value = last.tx2.tx.tx_out[1].value
    last.ts = datetime.now(timezone.utc) - timedelta(seconds=1000)

    relayer.maybe_resubmit_second_checkpoint_tx(sealed(5))

    new_fee = calculate_bumped_fee(old_fee, 2.0)
    assert relayer.resent_checkpoint_count == 1
    assert len(wallet.sent) == 3
    assert last.tx2.fee == new_fee
    assert last.tx2.tx.tx_out[1].value == old_value - new_fee
    assert last.tx2.tx_id == wallet.sent[2].tx_hash()
    assert store.latest_checkpoint().tx2.tx_hash() == wallet.sent[2].tx_hash()


def test_resubmit_waits_for_interval(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5))
    relayer.maybe_resubmit_second_checkpoint_tx(sealed(5))
    assert len(wallet.sent) == 2
    assert relayer.resent_checkpoint_count == 0


def test_resubmit_skipped_when_confirmed(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5))
    relayer.last_submitted_checkpoint.ts -= timedelta(seconds=1000)
    wallet.in_chain = True
    relayer.maybe_resubmit_second_checkpoint_tx(sealed(5))
    assert len(wallet.sent) == 2
    assert relayer.resent_checkpoint_count == 0


def test_resubmit_skipped_when_bump_too_small(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet, resubmit_fee_multiplier=1.0)
    relayer.send_checkpoint_to_btc(sealed(5))
    relayer.last_submitted_checkpoint.ts -= timedelta(seconds=1000)
    relayer.maybe_resubmit_second_checkpoint_tx(sealed(5))
    assert len(wallet.sent) == 2


def test_resubmit_of_older_epoch_is_invalid(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet)
    relayer.send_checkpoint_to_btc(sealed(5))
    relayer.maybe_resubmit_second_checkpoint_tx(sealed(4))
    assert relayer.invalid_checkpoint_count == 1
    assert len(wallet.sent) == 2


def test_default_fee_used_when_estimation_fails(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet, FakeEstimator(fail=True))
    relayer.send_checkpoint_to_btc(sealed(1))
    assert wallet.fee_rates[0] == pytest.approx(2000 / SATOSHI_PER_BITCOIN)


def test_fee_rate_is_capped(store):
    wallet = FakeWallet()
    relayer = make_relayer(store, wallet, FakeEstimator(fee_per_kw=1_000_000))
    relayer.send_checkpoint_to_btc(sealed(1))
    assert wallet.fee_rates[0] == pytest.approx(50000 / SATOSHI_PER_BITCOIN)


def test_target_block_num_out_of_range(store):
    relayer = make_relayer(store, target_block_num=-1)
    with pytest.raises(VigilanteError):
        relayer.send_checkpoint_to_btc(sealed(1))


def test_get_change_address_prefers_segwit(store):
    wallet = FakeWallet()
    wallet.unspent = [
        "1GApPLw7MZsgvDrKKSi2GyN3uepup8w9ib",
        "bc1qdh5ezhcx5fh7mlk0qwmy0pw89pxklnmrd9nwwr",
        "1MzfDjLv3qwRyEJkF7kgviJnqVhH8och6N",
    ]
    relayer = make_relayer(store, wallet)
    assert relayer.get_change_address() == "bc1qdh5ezhcx5fh7mlk0qwmy0pw89pxklnmrd9nwwr"


def test_get_change_address_without_funds(store):
    relayer = make_relayer(store)
    with pytest.raises(ValueError, match="no available addresses"):
        relayer.get_change_address()


def test_stored_checkpoint_is_decodable(store):
    wallet = FakeWallet()
    make_relayer(store, wallet).send_checkpoint_to_btc(sealed(9))
    stored = store.latest_checkpoint()
    assert StoredCheckpoint.from_bytes(stored.to_bytes()) == stored
    assert isinstance(stored.tx1, MsgTx) and stored.tx1 == wallet.sent[0]