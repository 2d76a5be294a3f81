import random

import pytest

from vigilant.btccache import IndexedBlock
from vigilant.checkpoint import RawCheckpoint
from vigilant.checkpoint_cache import (
    ADDRESS_LENGTH,
    BITMAP_LENGTH,
    BLOCK_HASH_LENGTH,
    BLS_SIG_LENGTH,
    CURRENT_VERSION,
    BabylonData,
    CheckpointCache,
    CheckpointFormatter,
    Ckpt,
    CkptSegment,
    new_ckpt_segment,
)
from vigilant.wire import BlockHeader, MsgTx, OutPoint, TxIn, TxOut, op_return_script

TX1_HEX = "01000000016712063937f821c4b79d55d3cf712ed5c825dedcc52d3b5b60cfd51d730609e2000000006b483045022100df0540936ff15ac98d49c2fb0b16eb31b1458d131b5b9ed627da0da0a6b85ba2022055ec63da913de116df127f19de85cb61a371c446814960d294781e92e780076e012103a98409a780694b1d2454f2b128cf694a966dd39edaec189a6fe03cd8b2690b34ffffffff020000000000000000516a4c4e6262743000000000000000000092ee5480cf702c2fdf156788c6a6131e363e44a86f230659a3392b00330bb6bb0a00000000000000000000000066adeb1607db6365171c28f93ec20b0505debfe100f2052a010000001976a914a11bf0378519c58f1cfee223f8831a877d03147a88ac00000000"
TX2_HEX = "0100000001b58b1c1f98caa5e92afd9ace05a9cace8bd68bd7e73a795e8e9e685b496e3d68000000006a47304402201a6b4d7d0be87138e0af256239a0f966471e59ddaac711f289ef1cb5d495e59d02205151982bd60b0a402eaba55b150634f981e956d05aaa457c9904c79302c7e280012103a98409a780694b1d2454f2b128cf694a966dd39edaec189a6fe03cd8b2690b34ffffffff020000000000000000416a3f6262743010a52f5a519b2843dce9dff88124d49f8ebf080763cdfcf14c169e7c00098bef52812bfee988a49e66e51bbbbd782057eceb3b8481235ab382ae3100f2052a010000001976a914b9ad70dc3a02004314b94247819d9ad943a3a3e288ac00000000"
TAG = bytes([98, 98, 116, 48])


def _random_raw(r: random.Random) -> RawCheckpoint:
    return RawCheckpoint(
        epoch_num=r.getrandbits(64),
        block_hash=r.randbytes(BLOCK_HASH_LENGTH),
        bitmap=r.randbytes(BITMAP_LENGTH),
        bls_multi_sig=r.randbytes(BLS_SIG_LENGTH),
    )


def _random_segments(r, formatter, match):
    first, second = formatter.encode(_random_raw(r), r.randbytes(ADDRESS_LENGTH))
    data1 = formatter.parse(first)
    data2 = formatter.parse(second)
    if not match:
        if r.randrange(2) == 0:
            data1 = BabylonData(r.randbytes(len(data1.data)), data1.index)
        else:
            data2 = BabylonData(r.randbytes(len(data2.data)), data2.index)
    return (
        CkptSegment(data1, r.getrandbits(62), None),
        CkptSegment(data2, r.getrandbits(62), None),
    )


@pytest.mark.parametrize("seed", range(20))
def test_checkpoint_cache_matching(seed):
    r = random.Random(seed)
    formatter = CheckpointFormatter(r.randbytes(4), CURRENT_VERSION)
    cache = CheckpointCache(formatter)
    num_pairs = r.randrange(200)
    num_matched = 0
    for i in range(num_pairs):
        matched = r.random() < 0.4
        num_matched += matched
        seg1, seg2 = _random_segments(r, formatter, matched)
        cache.add_segment(seg1)
        cache.add_segment(seg2)
        assert cache.num_segments() == 2 * (i + 1)

    cache.match()

    assert cache.num_checkpoints() == num_matched
    assert cache.num_segments() == (num_pairs - num_matched) * 2
    epochs = [ckpt.epoch for ckpt in cache.checkpoints]
    assert epochs == sorted(epochs)


def test_new_ckpt_segment_from_real_transactions():
    formatter = CheckpointFormatter(TAG, CURRENT_VERSION)
    tx1 = MsgTx.deserialize(bytes.fromhex(TX1_HEX))
    tx2 = MsgTx.deserialize(bytes.fromhex(TX2_HEX))
    seg1 = new_ckpt_segment(formatter, None, tx1, 0)
    seg2 = new_ckpt_segment(formatter, None, tx2, 0)
    assert seg1 is not None and seg2 is not None
    assert (seg1.index, seg2.index) == (0, 1)

    connected = formatter.connect_parts(seg1.data, seg2.data)
    assert connected.startswith(seg1.data)
    raw, _ = formatter.decode(connected)
    assert raw.epoch_num == 0


def test_new_ckpt_segment_ignores_other_transactions():
    formatter = CheckpointFormatter(TAG)
    plain = MsgTx(tx_in=[TxIn(OutPoint())], tx_out=[TxOut(1000, b"\x51")])
    assert new_ckpt_segment(formatter, None, plain, 0) is None
    wrong_tag = MsgTx(tx_out=[TxOut(0, op_return_script(b"xxxx" + bytes(80)))])
    assert new_ckpt_segment(formatter, None, wrong_tag, 0) is None


def test_encode_decode_round_trip():
    r = random.Random(11)
    formatter = CheckpointFormatter(TAG)
    raw = _random_raw(r)
    address = r.randbytes(ADDRESS_LENGTH)
    first, second = formatter.encode(raw, address)
    connected = formatter.connect_parts(formatter.parse(first).data, formatter.parse(second).data)
    assert formatter.decode(connected) == (raw, address)


def test_connect_parts_rejects_mismatch():
    r = random.Random(12)
    formatter = CheckpointFormatter(TAG)
    first_a, _ = formatter.encode(_random_raw(r), r.randbytes(ADDRESS_LENGTH))
    _, second_b = formatter.encode(_random_raw(r), r.randbytes(ADDRESS_LENGTH))
    with pytest.raises(ValueError):
        formatter.connect_parts(formatter.parse(first_a).data, formatter.parse(second_b).data)


def test_parse_rejects_other_version():
    r = random.Random(13)
    first, _ = CheckpointFormatter(TAG, 1).encode(_random_raw(r), r.randbytes(ADDRESS_LENGTH))
    with pytest.raises(ValueError, match="not valid babylon data"):
        CheckpointFormatter(TAG, 0).parse(first)


def test_add_segment_rejects_bad_index():
    cache = CheckpointCache(CheckpointFormatter(TAG))
    with pytest.raises(ValueError, match="out of scope"):
        cache.add_segment(CkptSegment(BabylonData(b"data", 2), 0))
    assert cache.num_segments() == 0


def test_pop_earliest_checkpoint_in_epoch_order():
    r = random.Random(14)
    formatter = CheckpointFormatter(TAG)
    cache = CheckpointCache(formatter)
    epochs = [9, 3, 5]
    for epoch in epochs:
        raw = RawCheckpoint(epoch, r.randbytes(32), r.randbytes(13), r.randbytes(48))
        first, second = formatter.encode(raw, r.randbytes(ADDRESS_LENGTH))
        cache.add_segment(CkptSegment(formatter.parse(first), 0))
        cache.add_segment(CkptSegment(formatter.parse(second), 0))
    cache.match()
    popped = []
    while cache.has_checkpoints():
        popped.append(cache.pop_earliest_checkpoint().epoch)
    assert popped == sorted(epochs)
    assert cache.pop_earliest_checkpoint() is None


def test_gen_spv_proofs():
    r = random.Random(15)
    formatter = CheckpointFormatter(TAG)
    first, second = formatter.encode(_random_raw(r), r.randbytes(ADDRESS_LENGTH))
    coinbase = MsgTx(tx_in=[TxIn(OutPoint())], tx_out=[TxOut(50, b"\x51")])
    tx1 = MsgTx(tx_in=[TxIn(OutPoint(r.randbytes(32), 0))], tx_out=[TxOut(0, op_return_script(first))])
    tx2 = MsgTx(tx_in=[TxIn(OutPoint(r.randbytes(32), 1))], tx_out=[TxOut(0, op_return_script(second))])
    block = IndexedBlock(height=1, header=BlockHeader(), txs=[coinbase, tx1, tx2])
    segments = [new_ckpt_segment(formatter, block, tx, idx) for idx, tx in ((1, tx1), (2, tx2))]
    proofs = Ckpt(segments, 0).gen_spv_proofs()
    assert [p.btc_transaction_index for p in proofs] == [1, 2]
    assert proofs[0].btc_transaction == tx1.serialize()


def test_gen_spv_proofs_requires_two_segments():
    with pytest.raises(ValueError, match="incorrect number of segments"):
        Ckpt([CkptSegment(BabylonData(b"", 0), 0)], 1).gen_spv_proofs()