# vigilant

A library for relaying sealed epoch checkpoints to Bitcoin. A checkpoint is
split into two parts. Each part goes out in its own transaction as `OP_RETURN`
data, and the second transaction spends the change output of the first. The
library also covers the work around this: a cache of recent blocks, the
matching of checkpoint parts found in blocks, and a small SQLite store that
holds the last submission. It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `vigilant.wire`: transactions and block headers in Bitcoin wire format
  (`MsgTx`, `TxIn`, `TxOut`, `OutPoint`, `BlockHeader`). Each has
  `serialize`/`deserialize`, plus `tx_hash`, `virtual_size` and `block_hash`.
  The module also provides `double_sha256`, `merkle_root`, `op_return_script`,
  `extract_op_return_data`, `serialize_msg_tx`, `deserialize_msg_tx` and
  `calculate_tx_virtual_size`. Hashes are in internal byte order.
- `vigilant.networks`: the `BtcNetwork` enum (mainnet, testnet, simnet, regtest,
  signet) with `bech32_hrp()`, and `valid_net_params()`.
- `vigilant.concurrency`: `push_or_quit(queue, msg, quit_event)` and
  `GuardedKey`, which holds a key behind a lock.
- `vigilant.btccache`: `IndexedBlock`, whose `gen_spv_proof(tx_idx)` returns an
  `SpvProof`, and `BTCCache`, a bounded, height-ordered block cache that is
  safe to use from several threads.
- `vigilant.checkpoint`: `RawCheckpoint`, `RawCheckpointWithMeta`,
  `CheckpointStatus`, `BtcTxInfo` and `CheckpointInfo`. It also builds messages
  with `new_insert_btc_spv_proof_msg` and `new_insert_headers_msg`.
- `vigilant.bookkeeper`: `CheckpointRecord` and `CheckpointsBookkeeper`. When
  two records have the same id, the bookkeeper keeps the one first seen at the
  lower height.
- `vigilant.checkpoint_cache`: `CheckpointFormatter` encodes a checkpoint into
  its two `OP_RETURN` payloads and recognises, connects and decodes them.
  `new_ckpt_segment` extracts a `CkptSegment` from a transaction.
  `CheckpointCache` pairs segments into `Ckpt` objects, ordered by epoch.
- `vigilant.poller`: `Poller` asks a `BabylonQueryClient` for sealed checkpoints
  and queues the one with the lowest epoch. `next_checkpoint(timeout)` takes it
  off the queue.
- `vigilant.store`: `SubmitterStore`, a SQLite-backed store of the last
  `StoredCheckpoint`. It can be used as a context manager. `CorruptedDBError`
  is raised when the checkpoint bucket is missing.
- `vigilant.fees`: fee rules. `calc_min_relay_fee`, `calculate_bumped_fee`,
  `should_resend`, `clamp_fee_rate` and `fee_per_kw_to_kvb`. Amounts are in
  satoshis.
- `vigilant.resend`: `maybe_resend_from_store` re-sends stored transactions
  that the node does not know after a restart.
- `vigilant.change_address`: `classify_address` decodes base58 and bech32/bech32m
  addresses into an `AddressKind`. `select_change_address` returns the last
  SegWit bech32 address in the list, or a random one of the others if there is
  none.
- `vigilant.relayer`: `Relayer` builds, signs, sends and resubmits the two
  checkpoint transactions through a `BTCWallet` and a `FeeEstimator`. It is
  configured by `RelayerConfig`, whose fee rates are in satoshis per kilo-vbyte.
- `vigilant.submitter`: `Submitter` runs the polling loop and the relaying loop
  in background threads. `new_submitter` builds one. It fetches the checkpoint
  tag from a `CheckpointQueryClient` and retries on failure.

## Examples

Block cache:

```python
from vigilant.btccache import BTCCache

cache = BTCCache(100)
cache.init(blocks)                  # blocks sorted by height
tip = cache.tip()
block = cache.find_block(tip.height)
confirmed = cache.trim_confirmed_blocks(6)
```

Encoding and decoding a checkpoint:

```python
from vigilant.checkpoint_cache import CheckpointFormatter

formatter = CheckpointFormatter(b"bbt0")
part1, part2 = formatter.encode(raw_checkpoint, submitter_address)  # 20-byte address
first, second = formatter.parse(part1), formatter.parse(part2)
checkpoint, address = formatter.decode(formatter.connect_parts(first.data, second.data))
```

Storing the last submission:

```python
from vigilant.store import StoredCheckpoint, SubmitterStore

with SubmitterStore("submitter.db") as store:
    store.put_checkpoint(StoredCheckpoint(tx1, tx2, epoch=5))
    latest = store.latest_checkpoint()  # None if nothing was stored
```

Running a submitter:

```python
from vigilant.submitter import SubmitterConfig, new_submitter

submitter = new_submitter(
    SubmitterConfig(),
    query_client,        # provides raw_checkpoint_list() and checkpoint_tag()
    wallet,              # implements vigilant.relayer.BTCWallet
    estimator,           # implements vigilant.relayer.FeeEstimator
    store,               # a SubmitterStore
    submitter_address,   # 20 bytes written into each encoded checkpoint
    retry_sleep=1.0,
    max_retry_sleep=10.0,
    max_retries=5,
)
submitter.start()
...
submitter.stop()
submitter.wait_for_shutdown()
```

Errors are raised as exceptions. Errors of the block cache, such as
`EmptyCacheError` and `TooManyEntriesError`, and the relayer's failures are
defined in `vigilant.errors` or raised as `VigilanteError`. All of them derive
from `VigilanteError`.

## What this package does not do

- It has no command-line program and no configuration file loading. You build a
  `SubmitterConfig` and call `new_submitter` from your own code.
- It has no client for a Bitcoin node or for the checkpointing chain. The
  wallet, fee estimator and query client are protocols (`BTCWallet`,
  `FeeEstimator`, `BabylonQueryClient`, `CheckpointQueryClient`) that you
  implement yourself.
- It does not verify BLS multi-signatures, does not read genesis files and
  exports no metrics. The submitter only keeps simple counters and the time of
  the last processed checkpoint as attributes.