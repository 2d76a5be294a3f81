"""The submitter: polls sealed checkpoints and relays them to Bitcoin."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, TypeVar

from vigilant.checkpoint_cache import CheckpointFormatter
from vigilant.errors import VigilanteError
from vigilant.poller import BabylonQueryClient, Poller
from vigilant.relayer import BTCWallet, FeeEstimator, Relayer, RelayerConfig
from vigilant.store import SubmitterStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUEUE_WAIT = 0.1


@dataclass
class SubmitterConfig:
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    polling_interval_seconds: float = 60.0
    buffer_size: int = 100


class CheckpointQueryClient(BabylonQueryClient, Protocol):
    def checkpoint_tag(self) -> str:
        """Hex-encoded checkpoint tag from the btccheckpoint parameters."""
        ...


def _retry(fn: Callable[[], T], delay: float, max_delay: float, attempts: int) -> T:
    """Call ``fn`` until it succeeds, with exponential back-off; ``attempts`` of 0 means forever."""
    attempt = 0
    while True:
        try:
            return fn()
        except Exception:
            attempt += 1
            if attempts and attempt >= attempts:
                raise
            sleep = delay * 2 ** (attempt - 1)
            if max_delay > 0:
                sleep = min(sleep, max_delay)
            time.sleep(sleep)


class Submitter:
    """Runs the polling and relaying loops in background threads."""

    def __init__(self, config: SubmitterConfig, poller: Poller, relayer: Relayer) -> None:
        self.config = config
        self.poller = poller
        self.relayer = relayer
        self.failed_checkpoints = 0
        self.last_checkpoint_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._quit = threading.Event()
        self._started = False
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start the loops; restarts them if they were stopped, does nothing if running."""
        with self._lock:
            if self._quit.is_set():
                self.wait_for_shutdown()
                self._quit = threading.Event()
            elif self._started:
                return
            else:
                self._started = True
            quit_event = self._quit
            self._threads = [
                threading.Thread(target=self._poll_checkpoints, args=(quit_event,), daemon=True),
                threading.Thread(target=self._process_checkpoints, args=(quit_event,), daemon=True),
            ]
            for thread in self._threads:
                thread.start()
        logger.info("Successfully created the vigilant submitter")

    def stop(self) -> None:
        with self._lock:
            self._quit.set()

    def shutting_down(self) -> bool:
        with self._lock:
            return self._quit.is_set()

    def wait_for_shutdown(self) -> None:
        for thread in list(self._threads):
            thread.join()

    def _poll_checkpoints(self, quit_event: threading.Event) -> None:
        interval = self.config.polling_interval_seconds
        while not quit_event.wait(interval):
            logger.info("Polling sealed raw checkpoints...")
            try:
                self.poller.poll_sealed_checkpoints()
            except Exception as err:
                logger.error("failed to query raw checkpoints: %s", err)
                continue
            logger.debug("Next polling happens in %s seconds", interval)

    def _process_checkpoints(self, quit_event: threading.Event) -> None:
        while not quit_event.is_set():
            ckpt = self.poller.next_checkpoint(timeout=_QUEUE_WAIT)
            if ckpt is None:
                continue
            epoch = ckpt.ckpt.epoch_num
            logger.info("A sealed raw checkpoint for epoch %d is found", epoch)
            try:
                self.relayer.send_checkpoint_to_btc(ckpt)
            except Exception as err:
                logger.error("Failed to submit the raw checkpoint for %d: %s", epoch, err)
                self.failed_checkpoints += 1
                continue
            try:
                self.relayer.maybe_resubmit_second_checkpoint_tx(ckpt)
            except Exception as err:
                logger.error("Failed to resubmit the raw checkpoint for %d: %s", epoch, err)
                self.failed_checkpoints += 1
            self.last_checkpoint_at = datetime.now(timezone.utc)


def new_submitter(
    config: SubmitterConfig,
    query_client: CheckpointQueryClient,
    wallet: BTCWallet,
    estimator: FeeEstimator,
    store: SubmitterStore,
    encoder: bytes,
    retry_sleep: float,
    max_retry_sleep: float,
    max_retries: int,
) -> Submitter:
    """Build a submitter; ``encoder`` is the submitter address written into encoded checkpoints."""
    try:
        tag_hex = _retry(query_client.checkpoint_tag, retry_sleep, max_retry_sleep, max_retries)
    except Exception as err:
        raise VigilanteError(f"failed to get checkpoint params: {err}") from err

    try:
        tag = bytes.fromhex(tag_hex)
        formatter = CheckpointFormatter(tag)
    except ValueError as err:
        raise VigilanteError(f"failed to decode checkpoint tag: {err}") from err

    poller = Poller(query_client, config.buffer_size)
    relayer = Relayer(wallet, estimator, store, formatter, encoder, config.relayer)
    return Submitter(config, poller, relayer)