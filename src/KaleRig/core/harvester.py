"""Harvest scheduling: a time-ordered claim queue plus batched tractor mode."""
import bisect
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..clients.ledger import LedgerClient, rewards_to_kale, to_kale
from ..errors import LedgerError, describe_error
from ..utils.formatting import format_countdown, format_kale
from .farmer import FarmerRegistry

RETRY_INTERVAL_SECS = 10
TICK_SECS = 1
TRACTOR_LOG_INTERVAL_SECS = 60

_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")
_COUNT_RE = re.compile(r"^-(\d+)$")


@dataclass(order=True)
class HarvestRequest:
    time: float
    farmer: str = field(compare=False)
    block: int = field(compare=False)
    retries: int = field(default=0, compare=False)


def parse_range(value) -> Tuple[Optional[Tuple[int, int]], Optional[int]]:
    """Parse ``"start-end"`` into a block range or ``"-count"`` into a trailing count."""
    text = str(value or "").strip()
    match = _RANGE_RE.match(text)
    if match:
        return (int(match.group(1)), int(match.group(2))), None
    match = _COUNT_RE.match(text)
    if match:
        return None, int(match.group(1))
    return None, None


class Harvester:
    def __init__(
        self,
        ledger: LedgerClient,
        farmers: FarmerRegistry,
        retry_count: int = 0,
        tractor_contract: Optional[str] = None,
        tractor_frequency: float = 0,
        on_abandon: Optional[Callable[[str, List[int], str, str], None]] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.ledger = ledger
        self.farmers = farmers
        self.retry_count = max(0, int(retry_count or 0))
        self.tractor_contract = tractor_contract or None
        self.tractor_frequency = float(tractor_frequency or 0)
        self.on_abandon = on_abandon
        self.clock = clock
        self.log = logger or logging.getLogger("KaleRig.harvester")
        self.queue: List[HarvestRequest] = []
        self.last_flush = 0.0
        self.last_log_time = 0.0
        self._tractor_retries: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def tractor_enabled(self) -> bool:
        return bool(self.tractor_contract)

    def __len__(self) -> int:
        with self._lock:
            return len(self.queue)

    def pending(self) -> List[HarvestRequest]:
        with self._lock:
            return list(self.queue)

    def add(self, farmer: str, block: int, when: Optional[float] = None, retries: Optional[int] = None) -> bool:
        """Queue a claim; a no-op when the same (farmer, block) is already queued."""
        request = HarvestRequest(
            time=self.clock() if when is None else when,
            farmer=farmer,
            block=block,
            retries=self.retry_count if retries is None else retries,
        )
        with self._lock:
            if any(r.farmer == farmer and r.block == block for r in self.queue):
                return False
            bisect.insort(self.queue, request)
        return True

    def backfill(self, current_block: int, range_spec) -> int:
        block_range, count = parse_range(range_spec)
        now = self.clock()
        added = 0
        for farmer in self.farmers:
            if block_range:
                start, end = block_range
                blocks: Iterable[int] = range(end, start - 1, -1)
            elif count:
                blocks = (current_block - 1 - i for i in range(1, count + 1))
            else:
                blocks = ()
            for block in blocks:
                self.log.info("Farmer %s checking block %s for harvest", farmer.address, block)
                added += self.add(farmer.address, block, now)
        return added

    def _abandon(self, farmer: str, blocks: List[int], reason: str) -> None:
        mode = "tractor" if self.tractor_enabled else "harvest"
        self.log.warning("Farmer %s abandoned harvest of blocks %s: %s", farmer, blocks, reason)
        if self.on_abandon is not None:
            try:
                self.on_abandon(farmer, blocks, mode, reason)
            except Exception as e:
                self.log.error(f"Failed to record abandoned harvest for {farmer}: {e}", exc_info=True)

    def _is_ready(self, farmer: str, block: int) -> bool:
        pail = self.ledger.get_pail(farmer, block)
        return pail is not None and pail.harvest_ready

    def _retry(self, request: HarvestRequest, error: str) -> None:
        if request.retries > 0:
            self.add(request.farmer, request.block, self.clock() + RETRY_INTERVAL_SECS, request.retries - 1)
        else:
            self._abandon(request.farmer, [request.block], error)

    def _retry_batch(self, farmer: str, blocks: List[int], error: str) -> None:
        remaining = self._tractor_retries.get(farmer, self.retry_count)
        if remaining > 0:
            self._tractor_retries[farmer] = remaining - 1
            now = self.clock()
            for block in blocks:
                self.add(farmer, block, now)
            self.last_flush = min(self.last_flush, now - self.tractor_frequency + RETRY_INTERVAL_SECS)
        else:
            self._tractor_retries.pop(farmer, None)
            self._abandon(farmer, blocks, error)

    def harvest(self, request: HarvestRequest) -> bool:
        farmer, block = request.farmer, request.block
        try:
            if not self._is_ready(farmer, block):
                self.log.debug("Farmer %s block %s is not ready for harvest", farmer, block)
                return False
            result = self.ledger.submit("harvest", farmer, block=block)
        except LedgerError as e:
            error = describe_error(e)
            self.log.error(
                "Farmer %s could not harvest block %s: %s. Retry count: %s.", farmer, block, error, request.retries
            )
            self._retry(request, error)
            return False

        amount = to_kale(result.return_value)
        record = self.farmers.get(farmer)
        if record is not None:
            with record.lock:
                record.stats.record_fee(result.fee_charged)
                record.stats.record_harvest(amount, block)
        self.log.info("Farmer %s harvested block %s for %s", farmer, block, format_kale(amount))
        return True

    def _harvest_guarded(self, request: HarvestRequest) -> None:
        try:
            self.harvest(request)
        except Exception as e:
            self.log.error(f"Farmer {request.farmer} harvest of block {request.block} failed: {e}", exc_info=True)
            self._retry(request, str(e) or e.__class__.__name__)

    def harvest_batch(self, farmer: str, blocks: List[int]) -> bool:
        ready = []
        for block in blocks:
            try:
                if self._is_ready(farmer, block):
                    ready.append(block)
            except LedgerError as e:
                self.log.error("Farmer %s status check failure %s: %s", farmer, block, describe_error(e))
        if not ready:
            return False

        try:
            result = self.ledger.submit("tractor", farmer, blocks=ready, contract=self.tractor_contract)
        except LedgerError as e:
            error = describe_error(e)
            self.log.error("Farmer %s could not harvest blocks %s: %s.", farmer, ready, error)
            self._retry_batch(farmer, ready, error)
            return False

        self._tractor_retries.pop(farmer, None)
        rewards = rewards_to_kale(result.return_value)
        total = sum(rewards)
        record = self.farmers.get(farmer)
        if record is not None:
            with record.lock:
                stats = record.stats
                stats.record_fee(result.fee_charged)
                for block, reward in zip(ready, rewards):
                    if reward > 0:
                        stats.record_harvest(reward, block)
                stats.last_block = ready[-1]
        self.log.info("Farmer %s harvested blocks %s for %s", farmer, ready, format_kale(total))
        return True

    def flush(self, force: bool = False) -> None:
        if self.tractor_enabled:
            self._flush_tractor(force)
            return
        while not self._stop.is_set():
            with self._lock:
                if not self.queue:
                    return
                wait = self.queue[0].time - self.clock()
                request = self.queue.pop(0) if wait <= 0 else None
            if request is None:
                self._stop.wait(wait)
                continue
            self._harvest_guarded(request)

    def _flush_tractor(self, force: bool) -> None:
        now = self.clock()
        if not force and now - self.last_flush < self.tractor_frequency:
            if now - self.last_log_time >= TRACTOR_LOG_INTERVAL_SECS:
                remaining = self.tractor_frequency - (now - self.last_flush)
                self.log.info("Tractor next harvest in %s mins.", format_countdown(remaining))
                self.last_log_time = now
            return
        self.last_flush = now
        batch: Dict[str, List[int]] = {}
        with self._lock:
            for request in self.queue:
                batch.setdefault(request.farmer, []).append(request.block)
            self.queue.clear()
        for farmer, blocks in batch.items():
            try:
                self.harvest_batch(farmer, blocks)
            except Exception as e:
                self.log.error(f"Farmer {farmer} tractor harvest of blocks {blocks} failed: {e}", exc_info=True)
                self._retry_batch(farmer, blocks, str(e) or e.__class__.__name__)

    def process_due(self) -> None:
        """One scheduler cycle: harvest every due claim, or flush the tractor."""
        if self.tractor_enabled:
            self._flush_tractor(False)
            return
        while True:
            with self._lock:
                if not self.queue or self.queue[0].time > self.clock():
                    return
                request = self.queue.pop(0)
            self._harvest_guarded(request)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="harvester", daemon=True)
        self._thread.start()
        self.log.info("Harvester started (%s mode)", "tractor" if self.tractor_enabled else "direct")

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=5)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_due()
            except Exception as e:
                self.log.error(f"Harvester cycle failed: {e}", exc_info=True)
            self._stop.wait(TICK_SECS)
