import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..clients.ledger import LedgerClient
from ..errors import LedgerError, describe_error
from ..utils.formatting import format_elapsed
from .farmer import FarmerRegistry, FarmerStateMachine
from .harvester import Harvester
from .mining import MiningProcessController
from .state import BlockState, Session
from .strategy import Strategy

POLL_INTERVAL_SECS = 5
# A block older than this is considered stalled and farmers plant again.
STALE_BLOCK_SECS = 60 * 5 + 15
# Upper bound of the random delay added to background harvests.
HARVEST_JITTER_SECS = 20
PROGRESS_LOG_EVERY = 7
AUTO_SAVE_INTERVAL = 10


@dataclass
class BlockTick:
    block: int
    changed: bool
    stale: bool
    reset: bool
    elapsed: int


class BlockMonitor:
    """Tracks the farm index and resets farmers on every block transition."""

    def __init__(
        self,
        ledger: LedgerClient,
        block_state: BlockState,
        farmers: FarmerRegistry,
        clock: Callable[[], float] = time.time,
        stale_after: float = STALE_BLOCK_SECS,
        logger: Optional[logging.Logger] = None,
    ):
        self.ledger = ledger
        self.state = block_state
        self.farmers = farmers
        self.clock = clock
        self.stale_after = stale_after
        self.log = logger or logging.getLogger("KaleRig.block")
        self._stale_block = 0

    def poll(self) -> Optional[BlockTick]:
        try:
            head = self.ledger.get_current_block()
        except LedgerError as e:
            self.log.warning("Failed to read current block: %s", describe_error(e))
            return None
        if head is None or not head.block:
            return None

        elapsed = self.state.elapsed(self.clock())
        stale = elapsed > self.stale_after
        with self.state._lock:
            changed = head.block != self.state.block
            advancing = head.block > self.state.block

        reset = False
        if advancing or stale:
            if changed:
                self.log.info("New block detected %s", head.block)
                with self.state._lock:
                    self.state.block = head.block
                    self.state.hash = None
                    self.state.details = None
            if changed or self._stale_block != self.state.block:
                if not changed:
                    self._stale_block = self.state.block
                    self.log.info("Block %s stalled for %s, replanting", self.state.block, format_elapsed(elapsed))
                self.reset_farmers()
                reset = True
        else:
            changed = False

        if self.state.hash is None:
            self.fetch_details()
        if reset:
            elapsed = self.state.elapsed(self.clock())
        return BlockTick(block=self.state.block, changed=changed, stale=stale, reset=reset, elapsed=elapsed)

    def fetch_details(self) -> bool:
        with self.state._lock:
            block = self.state.block
        try:
            details = self.ledger.get_block_details(block)
        except LedgerError as e:
            self.log.warning("Failed to fetch details of block %s: %s", block, describe_error(e))
            return False
        if details is None:
            self.log.debug("Details of block %s not available yet", block)
            return False
        with self.state._lock:
            if self.state.block != block:
                return False
            self.state.hash = details.entropy
            self.state.details = details
        self.log.info("Block %s details: %s", block, self.state.snapshot())
        return True

    def reset_farmers(self) -> None:
        for farmer in self.farmers:
            farmer.reset()
            self.log.info("Farmer %s is READY", farmer.address)


class Farm:
    """Drives the plant / harvest / work cycle once per poll interval."""

    def __init__(
        self,
        cfg: dict,
        ledger: LedgerClient,
        farmers: FarmerRegistry,
        harvester: Harvester,
        miner: MiningProcessController,
        strategy: Optional[Strategy] = None,
        block_state: Optional[BlockState] = None,
        session: Optional[Session] = None,
        stats_saver: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.farmers = farmers
        self.harvester = harvester
        self.block_state = block_state or BlockState()
        self.session = session or Session()
        self.stats_saver = stats_saver
        self.clock = clock
        self.log = logger or logging.getLogger("KaleRig.farm")

        farm_cfg = cfg.get("farm", {})
        miner_cfg = cfg.get("miner", {})
        harvester_cfg = cfg.get("harvester", {})
        self.poll_interval = farm_cfg.get("poll_interval_secs", POLL_INTERVAL_SECS)
        self.harvest_only = bool(harvester_cfg.get("harvest_only", False))
        self.harvest_delay = harvester_cfg.get("delay")
        self.background_harvest = bool(harvester_cfg.get("background", True))
        self.backfill_range = harvester_cfg.get("range") or None

        self.monitor = BlockMonitor(ledger, self.block_state, farmers, clock=clock)
        self.machines: Dict[str, FarmerStateMachine] = {
            farmer.address: FarmerStateMachine(
                farmer,
                ledger,
                self.block_state,
                miner,
                strategy=strategy,
                difficulty=miner_cfg.get("difficulty", 0),
                nonce=miner_cfg.get("nonce", 0),
                continuous=bool(miner_cfg.get("continuous", False)),
                allow_zero_stake=bool(farm_cfg.get("allow_zero_stake", True)),
                clock=clock,
            )
            for farmer in farmers
        }
        self.tick_count = 0
        self._progress_count = 0
        self._stop = threading.Event()

    def harvest_time(self) -> float:
        now = self.clock()
        if not self.background_harvest or self.harvest_delay is None:
            return now
        return now + float(self.harvest_delay) + random.uniform(0, HARVEST_JITTER_SECS)

    def tick(self) -> Optional[BlockTick]:
        block = self.monitor.poll()
        if block is None:
            return None
        self.tick_count += 1

        if self.backfill_range:
            added = self.harvester.backfill(block.block, self.backfill_range)
            self.backfill_range = None
            self.log.info("Backfilling %s harvests", added)
            self.harvester.flush(force=True)
            return block

        self._plant(block)
        self._schedule_harvests(block)
        if not self.background_harvest:
            self.harvester.flush()
        self._work(block)
        self._log_progress(block)

        if self.stats_saver is not None and self.tick_count % AUTO_SAVE_INTERVAL == 0:
            self.stats_saver()
        return block

    def _plant(self, block: BlockTick) -> None:
        if self.harvest_only:
            return
        for farmer in self.farmers:
            if farmer.harvest_only:
                continue
            machine = self.machines[farmer.address]
            try:
                machine.plant(next_block=block.stale)
                if not block.stale:
                    machine.refresh_status()
            except Exception as e:
                self.log.error(f"Farmer {farmer.address} plant phase failed: {e}", exc_info=True)
            if block.stale:
                # The first plant after a stall opens the next block.
                break

    def _schedule_harvests(self, block: BlockTick) -> None:
        previous = block.block - 1
        if previous <= 0:
            return
        when = self.harvest_time()
        for farmer in self.farmers:
            with farmer.lock:
                if farmer.harvested_current_cycle:
                    continue
                farmer.harvested_current_cycle = True
            self.harvester.add(farmer.address, previous, when)

    def _work(self, block: BlockTick) -> None:
        if block.stale or self.harvest_only:
            return
        for farmer in self.farmers:
            if farmer.harvest_only:
                continue
            try:
                self.machines[farmer.address].complete_work()
            except Exception as e:
                self.log.error(f"Farmer {farmer.address} work phase failed: {e}", exc_info=True)

    def _log_progress(self, block: BlockTick) -> None:
        elapsed = self.block_state.elapsed(self.clock())
        if not elapsed:
            return
        if self._progress_count % PROGRESS_LOG_EVERY == 0:
            self.log.info("Current block is %s, elapsed %s", block.block, format_elapsed(elapsed))
        self._progress_count += 1

    def run(self) -> None:
        self.session.update(start_time=time.time())
        if self.background_harvest:
            self.harvester.start()
        self.log.info("Farming %s farmers every %ss", len(self.farmers), self.poll_interval)
        try:
            while not self._stop.is_set():
                try:
                    self.tick()
                except Exception as e:
                    self.log.error(f"Farm tick failed: {e}", exc_info=True)
                self._stop.wait(self.poll_interval)
        finally:
            self.harvester.stop()
            if self.stats_saver is not None:
                self.stats_saver()
            self.log.info("Farm stopped")

    def stop(self) -> None:
        self._stop.set()
        self.harvester.stop()
