import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..clients.ledger import LedgerClient, to_kale
from ..errors import LedgerError, MiningError, describe_error
from .mining import MiningProcessController
from .state import BlockState
from .strategy import Strategy

DEFAULT_DIFFICULTY = 6
# Backoff applied to a farmer after a failed chain or mining call, in seconds.
BACKOFF_SECS = 5
# Mining stops this many seconds before the minimum work time is reached.
SUBMIT_MARGIN_SECS = 15


class FarmerStatus(Enum):
    PLANTING = 1
    WORKING = 2
    IDLE = 4

    @property
    def label(self) -> str:
        return "DONE" if self is FarmerStatus.IDLE else self.name


@dataclass
class Work:
    hash: str
    nonce: int
    difficulty: int


def _track_min(current, value):
    return value if current is None else min(current, value)


def _track_max(current, value):
    return value if current is None else max(current, value)


@dataclass
class FarmerStats:
    amount: float = 0.0
    harvest_count: int = 0
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    last_amount: Optional[float] = None
    last_block: Optional[int] = None
    fees: int = 0
    fee_count: int = 0
    min_fee: Optional[int] = None
    max_fee: Optional[int] = None
    work_gap: Optional[int] = None
    gaps: int = 0
    work_count: int = 0
    min_gap: Optional[int] = None
    max_gap: Optional[int] = None
    last_diff: Optional[int] = None
    min_diff: Optional[int] = None
    max_diff: Optional[int] = None
    diffs: int = 0
    stake: Optional[float] = None
    stake_block: Optional[int] = None
    min_stake: Optional[float] = None
    max_stake: Optional[float] = None
    work_time: Optional[float] = None
    work_block: Optional[int] = None

    @property
    def avg_amount(self) -> float:
        return self.amount / self.harvest_count if self.harvest_count else 0.0

    @property
    def avg_fee(self) -> float:
        return self.fees / self.fee_count if self.fee_count else 0.0

    @property
    def avg_gap(self) -> float:
        return self.gaps / self.work_count if self.work_count else 0.0

    def record_fee(self, fee) -> None:
        fee = int(fee or 0)
        self.fees += fee
        self.fee_count += 1
        self.min_fee = _track_min(self.min_fee, fee)
        self.max_fee = _track_max(self.max_fee, fee)

    def record_stake(self, amount, block: int) -> None:
        self.stake = to_kale(amount)
        self.stake_block = block
        self.min_stake = _track_min(self.min_stake, self.stake)
        self.max_stake = _track_max(self.max_stake, self.stake)

    def record_difficulty(self, difficulty: int) -> None:
        self.last_diff = difficulty
        self.min_diff = _track_min(self.min_diff, difficulty)
        self.max_diff = _track_max(self.max_diff, difficulty)

    def record_work(self, gap: int, difficulty: int) -> None:
        self.work_gap = gap
        self.gaps += gap
        self.work_count += 1
        self.min_gap = _track_min(self.min_gap, gap)
        self.max_gap = _track_max(self.max_gap, gap)
        self.diffs += difficulty
        self.record_difficulty(difficulty)

    def record_harvest(self, amount: float, block: int) -> None:
        self.amount += amount
        self.harvest_count += 1
        self.min_amount = _track_min(self.min_amount, amount)
        self.max_amount = _track_max(self.max_amount, amount)
        self.last_amount = amount
        self.last_block = block

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["avg_amount"] = self.avg_amount
        data["avg_fee"] = self.avg_fee
        data["avg_gap"] = self.avg_gap
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FarmerStats":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Farmer:
    address: str
    stake: int = 0
    difficulty: int = 0
    min_work_time: float = 0
    harvest_only: bool = False
    status: FarmerStatus = FarmerStatus.PLANTING
    current_work: Optional[Work] = None
    harvested_current_cycle: bool = False
    backoff_until: float = 0.0
    stats: FarmerStats = field(default_factory=FarmerStats)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def reset(self) -> None:
        with self.lock:
            self.status = FarmerStatus.PLANTING
            self.current_work = None
            self.harvested_current_cycle = False

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "address": self.address,
                "status": self.status.label,
                "stake": self.stake,
                "difficulty": self.difficulty,
                "min_work_time": self.min_work_time,
                "harvest_only": self.harvest_only,
                "work": asdict(self.current_work) if self.current_work else None,
                "stats": self.stats.to_dict(),
            }


class FarmerRegistry:
    """Ordered address -> Farmer map shared by the farm loop and harvester."""

    def __init__(self, farmers: Optional[List[Farmer]] = None):
        self._farmers: Dict[str, Farmer] = {}
        for farmer in farmers or []:
            self.add(farmer)

    def add(self, farmer: Farmer) -> Farmer:
        if farmer.address in self._farmers:
            raise ValueError(f"Duplicate farmer {farmer.address}")
        self._farmers[farmer.address] = farmer
        return farmer

    def get(self, address: str) -> Optional[Farmer]:
        return self._farmers.get(address)

    def __getitem__(self, address: str) -> Farmer:
        return self._farmers[address]

    def __contains__(self, address) -> bool:
        return address in self._farmers

    def __iter__(self) -> Iterator[Farmer]:
        return iter(list(self._farmers.values()))

    def __len__(self) -> int:
        return len(self._farmers)

    def addresses(self) -> List[str]:
        return list(self._farmers)


@dataclass
class MiningAttempt:
    succeeded: bool
    killed: bool = False


class FarmerStateMachine:
    """Plant / work / harvest transitions for one farmer.

    Chain-facing methods never raise :class:`LedgerError`: failures are
    logged, the farmer backs off for :data:`BACKOFF_SECS` and the phase is
    retried on a later tick.
    """

    def __init__(
        self,
        farmer: Farmer,
        ledger: LedgerClient,
        block_state: BlockState,
        miner: MiningProcessController,
        strategy: Optional[Strategy] = None,
        difficulty: int = DEFAULT_DIFFICULTY,
        nonce: int = 0,
        continuous: bool = False,
        allow_zero_stake: bool = True,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.farmer = farmer
        self.ledger = ledger
        self.block_state = block_state
        self.miner = miner
        self.strategy = strategy or Strategy()
        self.difficulty = difficulty
        self.nonce = nonce
        self.continuous = continuous
        self.allow_zero_stake = allow_zero_stake
        self.clock = clock
        self.log = logger or logging.getLogger("KaleRig.farmer")

    @property
    def address(self) -> str:
        return self.farmer.address

    def _backing_off(self) -> bool:
        return self.clock() < self.farmer.backoff_until

    def _back_off(self) -> None:
        self.farmer.backoff_until = self.clock() + BACKOFF_SECS

    def _ask_strategy(self, hook: str):
        try:
            return getattr(self.strategy, hook)(self.address, self.block_state.snapshot())
        except Exception as e:
            self.log.error(f"Farmer {self.address} strategy {hook} failed: {e}", exc_info=True)
            return None

    def resolve_stake(self) -> int:
        return int(self._ask_strategy("stake") or self.farmer.stake or 0)

    def resolve_difficulty(self) -> int:
        return int(self._ask_strategy("difficulty") or self.farmer.difficulty or self.difficulty or DEFAULT_DIFFICULTY)

    def resolve_min_work_time(self) -> float:
        value = self._ask_strategy("min_work_time") or self.farmer.min_work_time
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0

    def plant(self, next_block: bool = False) -> bool:
        farmer = self.farmer
        if farmer.harvest_only or farmer.status is not FarmerStatus.PLANTING or self._backing_off():
            return False
        with self.block_state._lock:
            current_block = self.block_state.block
        block = current_block + (1 if next_block else 0)
        try:
            if self.ledger.get_pail(self.address, block) is not None:
                return False
            amount = self.resolve_stake()
            if not amount and not self.allow_zero_stake:
                self.log.info("Farmer %s has no stake configured, not planting %s", self.address, block)
                return False
            result = self.ledger.submit("plant", self.address, amount=amount)
        except LedgerError as e:
            self.log.error(
                "Farmer %s could not plant %s (next: %s): %s", self.address, block, next_block, describe_error(e)
            )
            self._back_off()
            return False

        with farmer.lock:
            farmer.stats.record_fee(result.fee_charged)
            farmer.stats.record_stake(amount, current_block)
            if not next_block:
                farmer.status = FarmerStatus.WORKING
        self.log.info("Farmer %s planted %s with %s KALE", self.address, block, to_kale(amount))
        return True

    def refresh_status(self) -> FarmerStatus:
        farmer = self.farmer
        if farmer.status is FarmerStatus.IDLE:
            return farmer.status
        with self.block_state._lock:
            block = self.block_state.block
        try:
            pail = self.ledger.get_pail(self.address, block)
        except LedgerError as e:
            self.log.error("Farmer %s status check failure %s: %s", self.address, block, describe_error(e))
            return farmer.status
        with farmer.lock:
            previous = farmer.status
            if pail is not None and pail.zeros:
                farmer.status = FarmerStatus.IDLE
            elif pail is not None and pail.sequence is not None and farmer.status is not FarmerStatus.WORKING:
                farmer.status = FarmerStatus.WORKING
            if farmer.status is not previous:
                self.log.info("Farmer %s is %s", self.address, farmer.status.label)
            return farmer.status

    def mine(self, elapsed: int, min_work_time: float) -> Optional[MiningAttempt]:
        """Run one search for the current block.

        In continuous mode a prior attempt is escalated by one difficulty
        level and killed once ``min_work_time`` is reached.
        """
        farmer = self.farmer
        if farmer.status is not FarmerStatus.WORKING or self._backing_off():
            return None
        previous = farmer.current_work
        if previous is not None and not self.continuous:
            return None
        with self.block_state._lock:
            block, entropy = self.block_state.block, self.block_state.hash
        if not entropy:
            self.log.info("Farmer %s waiting for block %s entropy", self.address, block)
            return None

        if previous is not None and previous.difficulty:
            difficulty = previous.difficulty + 1
            nonce = previous.nonce + 1 if previous.nonce else self.nonce
        else:
            difficulty = self.resolve_difficulty()
            nonce = self.nonce
        kill_after = None
        if previous is not None and self.continuous:
            kill_after = min_work_time - elapsed

        try:
            result = self.miner.run_search(block, entropy, nonce, difficulty, self.address, kill_after=kill_after)
        except MiningError as e:
            if not self.continuous:
                with farmer.lock:
                    farmer.current_work = None
            self.log.error("Farmer %s failed to work for %s: %s", self.address, block, e)
            if not e.killed:
                self._back_off()
            return MiningAttempt(succeeded=False, killed=e.killed)

        with farmer.lock:
            farmer.current_work = Work(hash=result.hash, nonce=result.nonce, difficulty=difficulty)
            farmer.stats.record_difficulty(difficulty)
        self.log.info("Farmer %s worked [%s, %s] for %s", self.address, result.hash, result.nonce, block)
        return MiningAttempt(succeeded=True, killed=result.killed)

    def submit_work(self) -> bool:
        farmer = self.farmer
        work = farmer.current_work
        if farmer.status is not FarmerStatus.WORKING or work is None or self._backing_off():
            return False
        with self.block_state._lock:
            block = self.block_state.block
        try:
            result = self.ledger.submit("work", self.address, hash=work.hash, nonce=work.nonce)
        except LedgerError as e:
            with farmer.lock:
                farmer.current_work = None
            self.log.error("Farmer %s could not submit work for block %s: %s", self.address, block, describe_error(e))
            self._back_off()
            return False

        gap = int(result.return_value or 0)
        with farmer.lock:
            farmer.stats.record_fee(result.fee_charged)
            farmer.stats.record_work(gap, work.difficulty)
        self.log.info(
            "Farmer %s submitted work [hash: %s, nonce: %s, gap: %s] for %s",
            self.address, work.hash, work.nonce, gap, block,
        )
        return True

    def complete_work(self) -> None:
        """Work phase of one tick: mine while time allows, submit once due."""
        farmer = self.farmer
        if farmer.status is not FarmerStatus.WORKING:
            return
        elapsed = self.block_state.elapsed(self.clock())
        min_work_time = self.resolve_min_work_time()

        attempt = None
        if min_work_time - SUBMIT_MARGIN_SECS > elapsed or farmer.current_work is None:
            attempt = self.mine(elapsed, min_work_time)
        killed = attempt is not None and attempt.killed
        if attempt is not None and attempt.succeeded and not killed:
            time_left = min_work_time - elapsed
            when = "immediately" if time_left <= 0 else f"later (minimum time: {time_left:.0f} sec)"
            self.log.info("Farmer %s submitting work %s", self.address, when)
            with farmer.lock:
                farmer.stats.work_time = self.clock() + max(0, time_left)
                farmer.stats.work_block = self.block_state.block

        if min_work_time <= elapsed or (killed and farmer.current_work is not None):
            self.submit_work()
            self.refresh_status()
