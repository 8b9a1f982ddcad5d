from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STROOPS_PER_KALE = 10_000_000

SUBMIT_OPS = ("plant", "work", "harvest", "tractor")


@dataclass
class ChainHead:
    block: int
    hash: Optional[str] = None


@dataclass
class BlockDetails:
    timestamp: int
    staked_total: int = 0
    zero_threshold: int = 0
    reclaimed: int = 0
    entropy: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "timestamp": self.timestamp,
                "staked_total": self.staked_total,
                "zero_threshold": self.zero_threshold,
                "reclaimed": self.reclaimed,
            }
        )
        return data


@dataclass
class Pail:
    sequence: Optional[int] = None
    zeros: Optional[int] = None
    stake: Optional[int] = None
    gap: Optional[int] = None

    @property
    def harvest_ready(self) -> bool:
        return bool(self.zeros) and self.sequence is not None


@dataclass
class SubmitResult:
    status: str
    tx_hash: Optional[str] = None
    fee_charged: int = 0
    return_value: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


class LedgerClient(ABC):
    """Boundary to the farm contract.

    Implementations own the signing secrets: orchestration code only ever
    handles public addresses. Every failure is raised as a
    :class:`KaleRig.errors.LedgerError` subclass.
    """

    def __init__(self):
        self.balances: Dict[str, Dict[str, str]] = {}

    @abstractmethod
    def add_signer(self, secret: str) -> str:
        """Register a signing secret and return its public address."""

    @abstractmethod
    def get_current_block(self) -> Optional[ChainHead]:
        ...

    @abstractmethod
    def get_block_details(self, block: int) -> Optional[BlockDetails]:
        ...

    @abstractmethod
    def get_pail(self, farmer: str, block: int) -> Optional[Pail]:
        ...

    @abstractmethod
    def submit(self, op: str, farmer: str, **args) -> SubmitResult:
        """Submit ``op`` for ``farmer`` and return the successful result.

        ``plant`` takes ``amount``, ``work`` takes ``hash`` and ``nonce``,
        ``harvest`` takes ``block`` and ``tractor`` takes ``blocks`` and
        ``contract``.
        """

    def close(self) -> None:
        pass


def to_kale(stroops) -> float:
    return int(stroops or 0) / STROOPS_PER_KALE


def rewards_to_kale(values: Optional[List[Any]]) -> List[float]:
    return [to_kale(v) for v in (values or [])]
