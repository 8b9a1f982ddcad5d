import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..clients.ledger import BlockDetails


@dataclass
class BlockState:
    block: int = 0
    hash: Optional[str] = None
    details: Optional[BlockDetails] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def elapsed(self, now: Optional[float] = None) -> int:
        """Seconds since the current block's timestamp, 0 without details."""
        with self._lock:
            if self.details is None or not self.details.timestamp:
                return 0
            timestamp = int(self.details.timestamp)
        now = int(now if now is not None else time.time())
        return now - timestamp

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "block": self.block,
                "hash": self.hash,
                "details": copy.deepcopy(self.details.to_dict()) if self.details else None,
            }


@dataclass
class Session:
    start_time: Optional[float] = None
    gpu: bool = False
    hashrate: str = ""
    relay_credits: Optional[int] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def update(self, **values) -> None:
        with self._lock:
            for key, value in values.items():
                setattr(self, key, value)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "start_time": self.start_time,
                "uptime_seconds": int(time.time() - self.start_time) if self.start_time else 0,
                "gpu": self.gpu,
                "hashrate": self.hashrate,
                "relay_credits": self.relay_credits,
            }
