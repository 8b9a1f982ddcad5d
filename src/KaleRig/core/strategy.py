"""Pluggable farming strategy.

Subclass :class:`Strategy` to compute the stake, difficulty and minimum work
time of each farmer from runtime conditions, and point ``farm.strategy`` in
the configuration at it (``"my_module:MyStrategy"``). Returning ``None`` from
any hook falls back to the farmer's static configuration.
"""
import importlib
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("KaleRig.strategy")


class Strategy:
    def stake(self, address: str, block_state: Dict[str, Any]) -> Optional[int]:
        return None

    def difficulty(self, address: str, block_state: Dict[str, Any]) -> Optional[int]:
        return None

    def min_work_time(self, address: str, block_state: Dict[str, Any]) -> Optional[float]:
        return None


def load_strategy(spec: Optional[str]) -> Strategy:
    """Load ``module:attribute``; classes are instantiated, instances used as-is."""
    if not spec:
        return Strategy()
    module_name, _, attr = spec.partition(":")
    module = importlib.import_module(module_name)
    target = getattr(module, attr or "strategy")
    if isinstance(target, type):
        target = target()
    logger.info("Loaded strategy %s", spec)
    return target
