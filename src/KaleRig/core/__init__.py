"""Core farming logic module."""
from .farm import BlockMonitor, BlockTick, Farm
from .farmer import Farmer, FarmerRegistry, FarmerStateMachine, FarmerStats, FarmerStatus, Work
from .harvester import Harvester, HarvestRequest, parse_range
from .mining import MiningProcessController, SearchResult
from .state import BlockState, Session
from .strategy import Strategy, load_strategy

__all__ = [
    "BlockMonitor",
    "BlockState",
    "BlockTick",
    "Farm",
    "Farmer",
    "FarmerRegistry",
    "FarmerStateMachine",
    "FarmerStats",
    "FarmerStatus",
    "HarvestRequest",
    "Harvester",
    "MiningProcessController",
    "SearchResult",
    "Session",
    "Strategy",
    "Work",
    "load_strategy",
    "parse_range",
]
