"""Persistent farmer statistics storage for KaleRig."""
import json
import logging
import os
import threading
from datetime import datetime
from typing import Dict

from ..core.farmer import FarmerRegistry, FarmerStats

# Default path for statistics file
DEFAULT_STATS_FILE = os.path.join("data", "farmer_stats.json")

# Lock for thread-safe file operations
FILE_LOCK = threading.Lock()

logger = logging.getLogger("KaleRig.stats")


def _stats_file() -> str:
    return os.environ.get("STATS_FILE", DEFAULT_STATS_FILE)


def ensure_data_dir():
    """Ensure the data directory exists."""
    data_dir = os.path.dirname(os.path.abspath(_stats_file()))
    os.makedirs(data_dir, exist_ok=True)


def load_statistics() -> Dict:
    """Load the persisted per-farmer statistics, keyed by address."""
    stats_file = _stats_file()
    if not os.path.exists(stats_file):
        return {}
    try:
        with FILE_LOCK:
            with open(stats_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        farmers = data.get("farmers", {})
        return farmers if isinstance(farmers, dict) else {}
    except (json.JSONDecodeError, IOError, OSError) as e:
        # If file is corrupted or can't be read, start from empty stats
        logger.warning(f"Failed to load statistics from {stats_file}: {e}. Using defaults.")
        return {}


def load_farmer_stats(farmers: FarmerRegistry) -> int:
    """Restore saved statistics into the registered farmers. Returns how many were restored."""
    saved = load_statistics()
    restored = 0
    for farmer in farmers:
        data = saved.get(farmer.address)
        if not data:
            continue
        with farmer.lock:
            farmer.stats = FarmerStats.from_dict(data)
        restored += 1
    if restored:
        logger.info("Restored statistics for %s farmers", restored)
    return restored


def save_farmer_stats(farmers: FarmerRegistry) -> None:
    """Save every farmer's statistics (atomic replace)."""
    stats_file = _stats_file()
    ensure_data_dir()

    snapshot = {}
    for farmer in farmers:
        with farmer.lock:
            snapshot[farmer.address] = farmer.stats.to_dict()
    data = {"farmers": snapshot, "last_updated": datetime.now().isoformat()}

    try:
        with FILE_LOCK:
            # Write to temporary file first, then rename (atomic operation)
            temp_file = stats_file + ".tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_file, stats_file)
    except (IOError, OSError) as e:
        logger.error(f"Failed to save statistics to {stats_file}: {e}")
