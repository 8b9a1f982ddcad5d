"""Status snapshot for the web dashboard."""
import logging
import threading
from typing import Dict

import psutil

from .. import db
from ..utils.formatting import format_kale

STATUS_LOCK = threading.Lock()

PERFORMANCE: Dict = {
    "cpu_usage": 0.0,
    "memory_usage": 0.0,
}


def update_performance_metrics():
    """Update CPU and memory metrics"""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory_percent = psutil.virtual_memory().percent
        with STATUS_LOCK:
            PERFORMANCE["cpu_usage"] = cpu_percent
            PERFORMANCE["memory_usage"] = memory_percent
    except (psutil.Error, OSError) as e:
        logging.getLogger("KaleRig.web").debug(f"Performance metrics unavailable: {e}")


def get_performance() -> Dict:
    with STATUS_LOCK:
        return dict(PERFORMANCE)


def farmers_snapshot(farm) -> list:
    farmers = []
    for farmer in farm.farmers:
        entry = farmer.to_dict()
        entry["harvested"] = format_kale(farmer.stats.amount)
        farmers.append(entry)
    return farmers


def harvests_snapshot(farm) -> Dict:
    pending = [
        {"farmer": r.farmer, "block": r.block, "time": r.time, "retries": r.retries}
        for r in farm.harvester.pending()
    ]
    return {
        "mode": "tractor" if farm.harvester.tractor_enabled else "direct",
        "pending": pending,
        "abandoned": db.list_abandoned(),
    }


def build_snapshot(farm) -> Dict:
    """Full read-only view of the farm for the dashboard and the /status route."""
    return {
        "data": farm.block_state.snapshot(),
        "balances": dict(farm.ledger.balances),
        "farmers": farmers_snapshot(farm),
        "session": farm.session.snapshot(),
        "harvests": harvests_snapshot(farm),
        "performance": get_performance(),
    }
