"""
Pytest fixtures and test configuration for the KaleRig test suite.
"""
import os
import stat
import sys
import textwrap

import pytest

from KaleRig.clients.ledger import BlockDetails, ChainHead, LedgerClient, Pail, SubmitResult
from KaleRig.core.farmer import Farmer, FarmerRegistry
from KaleRig.core.mining import MiningProcessController
from KaleRig.core.state import BlockState, Session

ALICE = "GALICE"
BOB = "GBOB"


# ============================================================================
# Ledger Fixtures
# ============================================================================

class FakeLedger(LedgerClient):
    """Scripted in-memory ledger.

    ``results[op]`` is a queue of SubmitResult instances or exceptions; once
    empty every submit succeeds. Successful plant/work calls update the pail
    of the current head block the way the contract does.
    """

    def __init__(self):
        super().__init__()
        self.head = None
        self.details = {}
        self.pails = {}
        self.results = {}
        self.calls = []
        self.head_error = None
        self.details_error = None
        self.pail_errors = {}

    def add_signer(self, secret):
        return "G" + secret.upper()

    def set_block(self, block, timestamp, entropy="ab12"):
        self.head = ChainHead(block=block, hash=entropy)
        self.details[block] = BlockDetails(timestamp=timestamp, entropy=entropy)

    def get_current_block(self):
        if self.head_error is not None:
            raise self.head_error
        return self.head

    def get_block_details(self, block):
        self.calls.append(("details", block))
        if self.details_error is not None:
            raise self.details_error
        return self.details.get(block)

    def get_pail(self, farmer, block):
        self.calls.append(("get_pail", farmer, block))
        if (farmer, block) in self.pail_errors:
            raise self.pail_errors[(farmer, block)]
        return self.pails.get((farmer, block))

    def submit(self, op, farmer, **args):
        self.calls.append((op, farmer, args))
        queue = self.results.get(op) or []
        outcome = queue.pop(0) if queue else SubmitResult(status="SUCCESS", tx_hash=f"tx-{op}")
        if isinstance(outcome, Exception):
            raise outcome
        block = self.head.block if self.head else 0
        if op == "plant":
            self.pails[(farmer, block)] = Pail(sequence=1, stake=args["amount"])
        elif op == "work":
            pail = self.pails.setdefault((farmer, block), Pail(sequence=1))
            pail.zeros = len(args["hash"]) - len(args["hash"].lstrip("0")) or 1
        return outcome

    def submitted(self, op):
        return [call for call in self.calls if call[0] == op]


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def block_state():
    return BlockState()


@pytest.fixture
def session():
    return Session()


# ============================================================================
# Farmer Fixtures
# ============================================================================

@pytest.fixture
def alice():
    return Farmer(address=ALICE, stake=100)


@pytest.fixture
def farmers(alice):
    return FarmerRegistry([alice, Farmer(address=BOB)])


# ============================================================================
# Miner Fixtures
# ============================================================================

def write_miner(tmp_path, body, name="miner"):
    """Write an executable Python stub miner and return its path."""
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def make_miner(tmp_path, session):
    def _make(body, **kwargs):
        return MiningProcessController(write_miner(tmp_path, body), session, **kwargs)
    return _make


@pytest.fixture
def found_miner(make_miner):
    """Miner that reports a hash rate and prints a result split over several lines."""
    return make_miner(
        """
        import json, sys
        print("[CPU] Hash Rate: 12.5 MH/s", flush=True)
        print("{")
        print('  "hash": "00000ab12",')
        print('  "nonce": 42')
        print("}")
        """
    )


@pytest.fixture(autouse=True)
def isolated_data(tmp_path, monkeypatch):
    """Keep stats and dead-letter files inside the test's temp dir."""
    monkeypatch.setenv("STATS_FILE", os.path.join(str(tmp_path), "data", "farmer_stats.json"))
    monkeypatch.setenv("STATE_DB", os.path.join(str(tmp_path), "data", "state.db"))
