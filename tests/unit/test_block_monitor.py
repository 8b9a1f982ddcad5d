from KaleRig.core.farm import STALE_BLOCK_SECS, BlockMonitor
from KaleRig.core.farmer import FarmerStatus, Work
from KaleRig.errors import TransportError

from conftest import ALICE


def _monitor(ledger, block_state, farmers, clock):
    return BlockMonitor(ledger, block_state, farmers, clock=clock)


def test_missing_index_skips_tick(ledger, block_state, farmers, clock):
    assert _monitor(ledger, block_state, farmers, clock).poll() is None


def test_read_failure_skips_tick(ledger, block_state, farmers, clock):
    ledger.head_error = TransportError("down")
    assert _monitor(ledger, block_state, farmers, clock).poll() is None


def test_new_block_resets_every_farmer(ledger, block_state, farmers, clock):
    for farmer in farmers:
        farmer.status = FarmerStatus.IDLE
        farmer.current_work = Work(hash="00ab", nonce=1, difficulty=6)
        farmer.harvested_current_cycle = True
    ledger.set_block(100, timestamp=int(clock()) - 30)

    tick = _monitor(ledger, block_state, farmers, clock).poll()

    assert tick.block == 100 and tick.changed and tick.reset and not tick.stale
    assert tick.elapsed == 30
    assert block_state.hash == "ab12"
    for farmer in farmers:
        assert farmer.status is FarmerStatus.PLANTING
        assert farmer.current_work is None
        assert farmer.harvested_current_cycle is False


def test_same_block_does_not_reset(ledger, block_state, farmers, clock):
    ledger.set_block(100, timestamp=int(clock()))
    monitor = _monitor(ledger, block_state, farmers, clock)
    monitor.poll()
    farmers[ALICE].status = FarmerStatus.WORKING

    tick = monitor.poll()

    assert not tick.changed and not tick.reset
    assert farmers[ALICE].status is FarmerStatus.WORKING


def test_stale_block_resets_once(ledger, block_state, farmers, clock):
    ledger.set_block(100, timestamp=int(clock()))
    monitor = _monitor(ledger, block_state, farmers, clock)
    monitor.poll()
    clock.advance(STALE_BLOCK_SECS + 1)
    farmers[ALICE].status = FarmerStatus.IDLE

    first = monitor.poll()
    assert first.stale and first.reset and not first.changed
    assert farmers[ALICE].status is FarmerStatus.PLANTING

    farmers[ALICE].status = FarmerStatus.WORKING
    second = monitor.poll()
    assert second.stale and not second.reset
    assert farmers[ALICE].status is FarmerStatus.WORKING


def test_details_fetch_retried_until_available(ledger, block_state, farmers, clock):
    ledger.set_block(100, timestamp=int(clock()) - 10)
    details = ledger.details.pop(100)
    monitor = _monitor(ledger, block_state, farmers, clock)

    tick = monitor.poll()
    assert tick.changed and block_state.hash is None and tick.elapsed == 0

    ledger.details[100] = details
    monitor.poll()
    assert block_state.hash == "ab12"
    assert block_state.elapsed(clock()) == 10
    assert ledger.calls.count(("details", 100)) == 2


def test_details_failure_is_not_fatal(ledger, block_state, farmers, clock):
    ledger.set_block(100, timestamp=int(clock()))
    ledger.details_error = TransportError("rpc down")
    tick = _monitor(ledger, block_state, farmers, clock).poll()
    assert tick.block == 100
    assert block_state.details is None
