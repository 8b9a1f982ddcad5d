import pytest

from KaleRig.core.farmer import FarmerStats


def test_harvest_min_max_avg():
    stats = FarmerStats()
    for block, amount in enumerate([3.0, 1.0, 5.0], start=10):
        stats.record_harvest(amount, block)
    assert stats.min_amount == 1.0
    assert stats.max_amount == 5.0
    assert stats.avg_amount == pytest.approx(3.0)
    assert stats.amount == pytest.approx(9.0)
    assert stats.harvest_count == 3
    assert stats.last_amount == 5.0
    assert stats.last_block == 12


def test_empty_averages_are_zero():
    stats = FarmerStats()
    assert stats.avg_amount == 0.0
    assert stats.avg_fee == 0.0
    assert stats.avg_gap == 0.0


def test_fee_and_work_tracking():
    stats = FarmerStats()
    stats.record_fee(300)
    stats.record_fee(100)
    stats.record_work(gap=4, difficulty=7)
    stats.record_work(gap=2, difficulty=8)
    assert (stats.min_fee, stats.max_fee, stats.avg_fee) == (100, 300, 200)
    assert (stats.min_gap, stats.max_gap, stats.work_gap) == (2, 4, 2)
    assert stats.avg_gap == 3
    assert (stats.min_diff, stats.max_diff, stats.last_diff) == (7, 8, 8)
    assert stats.diffs == 15


def test_stake_recorded_in_kale():
    stats = FarmerStats()
    stats.record_stake(25_000_000, 100)
    assert stats.stake == 2.5
    assert stats.stake_block == 100


def test_dict_roundtrip_ignores_derived_and_unknown_keys():
    stats = FarmerStats()
    stats.record_harvest(4.25, 100)
    data = stats.to_dict()
    assert data["avg_amount"] == 4.25
    data["unknown"] = 1
    restored = FarmerStats.from_dict(data)
    assert restored == stats
