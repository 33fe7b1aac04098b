import json
from datetime import timedelta
from decimal import Decimal

import pytest

from cryptotracker.services.pl_persistence import (
    AUTO_CORRECTION_COUNTER,
    BACKUP_KEY,
    CALCULATION_VERSION,
    MAX_CALCULATION_LOG,
    FULL_BACKUP_KEY,
    SNAPSHOT_KEY,
    TIME_SERIES_KEY,
    VALIDATION_CACHE_KEY,
    PLPersistenceService,
    compute_integrity_hash,
    repair_snapshot,
)


@pytest.fixture
def persistence(store, diagnostics, clock):
    return PLPersistenceService(store, diagnostics, clock=clock)


@pytest.mark.asyncio
async def test_round_trip(persistence, clock):
    assert await persistence.save_snapshot(
        Decimal("40000"), Decimal("36600"), Decimal("3400"), Decimal("9.29"), 2, source="test"
    )
    snapshot = await persistence.load_snapshot()

    assert snapshot.total_value == Decimal("40000")
    assert snapshot.total_invested == Decimal("36600")
    assert snapshot.profit_loss == Decimal("3400")
    assert snapshot.transaction_count == 2
    assert snapshot.source == "test"
    assert snapshot.calculation_version == CALCULATION_VERSION
    assert snapshot.timestamp == clock.now
    assert snapshot.last_auto_correction is None


@pytest.mark.asyncio
async def test_load_without_data_returns_none(persistence):
    assert await persistence.load_snapshot() is None


@pytest.mark.asyncio
async def test_inconsistent_snapshot_is_corrected_on_load(persistence, store, diagnostics):
    await persistence.save_snapshot(1000, 800, 500, 62.5, 1, source="test")

    snapshot = await persistence.load_snapshot()

    assert snapshot.profit_loss == Decimal("200")
    assert snapshot.percentage_change == Decimal("25")
    assert snapshot.integrity_hash == compute_integrity_hash(Decimal("1000"), Decimal("800"), Decimal("200"))
    assert snapshot.last_auto_correction is not None
    assert diagnostics.count(AUTO_CORRECTION_COUNTER) == 1

    persisted = json.loads(await store.get(SNAPSHOT_KEY))
    assert Decimal(persisted["profit_loss"]) == Decimal("200")

    await persistence.load_snapshot()
    assert diagnostics.count(AUTO_CORRECTION_COUNTER) == 1


@pytest.mark.asyncio
async def test_profit_loss_within_tolerance_is_left_alone(persistence, diagnostics):
    await persistence.save_snapshot("1000", "800", "200.005", "25", 1, source="test")

    snapshot = await persistence.load_snapshot()

    assert snapshot.profit_loss == Decimal("200.005")
    assert snapshot.last_auto_correction is None
    assert diagnostics.count(AUTO_CORRECTION_COUNTER) == 0


@pytest.mark.asyncio
async def test_tampered_hash_is_repaired(persistence, store):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    raw = json.loads(await store.get(SNAPSHOT_KEY))
    raw["integrity_hash"] = "0" * 64
    await store.set(SNAPSHOT_KEY, json.dumps(raw))

    snapshot = await persistence.load_snapshot()
    assert snapshot.integrity_hash == compute_integrity_hash(Decimal("1000"), Decimal("800"), Decimal("200"))


@pytest.mark.asyncio
async def test_integrity_gate_rejects_non_finite(persistence, store):
    assert not await persistence.save_snapshot(float("nan"), 100, 0, 0, 1, source="test")
    assert not await persistence.save_snapshot(100, float("inf"), 0, 0, 1, source="test")
    assert await store.get(SNAPSHOT_KEY) is None


@pytest.mark.asyncio
async def test_write_failure_keeps_previous_snapshot(persistence, store):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="first")
    store.fail_keys.add(SNAPSHOT_KEY)

    assert not await persistence.save_snapshot(5000, 800, 4200, 525, 2, source="second")

    store.fail_keys.clear()
    snapshot = await persistence.load_snapshot()
    assert snapshot.total_value == Decimal("1000")
    assert snapshot.source == "first"


@pytest.mark.asyncio
async def test_corrupted_primary_recovers_from_backup(persistence, store):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="first")
    await persistence.save_snapshot(1100, 800, 300, 37.5, 1, source="second")
    assert await store.get(BACKUP_KEY) is not None

    await store.set(SNAPSHOT_KEY, json.dumps({"total_value": "1100"}))
    assert await persistence.load_snapshot(use_backup_if_corrupted=False) is None

    snapshot = await persistence.load_snapshot()
    assert snapshot.source == "first"
    assert snapshot.total_value == Decimal("1000")
    # The recovered snapshot is written back to the primary slot
    assert json.loads(await store.get(SNAPSHOT_KEY))["source"] == "first"


@pytest.mark.asyncio
async def test_snapshot_outside_time_window_is_rejected(persistence, clock):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    clock.advance(days=366)
    assert await persistence.load_snapshot() is None


@pytest.mark.asyncio
async def test_snapshot_from_the_future_is_rejected(persistence, clock):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    clock.advance(hours=-2)
    assert await persistence.load_snapshot() is None


def test_repair_snapshot_is_pure(clock):
    from cryptotracker.schemas.snapshot import PLSnapshot

    broken = PLSnapshot(
        total_value=Decimal("100"),
        total_invested=Decimal("0"),
        profit_loss=Decimal("5"),
        percentage_change=Decimal("3"),
        timestamp=clock.now,
        calculation_version=CALCULATION_VERSION,
        integrity_hash="bad",
        write_id="1",
    )
    repaired, changed = repair_snapshot(broken, clock.now)

    assert changed
    assert repaired.profit_loss == Decimal("100")
    assert repaired.percentage_change == Decimal("0")
    assert broken.profit_loss == Decimal("5")

    again, changed_again = repair_snapshot(repaired, clock.now)
    assert not changed_again
    assert again is repaired


@pytest.mark.asyncio
async def test_validate_consistency(persistence, store):
    ok = await persistence.validate_consistency(Decimal("1000"), Decimal("800"), Decimal("200.005"))
    assert ok.is_valid

    bad = await persistence.validate_consistency(Decimal("1000"), Decimal("800"), Decimal("200.02"))
    assert not bad.is_valid
    assert bad.expected_pl == Decimal("200")
    assert bad.difference == Decimal("0.02")
    assert json.loads(await store.get(VALIDATION_CACHE_KEY))["is_valid"] is False


@pytest.mark.asyncio
async def test_time_series_sorted_and_filtered(persistence, clock):
    for value in (100, 200, 300):
        await persistence.save_snapshot(value, 50, value - 50, 0, 1, source="test")
        clock.advance(days=1)

    points = await persistence.get_time_series()
    assert [p.total_value for p in points] == [Decimal("100"), Decimal("200"), Decimal("300")]

    recent = await persistence.get_time_series(timedelta(hours=36))
    assert [p.total_value for p in recent] == [Decimal("300")]


@pytest.mark.asyncio
async def test_time_series_keeps_floor_of_ten(persistence, clock):
    for i in range(12):
        await persistence.save_snapshot(100 + i, 50, 50 + i, 0, 1, source="test")
        clock.advance(days=20)

    points = await persistence.get_time_series()
    assert len(points) == 10
    assert points[-1].total_value == Decimal("111")


@pytest.mark.asyncio
async def test_time_series_prunes_beyond_ninety_days(persistence, clock):
    for _ in range(3):
        await persistence.save_snapshot(1, 1, 0, 0, 1, source="old")
    clock.advance(days=100)
    for _ in range(12):
        await persistence.save_snapshot(2, 1, 1, 100, 1, source="new")
        clock.advance(hours=1)

    points = await persistence.get_time_series()
    assert len(points) == 12
    assert {p.source for p in points} == {"new"}


@pytest.mark.asyncio
async def test_time_series_failure_does_not_fail_save(persistence, store):
    store.fail_keys.add(TIME_SERIES_KEY)
    assert await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")


@pytest.mark.asyncio
async def test_check_inactivity(persistence, clock):
    first = await persistence.check_inactivity()
    assert not first.has_data
    assert first.is_first_use

    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    clock.advance(hours=5)
    fresh = await persistence.check_inactivity()
    assert fresh.has_data
    assert fresh.inactive_hours == 5
    assert not fresh.is_long_inactive

    clock.advance(hours=25)
    stale = await persistence.check_inactivity()
    assert stale.inactive_hours == 30
    assert stale.is_long_inactive
    assert stale.portfolio_value == Decimal("1000")


@pytest.mark.asyncio
async def test_clear_all_archives_then_wipes(persistence, store):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")

    result = await persistence.clear_all()

    assert result.success
    assert result.backup_created
    assert result.keys_cleared >= 2
    assert await store.get(SNAPSHOT_KEY) is None
    assert await persistence.get_time_series() == []
    archive = json.loads(await store.get(FULL_BACKUP_KEY))
    assert SNAPSHOT_KEY in archive["data"]


@pytest.mark.asyncio
async def test_clear_all_without_backup(persistence, store):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    result = await persistence.clear_all(create_backup=False)
    assert not result.backup_created
    assert await store.get(FULL_BACKUP_KEY) is None


@pytest.mark.asyncio
async def test_diagnostic_info(persistence):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    await persistence.save_snapshot(float("nan"), 800, 200, 25, 1, source="test")

    info = await persistence.get_diagnostic_info()

    assert info["snapshot"]["source"] == "test"
    assert info["time_series_points"] == 1
    assert info["error_count"] == 1
    assert SNAPSHOT_KEY in info["storage_keys"]


@pytest.mark.asyncio
async def test_calculation_log_is_bounded(persistence):
    await persistence.save_snapshot(1000, 800, 200, 25, 1, source="test")
    assert (await persistence.get_calculation_log())[-1]["event"] == "snapshot_saved"

    for i in range(MAX_CALCULATION_LOG + 5):
        await persistence.log_calculation({"event": "tick", "n": i})

    log = await persistence.get_calculation_log()
    assert len(log) == MAX_CALCULATION_LOG
    assert log[-1]["n"] == MAX_CALCULATION_LOG + 4
