"""Durable storage of the canonical P&L snapshot and its time series.

The snapshot is the last known portfolio value/invested/P&L triple. It is
written behind an integrity gate, backed up before every overwrite and
repaired on every load so callers always receive ``profit_loss ==
total_value - total_invested``. Public methods never raise: failures are
logged and turned into ``False``, ``None`` or ``[]``.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from cryptotracker.errors import IntegrityError
from cryptotracker.schemas.snapshot import (
    ClearResult,
    ConsistencyReport,
    InactivityStatus,
    PLSnapshot,
    TimeSeriesPoint,
)
from cryptotracker.services.cache import Clock, utcnow
from cryptotracker.services.diagnostics import DiagnosticsService, LogCategory, LogLevel
from cryptotracker.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

CALCULATION_VERSION = "2.1.0"

SNAPSHOT_KEY = "pl_snapshot_data_v2"
TIME_SERIES_KEY = "pl_time_series_data_v2"
CALCULATION_LOG_KEY = "pl_calculation_log_v2"
VALIDATION_CACHE_KEY = "pl_validation_cache_v2"
DIAGNOSTICS_LOG_KEY = "pl_diagnostics_log_v2"
BACKUP_KEY = "pl_backup_data_v2"
FULL_BACKUP_KEY = "pl_backup_data_v2_full"

PL_KEYS = [
    SNAPSHOT_KEY,
    TIME_SERIES_KEY,
    CALCULATION_LOG_KEY,
    VALIDATION_CACHE_KEY,
    DIAGNOSTICS_LOG_KEY,
    BACKUP_KEY,
]

TOLERANCE = Decimal("0.01")
TIME_SERIES_RETENTION = timedelta(days=90)
TIME_SERIES_FLOOR = 10
MAX_CALCULATION_LOG = 100
MAX_DIAGNOSTICS_LOG = 200
MAX_SNAPSHOT_AGE = timedelta(days=365)
MAX_CLOCK_SKEW = timedelta(hours=1)
LONG_INACTIVITY_HOURS = 24

AUTO_CORRECTION_COUNTER = "pl.auto_correction"


def compute_integrity_hash(
    total_value: Decimal, total_invested: Decimal, profit_loss: Decimal, version: str = CALCULATION_VERSION
) -> str:
    payload = f"{total_value:.8f}_{total_invested:.8f}_{profit_loss:.8f}_{version}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def percentage_of(profit_loss: Decimal, total_invested: Decimal) -> Decimal:
    if total_invested == 0:
        return Decimal("0")
    return profit_loss / abs(total_invested) * 100


def repair_snapshot(snapshot: PLSnapshot, now: datetime) -> Tuple[PLSnapshot, bool]:
    """Return a snapshot whose P&L, percentage and hash agree with value - invested.

    The second element tells whether anything had to change. Pure: the input
    is never modified.
    """
    expected_pl = snapshot.total_value - snapshot.total_invested
    stored_hash = compute_integrity_hash(
        snapshot.total_value, snapshot.total_invested, snapshot.profit_loss, snapshot.calculation_version
    )
    if snapshot.integrity_hash == stored_hash and abs(snapshot.profit_loss - expected_pl) <= TOLERANCE:
        return snapshot, False

    expected_hash = compute_integrity_hash(
        snapshot.total_value, snapshot.total_invested, expected_pl, snapshot.calculation_version
    )

    repaired = snapshot.model_copy(
        update={
            "profit_loss": expected_pl,
            "percentage_change": percentage_of(expected_pl, snapshot.total_invested),
            "integrity_hash": expected_hash,
            "last_auto_correction": now,
        }
    )
    return repaired, True


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("NaN")


class PLPersistenceService:
    def __init__(self, store: KeyValueStore, diagnostics: DiagnosticsService, clock: Clock = utcnow):
        self.store = store
        self.diagnostics = diagnostics
        self._clock = clock

    async def _append_bounded(self, key: str, entry: Dict[str, Any], limit: int) -> None:
        entries = await self.store.get_json(key, [])
        if not isinstance(entries, list):
            entries = []
        entries.append(entry)
        await self.store.set_json(key, entries[-limit:])

    async def _record(
        self, level: LogLevel, message: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Diagnostics sink plus the persisted P&L diagnostics log."""
        self.diagnostics.log(level, LogCategory.DATABASE, message, details)
        try:
            await self._append_bounded(
                DIAGNOSTICS_LOG_KEY,
                {
                    "timestamp": self._clock().isoformat(),
                    "level": level.value,
                    "message": message,
                    "details": details or {},
                },
                MAX_DIAGNOSTICS_LOG,
            )
        except Exception as e:
            logger.debug(f"Could not persist P&L diagnostic entry: {e}")

    async def log_calculation(self, entry: Dict[str, Any]) -> None:
        try:
            await self._append_bounded(
                CALCULATION_LOG_KEY,
                {"timestamp": self._clock().isoformat(), **entry},
                MAX_CALCULATION_LOG,
            )
        except Exception as e:
            logger.debug(f"Could not persist calculation log entry: {e}")

    async def get_calculation_log(self) -> List[Dict[str, Any]]:
        entries = await self.store.get_json(CALCULATION_LOG_KEY, [])
        return entries if isinstance(entries, list) else []

    def _new_write_id(self) -> str:
        now = self._clock()
        return f"{int(now.timestamp() * 1000)}_{now.microsecond}"

    def _check_integrity(self, raw: Any) -> PLSnapshot:
        if not isinstance(raw, dict):
            raise IntegrityError("snapshot is not an object")
        try:
            snapshot = PLSnapshot.model_validate(raw)
        except PydanticValidationError as e:
            raise IntegrityError(f"missing or malformed fields: {e.error_count()} errors") from e

        for name in ("total_value", "total_invested", "profit_loss"):
            if not getattr(snapshot, name).is_finite():
                raise IntegrityError(f"{name} is not finite")

        if snapshot.timestamp.tzinfo is None:
            snapshot = snapshot.model_copy(update={"timestamp": snapshot.timestamp.replace(tzinfo=timezone.utc)})

        now = self._clock()
        if not (now - MAX_SNAPSHOT_AGE <= snapshot.timestamp <= now + MAX_CLOCK_SKEW):
            raise IntegrityError(f"timestamp {snapshot.timestamp.isoformat()} outside accepted window")
        return snapshot

    async def save_snapshot(
        self,
        total_value: Any,
        total_invested: Any,
        profit_loss: Any,
        percentage_change: Any,
        transaction_count: int,
        source: str = "unknown",
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            value = _to_decimal(total_value)
            invested = _to_decimal(total_invested)
            pl = _to_decimal(profit_loss)
            pct = _to_decimal(percentage_change)
            if not all(n.is_finite() for n in (value, invested, pl)) or not source:
                await self._record(
                    LogLevel.ERROR,
                    "Snapshot rejected by integrity gate",
                    {"total_value": str(value), "total_invested": str(invested),
                     "profit_loss": str(pl), "source": source},
                )
                return False
            if not pct.is_finite():
                pct = percentage_of(pl, invested)

            now = self._clock()
            snapshot = PLSnapshot(
                total_value=value,
                total_invested=invested,
                profit_loss=pl,
                percentage_change=pct,
                transaction_count=transaction_count,
                timestamp=now,
                calculation_version=CALCULATION_VERSION,
                source=source,
                extra=extra or {},
                integrity_hash=compute_integrity_hash(value, invested, pl),
                write_id=self._new_write_id(),
            )

            previous = await self.store.get(SNAPSHOT_KEY)
            if previous is not None:
                await self.store.set(BACKUP_KEY, previous)

            if not await self.store.set_json(SNAPSHOT_KEY, snapshot.model_dump(mode="json")):
                if previous is not None:
                    await self.store.set(SNAPSHOT_KEY, previous)
                await self._record(
                    LogLevel.ERROR,
                    "Snapshot write failed, previous snapshot restored",
                    {"write_id": snapshot.write_id, "source": source},
                )
                return False

            try:
                await self._append_time_series(snapshot)
            except Exception as e:
                logger.warning(f"Time series append failed for {snapshot.write_id}: {e}")

            await self.log_calculation(
                {"event": "snapshot_saved", "write_id": snapshot.write_id, "source": source,
                 "total_value": str(value), "total_invested": str(invested), "profit_loss": str(pl)}
            )
            await self._record(
                LogLevel.INFO,
                "Snapshot saved",
                {"write_id": snapshot.write_id, "source": source, "total_value": str(value)},
            )
            return True
        except Exception as e:
            logger.error(f"Failed to save P&L snapshot: {e}", exc_info=True)
            return False

    async def _persist_repaired(self, snapshot: PLSnapshot, origin: str) -> None:
        self.diagnostics.increment(AUTO_CORRECTION_COUNTER)
        await self.store.set_json(SNAPSHOT_KEY, snapshot.model_dump(mode="json"))
        await self._record(
            LogLevel.WARNING,
            "Snapshot auto-corrected on load",
            {"origin": origin, "write_id": snapshot.write_id,
             "profit_loss": str(snapshot.profit_loss)},
        )

    async def load_snapshot(self, use_backup_if_corrupted: bool = True) -> Optional[PLSnapshot]:
        try:
            raw = await self.store.get_json(SNAPSHOT_KEY)
            if raw is None:
                return None

            origin = "primary"
            try:
                snapshot = self._check_integrity(raw)
            except IntegrityError as e:
                await self._record(LogLevel.WARNING, "Primary snapshot failed integrity check", {"error": str(e)})
                if not use_backup_if_corrupted:
                    return None
                try:
                    snapshot = self._check_integrity(await self.store.get_json(BACKUP_KEY))
                except IntegrityError as backup_error:
                    await self._record(
                        LogLevel.ERROR, "Backup snapshot unusable", {"error": str(backup_error)}
                    )
                    return None
                origin = "backup"

            snapshot, repaired = repair_snapshot(snapshot, self._clock())
            if repaired:
                await self._persist_repaired(snapshot, origin)
            elif origin == "backup":
                await self.store.set_json(SNAPSHOT_KEY, snapshot.model_dump(mode="json"))
                await self._record(LogLevel.INFO, "Snapshot recovered from backup", {"write_id": snapshot.write_id})
            return snapshot
        except Exception as e:
            logger.error(f"Failed to load P&L snapshot: {e}", exc_info=True)
            return None

    async def validate_consistency(
        self, total_value: Decimal, total_invested: Decimal, profit_loss: Decimal
    ) -> ConsistencyReport:
        expected = total_value - total_invested
        difference = abs(profit_loss - expected)
        report = ConsistencyReport(
            is_valid=difference <= TOLERANCE,
            expected_pl=expected,
            actual_pl=profit_loss,
            difference=difference,
            tolerance=TOLERANCE,
            checked_at=self._clock(),
        )
        try:
            await self.store.set_json(VALIDATION_CACHE_KEY, report.model_dump(mode="json"))
            if not report.is_valid:
                await self._record(
                    LogLevel.WARNING,
                    "P&L consistency check failed",
                    {"expected": str(expected), "actual": str(profit_loss), "difference": str(difference)},
                )
        except Exception as e:
            logger.warning(f"Could not record consistency check: {e}")
        return report

    async def _load_points(self) -> List[TimeSeriesPoint]:
        raw = await self.store.get_json(TIME_SERIES_KEY, [])
        if not isinstance(raw, list):
            return []
        points = []
        for item in raw:
            try:
                points.append(TimeSeriesPoint.model_validate(item))
            except PydanticValidationError:
                continue
        return sorted(points, key=lambda p: p.timestamp)

    def _prune(self, points: List[TimeSeriesPoint]) -> List[TimeSeriesPoint]:
        cutoff = self._clock() - TIME_SERIES_RETENTION
        recent = [p for p in points if p.timestamp >= cutoff]
        if len(recent) < TIME_SERIES_FLOOR:
            return points[-TIME_SERIES_FLOOR:]
        return recent

    async def _append_time_series(self, snapshot: PLSnapshot) -> None:
        points = await self._load_points()
        points.append(
            TimeSeriesPoint(
                timestamp=snapshot.timestamp,
                total_value=snapshot.total_value,
                total_invested=snapshot.total_invested,
                profit_loss=snapshot.profit_loss,
                percentage_change=snapshot.percentage_change,
                write_id=snapshot.write_id,
                source=snapshot.source,
            )
        )
        points = self._prune(sorted(points, key=lambda p: p.timestamp))
        if not await self.store.set_json(TIME_SERIES_KEY, [p.model_dump(mode="json") for p in points]):
            logger.warning("Failed to persist P&L time series")

    async def get_time_series(self, period: Optional[timedelta] = None) -> List[TimeSeriesPoint]:
        try:
            points = await self._load_points()
            if period is not None:
                cutoff = self._clock() - period
                points = [p for p in points if p.timestamp >= cutoff]
            return points
        except Exception as e:
            logger.error(f"Failed to read P&L time series: {e}")
            return []

    async def check_inactivity(self) -> InactivityStatus:
        snapshot = await self.load_snapshot()
        if snapshot is None:
            return InactivityStatus(
                has_data=False,
                is_first_use=True,
                message="No saved portfolio yet",
            )

        hours = max(0, int((self._clock() - snapshot.timestamp).total_seconds() // 3600))
        long_inactive = hours >= LONG_INACTIVITY_HOURS
        if long_inactive:
            message = f"Last update {hours}h ago, refresh recommended"
        elif hours > 0:
            message = f"Last update {hours}h ago"
        else:
            message = "Portfolio is up to date"
        return InactivityStatus(
            has_data=True,
            is_first_use=False,
            inactive_hours=hours,
            is_long_inactive=long_inactive,
            last_updated=snapshot.timestamp,
            portfolio_value=snapshot.total_value,
            profit_loss=snapshot.profit_loss,
            message=message,
        )

    async def clear_all(self, create_backup: bool = True) -> ClearResult:
        now = self._clock()
        try:
            backup_created = False
            if create_backup:
                archive = {}
                for key in PL_KEYS:
                    raw = await self.store.get(key)
                    if raw is not None:
                        archive[key] = raw
                if archive:
                    backup_created = await self.store.set_json(
                        FULL_BACKUP_KEY, {"archived_at": now.isoformat(), "data": archive}
                    )

            cleared = 0
            for key in PL_KEYS:
                if await self.store.remove(key):
                    cleared += 1

            self.diagnostics.info(
                LogCategory.DATABASE, "P&L data cleared", {"keys_cleared": cleared, "backup": backup_created}
            )
            return ClearResult(success=True, backup_created=backup_created, keys_cleared=cleared, cleared_at=now)
        except Exception as e:
            logger.error(f"Failed to clear P&L data: {e}", exc_info=True)
            return ClearResult(success=False, cleared_at=now, error=str(e))

    async def get_diagnostic_info(self) -> Dict[str, Any]:
        try:
            snapshot = await self.load_snapshot(use_backup_if_corrupted=False)
            points = await self._load_points()
            calculations = await self.get_calculation_log()
            entries = await self.store.get_json(DIAGNOSTICS_LOG_KEY, [])
            if not isinstance(entries, list):
                entries = []
            present = [key for key in PL_KEYS if await self.store.get(key) is not None]
            return {
                "timestamp": self._clock().isoformat(),
                "calculation_version": CALCULATION_VERSION,
                "snapshot": snapshot.model_dump(mode="json") if snapshot else None,
                "time_series_points": len(points),
                "calculation_log_entries": len(calculations),
                "storage_keys": present,
                "error_count": sum(1 for e in entries if e.get("level") == LogLevel.ERROR.value),
                "warning_count": sum(1 for e in entries if e.get("level") == LogLevel.WARNING.value),
                "auto_corrections": self.diagnostics.count(AUTO_CORRECTION_COUNTER),
                "recent_diagnostics": entries[-10:],
            }
        except Exception as e:
            logger.error(f"Failed to collect P&L diagnostics: {e}")
            return {"error": str(e)}
