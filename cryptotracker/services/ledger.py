import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from cryptotracker.errors import NotFoundError, StorageFailure, ValidationError
from cryptotracker.schemas.transaction import (
    Transaction,
    TransactionCreate,
    TransactionKind,
    TransactionStatistics,
)
from cryptotracker.services.cache import Clock, utcnow
from cryptotracker.services.diagnostics import DiagnosticsService, LogCategory
from cryptotracker.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

TransactionListener = Callable[[str, Transaction], Awaitable[None]]
TransactionInput = Union[TransactionCreate, Dict[str, Any]]

RECENT_LIMIT = 10


def _coerce(fields: TransactionInput) -> TransactionCreate:
    if isinstance(fields, TransactionCreate):
        return fields
    try:
        return TransactionCreate.model_validate(fields)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid transaction fields: {e}") from e


def _validate(data: TransactionCreate) -> TransactionKind:
    """Check the ledger invariant and return the normalized kind."""
    if not data.amount.is_finite() or data.amount <= 0:
        raise ValidationError(f"amount must be greater than zero, got {data.amount}")
    if not data.price_per_unit.is_finite() or data.price_per_unit <= 0:
        raise ValidationError(f"price_per_unit must be greater than zero, got {data.price_per_unit}")
    try:
        return TransactionKind(data.kind.strip().lower())
    except ValueError:
        raise ValidationError(f"kind must be 'buy' or 'sell', got {data.kind!r}")


class TransactionService:
    """Per-user buy/sell ledger kept as one JSON list in the key-value store.

    Every successful mutation notifies registered listeners on background
    tasks; a failing listener is logged and never changes the mutation's
    result.
    """

    def __init__(
        self,
        store: KeyValueStore,
        diagnostics: DiagnosticsService,
        user_id: str,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.diagnostics = diagnostics
        self.user_id = user_id
        self._clock = clock
        self._listeners: List[TransactionListener] = []
        self._pending: Set[asyncio.Task] = set()

    @property
    def transactions_key(self) -> str:
        return f"local_transactions:{self.user_id}"

    @property
    def counter_key(self) -> str:
        return f"transaction_id_counter:{self.user_id}"

    def add_listener(self, listener: TransactionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: str, transaction: Transaction) -> None:
        for listener in self._listeners:
            task = asyncio.create_task(listener(event, transaction))
            self._pending.add(task)
            task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Transaction listener failed: {exc}", exc_info=exc)

    async def flush(self) -> None:
        """Wait for listener tasks spawned so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _load(self) -> List[Transaction]:
        raw = await self.store.get_json(self.transactions_key, [])
        if not isinstance(raw, list):
            logger.warning(f"Ignoring malformed transaction list under {self.transactions_key}")
            return []
        transactions = []
        for item in raw:
            try:
                transactions.append(Transaction.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping unreadable transaction record: {e}")
        return transactions

    async def _save(self, transactions: List[Transaction]) -> None:
        payload = [t.model_dump(mode="json") for t in transactions]
        if not await self.store.set_json(self.transactions_key, payload):
            self.diagnostics.error(
                LogCategory.DATABASE,
                "Failed to persist transactions",
                {"user_id": self.user_id, "count": len(transactions)},
            )
            raise StorageFailure(f"Could not write {self.transactions_key}")

    async def _next_id(self) -> str:
        current = await self.store.get_json(self.counter_key, 0)
        try:
            next_value = int(current) + 1
        except (TypeError, ValueError):
            next_value = 1
        if await self.store.set_json(self.counter_key, next_value):
            return f"local_{next_value}"
        fallback = f"local_{int(self._clock().timestamp() * 1000)}"
        logger.warning(f"Transaction counter write failed, using {fallback}")
        return fallback

    def _build(self, transaction_id: str, data: TransactionCreate, kind: TransactionKind,
               created_at: Optional[datetime] = None) -> Transaction:
        now = self._clock()
        return Transaction(
            id=transaction_id,
            user_id=self.user_id,
            asset_id=data.asset_id,
            symbol=data.symbol.upper(),
            name=data.name,
            icon_url=data.icon_url,
            kind=kind,
            amount=data.amount,
            price_per_unit=data.price_per_unit,
            timestamp=data.timestamp,
            exchange=data.exchange or "Unknown",
            notes=data.notes or "",
            created_at=created_at or now,
            updated_at=now,
        )

    async def add(self, fields: TransactionInput) -> Transaction:
        data = _coerce(fields)
        kind = _validate(data)

        transactions = await self._load()
        transaction = self._build(await self._next_id(), data, kind)
        transactions.append(transaction)
        await self._save(transactions)

        self.diagnostics.info(
            LogCategory.TRANSACTION,
            "Transaction added",
            {"id": transaction.id, "asset_id": transaction.asset_id, "kind": kind.value,
             "amount": str(transaction.amount), "price": str(transaction.price_per_unit)},
        )
        self._notify("added", transaction)
        return transaction

    async def update(self, transaction_id: str, fields: TransactionInput, upsert: bool = False) -> Transaction:
        """Replace the record with ``transaction_id``.

        An unknown id raises ``NotFoundError`` unless ``upsert`` is set, in
        which case the record is appended under that id.
        """
        data = _coerce(fields)
        kind = _validate(data)

        transactions = await self._load()
        for index, existing in enumerate(transactions):
            if existing.id == transaction_id:
                transaction = self._build(transaction_id, data, kind, created_at=existing.created_at)
                transactions[index] = transaction
                break
        else:
            if not upsert:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            logger.warning(f"Transaction {transaction_id} not found, appending")
            transaction = self._build(transaction_id, data, kind)
            transactions.append(transaction)

        await self._save(transactions)
        self.diagnostics.info(
            LogCategory.TRANSACTION, "Transaction updated", {"id": transaction_id, "asset_id": data.asset_id}
        )
        self._notify("updated", transaction)
        return transaction

    async def remove(self, transaction_id: str) -> bool:
        transactions = await self._load()
        removed = [t for t in transactions if t.id == transaction_id]
        if not removed:
            return False
        await self._save([t for t in transactions if t.id != transaction_id])
        self.diagnostics.info(LogCategory.TRANSACTION, "Transaction removed", {"id": transaction_id})
        self._notify("removed", removed[0])
        return True

    async def remove_by_asset(self, asset_id: str, notify: bool = True) -> int:
        """Drop every transaction for ``asset_id``; returns how many were removed."""
        transactions = await self._load()
        kept = [t for t in transactions if t.asset_id != asset_id]
        removed = [t for t in transactions if t.asset_id == asset_id]
        if not removed:
            return 0
        await self._save(kept)
        self.diagnostics.info(
            LogCategory.TRANSACTION, "Asset transactions removed", {"asset_id": asset_id, "count": len(removed)}
        )
        if notify:
            self._notify("removed", removed[0])
        return len(removed)

    async def clear(self) -> None:
        await self.store.remove(self.transactions_key)
        await self.store.remove(self.counter_key)
        logger.info(f"Cleared all transactions for {self.user_id}")

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        for transaction in await self._load():
            if transaction.id == transaction_id:
                return transaction
        return None

    async def list_all(self) -> List[Transaction]:
        return sorted(await self._load(), key=lambda t: t.timestamp, reverse=True)

    async def list_by_asset(self, asset_id: str) -> List[Transaction]:
        return [t for t in await self.list_all() if t.asset_id == asset_id]

    async def list_by_date_range(self, start: datetime, end: datetime) -> List[Transaction]:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        lower = start - timedelta(days=1)
        upper = end + timedelta(days=1)
        return [t for t in await self.list_all() if lower <= t.timestamp < upper]

    async def list_recent(self, limit: int = RECENT_LIMIT) -> List[Transaction]:
        return (await self.list_all())[:limit]

    async def has_transactions(self) -> bool:
        return len(await self._load()) > 0

    async def summary_statistics(self) -> TransactionStatistics:
        stats = TransactionStatistics()
        for t in await self._load():
            stats.count += 1
            if t.kind == TransactionKind.BUY:
                stats.buy_count += 1
                stats.total_invested += t.total_value
            else:
                stats.sell_count += 1
                stats.total_received += t.total_value
        stats.net_investment = stats.total_invested - stats.total_received
        return stats
