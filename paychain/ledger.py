"""
PCC Transaction Ledger

Append-only store of PCC transactions keyed by the acquirer order id.
A record is created Pending and resolved exactly once: the issuer order
id, issuer timestamp, status, status message and update time are written
together by a single compare-and-set that only succeeds while the record
is not terminal. Nothing is ever deleted.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .db_models import PCCTransactionTable, as_utc, utcnow
from .status import TERMINAL_STATUSES, TransactionStatus


@dataclass(frozen=True)
class Resolution:
    """Final outcome written onto a PCC transaction."""
    status: TransactionStatus
    status_message: Optional[str] = None
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[datetime] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class PCCTransaction:
    id: str
    acquirer_order_id: str
    acquirer_timestamp: datetime
    masked_pan: str
    amount: Decimal
    currency: str
    merchant_id: str
    status: TransactionStatus = TransactionStatus.PENDING
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[datetime] = None
    status_message: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def open(
        cls,
        *,
        acquirer_order_id: str,
        acquirer_timestamp: datetime,
        masked_pan: str,
        amount: Decimal,
        currency: str,
        merchant_id: str,
    ) -> PCCTransaction:
        return cls(
            id=str(uuid.uuid4()),
            acquirer_order_id=acquirer_order_id,
            acquirer_timestamp=as_utc(acquirer_timestamp),
            masked_pan=masked_pan,
            amount=amount,
            currency=currency,
            merchant_id=merchant_id,
        )

    @property
    def is_resolved(self) -> bool:
        return self.status.is_terminal

    @property
    def success(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    def resolved(self, resolution: Resolution) -> PCCTransaction:
        return replace(
            self,
            status=resolution.status,
            status_message=resolution.status_message,
            issuer_order_id=resolution.issuer_order_id,
            issuer_timestamp=resolution.issuer_timestamp,
            error_code=resolution.error_code,
            updated_at=utcnow(),
        )

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = int(self.status)
        data["amount"] = str(self.amount)
        for key in ("acquirer_timestamp", "issuer_timestamp", "created_at", "updated_at"):
            data[key] = data[key].isoformat() if data[key] else None
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> PCCTransaction:
        data: Dict[str, Any] = json.loads(raw)
        data["status"] = TransactionStatus(data["status"])
        data["amount"] = Decimal(data["amount"])
        for key in ("acquirer_timestamp", "issuer_timestamp", "created_at", "updated_at"):
            data[key] = datetime.fromisoformat(data[key]) if data[key] else None
        return cls(**data)


class TransactionStore(ABC):
    """Keyed by acquirer order id."""

    @abstractmethod
    async def get(self, acquirer_order_id: str) -> Optional[PCCTransaction]:
        ...

    @abstractmethod
    async def create_if_absent(self, transaction: PCCTransaction) -> Tuple[PCCTransaction, bool]:
        """Insert unless the key exists. Returns the stored record and whether it was created."""

    @abstractmethod
    async def resolve(self, acquirer_order_id: str, resolution: Resolution) -> Tuple[PCCTransaction, bool]:
        """
        Apply the resolution if the record is not terminal yet. Returns the
        stored record and whether this call changed it.
        """

    @abstractmethod
    async def list(self, limit: int = 100) -> List[PCCTransaction]:
        ...

    async def close(self) -> None:
        pass


class InMemoryTransactionStore(TransactionStore):
    def __init__(self) -> None:
        self._transactions: Dict[str, PCCTransaction] = {}
        self._lock = asyncio.Lock()

    async def get(self, acquirer_order_id: str) -> Optional[PCCTransaction]:
        return self._transactions.get(acquirer_order_id)

    async def create_if_absent(self, transaction: PCCTransaction) -> Tuple[PCCTransaction, bool]:
        async with self._lock:
            existing = self._transactions.get(transaction.acquirer_order_id)
            if existing is not None:
                return existing, False
            self._transactions[transaction.acquirer_order_id] = transaction
            return transaction, True

    async def resolve(self, acquirer_order_id: str, resolution: Resolution) -> Tuple[PCCTransaction, bool]:
        async with self._lock:
            current = self._transactions.get(acquirer_order_id)
            if current is None:
                raise LookupError(acquirer_order_id)
            if current.is_resolved:
                return current, False
            updated = current.resolved(resolution)
            self._transactions[acquirer_order_id] = updated
            return updated, True

    async def list(self, limit: int = 100) -> List[PCCTransaction]:
        ordered = sorted(self._transactions.values(), key=lambda t: t.created_at, reverse=True)
        return ordered[:limit]


def _to_domain(row: PCCTransactionTable) -> PCCTransaction:
    return PCCTransaction(
        id=row.id,
        acquirer_order_id=row.acquirer_order_id,
        acquirer_timestamp=as_utc(row.acquirer_timestamp),
        masked_pan=row.masked_pan,
        amount=row.amount,
        currency=row.currency,
        merchant_id=row.merchant_id,
        status=TransactionStatus(row.status),
        issuer_order_id=row.issuer_order_id,
        issuer_timestamp=as_utc(row.issuer_timestamp),
        status_message=row.status_message,
        error_code=row.error_code,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlTransactionStore(TransactionStore):
    """Unique constraint on acquirer_order_id plus a conditional UPDATE."""

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def get(self, acquirer_order_id: str) -> Optional[PCCTransaction]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(PCCTransactionTable).where(PCCTransactionTable.acquirer_order_id == acquirer_order_id)
            )
            row = result.scalar_one_or_none()
            return _to_domain(row) if row else None

    async def create_if_absent(self, transaction: PCCTransaction) -> Tuple[PCCTransaction, bool]:
        async with self._session_maker() as session:
            session.add(PCCTransactionTable(
                id=transaction.id,
                acquirer_order_id=transaction.acquirer_order_id,
                acquirer_timestamp=transaction.acquirer_timestamp,
                masked_pan=transaction.masked_pan,
                amount=transaction.amount,
                currency=transaction.currency,
                merchant_id=transaction.merchant_id,
                status=int(transaction.status),
                created_at=transaction.created_at,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.get(transaction.acquirer_order_id)
                if existing is None:
                    raise
                return existing, False
        return await self.get(transaction.acquirer_order_id), True

    async def resolve(self, acquirer_order_id: str, resolution: Resolution) -> Tuple[PCCTransaction, bool]:
        async with self._session_maker() as session:
            result = await session.execute(
                update(PCCTransactionTable)
                .where(PCCTransactionTable.acquirer_order_id == acquirer_order_id)
                .where(PCCTransactionTable.status.not_in([int(s) for s in TERMINAL_STATUSES]))
                .values(
                    status=int(resolution.status),
                    status_message=resolution.status_message,
                    issuer_order_id=resolution.issuer_order_id,
                    issuer_timestamp=resolution.issuer_timestamp,
                    error_code=resolution.error_code,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            applied = result.rowcount == 1

        stored = await self.get(acquirer_order_id)
        if stored is None:
            raise LookupError(acquirer_order_id)
        return stored, applied

    async def list(self, limit: int = 100) -> List[PCCTransaction]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(PCCTransactionTable).order_by(PCCTransactionTable.created_at.desc()).limit(limit)
            )
            return [_to_domain(row) for row in result.scalars().all()]


class RedisTransactionStore(TransactionStore):
    """SET NX for creation, WATCH/MULTI for resolution."""

    INDEX_KEY = "pcc:txn:index"

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None) -> None:
        self.redis_url = redis_url
        self._redis = client if client is not None else redis.from_url(self.redis_url, decode_responses=True)

    def make_key(self, acquirer_order_id: str) -> str:
        return f"pcc:txn:{acquirer_order_id}"

    async def get(self, acquirer_order_id: str) -> Optional[PCCTransaction]:
        data = await self._redis.get(self.make_key(acquirer_order_id))
        return PCCTransaction.from_json(data) if data else None

    async def create_if_absent(self, transaction: PCCTransaction) -> Tuple[PCCTransaction, bool]:
        created = await self._redis.set(self.make_key(transaction.acquirer_order_id), transaction.to_json(), nx=True)
        if created:
            await self._redis.zadd(
                self.INDEX_KEY, {transaction.acquirer_order_id: transaction.created_at.timestamp()}
            )
            return transaction, True
        existing = await self.get(transaction.acquirer_order_id)
        return existing, False

    async def resolve(self, acquirer_order_id: str, resolution: Resolution) -> Tuple[PCCTransaction, bool]:
        key = self.make_key(acquirer_order_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if data is None:
                        raise LookupError(acquirer_order_id)
                    current = PCCTransaction.from_json(data)
                    if current.is_resolved:
                        await pipe.unwatch()
                        return current, False
                    updated = current.resolved(resolution)
                    pipe.multi()
                    pipe.set(key, updated.to_json())
                    await pipe.execute()
                    return updated, True
                except WatchError:
                    continue

    async def list(self, limit: int = 100) -> List[PCCTransaction]:
        order_ids = await self._redis.zrevrange(self.INDEX_KEY, 0, limit - 1)
        if not order_ids:
            return []
        values = await self._redis.mget([self.make_key(order_id) for order_id in order_ids])
        return [PCCTransaction.from_json(value) for value in values if value]

    async def close(self) -> None:
        await self._redis.close()


def build_transaction_store(backend: str, session_maker: async_sessionmaker, redis_url: str) -> TransactionStore:
    if backend == "memory":
        return InMemoryTransactionStore()
    if backend == "redis":
        return RedisTransactionStore(redis_url)
    if backend == "sql":
        return SqlTransactionStore(session_maker)
    raise ValueError(f"Unknown ledger backend: {backend!r}")
