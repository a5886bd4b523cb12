import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg


logger = logging.getLogger(__name__)


class PositionStore(ABC):
    """Storage collaborator for positions, errors and detected listings."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def save_position(self, position: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_position(self, position: Dict[str, Any]) -> None:
        """Upsert keyed by (symbol, entry order id)."""

    @abstractmethod
    async def get_active_positions(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_position_by_symbol(self, symbol: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save_error(self, error: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def save_listing(self, listing: Dict[str, Any]) -> None:
        ...


class InMemoryPositionStore(PositionStore):
    def __init__(self):
        self.positions: Dict[tuple, Dict[str, Any]] = {}
        self.errors: List[Dict[str, Any]] = []
        self.listings: List[Dict[str, Any]] = []

    @staticmethod
    def _key(position: Dict[str, Any]) -> tuple:
        return position['symbol'], str(position.get('order_id'))

    async def save_position(self, position: Dict[str, Any]) -> None:
        self.positions[self._key(position)] = dict(position)

    async def update_position(self, position: Dict[str, Any]) -> None:
        self.positions[self._key(position)] = dict(position)

    async def get_active_positions(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in self.positions.values() if p.get('status') == 'OPEN']

    async def get_position_by_symbol(self, symbol: str) -> Optional[Dict[str, Any]]:
        matches = [p for p in self.positions.values() if p['symbol'] == symbol]
        if not matches:
            return None
        return dict(max(matches, key=lambda p: p.get('entry_time') or 0))

    async def save_error(self, error: Dict[str, Any]) -> None:
        self.errors.append({'timestamp': time.time(), **error})

    async def save_listing(self, listing: Dict[str, Any]) -> None:
        self.listings.append(dict(listing))


def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class PostgresPositionStore(PositionStore):
    """asyncpg-backed store. Tables are created on initialize."""

    _SCHEMA = (
        '''CREATE TABLE IF NOT EXISTS positions (
               symbol TEXT NOT NULL,
               order_id TEXT NOT NULL,
               side TEXT NOT NULL,
               quantity DOUBLE PRECISION NOT NULL,
               entry_price DOUBLE PRECISION NOT NULL,
               entry_time TIMESTAMPTZ NOT NULL,
               status TEXT NOT NULL,
               environment TEXT,
               payload JSONB NOT NULL,
               updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
               PRIMARY KEY (symbol, order_id))''',
        '''CREATE TABLE IF NOT EXISTS bot_errors (
               id BIGSERIAL PRIMARY KEY,
               ts TIMESTAMPTZ NOT NULL DEFAULT now(),
               error_type TEXT,
               symbol TEXT,
               payload JSONB NOT NULL)''',
        '''CREATE TABLE IF NOT EXISTS listings (
               symbol TEXT NOT NULL,
               detected_at TIMESTAMPTZ NOT NULL,
               payload JSONB NOT NULL,
               PRIMARY KEY (symbol, detected_at))''',
    )

    def __init__(self, db_config: Dict[str, Any]):
        self.db_config = db_config
        self.pool = None

    async def initialize(self) -> None:
        self.pool = await asyncpg.create_pool(
            host=self.db_config.get('host', 'localhost'),
            port=int(self.db_config.get('port', 5432)),
            database=self.db_config.get('database'),
            user=self.db_config.get('user'),
            password=self.db_config.get('password'),
            min_size=1,
            max_size=5,
        )
        async with self.pool.acquire() as conn:
            for statement in self._SCHEMA:
                await conn.execute(statement)
        logger.info("Postgres position store ready")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def save_position(self, position: Dict[str, Any]) -> None:
        await self.update_position(position)

    async def update_position(self, position: Dict[str, Any]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO positions
                   (symbol, order_id, side, quantity, entry_price, entry_time, status, environment, payload)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                   ON CONFLICT (symbol, order_id) DO UPDATE SET
                       status = EXCLUDED.status,
                       payload = EXCLUDED.payload,
                       updated_at = now()''',
                position['symbol'],
                str(position['order_id']),
                position['side'],
                position['quantity'],
                position['entry_price'],
                _ts(position['entry_time']),
                position['status'],
                position.get('environment'),
                json.dumps(position, default=str),
            )

    async def get_active_positions(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT payload FROM positions WHERE status = 'OPEN'")
        return [json.loads(row['payload']) for row in rows]

    async def get_position_by_symbol(self, symbol: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT payload FROM positions WHERE symbol = $1 ORDER BY entry_time DESC LIMIT 1',
                symbol,
            )
        return json.loads(row['payload']) if row else None

    async def save_error(self, error: Dict[str, Any]) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    'INSERT INTO bot_errors (error_type, symbol, payload) VALUES ($1, $2, $3)',
                    error.get('type'),
                    error.get('symbol'),
                    json.dumps(error, default=str),
                )
        except Exception as e:
            logger.error("Error record persist failed: %s", e)

    async def save_listing(self, listing: Dict[str, Any]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO listings (symbol, detected_at, payload) VALUES ($1, $2, $3)
                   ON CONFLICT (symbol, detected_at) DO NOTHING''',
                listing['symbol'],
                _ts(listing.get('detected_at') or time.time()),
                json.dumps(listing, default=str),
            )
