"""
Market Data Store - Persistent time-series storage for fused records.

Records are keyed by (symbol, timestamp) and inserted only if absent; an
existing record is never overwritten. This idempotent insert is what makes
overlapping cycles and repeated backfills safe.

Usage:
    store = SQLiteMarketDataStore(db_path="data/market_data.db")

    inserted = store.save(record)          # False if the key already existed
    count = store.save_many(records)       # one transaction
    history = store.find_latest_by_symbol("bitcoin", 50)   # oldest first
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from loguru import logger

from market_fusion.core.errors import PersistenceError
from market_fusion.services.data.types import FusedRecord, Indicators, Sentiment, ensure_utc


class MarketDataStore(ABC):
    """Interface of the fused time-series store."""

    @abstractmethod
    def save(self, record: FusedRecord) -> bool:
        """
        Insert a record if (symbol, timestamp) is absent.

        Returns:
            True if inserted, False if the key already existed
        """
        pass

    def save_many(self, records: List[FusedRecord]) -> int:
        """
        Insert every record whose (symbol, timestamp) is absent.

        Returns:
            Number of records inserted
        """
        return sum(1 for record in records if self.save(record))

    @abstractmethod
    def find_by_symbol_and_range(
        self,
        symbol: str,
        start: datetime,
        end: datetime
    ) -> List[FusedRecord]:
        """Records with start <= timestamp <= end, oldest first."""
        pass

    @abstractmethod
    def find_latest_by_symbol(self, symbol: str, limit: int) -> List[FusedRecord]:
        """The latest `limit` records for a symbol, oldest first."""
        pass

    @abstractmethod
    def exists(self, symbol: str, timestamp: datetime) -> bool:
        pass

    @abstractmethod
    def find_latest(self) -> Optional[FusedRecord]:
        """Newest record across all symbols."""
        pass


def _to_millis(ts: datetime) -> int:
    return int(round(ensure_utc(ts).timestamp() * 1000))


def _from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, timezone.utc)


class SQLiteMarketDataStore(MarketDataStore):
    """
    SQLite-backed market data store.

    Uses SQLite for:
    - Reliability (ACID compliance)
    - Simplicity (no external database)
    - Idempotent writes (PRIMARY KEY + INSERT OR IGNORE)

    A connection is opened per operation, so one instance can be used from
    the event loop and executor threads alike.
    """

    COLUMNS = (
        "symbol, timestamp, price, volume, market_cap, price_change_24h, "
        "source_id, quality_score, confidence, indicators, sentiment"
    )

    def __init__(self, db_path: str = "data/market_data.db"):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        # Create data directory if needed
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"MarketDataStore initialized | DB: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open market data store {self.db_path}: {e}") from e

    def _init_database(self):
        """Create database schema if not exists."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS market_data (
                    symbol TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    price REAL NOT NULL,
                    volume REAL NOT NULL,
                    market_cap REAL NOT NULL,
                    price_change_24h REAL NOT NULL,
                    source_id TEXT NOT NULL,
                    quality_score REAL NOT NULL,
                    confidence REAL NOT NULL,
                    indicators TEXT,
                    sentiment TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (symbol, timestamp)
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize schema in {self.db_path}: {e}") from e
        finally:
            conn.close()

        logger.debug("Market data schema initialized")

    def _query(self, sql: str, params: tuple) -> List[tuple]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Market data query failed: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: tuple) -> FusedRecord:
        (symbol, ts, price, volume, market_cap, change, source_id,
         quality, confidence, indicators, sentiment) = row
        try:
            return FusedRecord(
                symbol=symbol,
                price=price,
                volume=volume,
                market_cap=market_cap,
                price_change_24h=change,
                timestamp=_from_millis(ts),
                source_id=source_id,
                quality_score=quality,
                confidence=confidence,
                indicators=Indicators.from_dict(json.loads(indicators)) if indicators else None,
                sentiment=Sentiment.from_dict(json.loads(sentiment)) if sentiment else None
            )
        except (ValueError, KeyError, TypeError) as e:
            # json.JSONDecodeError is a ValueError
            raise PersistenceError(f"Corrupt market data row for {symbol} @ {ts}: {e}") from e

    @staticmethod
    def _row_values(record: FusedRecord, created_at: str) -> tuple:
        return (
            record.symbol,
            _to_millis(record.timestamp),
            record.price,
            record.volume,
            record.market_cap,
            record.price_change_24h,
            record.source_id,
            record.quality_score,
            record.confidence,
            json.dumps(record.indicators.to_dict()) if record.indicators else None,
            json.dumps(record.sentiment.to_dict()) if record.sentiment else None,
            created_at
        )

    def save(self, record: FusedRecord) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO market_data ({self.COLUMNS}, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._row_values(record, datetime.now(timezone.utc).isoformat()))
            conn.commit()
            return cursor.rowcount == 1
        except sqlite3.Error as e:
            logger.error(f"Failed to save {record.symbol} @ {record.timestamp.isoformat()}: {e}")
            raise PersistenceError(
                f"Failed to save {record.symbol} @ {record.timestamp.isoformat()}: {e}"
            ) from e
        finally:
            conn.close()

    def save_many(self, records: List[FusedRecord]) -> int:
        """Insert records in one transaction; existing keys are left untouched."""
        if not records:
            return 0

        created_at = datetime.now(timezone.utc).isoformat()
        conn = self._connect()
        try:
            before = conn.total_changes
            with conn:
                conn.executemany(f"""
                    INSERT OR IGNORE INTO market_data ({self.COLUMNS}, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [self._row_values(record, created_at) for record in records])
            return conn.total_changes - before
        except sqlite3.Error as e:
            logger.error(f"Failed to save batch of {len(records)} records: {e}")
            raise PersistenceError(f"Failed to save batch of {len(records)} records: {e}") from e
        finally:
            conn.close()

    def find_by_symbol_and_range(
        self,
        symbol: str,
        start: datetime,
        end: datetime
    ) -> List[FusedRecord]:
        rows = self._query(f"""
            SELECT {self.COLUMNS} FROM market_data
            WHERE symbol = ? AND timestamp BETWEEN ? AND ?
            ORDER BY timestamp ASC
        """, (symbol, _to_millis(start), _to_millis(end)))
        return [self._row_to_record(row) for row in rows]

    def find_latest_by_symbol(self, symbol: str, limit: int) -> List[FusedRecord]:
        rows = self._query(f"""
            SELECT {self.COLUMNS} FROM market_data
            WHERE symbol = ?
            ORDER BY timestamp DESC
            LIMIT ?
        """, (symbol, limit))
        return [self._row_to_record(row) for row in reversed(rows)]

    def exists(self, symbol: str, timestamp: datetime) -> bool:
        rows = self._query(
            "SELECT 1 FROM market_data WHERE symbol = ? AND timestamp = ?",
            (symbol, _to_millis(timestamp))
        )
        return bool(rows)

    def find_latest(self) -> Optional[FusedRecord]:
        rows = self._query(f"""
            SELECT {self.COLUMNS} FROM market_data
            ORDER BY timestamp DESC
            LIMIT 1
        """, ())
        return self._row_to_record(rows[0]) if rows else None

    def count(self, symbol: Optional[str] = None) -> int:
        if symbol is None:
            rows = self._query("SELECT COUNT(*) FROM market_data", ())
        else:
            rows = self._query("SELECT COUNT(*) FROM market_data WHERE symbol = ?", (symbol,))
        return rows[0][0]
