# src/fmtc_crawler/database.py
"""SQLite persistence for session records and extracted merchants."""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from fmtc_crawler.models import MerchantDetail

logger = logging.getLogger(__name__)

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS fmtc_sessions (
    identity TEXT PRIMARY KEY,
    session_data TEXT NOT NULL,
    captured_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS fmtc_merchants (
    merchant_key TEXT PRIMARY KEY,
    fmtc_id TEXT,
    name TEXT,
    source_url TEXT NOT NULL,
    homepage TEXT,
    primary_category TEXT,
    primary_country TEXT,
    ships_to TEXT,
    fresh_reach_supported INTEGER NOT NULL DEFAULT 0,
    affiliate_url TEXT,
    preview_deals_url TEXT,
    detail_json TEXT NOT NULL,
    last_scraped_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS fmtc_merchant_networks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_key TEXT NOT NULL REFERENCES fmtc_merchants(merchant_key) ON DELETE CASCADE,
    network_name TEXT NOT NULL,
    network_id TEXT NOT NULL,
    status TEXT NOT NULL,
    join_url TEXT,
    position INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_networks_merchant ON fmtc_merchant_networks(merchant_key);
"""


class AbstractDatabase(ABC):
    """Abstract base class defining the storage interface."""

    @abstractmethod
    def connect(self) -> None:
        """Establish database connection."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @abstractmethod
    def create_schema(self) -> None:
        """Create the necessary database tables."""
        pass

    @abstractmethod
    def save_session_record(
        self,
        identity: str,
        record: Dict[str, Any],
        captured_at: datetime,
        expires_at: datetime,
    ) -> None:
        """Insert or replace the session record for an account."""
        pass

    @abstractmethod
    def load_session_record(self, identity: str) -> Optional[Dict[str, Any]]:
        """Return the stored record and its expiry for an account, if any."""
        pass

    @abstractmethod
    def delete_session_record(self, identity: str) -> bool:
        pass

    @abstractmethod
    def list_session_records(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_merchant(self, detail: MerchantDetail) -> str:
        """Upsert a merchant and replace its network associations.

        Returns:
            The merchant key used for storage.
        """
        pass

    @abstractmethod
    def get_merchant(self, merchant_key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_networks(self, merchant_key: str) -> List[Dict[str, Any]]:
        pass


def merchant_key(detail: MerchantDetail) -> str:
    """Stable storage key: the FMTC id when known, else the detail URL."""
    if detail.fmtc_id:
        return f"fmtc:{detail.fmtc_id}"
    return f"url:{detail.source_url}"


class LocalSqliteDatabase(AbstractDatabase):
    """SQLite database implementation for local storage."""

    def __init__(self, db_path: Union[str, Path] = "fmtc_crawler.db"):
        """Initialize local SQLite database.

        Args:
            db_path: Path to the database file, or ":memory:"
        """
        self.db_path = str(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Connected to local SQLite database: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed local SQLite connection")

    def create_schema(self) -> None:
        """Create tables if they don't exist."""
        with self.conn:
            self.conn.executescript(CREATE_TABLES_SQL)
        logger.debug("Schema verified/created for local SQLite")

    def save_session_record(
        self,
        identity: str,
        record: Dict[str, Any],
        captured_at: datetime,
        expires_at: datetime,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO fmtc_sessions (identity, session_data, captured_at, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    session_data = excluded.session_data,
                    captured_at = excluded.captured_at,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (
                    identity,
                    json.dumps(record),
                    captured_at.isoformat(),
                    expires_at.isoformat(),
                    datetime.now().isoformat(),
                ),
            )
        logger.debug(f"Saved session record for {identity}")

    def load_session_record(self, identity: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT session_data, expires_at FROM fmtc_sessions WHERE identity = ?",
            (identity,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return {
            "record": json.loads(row["session_data"]),
            "expires_at": datetime.fromisoformat(row["expires_at"]),
        }

    def delete_session_record(self, identity: str) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM fmtc_sessions WHERE identity = ?", (identity,)
            )
        return cursor.rowcount > 0

    def list_session_records(self) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT identity, captured_at, expires_at FROM fmtc_sessions ORDER BY identity"
        )
        return [dict(row) for row in cursor.fetchall()]

    def save_merchant(self, detail: MerchantDetail) -> str:
        """Upsert merchant row, then delete-and-insert its networks."""
        key = merchant_key(detail)
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO fmtc_merchants (
                    merchant_key, fmtc_id, name, source_url, homepage,
                    primary_category, primary_country, ships_to,
                    fresh_reach_supported, affiliate_url, preview_deals_url,
                    detail_json, last_scraped_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(merchant_key) DO UPDATE SET
                    fmtc_id = excluded.fmtc_id,
                    name = excluded.name,
                    source_url = excluded.source_url,
                    homepage = excluded.homepage,
                    primary_category = excluded.primary_category,
                    primary_country = excluded.primary_country,
                    ships_to = excluded.ships_to,
                    fresh_reach_supported = excluded.fresh_reach_supported,
                    affiliate_url = excluded.affiliate_url,
                    preview_deals_url = excluded.preview_deals_url,
                    detail_json = excluded.detail_json,
                    last_scraped_at = excluded.last_scraped_at
                """,
                (
                    key,
                    detail.fmtc_id,
                    detail.name,
                    detail.source_url,
                    detail.homepage,
                    detail.primary_category,
                    detail.primary_country,
                    json.dumps(detail.ships_to),
                    int(detail.fresh_reach_supported),
                    detail.affiliate_url,
                    detail.preview_deals_url,
                    json.dumps(detail.to_dict()),
                    datetime.now().isoformat(),
                ),
            )
            self.conn.execute(
                "DELETE FROM fmtc_merchant_networks WHERE merchant_key = ?", (key,)
            )
            self.conn.executemany(
                """
                INSERT INTO fmtc_merchant_networks
                    (merchant_key, network_name, network_id, status, join_url, position)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (key, n.network_name, n.network_id, n.status.value, n.join_url, i)
                    for i, n in enumerate(detail.networks)
                ],
            )
        logger.debug(f"Saved merchant {key} with {len(detail.networks)} networks")
        return key

    def get_merchant(self, merchant_key: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM fmtc_merchants WHERE merchant_key = ?", (merchant_key,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_networks(self, merchant_key: str) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT network_name, network_id, status, join_url
            FROM fmtc_merchant_networks WHERE merchant_key = ? ORDER BY position ASC
            """,
            (merchant_key,),
        )
        return [dict(row) for row in cursor.fetchall()]


def get_db_client(db_path: Optional[Union[str, Path]] = None) -> Optional[AbstractDatabase]:
    """Factory returning a SQLite client, or None when no path is configured."""
    if db_path is None:
        return None
    logger.info(f"Using local SQLite database at {db_path}")
    return LocalSqliteDatabase(db_path)
