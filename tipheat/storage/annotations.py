"""Read-only lookup of display names and tip messages."""
from typing import Iterable, Optional, Protocol

import aiosqlite
import structlog

logger = structlog.get_logger()

DB_PATH = "tip_annotations.db"


class AnnotationLookup(Protocol):
    def display_name(self, address: str) -> Optional[str]:
        ...

    def message(self, address: str, tx_hash: str) -> Optional[str]:
        ...


class InMemoryAnnotations:
    """Names keyed by address and messages keyed by (address, tx hash)."""

    def __init__(
        self,
        names: Optional[dict[str, str]] = None,
        messages: Optional[dict[tuple[str, str], str]] = None,
    ):
        self._names = {a.lower(): n for a, n in (names or {}).items()}
        self._messages = {
            (a.lower(), tx.lower()): m for (a, tx), m in (messages or {}).items()
        }

    def display_name(self, address: str) -> Optional[str]:
        return self._names.get(address.lower())

    def message(self, address: str, tx_hash: str) -> Optional[str]:
        return self._messages.get((address.lower(), tx_hash.lower()))


class AnnotationStore:
    """Async SQLite reader for the profile/message tables kept by the tipping frontend."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to database and create tables."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info("annotations_connected", path=self.db_path)

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("annotations_closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_tables(self):
        """Create tables if they don't exist."""
        await self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS profiles (
                address TEXT PRIMARY KEY,
                display_name TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS tip_messages (
                address TEXT,
                tx_hash TEXT,
                message TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (address, tx_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_tip_messages_address ON tip_messages(address);
        """)
        await self._conn.commit()

    async def load(self, addresses: Iterable[str]) -> InMemoryAnnotations:
        """Snapshot names and messages for `addresses`."""
        if self._conn is None:
            raise RuntimeError("Store not connected. Call connect() first.")

        wanted = sorted({a.lower() for a in addresses})
        if not wanted:
            return InMemoryAnnotations()

        placeholders = ",".join("?" for _ in wanted)
        names: dict[str, str] = {}
        async with self._conn.execute(
            f"SELECT address, display_name FROM profiles WHERE lower(address) IN ({placeholders})",
            wanted,
        ) as cursor:
            async for row in cursor:
                if row["display_name"]:
                    names[row["address"]] = row["display_name"]

        messages: dict[tuple[str, str], str] = {}
        async with self._conn.execute(
            f"SELECT address, tx_hash, message FROM tip_messages WHERE lower(address) IN ({placeholders})",
            wanted,
        ) as cursor:
            async for row in cursor:
                if row["message"]:
                    messages[(row["address"], row["tx_hash"])] = row["message"]

        logger.info("annotations_loaded", addresses=len(wanted), names=len(names), messages=len(messages))
        return InMemoryAnnotations(names, messages)
