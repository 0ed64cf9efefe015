"""Bookkeeping tables for the Espresso reader."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from types import TracebackType
from typing import Any

from espressoreader.models import hex_to_address

logger = logging.getLogger(__name__)

MAX_UINT64 = 2**64 - 1

_TABLES = (
    (
        "espresso_nonce",
        """CREATE TABLE IF NOT EXISTS "espresso_nonce"
(
    "sender_address" BLOB NOT NULL,
    "application_address" BLOB NOT NULL,
    "nonce" INTEGER NOT NULL,
    UNIQUE("sender_address", "application_address")
)""",
    ),
    (
        # Block numbers span the full uint64 range, so they are kept as decimal text.
        "espresso_block",
        """CREATE TABLE IF NOT EXISTS "espresso_block"
(
    "application_address" BLOB PRIMARY KEY,
    "last_processed_espresso_block" TEXT NOT NULL
)""",
    ),
    (
        "input_index",
        """CREATE TABLE IF NOT EXISTS "input_index"
(
    "application_address" BLOB PRIMARY KEY,
    "index" INTEGER NOT NULL
)""",
    ),
)


class Database:
    """A SQLite connection holding the node's tables."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.connection = sqlite3.connect(str(path))

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> None:
        """Run a statement in its own transaction."""
        with self.connection:
            self.connection.execute(query, params)

    def query_one(self, query: str, params: tuple[Any, ...] = ()) -> tuple[Any, ...] | None:
        return self.connection.execute(query, params).fetchone()

    def column_names(self, table: str) -> list[str]:
        rows = self.connection.execute(f'PRAGMA table_info("{table}")').fetchall()
        return [row[1] for row in rows]

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _address_bytes(address: str) -> bytes:
    return bytes.fromhex(hex_to_address(address)[2:])


def setup_espresso_db(database: Database) -> None:
    """Create the reader's tables and add the transaction id column to inputs."""
    for table, query in _TABLES:
        try:
            database.execute(query)
        except sqlite3.Error:
            logger.error("failed to create table %s", table)
            raise
    try:
        if "transaction_id" not in database.column_names("input"):
            database.execute('ALTER TABLE "input" ADD COLUMN transaction_id BLOB')
    except sqlite3.Error:
        logger.error("failed to add column transaction_id to table input")
        raise


def get_last_processed_espresso_block(database: Database, application_address: str) -> int:
    """Last processed Espresso block of an application, or 0 when none is recorded."""
    try:
        row = database.query_one(
            'SELECT last_processed_espresso_block FROM espresso_block '
            'WHERE application_address = ?',
            (_address_bytes(application_address),),
        )
    except sqlite3.Error as exc:
        raise RuntimeError(f"GetLastProcessedEspressoBlock QueryRow failed: {exc}") from exc
    if row is None:
        logger.debug(
            "GetLastProcessedEspressoBlock returned no rows app=%s", application_address
        )
        return 0
    return int(row[0])


def update_last_processed_espresso_block(
    database: Database, application_address: str, last_processed_espresso_block: int
) -> None:
    """Insert or replace the last processed Espresso block of an application."""
    if not 0 <= last_processed_espresso_block <= MAX_UINT64:
        raise ValueError(
            f"last_processed_espresso_block out of range: {last_processed_espresso_block}"
        )
    try:
        database.execute(
            'INSERT INTO espresso_block (application_address, last_processed_espresso_block) '
            'VALUES (?, ?) ON CONFLICT (application_address) DO UPDATE SET '
            'last_processed_espresso_block = excluded.last_processed_espresso_block',
            (_address_bytes(application_address), str(last_processed_espresso_block)),
        )
    except sqlite3.Error as exc:
        raise RuntimeError(f"failed to update last_processed_espresso_block: {exc}") from exc