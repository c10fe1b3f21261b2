"""
Database connection management.
"""
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .schema import init_schema


class DBManager:
    """
    Hands out short-lived connections, one per statement group, so no lock is
    held across a whole scan or compress run.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        # SQLite WAL mode allows multiple readers, but writes need serialization
        self._write_lock = threading.Lock()

    def initialize(self):
        """Creates the parent directory and applies the schema. Idempotent."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logging.info(f"Opening journal database: {self.db_path}")
        with self.connection() as conn:
            init_schema(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=10)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            yield conn
        finally:
            conn.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for thread-safe database operations."""
        return self._write_lock
