"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1


def init_schema(conn: sqlite3.Connection):
    """
    Applies the core schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Operations (one row per compress / rollback attempt)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS operations (
            id                  TEXT PRIMARY KEY,     -- UUID
            path                TEXT NOT NULL,
            mode                INTEGER NOT NULL,     -- CompressionMode
            algorithm           INTEGER NOT NULL,     -- CompressionAlgorithm
            startedAt           TEXT NOT NULL,        -- ISO-8601 UTC
            finishedAt          TEXT NULL,
            beforeBytes         INTEGER NOT NULL,
            afterBytes          INTEGER NOT NULL,
            status              INTEGER NOT NULL,     -- OperationStatus
            errorMessage        TEXT NULL,
            isRollback          INTEGER NOT NULL,
            originalOperationId TEXT NULL
        );
        """)

        # 3. Indices
        conn.execute("CREATE INDEX IF NOT EXISTS idx_operations_startedAt ON operations(startedAt);")

    logging.debug("Database schema initialized.")
