"""SQLite store for harvest claims abandoned after exhausting their retries."""

import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Dict, List, Optional


def _db_path() -> str:
    return os.environ.get("STATE_DB", os.path.join(os.getcwd(), "data", "state.db"))


@contextmanager
def get_conn():
    path = _db_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS abandoned_harvests (
                farmer TEXT NOT NULL,
                block INTEGER NOT NULL,
                mode TEXT NOT NULL,
                reason TEXT,
                abandoned_at REAL NOT NULL,
                PRIMARY KEY(farmer, block)
            )
            """
        )
        yield conn
        conn.commit()
    finally:
        conn.close()


def record_abandoned(farmer: str, blocks: List[int], mode: str, reason: str) -> None:
    now = time.time()
    with get_conn() as conn:
        conn.executemany(
            """
            INSERT INTO abandoned_harvests(farmer, block, mode, reason, abandoned_at)
            VALUES(?, ?, ?, ?, ?)
            ON CONFLICT(farmer, block)
            DO UPDATE SET mode = excluded.mode, reason = excluded.reason, abandoned_at = excluded.abandoned_at
            """,
            [(farmer, int(block), mode, reason, now) for block in blocks],
        )


def list_abandoned(farmer: Optional[str] = None, limit: int = 100) -> List[Dict]:
    query = "SELECT farmer, block, mode, reason, abandoned_at FROM abandoned_harvests"
    params: tuple = ()
    if farmer:
        query += " WHERE farmer = ?"
        params = (farmer,)
    query += " ORDER BY abandoned_at DESC, block DESC LIMIT ?"
    with get_conn() as conn:
        cur = conn.execute(query, params + (limit,))
        return [
            {"farmer": row[0], "block": row[1], "mode": row[2], "reason": row[3], "abandoned_at": row[4]}
            for row in cur.fetchall()
        ]


def delete_abandoned(farmer: str, block: int) -> None:
    with get_conn() as conn:
        conn.execute(
            "DELETE FROM abandoned_harvests WHERE farmer = ? AND block = ?",
            (farmer, int(block)),
        )
