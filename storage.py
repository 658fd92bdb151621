from __future__ import annotations

import gzip
import hashlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger("storage")

RATE_LIMIT_WINDOW = 60


def get_db(path: str) -> sqlite3.Connection:
    # Autocommit mode; writers open their own BEGIN IMMEDIATE transactions.
    conn = sqlite3.connect(path, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str) -> None:
    conn = get_db(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_limits (
                key TEXT PRIMARY KEY,
                count INTEGER NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS responses (
                key TEXT PRIMARY KEY,
                target TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS responses_target ON responses (target)")
    finally:
        conn.close()


@dataclass
class RateLimitResult:
    count: int
    limit: int
    reset_at: float

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after(self, now: float) -> int:
        return max(1, int(self.reset_at - now + 0.999))


class RateLimitStore:
    """Fixed-window request counters shared by every proxy process using the same database."""

    def __init__(self, path: str, window: int = RATE_LIMIT_WINDOW) -> None:
        self.path = path
        self.window = window

    def hit(self, identity: str, limit: int, now: Optional[float] = None) -> RateLimitResult:
        now = time.time() if now is None else now
        bucket = int(now // self.window)
        key = f"{identity}:{bucket}"
        reset_at = float((bucket + 1) * self.window)

        conn = get_db(self.path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM rate_limits WHERE expires_at <= ?", (now,))
            conn.execute(
                """
                INSERT INTO rate_limits (key, count, expires_at) VALUES (?, 1, ?)
                ON CONFLICT (key) DO UPDATE SET count = count + 1
                """,
                (key, reset_at),
            )
            count = conn.execute("SELECT count FROM rate_limits WHERE key = ?", (key,)).fetchone()["count"]
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        return RateLimitResult(count=count, limit=limit, reset_at=reset_at)


@dataclass
class CachedResponse:
    status: int
    headers: List[Tuple[str, str]]
    body: bytes
    stored_at: float


def build_cache_key(target: str, identity: str) -> str:
    return hashlib.md5(f"{target}\n{identity}".encode("utf-8")).hexdigest()


class ResponseCache:
    """Rewritten responses keyed by (target URL, identity), bodies stored gzip-compressed."""

    def __init__(self, path: str) -> None:
        self.path = path

    def get(self, target: str, identity: str, now: Optional[float] = None) -> Optional[CachedResponse]:
        now = time.time() if now is None else now
        key = build_cache_key(target, identity)
        conn = get_db(self.path)
        try:
            row = conn.execute(
                "SELECT status, headers, body, stored_at, expires_at FROM responses WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            if row["expires_at"] <= now:
                conn.execute("DELETE FROM responses WHERE key = ? AND expires_at <= ?", (key, now))
                return None
        finally:
            conn.close()

        try:
            body = gzip.decompress(row["body"])
            headers = [(name, value) for name, value in json.loads(row["headers"])]
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable cache entry for %s: %s", target, exc)
            self.delete(key)
            return None
        return CachedResponse(status=row["status"], headers=headers, body=body, stored_at=row["stored_at"])

    def put(
        self,
        target: str,
        identity: str,
        status: int,
        headers: List[Tuple[str, str]],
        body: bytes,
        ttl: int,
        now: Optional[float] = None,
    ) -> None:
        now = time.time() if now is None else now
        conn = get_db(self.path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO responses (key, target, status, headers, body, stored_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    build_cache_key(target, identity),
                    target,
                    status,
                    json.dumps(headers),
                    gzip.compress(body),
                    now,
                    now + ttl,
                ),
            )
            conn.execute("DELETE FROM responses WHERE expires_at <= ?", (now,))
        finally:
            conn.close()
        logger.info("Cached %d bytes for %s", len(body), target)

    def delete(self, key: str) -> None:
        conn = get_db(self.path)
        try:
            conn.execute("DELETE FROM responses WHERE key = ?", (key,))
        finally:
            conn.close()

    def purge(self, target: str) -> int:
        conn = get_db(self.path)
        try:
            removed = conn.execute("DELETE FROM responses WHERE target = ?", (target,)).rowcount
        finally:
            conn.close()
        logger.info("Purged %d cached responses for %s", removed, target)
        return removed
