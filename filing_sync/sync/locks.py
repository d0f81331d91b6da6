from __future__ import annotations

import os
import socket
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator

from filing_sync.errors import SyncAlreadyRunning
from filing_sync.util.time import utcnow


def _debug(msg: str) -> None:
    print(f"[lock] {msg}")


def _iso(dt: Any) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


class SyncLockManager:
    """At most one sync run per form family.

    Two layers:
      - an in-process lock per family (threads in one API process), and
      - a lease row in `sync_locks` (other processes / instances sharing the store).

    The lease expires after `ttl_seconds` so a crashed run cannot block the family forever.
    """

    def __init__(self, *, ttl_seconds: int = 900):
        self.ttl_seconds = int(ttl_seconds)
        self.owner_prefix = f"{socket.gethostname()}:{os.getpid()}"
        self._guard = threading.Lock()
        self._local: Dict[str, threading.Lock] = {}

    def _local_lock(self, family: str) -> threading.Lock:
        with self._guard:
            lk = self._local.get(family)
            if lk is None:
                lk = threading.Lock()
                self._local[family] = lk
            return lk

    def _acquire_lease(self, conn: Any, family: str, owner: str) -> bool:
        now = utcnow()
        expires = now + timedelta(seconds=self.ttl_seconds)
        # Take the row if absent, or steal it if the previous lease expired.
        rows = conn.execute(
            """
            INSERT INTO sync_locks (family, owner, acquired_at, expires_at) VALUES (?,?,?,?)
            ON CONFLICT(family) DO UPDATE SET
                owner=excluded.owner,
                acquired_at=excluded.acquired_at,
                expires_at=excluded.expires_at
            WHERE sync_locks.expires_at < ?
            RETURNING owner
            """,
            (family, owner, _iso(now), _iso(expires), _iso(now)),
        ).fetchall()
        conn.commit()
        return any(str(r["owner"]) == owner for r in rows)

    def _release_lease(self, conn: Any, family: str, owner: str) -> None:
        conn.execute("DELETE FROM sync_locks WHERE family=? AND owner=?", (family, owner))
        conn.commit()

    @contextmanager
    def hold(self, conn: Any, family: str) -> Iterator[str]:
        """Hold the family for the duration of the block; raises SyncAlreadyRunning if busy."""
        local = self._local_lock(family)
        if not local.acquire(blocking=False):
            raise SyncAlreadyRunning(family)
        owner = f"{self.owner_prefix}:{uuid.uuid4().hex[:8]}"
        try:
            if not self._acquire_lease(conn, family, owner):
                raise SyncAlreadyRunning(family)
            _debug(f"{family}: acquired by {owner}")
            try:
                yield owner
            finally:
                try:
                    self._release_lease(conn, family, owner)
                except Exception as e:
                    # The lease expires on its own; do not mask the run's own outcome.
                    _debug(f"{family}: release failed ({e}); lease will expire")
        finally:
            local.release()
