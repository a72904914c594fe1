"""Server-wide read lock held around full and incremental captures."""
from __future__ import annotations

import contextlib
import logging
import threading
from typing import Any, Callable, Iterator, Mapping, Optional

from core.db import DatabaseError, connect as db_connect

from .errors import LockAcquisitionFailed

LOGGER = logging.getLogger("mariadb_backup.lock")


class ReadLock:
    """Handle owning the connection that holds ``FLUSH TABLES WITH READ LOCK``.

    The lock lives exactly as long as the connection. :meth:`release` may be
    called any number of times, including after the connection died.
    """

    def __init__(self, conn: Any, connection_id: Optional[int] = None) -> None:
        self._conn = conn
        self.connection_id = connection_id

    @property
    def held(self) -> bool:
        return self._conn is not None

    def release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            if conn.is_connected():
                cursor = conn.cursor()
                try:
                    cursor.execute("UNLOCK TABLES")
                finally:
                    cursor.close()
        except DatabaseError as exc:
            LOGGER.warning("UNLOCK TABLES failed, closing connection anyway: %s", exc)
        finally:
            try:
                conn.close()
            except DatabaseError as exc:
                LOGGER.debug("closing lock connection: %s", exc)
        LOGGER.info("Database lock released")

    def __enter__(self) -> "ReadLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


class LockCoordinator:
    """Acquire and release the global read lock on one server."""

    def __init__(
        self,
        params: Mapping[str, Any],
        *,
        wait_timeout_s: int = 60,
        grace_s: float = 2.0,
        connect: Callable[[Mapping[str, Any]], Any] = db_connect,
    ) -> None:
        self._params = dict(params)
        self._wait_timeout_s = int(wait_timeout_s)
        self._grace_s = float(grace_s)
        self._connect = connect

    def acquire(self) -> ReadLock:
        LOGGER.info("Acquiring database lock for backup")
        try:
            conn = self._connect(self._params)
        except DatabaseError as exc:
            raise LockAcquisitionFailed(f"cannot connect to acquire lock: {exc}") from exc

        connection_id = getattr(conn, "connection_id", None)
        outcome: dict = {}

        def _lock() -> None:
            cursor = conn.cursor()
            try:
                cursor.execute(f"SET SESSION lock_wait_timeout={self._wait_timeout_s}")
                cursor.execute("FLUSH TABLES WITH READ LOCK")
                outcome["ok"] = True
            except DatabaseError as exc:
                outcome["error"] = exc
            finally:
                cursor.close()

        worker = threading.Thread(target=_lock, name="read-lock", daemon=True)
        worker.start()
        worker.join(self._wait_timeout_s + self._grace_s)

        if worker.is_alive():
            self._kill(connection_id)
            worker.join(self._grace_s)
            if not worker.is_alive():
                ReadLock(conn).release()
            else:
                # Dropping the session releases any lock it is granted later.
                LOGGER.warning("lock request %s still pending after KILL; closing its connection", connection_id)
                try:
                    conn.close()
                except DatabaseError as exc:
                    LOGGER.debug("closing lock connection: %s", exc)
            raise LockAcquisitionFailed(
                f"read lock not confirmed within {self._wait_timeout_s + self._grace_s:.0f}s"
            )
        if not outcome.get("ok"):
            ReadLock(conn).release()
            raise LockAcquisitionFailed(f"Failed to acquire database lock: {outcome.get('error')}")
        if not conn.is_connected():
            raise LockAcquisitionFailed("lock connection dropped right after acquisition")
        LOGGER.info("Database lock acquired (connection %s)", connection_id)
        return ReadLock(conn, connection_id)

    def release(self, lock: Optional[ReadLock]) -> None:
        """Release *lock*; a missing or already released handle is a no-op."""

        if lock is None:
            return
        lock.release()

    @contextlib.contextmanager
    def held(self) -> Iterator[ReadLock]:
        lock = self.acquire()
        try:
            yield lock
        finally:
            self.release(lock)

    def _kill(self, connection_id: Optional[int]) -> None:
        if connection_id is None:
            return
        try:
            admin = self._connect(self._params)
        except DatabaseError as exc:
            LOGGER.warning("cannot open connection to cancel lock request %s: %s", connection_id, exc)
            return
        try:
            cursor = admin.cursor()
            try:
                cursor.execute(f"KILL {int(connection_id)}")
            finally:
                cursor.close()
        except DatabaseError as exc:
            LOGGER.warning("cancelling lock request %s failed: %s", connection_id, exc)
        finally:
            admin.close()


__all__ = ["LockCoordinator", "ReadLock"]
