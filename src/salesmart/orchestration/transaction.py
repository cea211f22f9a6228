from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from salesmart.common.constants import DEFAULT_LOCK_TIMEOUT_SECONDS, INVOCATION_METADATA_KEY
from salesmart.common.errors import ConcurrentInvocationError
from salesmart.storage import DeltaWarehouse, tagged_commits

logger = logging.getLogger(__name__)


class TransactionManager:
    """
    All-or-nothing invocations on a single Delta table using time travel.

    The table version is captured on entry and every commit written inside
    the block is tagged with a fresh invocation id. If the block raises
    after the table advanced, the table is RESTOREd to that version, but
    only when every newer commit carries this invocation's tag; a commit
    by any other writer is never rolled back. The error is re-raised.
    """

    def __init__(self, warehouse: DeltaWarehouse) -> None:
        self.warehouse = warehouse

    def _rollback(self, path: Path, version: int) -> None:
        logger.info(f"TRANSACTION ROLLBACK: Restoring {path} to version {version}...")
        try:
            self.warehouse.restore(path, version)
            logger.info(f"ROLLBACK COMPLETE: {path} restored to {version}.")
        except Exception as e:
            logger.error(f"CRITICAL: Failed to rollback {path}: {e}")
            raise

    @contextmanager
    def table_transaction(self, path: Path) -> Generator[None, None, None]:
        """
        Context manager that makes the wrapped block atomic for ``path``.

        1. Captures start version (None when the table does not exist yet).
        2. Yields control.
        3. On Exception: restores the table to the start version if only
           this invocation advanced it.
        """
        start_version = self.warehouse.version(path)
        invocation_id = uuid.uuid4().hex
        try:
            with tagged_commits(invocation_id):
                yield
        except Exception as e:
            current_version = self.warehouse.version(path)
            if start_version is not None and current_version is not None:
                commits = self.warehouse.commits_since(path, start_version)
                foreign = [c for c in commits if c.get(INVOCATION_METADATA_KEY) != invocation_id]
                if foreign:
                    logger.error(
                        f"TRANSACTION FAILED: {e}. {path} holds {len(foreign)} commit(s) "
                        f"by other writers since version {start_version}; not restoring."
                    )
                elif commits:
                    logger.info(
                        f"TRANSACTION FAILED: {e}. Initiating rollback from "
                        f"{current_version} to {start_version}."
                    )
                    self._rollback(path, start_version)
            elif start_version is None and current_version is not None:
                # Created during this invocation; rerunning reprovisions it.
                logger.info(
                    f"TRANSACTION FAILED on first run of {path}; "
                    f"leaving the table at version {current_version}."
                )
            raise


class TableLockRegistry:
    """
    One lock per target table; at most one in-flight invocation per table.

    The locks are shared by every registry in the process, so separate
    orchestrators and executors still exclude each other; a registry only
    carries its own default timeout. Writers in other processes are kept
    apart by Delta's optimistic commit protocol, which surfaces as a commit
    conflict.
    """

    _locks: dict[str, threading.Lock] = {}
    _guard = threading.Lock()

    def __init__(self, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    def _lock_for(self, table: str) -> threading.Lock:
        with TableLockRegistry._guard:
            return TableLockRegistry._locks.setdefault(table, threading.Lock())

    def is_held(self, table: str) -> bool:
        return self._lock_for(table).locked()

    @contextmanager
    def hold(self, table: str, timeout: float | None = None) -> Generator[None, None, None]:
        """
        Hold the lock of ``table`` for the duration of the block.

        Raises:
            ConcurrentInvocationError: when the lock is not acquired in time.
        """
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self._lock_for(table)
        if not lock.acquire(timeout=wait):
            raise ConcurrentInvocationError(
                f"{table} is being merged by another invocation "
                f"(waited {wait:.1f}s)",
                {"entity": table},
            )
        try:
            yield
        finally:
            lock.release()
