"""Surrogate key allocation.

Keys are issued per sequence (one per entity type), strictly increasing and
never reused. An allocation is durable before it is returned, so keys handed
to an invocation that later aborts are burnt rather than reissued.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

import polars as pl

from salesmart.catalog import TIMESTAMP
from salesmart.common.constants import KEY_SEQUENCES_TABLE, LAYER_CONTROL
from salesmart.common.utils import Clock, utc_now
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

KEY_SEQUENCES_SCHEMA: dict[str, pl.DataType] = {
    "sequence_name": pl.String(),
    "last_value": pl.Int64(),
    "updated_at": TIMESTAMP,
}


class SurrogateKeyAllocator(ABC):
    """Abstract base class for surrogate key allocation."""

    @abstractmethod
    def allocate_block(self, entity_type: str, count: int, floor: int = 0) -> range:
        """
        Reserve ``count`` consecutive keys for ``entity_type``.

        Args:
            entity_type: Sequence name, usually the target table name.
            count: Number of keys to reserve.
            floor: Highest key already present in the target. The block always
                starts above it, so a lost sequence state cannot cause reuse.

        Returns:
            The reserved keys, all greater than any key previously returned.
        """
        pass

    def allocate(self, entity_type: str, floor: int = 0) -> int:
        """Reserve a single key."""
        return self.allocate_block(entity_type, 1, floor)[0]

    def assign_keys(
        self,
        frame: pl.DataFrame,
        key_col: str,
        entity_type: str,
        floor: int = 0,
    ) -> pl.DataFrame:
        """Attach freshly allocated keys to every row of ``frame``."""
        if frame.is_empty():
            return frame.with_columns(pl.lit(None, dtype=pl.Int64).alias(key_col))
        block = self.allocate_block(entity_type, frame.height, floor)
        return frame.with_columns(pl.Series(key_col, block, dtype=pl.Int64))


class SequenceKeyAllocator(SurrogateKeyAllocator):
    """
    In-process allocator: one counter per sequence guarded by a lock.

    State lives only as long as the allocator; pair it with ``floor`` (the
    max stored key) when the process may restart between runs.
    """

    def __init__(self, start_values: dict[str, int] | None = None):
        self._last_values: dict[str, int] = dict(start_values or {})
        self._lock = threading.Lock()

    def allocate_block(self, entity_type: str, count: int, floor: int = 0) -> range:
        if count < 0:
            raise ValueError(f"Cannot allocate a negative number of keys: {count}")
        with self._lock:
            start = max(self._last_values.get(entity_type, 0), floor) + 1
            if count:
                self._last_values[entity_type] = start + count - 1
        return range(start, start + count)

    def current_value(self, entity_type: str) -> int:
        with self._lock:
            return self._last_values.get(entity_type, 0)


class DeltaKeyAllocator(SurrogateKeyAllocator):
    """
    Allocator whose high-water marks persist in ``control/key_sequences``.

    Within a process allocations serialize on a lock; across processes the
    upsert MERGE is rejected by Delta's commit protocol when two writers
    race on the same sequence table.
    """

    def __init__(self, warehouse: DeltaWarehouse, clock: Clock = utc_now):
        self.warehouse = warehouse
        self.clock = clock
        self.path = warehouse.table_path(LAYER_CONTROL, KEY_SEQUENCES_TABLE)
        self._lock = threading.Lock()

    def current_value(self, entity_type: str) -> int:
        """Last key issued for ``entity_type`` (0 when none was issued yet)."""
        sequences = self.warehouse.read(self.path, KEY_SEQUENCES_SCHEMA)
        result = sequences.filter(pl.col("sequence_name") == entity_type)
        if result.is_empty():
            return 0
        return int(result["last_value"][0])

    def allocate_block(self, entity_type: str, count: int, floor: int = 0) -> range:
        if count < 0:
            raise ValueError(f"Cannot allocate a negative number of keys: {count}")
        with self._lock:
            start = max(self.current_value(entity_type), floor) + 1
            if count:
                self._persist(entity_type, start + count - 1)
                logger.info(
                    f"Allocated {count} key(s) for {entity_type}: {start}..{start + count - 1}"
                )
        return range(start, start + count)

    def _persist(self, entity_type: str, last_value: int) -> None:
        new_record = pl.DataFrame(
            {
                "sequence_name": [entity_type],
                "last_value": [last_value],
                "updated_at": [self.clock()],
            },
            schema=KEY_SEQUENCES_SCHEMA,
        )

        if not self.warehouse.exists(self.path):
            self.warehouse.append(self.path, new_record)
        else:
            self.warehouse.merge(
                self.path, new_record, "s.sequence_name = t.sequence_name"
            ).when_matched_update_all().when_not_matched_insert_all().execute()
