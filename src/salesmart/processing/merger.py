"""
Type-1 and Type-2 merges onto Delta tables.

Every strategy stages its rows with an ``_action`` column and applies them
with ONE Delta MERGE keyed on the surrogate key, so an invocation commits
all of its effects or none of them. For Type-2 this is what keeps a
retirement and its replacement version from ever diverging.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

import polars as pl

from salesmart.catalog import conform_to_schema, table_schema
from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    ACTION_COL,
    ACTION_INSERT_NEW,
    ACTION_INSERT_VERSION,
    ACTION_RETIRE,
    ACTION_UPDATE,
    DEFAULT_VALID_FROM,
    INSERT_DT_COL,
    IS_ACTIVE_COL,
    OPEN_ENDED_VALIDITY,
    TARGET_KEY_COL,
    UPDATE_DT_COL,
    VALID_FROM_COL,
    VALID_TO_COL,
)
from salesmart.models import ChangeSet, MergeCounts
from salesmart.processing.change_detector import ChangeDetector
from salesmart.processing.key_generator import SurrogateKeyAllocator
from salesmart.processing.table_creator import TableCreator
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


class MergeStrategy(Protocol):
    """Protocol defining the interface for SCD merge strategies."""

    def merge(self, changes: ChangeSet, now: datetime) -> MergeCounts:
        """Apply a classified batch; returns inserted/updated counts."""
        ...


_STRATEGY_REGISTRY: dict[int, type] = {}


def register_strategy(scd_type: int) -> Callable[[type], type]:
    """Decorator to register a merge strategy for an SCD type."""

    def decorator(cls: type) -> type:
        _STRATEGY_REGISTRY[scd_type] = cls
        return cls

    return decorator


def create_merge_strategy(
    entity: EntityConfig,
    warehouse: DeltaWarehouse,
    allocator: SurrogateKeyAllocator,
) -> MergeStrategy:
    """
    Factory function to create the merge strategy for an entity.

    Raises:
        ValueError: If no strategy is registered for the entity's SCD type.
    """
    if entity.scd_type not in _STRATEGY_REGISTRY:
        raise ValueError(
            f"Unsupported SCD type: {entity.scd_type}. "
            f"Registered types: {sorted(_STRATEGY_REGISTRY)}"
        )
    strategy_cls = _STRATEGY_REGISTRY[entity.scd_type]
    return strategy_cls(entity, warehouse, allocator)


class _DeltaStrategy:
    def __init__(
        self,
        entity: EntityConfig,
        warehouse: DeltaWarehouse,
        allocator: SurrogateKeyAllocator,
    ):
        self.entity = entity
        self.warehouse = warehouse
        self.allocator = allocator
        self.path = warehouse.table_path(entity.layer, entity.table_name)
        self.schema = table_schema(entity)
        self.surrogate_key: str = entity.surrogate_key  # type: ignore[assignment]

    def _max_key(self) -> int:
        """Highest surrogate key stored; allocations always start above it."""
        if not self.warehouse.exists(self.path):
            return 0
        value = (
            self.warehouse.scan(self.path)
            .select(pl.col(self.surrogate_key).max())
            .collect()
            .item()
        )
        return max(int(value or 0), 0)

    def _assign_keys(self, frame: pl.DataFrame) -> pl.DataFrame:
        return self.allocator.assign_keys(
            frame,
            self.surrogate_key,
            self.entity.sequence_name,
            floor=self._max_key(),
        )

    def _stage(self, frame: pl.DataFrame) -> pl.DataFrame:
        staged_schema = {**self.schema, ACTION_COL: pl.String()}
        return conform_to_schema(frame, staged_schema)

    def _insert_values(self) -> dict[str, str]:
        return {c: f"s.{c}" for c in self.schema}


@register_strategy(1)
class Type1Strategy(_DeltaStrategy):
    """
    Overwrite in place.

    NEW rows are inserted with a fresh surrogate key; CHANGED rows get their
    mutable attributes and ``update_dt`` overwritten while the surrogate key,
    natural key, source labels and ``insert_dt`` stay untouched.
    """

    def merge(self, changes: ChangeSet, now: datetime) -> MergeCounts:
        if changes.is_empty:
            return MergeCounts()

        sk = self.surrogate_key
        inserts = self._assign_keys(changes.new).with_columns(
            pl.lit(now).alias(INSERT_DT_COL),
            pl.lit(now).alias(UPDATE_DT_COL),
            pl.lit(ACTION_INSERT_NEW).alias(ACTION_COL),
        )
        updates = changes.changed.with_columns(
            pl.col(TARGET_KEY_COL).alias(sk),
            pl.lit(now).alias(INSERT_DT_COL),
            pl.lit(now).alias(UPDATE_DT_COL),
            pl.lit(ACTION_UPDATE).alias(ACTION_COL),
        )
        staged = pl.concat([self._stage(inserts), self._stage(updates)])

        update_set = {c: f"s.{c}" for c in self.entity.attributes}
        update_set[UPDATE_DT_COL] = f"s.{UPDATE_DT_COL}"

        self.warehouse.merge(self.path, staged, f"t.{sk} = s.{sk}").when_matched_update(
            updates=update_set,
            predicate=f"s.{ACTION_COL} = '{ACTION_UPDATE}'",
        ).when_not_matched_insert(
            updates=self._insert_values(),
            predicate=f"s.{ACTION_COL} = '{ACTION_INSERT_NEW}'",
        ).execute()

        return MergeCounts(
            rows_inserted=inserts.height,
            rows_updated=updates.height,
        )


@register_strategy(2)
class Type2Strategy(_DeltaStrategy):
    """
    Versioned history.

    CHANGED rows retire the active version (``is_active = false``,
    ``valid_to = now``) and open a replacement with a fresh surrogate key and
    ``valid_from = now``. NEW rows open their first version, valid from
    1900-01-01 so facts dated before the first load still join. Retirement
    and replacement travel in the same MERGE.
    """

    def merge(self, changes: ChangeSet, now: datetime) -> MergeCounts:
        if changes.is_empty:
            return MergeCounts()

        sk = self.surrogate_key
        retirements = changes.changed.with_columns(
            pl.col(TARGET_KEY_COL).alias(sk),
            pl.lit(False).alias(IS_ACTIVE_COL),
            pl.lit(now).alias(VALID_TO_COL),
            pl.lit(now).alias(UPDATE_DT_COL),
            pl.lit(ACTION_RETIRE).alias(ACTION_COL),
        )
        openings = pl.concat(
            [
                self._stage(
                    changes.changed.drop(TARGET_KEY_COL).with_columns(
                        pl.lit(now).alias(VALID_FROM_COL),
                        pl.lit(ACTION_INSERT_VERSION).alias(ACTION_COL),
                    )
                ),
                self._stage(
                    changes.new.with_columns(
                        pl.lit(DEFAULT_VALID_FROM).alias(VALID_FROM_COL),
                        pl.lit(ACTION_INSERT_NEW).alias(ACTION_COL),
                    )
                ),
            ]
        ).drop(sk)
        openings = self._assign_keys(openings).with_columns(
            pl.lit(True).alias(IS_ACTIVE_COL),
            pl.lit(OPEN_ENDED_VALIDITY).alias(VALID_TO_COL),
            pl.lit(now).alias(INSERT_DT_COL),
            pl.lit(now).alias(UPDATE_DT_COL),
        )
        staged = pl.concat([self._stage(retirements), self._stage(openings)])

        self.warehouse.merge(self.path, staged, f"t.{sk} = s.{sk}").when_matched_update(
            updates={
                IS_ACTIVE_COL: f"s.{IS_ACTIVE_COL}",
                VALID_TO_COL: f"s.{VALID_TO_COL}",
                UPDATE_DT_COL: f"s.{UPDATE_DT_COL}",
            },
            predicate=f"s.{ACTION_COL} = '{ACTION_RETIRE}' AND t.{IS_ACTIVE_COL}",
        ).when_not_matched_insert(
            updates=self._insert_values(),
            predicate=f"s.{ACTION_COL} <> '{ACTION_RETIRE}'",
        ).execute()

        return MergeCounts(
            rows_inserted=openings.height,
            rows_updated=retirements.height,
        )


class EntityMerger:
    """
    Runs one entity invocation: provision, classify, merge.

    Args:
        entity: Entity declaration.
        warehouse: Storage holding the target table.
        allocator: Surrogate key allocator shared by the run.
    """

    def __init__(
        self,
        entity: EntityConfig,
        warehouse: DeltaWarehouse,
        allocator: SurrogateKeyAllocator,
    ):
        self.entity = entity
        self.warehouse = warehouse
        self.allocator = allocator
        self.detector = ChangeDetector(entity)
        self.strategy = create_merge_strategy(entity, warehouse, allocator)

    def merge(self, batch: pl.DataFrame, now: datetime) -> MergeCounts:
        entity = self.entity
        TableCreator(self.warehouse).ensure_table(entity)

        path = self.warehouse.table_path(entity.layer, entity.table_name)
        stored = self.warehouse.read(path, table_schema(entity))
        changes = self.detector.classify(batch, stored)
        counts = self.strategy.merge(changes, now)

        logger.info(
            f"{entity.table_name}: inserted={counts.rows_inserted}, "
            f"updated={counts.rows_updated}"
        )
        return counts
