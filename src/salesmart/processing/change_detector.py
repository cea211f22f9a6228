"""
Change detection: classify a staged batch against stored state.

Pure classification, no side effects. Rows are matched on the entity's
identity columns (natural keys, scoped by source unless the entity merges
its sources) and compared null-safely on the comparison attribute set.
"""

from __future__ import annotations

import logging

import polars as pl

from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    IS_ACTIVE_COL,
    SOURCE_ENTITY_COL,
    SOURCE_SYSTEM_COL,
    TARGET_KEY_COL,
    UNKNOWN_MEMBER_KEY,
)
from salesmart.common.errors import InvariantViolationError
from salesmart.models import ChangeSet

logger = logging.getLogger(__name__)

_CURRENT_SUFFIX = "__current"


def pick_representatives(batch: pl.DataFrame, entity: EntityConfig) -> pl.DataFrame:
    """
    Keep exactly one row per identity.

    The winner is the first row after sorting by source system, source
    entity, comparison attributes and then every remaining column, so the
    choice does not depend on the order rows arrived in.
    """
    if batch.is_empty():
        return batch
    leading = [SOURCE_SYSTEM_COL, SOURCE_ENTITY_COL, *entity.comparison_columns]
    order = list(dict.fromkeys([*leading, *batch.columns]))
    return batch.sort(order, nulls_last=True, maintain_order=True).unique(
        subset=entity.identity_columns, keep="first", maintain_order=True
    )


def current_state(stored: pl.DataFrame, entity: EntityConfig) -> pl.DataFrame:
    """Stored rows a batch is compared with: real members, active versions only."""
    current = stored.filter(pl.col(entity.surrogate_key) != UNKNOWN_MEMBER_KEY)
    if entity.is_versioned:
        current = current.filter(pl.col(IS_ACTIVE_COL))
    return current


def assert_unique_current(current: pl.DataFrame, entity: EntityConfig) -> None:
    """Fail when two current rows share an identity (e.g. two ACTIVE versions)."""
    duplicates = (
        current.group_by(entity.identity_columns)
        .agg(pl.len().alias("rows"))
        .filter(pl.col("rows") > 1)
    )
    if not duplicates.is_empty():
        sample = duplicates.head(5).to_dicts()
        state = "active versions" if entity.is_versioned else "rows"
        raise InvariantViolationError(
            f"{entity.table_name}: {duplicates.height} identities have more than one "
            f"current {state}",
            {"entity": entity.table_name, "sample": str(sample)},
        )


class ChangeDetector:
    """Splits a batch into NEW / CHANGED / UNCHANGED for one entity."""

    def __init__(self, entity: EntityConfig):
        self.entity = entity

    def classify(self, batch: pl.DataFrame, stored: pl.DataFrame) -> ChangeSet:
        """
        Classify ``batch`` against ``stored``.

        Args:
            batch: Typed rows with natural keys, attributes and source labels.
            stored: Full content of the target table.

        Returns:
            ChangeSet; CHANGED rows carry the stored surrogate key in
            ``_target_key``.

        Raises:
            InvariantViolationError: stored state already holds duplicate
                current rows for an identity.
        """
        entity = self.entity
        identity = entity.identity_columns
        comparison = entity.comparison_columns

        representatives = pick_representatives(batch, entity)
        current = current_state(stored, entity)
        assert_unique_current(current, entity)

        stored_view = current.select(
            [
                *identity,
                pl.col(entity.surrogate_key).alias(TARGET_KEY_COL),
                *[pl.col(c).alias(f"{c}{_CURRENT_SUFFIX}") for c in comparison],
            ]
        )
        incoming = representatives.with_columns(
            [pl.col(c).cast(current.schema[c]) for c in dict.fromkeys([*identity, *comparison])]
        )
        joined = incoming.join(stored_view, on=identity, how="left", maintain_order="left")

        is_new = pl.col(TARGET_KEY_COL).is_null()
        if comparison:
            differs = pl.any_horizontal(
                [pl.col(c).ne_missing(pl.col(f"{c}{_CURRENT_SUFFIX}")) for c in comparison]
            )
        else:
            differs = pl.lit(False)

        helper_columns = [f"{c}{_CURRENT_SUFFIX}" for c in comparison]
        changes = ChangeSet(
            new=joined.filter(is_new).drop([TARGET_KEY_COL, *helper_columns]),
            changed=joined.filter(~is_new & differs).drop(helper_columns),
            unchanged=joined.filter(~is_new & ~differs).drop(helper_columns),
        )
        logger.info(
            f"{entity.table_name}: {batch.height} staged, "
            f"{representatives.height} distinct -> new={changes.new.height}, "
            f"changed={changes.changed.height}, unchanged={changes.unchanged.height}"
        )
        return changes
