"""
Reference resolution: natural key on one entity -> surrogate key of another.

A missing reference is a data-quality fact, not a merge failure, so every
miss resolves to ``UNKNOWN_MEMBER_KEY``. Lookup tables are snapshotted once
and reused for the life of the resolver, which keeps one merge invocation
consistent with itself; build a new resolver (or ``refresh()``) per
invocation.
"""

from __future__ import annotations

import logging

import polars as pl

from salesmart.catalog import get_entity, table_schema
from salesmart.common.constants import (
    IS_ACTIVE_COL,
    SOURCE_SYSTEM_COL,
    UNKNOWN_MEMBER_KEY,
)
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """
    Resolves natural keys to surrogate keys against loaded tables.

    Resolution order for each row:
    1. same natural key within the row's own source system
    2. the lowest surrogate key carrying the natural key in any source
    3. ``UNKNOWN_MEMBER_KEY``

    Versioned targets only ever resolve to their ACTIVE version.
    """

    def __init__(self, warehouse: DeltaWarehouse):
        self.warehouse = warehouse
        self._snapshots: dict[str, pl.DataFrame] = {}

    def refresh(self) -> None:
        """Drop cached snapshots so the next lookup re-reads storage."""
        self._snapshots.clear()

    def lookup(self, entity_type: str) -> pl.DataFrame:
        """Resolvable rows of ``entity_type``: real members, active versions only."""
        if entity_type not in self._snapshots:
            entity = get_entity(entity_type)
            path = self.warehouse.table_path(entity.layer, entity.table_name)
            frame = self.warehouse.read(path, table_schema(entity)).filter(
                pl.col(entity.surrogate_key) != UNKNOWN_MEMBER_KEY
            )
            if entity.is_versioned:
                frame = frame.filter(pl.col(IS_ACTIVE_COL))
            self._snapshots[entity_type] = frame
            logger.debug(f"Snapshot of {entity_type}: {frame.height} resolvable rows")
        return self._snapshots[entity_type]

    def resolve(
        self,
        entity_type: str,
        natural_key: str | tuple[str, ...],
        source_system: str | None = None,
    ) -> int:
        """Resolve a single natural key. Never raises for a missing reference."""
        entity = get_entity(entity_type)
        values = natural_key if isinstance(natural_key, tuple) else (natural_key,)
        if len(values) != len(entity.natural_keys):
            raise ValueError(
                f"{entity_type} is keyed by {entity.natural_keys}, got {values!r}"
            )
        keyed = pl.DataFrame(
            {
                **{k: [v] for k, v in zip(entity.natural_keys, values)},
                SOURCE_SYSTEM_COL: [source_system],
            },
            schema={
                **{k: pl.String for k in entity.natural_keys},
                SOURCE_SYSTEM_COL: pl.String,
            },
        )
        resolved = self.resolve_column(
            keyed,
            entity_type,
            on={k: k for k in entity.natural_keys},
            alias="_resolved",
        )
        return int(resolved["_resolved"][0])

    def resolve_column(
        self,
        frame: pl.DataFrame,
        entity_type: str,
        on: dict[str, str],
        alias: str,
        attributes: dict[str, str] | None = None,
        source_column: str | None = SOURCE_SYSTEM_COL,
    ) -> pl.DataFrame:
        """
        Add the resolved surrogate key of ``entity_type`` as column ``alias``.

        Args:
            frame: Rows carrying the natural key(s) to resolve.
            entity_type: Target table name.
            on: Frame column -> target natural key column.
            alias: Name of the output key column.
            attributes: Target attribute -> output column, copied from the
                matched row (null when unresolved).
            source_column: Frame column holding the row's source system, used
                for source-scoped resolution. None disables scoping.
        """
        entity = get_entity(entity_type)
        attributes = attributes or {}
        snapshot = self.lookup(entity_type)
        sk = entity.surrogate_key
        frame_keys = list(on.keys())
        target_keys = list(on.values())

        keyed = frame.with_columns(
            [pl.col(c).cast(pl.String) for c in frame_keys]
        )

        def _candidates(prefix: str, partition: list[str]) -> pl.DataFrame:
            renames = {t: f for f, t in on.items()}
            renames[sk] = f"{prefix}key"
            renames.update({a: f"{prefix}{a}" for a in attributes})
            columns = list(dict.fromkeys([*partition, sk, *attributes]))
            return (
                snapshot.sort(sk)
                .unique(subset=partition, keep="first", maintain_order=True)
                .select(columns)
                .rename(renames)
            )

        scoped = source_column is not None and source_column in keyed.columns
        if scoped:
            scoped_rows = _candidates("__scoped_", [*target_keys, SOURCE_SYSTEM_COL])
            if source_column != SOURCE_SYSTEM_COL:
                scoped_rows = scoped_rows.rename({SOURCE_SYSTEM_COL: source_column})
            keyed = keyed.join(
                scoped_rows, on=[*frame_keys, source_column], how="left", maintain_order="left"
            )

        fallback_rows = _candidates("__fallback_", target_keys)
        keyed = keyed.join(
            fallback_rows, on=frame_keys, how="left", maintain_order="left"
        )

        key_sources = ["__fallback_key"]
        if scoped:
            key_sources.insert(0, "__scoped_key")

        outputs = [
            pl.coalesce([pl.col(c) for c in key_sources] + [pl.lit(UNKNOWN_MEMBER_KEY)])
            .cast(pl.Int64)
            .alias(alias)
        ]
        for attribute, output in attributes.items():
            # Attributes follow the key source that won, never mix rows.
            expr = pl.when(pl.col("__fallback_key").is_not_null()).then(
                pl.col(f"__fallback_{attribute}")
            )
            if scoped:
                expr = pl.when(pl.col("__scoped_key").is_not_null()).then(
                    pl.col(f"__scoped_{attribute}")
                ).otherwise(expr)
            outputs.append(expr.alias(output))

        helper_columns = [c for c in keyed.columns if c.startswith(("__scoped_", "__fallback_"))]
        return keyed.with_columns(outputs).drop(helper_columns)


def unresolved_count(frame: pl.DataFrame, key_columns: list[str]) -> dict[str, int]:
    """Rows per key column that fell back to the unknown member."""
    return {
        c: int(frame.filter(pl.col(c) == UNKNOWN_MEMBER_KEY).height)
        for c in key_columns
    }
