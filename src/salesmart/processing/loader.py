"""
Staged source access.

The staging loader proper (file ingestion into the warehouse) is an external
collaborator; this module reads what it produced. Each source system lands
one string-typed table per source entity, with a ``refresh_dt`` timestamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import polars as pl

from salesmart.catalog import TIMESTAMP
from salesmart.common.constants import (
    OBSERVED_AT_COL,
    SOURCE_DATE_FORMATS,
    SOURCE_ENTITY_COL,
    SOURCE_SYSTEM_COL,
    SOURCES,
)
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

# Columns a staged sales extract may carry; individual sales have
# customer_surname, company sales have customername.
SOURCE_COLUMNS = [
    "ordernumber",
    "quantityordered",
    "price_each",
    "cogs_each",
    "total_sales",
    "orderdate",
    "status",
    "qtr",
    "month",
    "year",
    "product_group",
    "product_group_code",
    "productcode",
    "customer_name",
    "customer_surname",
    "customername",
    "customercode",
    "customertype",
    "postalcode",
    "address",
    "city",
    "country",
    "discount_code",
    "discount_rate",
    "payment_code",
    "payment_method",
    "refresh_dt",
]


@dataclass
class StagedBatch:
    """Tagged staged frames of one run, keyed by source system."""

    frames: dict[str, pl.DataFrame] = field(default_factory=dict)

    @property
    def source_systems(self) -> list[str]:
        return sorted(self.frames)

    @property
    def row_count(self) -> int:
        return sum(f.height for f in self.frames.values())

    def is_empty(self) -> bool:
        return self.row_count == 0


def _parse_timestamp(column: str, formats: list[str]) -> pl.Expr:
    attempts = [
        pl.col(column).str.strip_chars().str.to_datetime(fmt, strict=False, time_unit="us")
        for fmt in ["%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S%.f", *formats]
    ]
    return pl.coalesce(attempts).dt.replace_time_zone("UTC").cast(TIMESTAMP)


def tag_source(
    frame: pl.DataFrame,
    source_system: str,
    source_entity: str,
    date_formats: list[str] | None = None,
) -> pl.DataFrame:
    """
    Cast every staged column to string and label the rows with their source.

    ``refresh_dt`` becomes the ``observed_at`` timestamp of each row.
    """
    formats = date_formats or list(SOURCE_DATE_FORMATS)
    tagged = frame.select([pl.col(c).cast(pl.String) for c in frame.columns])
    if "refresh_dt" in tagged.columns:
        observed = _parse_timestamp("refresh_dt", formats)
    else:
        observed = pl.lit(None, dtype=TIMESTAMP)
    return tagged.with_columns(
        pl.lit(source_system).alias(SOURCE_SYSTEM_COL),
        pl.lit(source_entity).alias(SOURCE_ENTITY_COL),
        observed.alias(OBSERVED_AT_COL),
    )


class StagingLoader:
    """
    Reads staged extracts from ``staging/<system>/<entity>``.

    Args:
        warehouse: Warehouse holding the staging layer.
        sources: Source system -> source entity to read.
        date_formats: Accepted layouts for ``refresh_dt``.
    """

    def __init__(
        self,
        warehouse: DeltaWarehouse,
        sources: dict[str, str] | None = None,
        date_formats: list[str] | None = None,
    ):
        self.warehouse = warehouse
        self.sources = sources or dict(SOURCES)
        self.date_formats = date_formats or list(SOURCE_DATE_FORMATS)

    def load_full_snapshot(self, source_system: str, source_entity: str) -> pl.DataFrame:
        """Read one staged table. A source that has not landed yet reads as empty."""
        path = self.warehouse.staging_path(source_system, source_entity)
        if not self.warehouse.exists(path):
            logger.info(f"No staged data for {source_system}.{source_entity}")
            return pl.DataFrame(
                schema={
                    SOURCE_SYSTEM_COL: pl.String(),
                    SOURCE_ENTITY_COL: pl.String(),
                    OBSERVED_AT_COL: TIMESTAMP,
                }
            )
        return tag_source(
            self.warehouse.read(path), source_system, source_entity, self.date_formats
        )

    def load(self) -> StagedBatch:
        """Read every configured source."""
        batch = StagedBatch(
            {
                system: self.load_full_snapshot(system, entity)
                for system, entity in self.sources.items()
            }
        )
        logger.info(
            f"Loaded {batch.row_count} staged rows from {', '.join(batch.source_systems)}"
        )
        return batch

    def stage(self, frame: pl.DataFrame, source_system: str, source_entity: str) -> Path:
        """Land an extract as the current staged snapshot of a source (replaces it)."""
        path = self.warehouse.staging_path(source_system, source_entity)
        self.warehouse.overwrite(
            path, frame.select([pl.col(c).cast(pl.String) for c in frame.columns])
        )
        logger.info(f"Staged {frame.height} rows for {source_system}.{source_entity}")
        return path

    def stage_csv(self, csv_path: str | Path, source_system: str, source_entity: str) -> Path:
        """Land a CSV extract, every column read as text."""
        frame = pl.read_csv(csv_path, infer_schema=False)
        return self.stage(frame, source_system, source_entity)
