"""
Fact merge for ``fct_orders``.

Step A inserts transactions not yet in the fact table, resolved against the
ACTIVE dimension versions. Step B repairs existing rows: a row whose product
version has been retired is re-pointed to the active version with a fresh
price/cost snapshot, and references that were the unknown member on insert
are filled once their dimension row has arrived. Both steps are one MERGE,
pruned to the partitions they touch.
"""

from __future__ import annotations

import logging
from datetime import datetime

import polars as pl

from salesmart.catalog import (
    CE_CUSTOMERS,
    CE_DISCOUNTS,
    CE_ORDERS,
    CE_PAYMENTS,
    CE_PRODUCTS_SCD,
    DIM_DATES,
    DIM_DATES_SCHEMA,
    FACT_DATE_COL,
    FACT_NATURAL_KEY,
    FACT_REFERENCES,
    FCT_ORDERS,
    FCT_ORDERS_SCHEMA,
    conform_to_schema,
    table_schema,
)
from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    ACTION_COL,
    ACTION_INSERT_NEW,
    ACTION_UPDATE,
    INSERT_DT_COL,
    LAYER_DIMENSION,
    LAYER_FACT,
    PARTITION_COL,
    UNASSIGNED_AMOUNT,
    UNASSIGNED_NUMBER,
    UNKNOWN_DATE,
    UNKNOWN_MEMBER_KEY,
    UPDATE_DT_COL,
)
from salesmart.common.errors import MissingDependencyError
from salesmart.common.utils import sql_literal
from salesmart.models import MergeCounts
from salesmart.processing.partitions import PartitionManager
from salesmart.processing.resolver import ReferenceResolver, unresolved_count
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

_RESOLVED = "__resolved_"

# Repaired only while they still point at the unknown member
_LATE_ARRIVING_KEYS = ["order_surr_id", "cust_surr_id", "payment_surr_id", "discount_surr_id"]


def with_measures(frame: pl.DataFrame) -> pl.DataFrame:
    """
    Derive the computed measures from their stored inputs.

    gross_amount = price_each * quantity
    net_amount   = gross_amount - gross_amount * discount_rate / 100
    """
    gross = pl.col("price_each") * pl.col("quantity")
    return frame.with_columns(
        gross.round(2).alias("gross_amount"),
        (gross - gross * pl.col("discount_rate") / 100).round(2).alias("net_amount"),
    )


def dangling_references(
    warehouse: DeltaWarehouse, fact: pl.DataFrame
) -> dict[str, int]:
    """Fact rows per foreign key (and order date) missing from the dimension it references."""
    dangling = {}
    for column, dimension in FACT_REFERENCES.items():
        path = warehouse.table_path(dimension.layer, dimension.table_name)
        keys = warehouse.read(path, table_schema(dimension)).select(
            pl.col(dimension.surrogate_key).alias(column)
        )
        dangling[column] = fact.join(keys, on=column, how="anti").height
    days = warehouse.read(
        warehouse.table_path(LAYER_DIMENSION, DIM_DATES), DIM_DATES_SCHEMA
    ).select(FACT_DATE_COL)
    dangling[FACT_DATE_COL] = fact.join(days, on=FACT_DATE_COL, how="anti").height
    return dangling


class FactMerger:
    """
    Loads ``fct_orders`` from the conformed and dimension layers.

    Args:
        warehouse: Storage for every layer.
        partitions: Partition manager of the fact table.
        resolver: Resolver snapshotting the dimensions for this invocation.
    """

    def __init__(
        self,
        warehouse: DeltaWarehouse,
        partitions: PartitionManager,
        resolver: ReferenceResolver | None = None,
    ):
        self.warehouse = warehouse
        self.partitions = partitions
        self.resolver = resolver or ReferenceResolver(warehouse)
        self.path = warehouse.table_path(LAYER_FACT, FCT_ORDERS)

    def _conformed(self, entity: EntityConfig, columns: list[str]) -> pl.DataFrame:
        path = self.warehouse.table_path(entity.layer, entity.table_name)
        if not self.warehouse.exists(path):
            raise MissingDependencyError(
                f"{FCT_ORDERS} depends on {entity.table_name}, which has not been loaded",
                {"entity": FCT_ORDERS, "dependency": entity.table_name},
            )
        return (
            self.warehouse.read(path)
            .filter(pl.col(entity.surrogate_key) != UNKNOWN_MEMBER_KEY)
            .select(columns)
        )

    def build_source(self) -> pl.DataFrame:
        """Transaction lines with every dimension reference resolved."""
        resolver = self.resolver
        orders = self._conformed(
            CE_ORDERS,
            ["order_id", "orders_src_id", "prod_id", "quantity", "order_dt",
             "source_system", "source_entity"],
        )
        # Every version, so orders still pointing at a retired one find their product.
        products = self._conformed(CE_PRODUCTS_SCD, ["prod_id", "products_src_id"])
        payments = (
            self._conformed(
                CE_PAYMENTS,
                ["payment_id", "order_id", "payments_src_id", "cust_id", "discount_id"],
            )
            .sort("payment_id")
            .unique(subset=["order_id"], keep="first", maintain_order=True)
            .drop("payment_id")
        )
        customers = self._conformed(CE_CUSTOMERS, ["cust_id", "customers_src_id"])
        discounts = self._conformed(CE_DISCOUNTS, ["discount_id", "discounts_src_id"])

        source = (
            orders.join(products, on="prod_id", how="left")
            .join(payments, on="order_id", how="left")
            .join(customers, on="cust_id", how="left")
            .join(discounts, on="discount_id", how="left")
        )
        source = resolver.resolve_column(
            source, "dim_order_details", {"orders_src_id": "orders_src_id"}, "order_surr_id"
        )
        source = resolver.resolve_column(
            source,
            "dim_products_scd",
            {"products_src_id": "products_src_id"},
            "prod_surr_id",
            attributes={"price_each": "price_each", "cost_each": "cost_each"},
        )
        source = resolver.resolve_column(
            source,
            "dim_payments",
            {"payments_src_id": "payments_src_id", "orders_src_id": "orders_src_id"},
            "payment_surr_id",
        )
        source = resolver.resolve_column(
            source, "dim_customers", {"customers_src_id": "customers_src_id"}, "cust_surr_id"
        )
        source = resolver.resolve_column(
            source,
            "dim_discounts",
            {"discounts_src_id": "discounts_src_id"},
            "discount_surr_id",
            attributes={"discount_rate": "discount_rate"},
        )
        source = source.with_columns(
            pl.col(FACT_DATE_COL).fill_null(UNKNOWN_DATE),
            pl.col("quantity").fill_null(UNASSIGNED_NUMBER),
            pl.col("price_each").fill_null(UNASSIGNED_AMOUNT),
            pl.col("cost_each").fill_null(UNASSIGNED_AMOUNT),
            pl.col("discount_rate").fill_null(UNASSIGNED_AMOUNT),
        )

        unresolved = {
            k: v for k, v in unresolved_count(source, list(FACT_REFERENCES)).items() if v
        }
        if unresolved:
            logger.info(f"{FCT_ORDERS}: references resolved to unknown member: {unresolved}")

        return source.with_columns(self.partitions.partition_expr(FACT_DATE_COL))

    def _repairs(
        self, existing: pl.DataFrame, source: pl.DataFrame, now: datetime
    ) -> pl.DataFrame:
        refreshed = ["prod_surr_id", "price_each", "cost_each", "discount_rate", *_LATE_ARRIVING_KEYS]
        resolved = source.select(
            FACT_NATURAL_KEY, *[pl.col(c).alias(f"{_RESOLVED}{c}") for c in refreshed]
        )
        joined = existing.join(resolved, on=FACT_NATURAL_KEY, how="inner")

        def resolved_col(c: str) -> pl.Expr:
            return pl.col(f"{_RESOLVED}{c}")

        def fills(c: str) -> pl.Expr:
            return (pl.col(c) == UNKNOWN_MEMBER_KEY) & (resolved_col(c) != UNKNOWN_MEMBER_KEY)

        repoint = (resolved_col("prod_surr_id") != UNKNOWN_MEMBER_KEY) & (
            resolved_col("prod_surr_id") != pl.col("prod_surr_id")
        )
        needs_repair = pl.any_horizontal([repoint, *[fills(c) for c in _LATE_ARRIVING_KEYS]])

        repairs = joined.filter(needs_repair).with_columns(
            *[
                pl.when(repoint).then(resolved_col(c)).otherwise(pl.col(c)).alias(c)
                for c in ("prod_surr_id", "price_each", "cost_each")
            ],
            *[
                pl.when(fills(c)).then(resolved_col(c)).otherwise(pl.col(c)).alias(c)
                for c in _LATE_ARRIVING_KEYS
            ],
            pl.when(fills("discount_surr_id"))
            .then(resolved_col("discount_rate"))
            .otherwise(pl.col("discount_rate"))
            .alias("discount_rate"),
            pl.lit(now).alias(UPDATE_DT_COL),
            pl.lit(ACTION_UPDATE).alias(ACTION_COL),
        )
        return repairs.drop([c for c in repairs.columns if c.startswith(_RESOLVED)])

    def merge(self, now: datetime) -> MergeCounts:
        """Run Step A (insert) and Step B (repair) as one commit."""
        source = self.build_source()
        if source.is_empty():
            logger.info(f"{FCT_ORDERS}: nothing staged")
            return MergeCounts()

        existing = self.warehouse.read(self.path, FCT_ORDERS_SCHEMA)
        inserts = source.join(
            existing.select(FACT_NATURAL_KEY), on=FACT_NATURAL_KEY, how="anti"
        ).with_columns(
            pl.lit(now).alias(INSERT_DT_COL),
            pl.lit(now).alias(UPDATE_DT_COL),
            pl.lit(ACTION_INSERT_NEW).alias(ACTION_COL),
        )
        repairs = self._repairs(existing, source, now)

        if inserts.is_empty() and repairs.is_empty():
            logger.info(f"{FCT_ORDERS}: up to date")
            return MergeCounts()

        self.partitions.ensure_coverage(inserts[FACT_DATE_COL])
        self.partitions.check_coverage(inserts[FACT_DATE_COL])

        staged_schema = {**FCT_ORDERS_SCHEMA, ACTION_COL: pl.String()}
        staged = pl.concat(
            [conform_to_schema(inserts, staged_schema), conform_to_schema(repairs, staged_schema)]
        )

        if not self.warehouse.exists(self.path):
            self.warehouse.append(
                self.path, staged.drop(ACTION_COL), partition_by=[PARTITION_COL]
            )
        else:
            touched = sorted(staged[PARTITION_COL].unique().to_list())
            predicate = (
                f"t.{PARTITION_COL} IN ({', '.join(sql_literal(p) for p in touched)})"
                f" AND t.{PARTITION_COL} = s.{PARTITION_COL}"
                f" AND t.{FACT_NATURAL_KEY} = s.{FACT_NATURAL_KEY}"
            )
            repair_set = {
                c: f"s.{c}"
                for c in ["prod_surr_id", "price_each", "cost_each", "discount_rate",
                          *_LATE_ARRIVING_KEYS, UPDATE_DT_COL]
            }
            self.warehouse.merge(self.path, staged, predicate).when_matched_update(
                updates=repair_set,
                predicate=f"s.{ACTION_COL} = '{ACTION_UPDATE}'",
            ).when_not_matched_insert(
                updates={c: f"s.{c}" for c in FCT_ORDERS_SCHEMA},
                predicate=f"s.{ACTION_COL} = '{ACTION_INSERT_NEW}'",
            ).execute()

        counts = MergeCounts(rows_inserted=inserts.height, rows_updated=repairs.height)
        logger.info(
            f"{FCT_ORDERS}: inserted={counts.rows_inserted}, repaired={counts.rows_updated}"
        )
        return counts
