"""
Conformed -> dimension projections.

A projection flattens conformed entities into the denormalized rows of one
dimension. The result is an ordinary batch (natural keys, attributes,
source labels) merged with the dimension's own Type-1/Type-2 strategy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import polars as pl

from salesmart.catalog import (
    CE_ADDRESSES,
    CE_CITIES,
    CE_COUNTRIES,
    CE_CUSTOMERS,
    CE_DISCOUNTS,
    CE_ORDERS,
    CE_PAYMENTS,
    CE_PRODUCT_CATEGORIES,
    CE_PRODUCTS_SCD,
    table_schema,
)
from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    IS_ACTIVE_COL,
    SOURCE_ENTITY_COL,
    SOURCE_SYSTEM_COL,
    UNASSIGNED_AMOUNT,
    UNASSIGNED_LABEL,
    UNKNOWN_MEMBER_KEY,
)
from salesmart.common.errors import MissingDependencyError
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)

Projection = Callable[["ConformedReader"], pl.DataFrame]

PROJECTIONS: dict[str, Projection] = {}


def projection(table_name: str) -> Callable[[Projection], Projection]:
    """Decorator to register the projection feeding a dimension."""

    def decorator(func: Projection) -> Projection:
        PROJECTIONS[table_name] = func
        return func

    return decorator


class ConformedReader:
    """Reads conformed tables for a dimension, failing when one was never loaded."""

    def __init__(self, warehouse: DeltaWarehouse, dimension: str):
        self.warehouse = warehouse
        self.dimension = dimension

    def read(
        self, entity: EntityConfig, members_only: bool = True, active_only: bool = False
    ) -> pl.DataFrame:
        path = self.warehouse.table_path(entity.layer, entity.table_name)
        if not self.warehouse.exists(path):
            raise MissingDependencyError(
                f"{self.dimension} depends on {entity.table_name}, which has not been loaded",
                {"entity": self.dimension, "dependency": entity.table_name},
            )
        frame = self.warehouse.read(path, table_schema(entity))
        if members_only:
            frame = frame.filter(pl.col(entity.surrogate_key) != UNKNOWN_MEMBER_KEY)
        if active_only and entity.is_versioned:
            frame = frame.filter(pl.col(IS_ACTIVE_COL))
        return frame


_SOURCE_LABELS = [SOURCE_SYSTEM_COL, SOURCE_ENTITY_COL]


@projection("dim_customers")
def project_customers(reader: ConformedReader) -> pl.DataFrame:
    # Lookups keep their unknown rows so unresolved chains read 'n.a.'.
    addresses = reader.read(CE_ADDRESSES, members_only=False).select(
        "address_id",
        pl.col("addresses_src_id").alias("postal_code"),
        "address_line",
        "city_id",
    )
    cities = reader.read(CE_CITIES, members_only=False).select(
        "city_id", "city_name", "country_id"
    )
    countries = reader.read(CE_COUNTRIES, members_only=False).select(
        "country_id", "country_name"
    )
    customers = reader.read(CE_CUSTOMERS)
    return (
        customers.join(addresses, on="address_id", how="left")
        .join(cities, on="city_id", how="left")
        .join(countries, on="country_id", how="left")
        .select(
            "customers_src_id",
            "cust_first_name",
            "cust_last_name",
            "cust_company_name",
            "cust_type",
            *[
                pl.col(c).fill_null(UNASSIGNED_LABEL)
                for c in ("postal_code", "address_line", "city_name", "country_name")
            ],
            *_SOURCE_LABELS,
        )
    )


@projection("dim_products_scd")
def project_products(reader: ConformedReader) -> pl.DataFrame:
    categories = reader.read(CE_PRODUCT_CATEGORIES, members_only=False).select(
        "prod_category_id", "prod_category"
    )
    return (
        reader.read(CE_PRODUCTS_SCD, active_only=True)
        .join(categories, on="prod_category_id", how="left")
        .select(
            "products_src_id",
            "prod_category_id",
            pl.col("prod_category").fill_null(UNASSIGNED_LABEL),
            "price_each",
            "cost_each",
            *_SOURCE_LABELS,
        )
    )


@projection("dim_discounts")
def project_discounts(reader: ConformedReader) -> pl.DataFrame:
    return reader.read(CE_DISCOUNTS).select(
        "discounts_src_id", "discount_rate", *_SOURCE_LABELS
    )


@projection("dim_order_details")
def project_order_details(reader: ConformedReader) -> pl.DataFrame:
    return reader.read(CE_ORDERS).select(
        "orders_src_id", "order_dt", "quantity", "order_status", *_SOURCE_LABELS
    )


@projection("dim_payments")
def project_payments(reader: ConformedReader) -> pl.DataFrame:
    """Payments with their amount: active product price times ordered quantity."""
    products = reader.read(CE_PRODUCTS_SCD, members_only=False)
    # An order may still point at a retired product version.
    version_of = products.select("prod_id", "products_src_id")
    active_price = products.filter(pl.col(IS_ACTIVE_COL)).select(
        "products_src_id", pl.col("price_each").alias("_active_price")
    )
    orders = reader.read(CE_ORDERS).select("order_id", "prod_id", "quantity")

    return (
        reader.read(CE_PAYMENTS)
        .join(orders, on="order_id", how="left")
        .join(version_of, on="prod_id", how="left")
        .join(active_price, on="products_src_id", how="left")
        .select(
            "payments_src_id",
            "orders_src_id",
            "payment_type",
            (pl.col("_active_price") * pl.col("quantity"))
            .round(2)
            .fill_null(UNASSIGNED_AMOUNT)
            .alias("amount"),
            *_SOURCE_LABELS,
        )
    )


def project_dimension(entity: EntityConfig, warehouse: DeltaWarehouse) -> pl.DataFrame:
    """Build the batch for a dimension from the current conformed layer."""
    if entity.table_name not in PROJECTIONS:
        raise KeyError(f"No projection registered for {entity.table_name}")
    batch = PROJECTIONS[entity.table_name](ConformedReader(warehouse, entity.table_name))
    logger.info(f"{entity.table_name}: projected {batch.height} rows")
    return batch
