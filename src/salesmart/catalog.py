"""Entity catalog for the sales warehouse.

Every conformed entity and dimension projection is declared once here and
reused by the extractors, merge strategies, resolver and table creator.
"""

from __future__ import annotations

import polars as pl

from salesmart.common.config import EntityConfig
from salesmart.common.constants import (
    DEFAULT_VALID_FROM,
    INSERT_DT_COL,
    IS_ACTIVE_COL,
    MANUAL_SOURCE,
    OPEN_ENDED_VALIDITY,
    PARTITION_COL,
    SOURCE_ENTITY_COL,
    SOURCE_SYSTEM_COL,
    UNASSIGNED_AMOUNT,
    UNASSIGNED_LABEL,
    UNASSIGNED_NUMBER,
    UNKNOWN_DATE,
    UNKNOWN_MEMBER_KEY,
    UPDATE_DT_COL,
    VALID_FROM_COL,
    VALID_TO_COL,
)
from salesmart.common.errors import ConfigurationError

TIMESTAMP = pl.Datetime("us", "UTC")

POLARS_TYPES: dict[str, pl.DataType] = {
    "string": pl.String(),
    "int": pl.Int64(),
    "float": pl.Float64(),
    "date": pl.Date(),
    "datetime": TIMESTAMP,
    "bool": pl.Boolean(),
}

# -----------------------------------------------------------------------------
# Conformed layer
# -----------------------------------------------------------------------------

CE_COUNTRIES = EntityConfig(
    table_name="ce_countries",
    layer="conformed",
    surrogate_key="country_id",
    natural_keys=["countries_src_id"],
    attributes={"country_name": "string"},
    comparison_columns=["country_name"],
)

CE_CITIES = EntityConfig(
    table_name="ce_cities",
    layer="conformed",
    surrogate_key="city_id",
    natural_keys=["cities_src_id"],
    attributes={"city_name": "string", "country_id": "int"},
    comparison_columns=["country_id"],
)

CE_ADDRESSES = EntityConfig(
    table_name="ce_addresses",
    layer="conformed",
    surrogate_key="address_id",
    natural_keys=["addresses_src_id"],
    attributes={"address_line": "string", "city_id": "int"},
    comparison_columns=["address_line", "city_id"],
)

CE_PRODUCT_CATEGORIES = EntityConfig(
    table_name="ce_product_categories",
    layer="conformed",
    surrogate_key="prod_category_id",
    natural_keys=["prod_categories_src_id"],
    attributes={"prod_category": "string", "prod_category_code": "string"},
    comparison_columns=["prod_category_code"],
    conform_sources=True,
)

CE_CUSTOMERS = EntityConfig(
    table_name="ce_customers",
    layer="conformed",
    surrogate_key="cust_id",
    natural_keys=["customers_src_id"],
    attributes={
        "cust_first_name": "string",
        "cust_last_name": "string",
        "cust_company_name": "string",
        "cust_type": "string",
        "address_id": "int",
    },
    comparison_columns=["cust_last_name", "address_id"],
    conform_sources=True,
)

CE_PRODUCTS_SCD = EntityConfig(
    table_name="ce_products_scd",
    layer="conformed",
    scd_type=2,
    surrogate_key="prod_id",
    natural_keys=["products_src_id"],
    attributes={
        "prod_category_id": "int",
        "price_each": "float",
        "cost_each": "float",
    },
    comparison_columns=["price_each", "cost_each", "prod_category_id"],
    conform_sources=True,
)

CE_DISCOUNTS = EntityConfig(
    table_name="ce_discounts",
    layer="conformed",
    surrogate_key="discount_id",
    natural_keys=["discounts_src_id"],
    attributes={"discount_rate": "float"},
    comparison_columns=["discount_rate"],
    conform_sources=True,
)

CE_ORDERS = EntityConfig(
    table_name="ce_orders",
    layer="conformed",
    surrogate_key="order_id",
    natural_keys=["orders_src_id"],
    attributes={
        "prod_id": "int",
        "quantity": "int",
        "order_dt": "date",
        "order_status": "string",
    },
    comparison_columns=["prod_id", "quantity", "order_status"],
    conform_sources=True,
)

CE_PAYMENTS = EntityConfig(
    table_name="ce_payments",
    layer="conformed",
    surrogate_key="payment_id",
    natural_keys=["payments_src_id", "orders_src_id"],
    attributes={
        "order_id": "int",
        "cust_id": "int",
        "discount_id": "int",
        "payment_type": "string",
    },
    comparison_columns=["order_id", "cust_id", "discount_id", "payment_type"],
    conform_sources=True,
)

# -----------------------------------------------------------------------------
# Dimension layer
# -----------------------------------------------------------------------------

DIM_CUSTOMERS = EntityConfig(
    table_name="dim_customers",
    layer="dimension",
    surrogate_key="cust_surr_id",
    natural_keys=["customers_src_id"],
    attributes={
        "cust_first_name": "string",
        "cust_last_name": "string",
        "cust_company_name": "string",
        "cust_type": "string",
        "postal_code": "string",
        "address_line": "string",
        "city_name": "string",
        "country_name": "string",
    },
    comparison_columns=[
        "cust_first_name",
        "cust_last_name",
        "cust_company_name",
        "cust_type",
        "postal_code",
        "address_line",
        "city_name",
        "country_name",
    ],
    conform_sources=True,
)

DIM_PRODUCTS_SCD = EntityConfig(
    table_name="dim_products_scd",
    layer="dimension",
    scd_type=2,
    surrogate_key="prod_surr_id",
    natural_keys=["products_src_id"],
    attributes={
        "prod_category_id": "int",
        "prod_category": "string",
        "price_each": "float",
        "cost_each": "float",
    },
    comparison_columns=["price_each", "cost_each", "prod_category_id"],
    conform_sources=True,
)

DIM_DISCOUNTS = EntityConfig(
    table_name="dim_discounts",
    layer="dimension",
    surrogate_key="discount_surr_id",
    natural_keys=["discounts_src_id"],
    attributes={"discount_rate": "float"},
    comparison_columns=["discount_rate"],
    conform_sources=True,
)

DIM_ORDER_DETAILS = EntityConfig(
    table_name="dim_order_details",
    layer="dimension",
    surrogate_key="order_surr_id",
    natural_keys=["orders_src_id"],
    attributes={"order_dt": "date", "quantity": "int", "order_status": "string"},
    comparison_columns=["order_dt", "quantity", "order_status"],
    conform_sources=True,
)

DIM_PAYMENTS = EntityConfig(
    table_name="dim_payments",
    layer="dimension",
    surrogate_key="payment_surr_id",
    natural_keys=["payments_src_id", "orders_src_id"],
    attributes={"payment_type": "string", "amount": "float"},
    comparison_columns=["payment_type", "amount"],
    conform_sources=True,
)

# Dependency order: geography -> addresses -> customers/products/discounts
# -> orders -> payments
CONFORMED_LOAD_ORDER: list[EntityConfig] = [
    CE_COUNTRIES,
    CE_CITIES,
    CE_ADDRESSES,
    CE_PRODUCT_CATEGORIES,
    CE_CUSTOMERS,
    CE_PRODUCTS_SCD,
    CE_DISCOUNTS,
    CE_ORDERS,
    CE_PAYMENTS,
]

DIMENSION_LOAD_ORDER: list[EntityConfig] = [
    DIM_CUSTOMERS,
    DIM_PRODUCTS_SCD,
    DIM_DISCOUNTS,
    DIM_ORDER_DETAILS,
    DIM_PAYMENTS,
]

ENTITIES: dict[str, EntityConfig] = {
    e.table_name: e for e in [*CONFORMED_LOAD_ORDER, *DIMENSION_LOAD_ORDER]
}

# -----------------------------------------------------------------------------
# Fact
# -----------------------------------------------------------------------------

FCT_ORDERS = "fct_orders"
FACT_NATURAL_KEY = "orders_src_id"
FACT_DATE_COL = "order_dt"

FCT_ORDERS_SCHEMA: dict[str, pl.DataType] = {
    "order_surr_id": pl.Int64(),
    "prod_surr_id": pl.Int64(),
    "cust_surr_id": pl.Int64(),
    "payment_surr_id": pl.Int64(),
    "discount_surr_id": pl.Int64(),
    "order_dt": pl.Date(),
    "quantity": pl.Int64(),
    "price_each": pl.Float64(),
    "cost_each": pl.Float64(),
    "discount_rate": pl.Float64(),
    "orders_src_id": pl.String(),
    SOURCE_SYSTEM_COL: pl.String(),
    SOURCE_ENTITY_COL: pl.String(),
    PARTITION_COL: pl.String(),
    INSERT_DT_COL: TIMESTAMP,
    UPDATE_DT_COL: TIMESTAMP,
}

# Calendar, keyed by the date itself
DIM_DATES = "dim_dates"

DIM_DATES_SCHEMA: dict[str, pl.DataType] = {
    "order_dt": pl.Date(),
    "day_in_week": pl.String(),
    "day_number_in_month": pl.Int64(),
    "month_number": pl.Int64(),
    "month_name": pl.String(),
    "quarter_number": pl.Int64(),
    "year": pl.Int64(),
    INSERT_DT_COL: TIMESTAMP,
}

# Fact foreign key -> dimension it references
FACT_REFERENCES: dict[str, EntityConfig] = {
    "order_surr_id": DIM_ORDER_DETAILS,
    "prod_surr_id": DIM_PRODUCTS_SCD,
    "cust_surr_id": DIM_CUSTOMERS,
    "payment_surr_id": DIM_PAYMENTS,
    "discount_surr_id": DIM_DISCOUNTS,
}


def get_entity(table_name: str) -> EntityConfig:
    try:
        return ENTITIES[table_name]
    except KeyError:
        raise KeyError(f"Unknown entity: {table_name}") from None


def _surrogate_key(entity: EntityConfig) -> str:
    if not entity.surrogate_key:
        raise ConfigurationError(
            f"{entity.table_name} has no surrogate key", {"entity": entity.table_name}
        )
    return entity.surrogate_key


def table_schema(entity: EntityConfig) -> dict[str, pl.DataType]:
    """Stored column layout of a conformed or dimension table."""
    schema: dict[str, pl.DataType] = {_surrogate_key(entity): pl.Int64()}
    for key in entity.natural_keys:
        schema[key] = pl.String()
    for name, column_type in entity.attributes.items():
        schema[name] = POLARS_TYPES[column_type]
    schema[SOURCE_SYSTEM_COL] = pl.String()
    schema[SOURCE_ENTITY_COL] = pl.String()
    schema[INSERT_DT_COL] = TIMESTAMP
    schema[UPDATE_DT_COL] = TIMESTAMP
    if entity.is_versioned:
        schema[IS_ACTIVE_COL] = pl.Boolean()
        schema[VALID_FROM_COL] = TIMESTAMP
        schema[VALID_TO_COL] = TIMESTAMP
    return schema


_UNASSIGNED_BY_TYPE = {
    "string": UNASSIGNED_LABEL,
    "int": UNASSIGNED_NUMBER,
    "float": UNASSIGNED_AMOUNT,
    "date": UNKNOWN_DATE,
    "datetime": DEFAULT_VALID_FROM,
    "bool": False,
}


def unknown_member_row(entity: EntityConfig) -> pl.DataFrame:
    """The single sentinel row standing in for unresolved references."""
    row: dict[str, object] = {_surrogate_key(entity): UNKNOWN_MEMBER_KEY}
    for key in entity.natural_keys:
        row[key] = UNASSIGNED_LABEL
    for name, column_type in entity.attributes.items():
        row[name] = _UNASSIGNED_BY_TYPE[column_type]
    row[SOURCE_SYSTEM_COL] = MANUAL_SOURCE
    row[SOURCE_ENTITY_COL] = MANUAL_SOURCE
    row[INSERT_DT_COL] = DEFAULT_VALID_FROM
    row[UPDATE_DT_COL] = DEFAULT_VALID_FROM
    if entity.is_versioned:
        row[IS_ACTIVE_COL] = True
        row[VALID_FROM_COL] = DEFAULT_VALID_FROM
        row[VALID_TO_COL] = OPEN_ENDED_VALIDITY
    return pl.DataFrame([row], schema=table_schema(entity))


def conform_to_schema(
    frame: pl.DataFrame, schema: dict[str, pl.DataType]
) -> pl.DataFrame:
    """Select the stored columns in order, cast to their stored types."""
    return frame.select(
        [
            (pl.col(name) if name in frame.columns else pl.lit(None))
            .cast(dtype)
            .alias(name)
            for name, dtype in schema.items()
        ]
    )
