"""
Source -> conformed entity extraction.

Each extractor maps both staged sales extracts onto one conformed entity
batch (natural key, attributes, source labels, observed_at), resolving
references to entities loaded earlier in the run. ``coerce_batch`` then
types the batch and sets aside rows that cannot be classified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import polars as pl

from salesmart.common.config import ColumnType, EntityConfig
from salesmart.common.constants import (
    OBSERVED_AT_COL,
    SOURCE_DATE_FORMATS,
    SOURCE_ENTITY_COL,
    SOURCE_SYSTEM_COL,
    UNASSIGNED_AMOUNT,
    UNASSIGNED_LABEL,
    UNASSIGNED_NUMBER,
    UNKNOWN_DATE,
)
from salesmart.common.errors import ClassificationError, MissingDependencyError
from salesmart.models import ClassifiedBatch
from salesmart.processing.loader import StagedBatch
from salesmart.processing.resolver import ReferenceResolver

logger = logging.getLogger(__name__)

REJECT_REASON_COL = "reject_reason"

Extractor = Callable[[StagedBatch, ReferenceResolver], pl.DataFrame]

EXTRACTORS: dict[str, Extractor] = {}


def extractor(table_name: str) -> Callable[[Extractor], Extractor]:
    """Decorator to register the extractor of a conformed entity."""

    def decorator(func: Extractor) -> Extractor:
        EXTRACTORS[table_name] = func
        return func

    return decorator


def _text(frame: pl.DataFrame, column: str) -> pl.Expr:
    """Trimmed text of a staged column; blank or absent reads as null."""
    if column not in frame.columns:
        return pl.lit(None, dtype=pl.String)
    trimmed = pl.col(column).cast(pl.String).str.strip_chars()
    return pl.when(trimmed.str.len_chars() > 0).then(trimmed)


def _union(
    batch: StagedBatch, project: Callable[[pl.DataFrame], list[pl.Expr]]
) -> pl.DataFrame:
    if not batch.frames:
        raise MissingDependencyError("No staged sources to extract from")
    parts = [
        frame.select(
            *project(frame),
            pl.col(SOURCE_SYSTEM_COL),
            pl.col(SOURCE_ENTITY_COL),
            pl.col(OBSERVED_AT_COL),
        )
        for _, frame in sorted(batch.frames.items())
    ]
    return pl.concat(parts, how="vertical_relaxed")


@extractor("ce_countries")
def extract_countries(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    return _union(
        batch,
        lambda f: [
            _text(f, "country").alias("countries_src_id"),
            _text(f, "country").alias("country_name"),
        ],
    )


@extractor("ce_cities")
def extract_cities(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    raw = _union(
        batch,
        lambda f: [
            _text(f, "city").alias("cities_src_id"),
            _text(f, "city").alias("city_name"),
            _text(f, "country").alias("_country"),
        ],
    )
    raw = resolver.resolve_column(raw, "ce_countries", {"_country": "countries_src_id"}, "country_id")
    return raw.drop("_country")


@extractor("ce_addresses")
def extract_addresses(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    raw = _union(
        batch,
        lambda f: [
            _text(f, "postalcode").alias("addresses_src_id"),
            _text(f, "address").alias("address_line"),
            _text(f, "city").alias("_city"),
        ],
    )
    raw = resolver.resolve_column(raw, "ce_cities", {"_city": "cities_src_id"}, "city_id")
    return raw.drop("_city")


@extractor("ce_product_categories")
def extract_product_categories(
    batch: StagedBatch, resolver: ReferenceResolver
) -> pl.DataFrame:
    return _union(
        batch,
        lambda f: [
            _text(f, "product_group").alias("prod_categories_src_id"),
            _text(f, "product_group").alias("prod_category"),
            _text(f, "product_group_code").alias("prod_category_code"),
        ],
    )


@extractor("ce_customers")
def extract_customers(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    # Individuals carry first/last name, companies a company name.
    raw = _union(
        batch,
        lambda f: [
            _text(f, "customercode").alias("customers_src_id"),
            _text(f, "customer_name").alias("cust_first_name"),
            _text(f, "customer_surname").alias("cust_last_name"),
            _text(f, "customername").alias("cust_company_name"),
            _text(f, "customertype").alias("cust_type"),
            _text(f, "postalcode").alias("_postal_code"),
        ],
    )
    raw = resolver.resolve_column(
        raw, "ce_addresses", {"_postal_code": "addresses_src_id"}, "address_id"
    )
    return raw.drop("_postal_code")


@extractor("ce_products_scd")
def extract_products(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    raw = _union(
        batch,
        lambda f: [
            _text(f, "productcode").alias("products_src_id"),
            _text(f, "price_each").alias("price_each"),
            _text(f, "cogs_each").alias("cost_each"),
            _text(f, "product_group").alias("_product_group"),
        ],
    )
    raw = resolver.resolve_column(
        raw,
        "ce_product_categories",
        {"_product_group": "prod_categories_src_id"},
        "prod_category_id",
    )
    return raw.drop("_product_group")


@extractor("ce_discounts")
def extract_discounts(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    # Orders without a discount code are not discount rows at all.
    return _union(
        batch,
        lambda f: [
            _text(f, "discount_code").alias("discounts_src_id"),
            _text(f, "discount_rate").alias("discount_rate"),
        ],
    ).filter(pl.col("discounts_src_id").is_not_null())


@extractor("ce_orders")
def extract_orders(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    raw = _union(
        batch,
        lambda f: [
            _text(f, "ordernumber").alias("orders_src_id"),
            _text(f, "quantityordered").alias("quantity"),
            _text(f, "orderdate").alias("order_dt"),
            _text(f, "status").alias("order_status"),
            _text(f, "productcode").alias("_product_code"),
        ],
    )
    raw = resolver.resolve_column(
        raw, "ce_products_scd", {"_product_code": "products_src_id"}, "prod_id"
    )
    return raw.drop("_product_code")


@extractor("ce_payments")
def extract_payments(batch: StagedBatch, resolver: ReferenceResolver) -> pl.DataFrame:
    raw = _union(
        batch,
        lambda f: [
            _text(f, "payment_code").alias("payments_src_id"),
            _text(f, "ordernumber").alias("orders_src_id"),
            _text(f, "payment_method").alias("payment_type"),
            _text(f, "customercode").alias("_customer_code"),
            _text(f, "discount_code").alias("_discount_code"),
        ],
    )
    # One payment per order: the first by source, then payment code.
    raw = raw.sort(
        [SOURCE_SYSTEM_COL, SOURCE_ENTITY_COL, "payments_src_id"], nulls_last=True
    ).unique(subset=["orders_src_id"], keep="first", maintain_order=True)
    raw = resolver.resolve_column(raw, "ce_orders", {"orders_src_id": "orders_src_id"}, "order_id")
    raw = resolver.resolve_column(
        raw, "ce_customers", {"_customer_code": "customers_src_id"}, "cust_id"
    )
    raw = resolver.resolve_column(
        raw, "ce_discounts", {"_discount_code": "discounts_src_id"}, "discount_id"
    )
    return raw.drop("_customer_code", "_discount_code")


def _parse(expr: pl.Expr, column_type: ColumnType, formats: list[str]) -> pl.Expr:
    if column_type == "int":
        number = expr.cast(pl.Float64, strict=False)
        return pl.when(number == number.floor()).then(number.cast(pl.Int64))
    if column_type == "float":
        return expr.cast(pl.Float64, strict=False).round(2)
    if column_type == "date":
        return pl.coalesce(
            [expr.str.to_datetime(fmt, strict=False, time_unit="us").dt.date() for fmt in formats]
        )
    if column_type == "datetime":
        return pl.coalesce(
            [expr.str.to_datetime(fmt, strict=False, time_unit="us") for fmt in formats]
        ).dt.replace_time_zone("UTC")
    if column_type == "bool":
        return expr.str.to_lowercase().is_in(["y", "yes", "true", "1"])
    return expr


_DEFAULTS: dict[str, object] = {
    "string": UNASSIGNED_LABEL,
    "int": UNASSIGNED_NUMBER,
    "float": UNASSIGNED_AMOUNT,
    "date": UNKNOWN_DATE,
    "bool": False,
}


def coerce_batch(
    raw: pl.DataFrame,
    entity: EntityConfig,
    date_formats: list[str] | None = None,
) -> ClassifiedBatch:
    """
    Type a raw batch against the entity declaration.

    A row is rejected when its natural key is missing, or when a typed
    attribute is present but cannot be parsed (e.g. a non-numeric price or
    an impossible date). Blank or absent attributes take their unassigned
    default.

    Raises:
        ClassificationError: when the batch lacks a natural key column, so
            no row of it can be classified.
    """
    missing_keys = [k for k in entity.natural_keys if k not in raw.columns]
    if missing_keys:
        raise ClassificationError(
            f"{entity.table_name}: batch has no natural key column(s) {missing_keys}",
            {"entity": entity.table_name},
        )

    formats = date_formats or list(SOURCE_DATE_FORMATS)
    typed_suffix = "__typed"

    to_parse = {
        name: column_type
        for name, column_type in entity.attributes.items()
        if name in raw.columns
        and raw.schema[name] == pl.String
        and column_type != "string"
    }
    typed = raw.with_columns(
        [_parse(pl.col(n), t, formats).alias(f"{n}{typed_suffix}") for n, t in to_parse.items()]
    )

    reason = pl.when(
        pl.any_horizontal([pl.col(k).is_null() for k in entity.natural_keys])
    ).then(pl.lit("missing natural key"))
    # Comparison columns first, so their reason wins when several fail
    checked = [c for c in entity.comparison_columns if c in to_parse]
    checked += [c for c in to_parse if c not in checked]
    for name in checked:
        reason = reason.when(
            pl.col(name).is_not_null() & pl.col(f"{name}{typed_suffix}").is_null()
        ).then(pl.lit(f"unparseable {name}: ") + pl.col(name))
    typed = typed.with_columns(reason.otherwise(pl.lit(None, dtype=pl.String)).alias(REJECT_REASON_COL))

    rejected = typed.filter(pl.col(REJECT_REASON_COL).is_not_null()).select(
        [*raw.columns, REJECT_REASON_COL]
    )

    valid = typed.filter(pl.col(REJECT_REASON_COL).is_null()).with_columns(
        [pl.col(f"{n}{typed_suffix}").alias(n) for n in to_parse]
    )
    fills = []
    for name, column_type in entity.attributes.items():
        column = pl.col(name) if name in valid.columns else pl.lit(None)
        default = _DEFAULTS.get(column_type)
        expr = column if default is None else column.fill_null(pl.lit(default))
        fills.append(expr.alias(name))
    valid = valid.select(
        *entity.natural_keys,
        *fills,
        SOURCE_SYSTEM_COL,
        SOURCE_ENTITY_COL,
        OBSERVED_AT_COL,
    )

    if rejected.height:
        logger.warning(
            f"{entity.table_name}: rejected {rejected.height} row(s); "
            f"first reason: {rejected[REJECT_REASON_COL][0]}"
        )
    return ClassifiedBatch(valid=valid, rejected=rejected)


def extract_entity(
    entity: EntityConfig,
    batch: StagedBatch,
    resolver: ReferenceResolver,
    date_formats: list[str] | None = None,
) -> ClassifiedBatch:
    """Extract and coerce the staged rows of one conformed entity."""
    if entity.table_name not in EXTRACTORS:
        raise KeyError(f"No extractor registered for {entity.table_name}")
    raw = EXTRACTORS[entity.table_name](batch, resolver)
    return coerce_batch(raw, entity, date_formats)
