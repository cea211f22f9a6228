# SalesMart demo: two loads of the sales warehouse, the second one with a
# price change for product P1.
#
#   python examples/Sales_Demo.py /tmp/salesmart_demo

import logging
import shutil
import sys
from pathlib import Path

import polars as pl

from salesmart import ConfigLoader, PipelineExecutor
from salesmart.common.constants import (
    COMPANY_SALES_ENTITY,
    COMPANY_SALES_SYSTEM,
    INDIVIDUAL_SALES_ENTITY,
    INDIVIDUAL_SALES_SYSTEM,
)
from salesmart.observability.audit import DeltaAuditSink
from salesmart.processing.facts import with_measures
from salesmart.processing.loader import StagingLoader
from salesmart.storage import DeltaWarehouse

logging.basicConfig(level=logging.INFO, format="%(message)s")

DEMO_ROOT = Path(sys.argv[1] if len(sys.argv) > 1 else "/tmp/salesmart_demo")

# Clean up previous run
print("Cleaning up previous demo...")
shutil.rmtree(DEMO_ROOT, ignore_errors=True)
DEMO_ROOT.mkdir(parents=True)

# ============================================================================
# Configuration
# ============================================================================
config_path = DEMO_ROOT / "warehouse.yml"
config_path.write_text(
    """root: {{ DEMO_ROOT }}/warehouse
partition_span_months: 3
audit_sinks: [logging, delta]
""",
    encoding="utf-8",
)
config = ConfigLoader(env_vars={"DEMO_ROOT": str(DEMO_ROOT)}).load_config(str(config_path))
print(f"✓ Warehouse root: {config.root}")

# ============================================================================
# Source extracts (CSV, every column as text)
# ============================================================================
INDIVIDUAL_CSV = """ordernumber,quantityordered,price_each,cogs_each,orderdate,status,product_group,product_group_code,productcode,customer_name,customer_surname,customercode,customertype,postalcode,address,city,country,discount_code,discount_rate,payment_code,payment_method,refresh_dt
10100,30,{p1},6.00,2024-01-05,Shipped,Classic Cars,CC,P1,Anna,Schmidt,C1,individual,10115,Main St 1,Berlin,DE,D10,10,PAY1,card,2024-01-10 00:00:00
10101,5,20.00,12.00,2024-04-02,Shipped,Motorcycles,MC,P2,Ben,Meyer,C2,individual,80331,Ring 2,Munich,DE,,,PAY2,cash,2024-01-10 00:00:00
"""

COMPANY_CSV = """ordernumber,quantityordered,price_each,cogs_each,orderdate,status,product_group,product_group_code,productcode,customername,customercode,customertype,postalcode,address,city,country,discount_code,discount_rate,payment_code,payment_method,refresh_dt
20100,2,{p1},6.00,2024-02-10,Shipped,Classic Cars,CC,P1,Acme GmbH,C3,company,20095,Harbor 3,Hamburg,DE,,,PAY3,invoice,2024-01-11 00:00:00
"""


def stage_extracts(p1_price: str) -> None:
    loader = StagingLoader(DeltaWarehouse(config.root))
    for name, template, system, entity in [
        ("individual", INDIVIDUAL_CSV, INDIVIDUAL_SALES_SYSTEM, INDIVIDUAL_SALES_ENTITY),
        ("company", COMPANY_CSV, COMPANY_SALES_SYSTEM, COMPANY_SALES_ENTITY),
    ]:
        csv_path = DEMO_ROOT / f"{name}_sales.csv"
        csv_path.write_text(template.format(p1=p1_price), encoding="utf-8")
        loader.stage_csv(csv_path, system, entity)


def show_fact(title: str) -> None:
    warehouse = DeltaWarehouse(config.root)
    fact = with_measures(pl.read_delta(str(warehouse.table_path("fact", "fct_orders"))))
    print(f"\n{title}")
    print(
        fact.select(
            "orders_src_id",
            "prod_surr_id",
            "quantity",
            "price_each",
            "discount_rate",
            "gross_amount",
            "net_amount",
            "partition_name",
        ).sort("orders_src_id")
    )


# ============================================================================
# First load
# ============================================================================
executor = PipelineExecutor(config)
executor.dry_run()

stage_extracts(p1_price="10.00")
summary = executor.run()
print(summary)
summary.raise_for_failures()
show_fact("fct_orders after the first load")

# ============================================================================
# Second load: P1 now costs 12.00
# ============================================================================
stage_extracts(p1_price="12.00")
summary = PipelineExecutor(config).run()
print(summary)
summary.raise_for_failures()
show_fact("fct_orders after the price change")

products = pl.read_delta(
    str(DeltaWarehouse(config.root).table_path("dimension", "dim_products_scd"))
)
print("\ndim_products_scd history")
print(products.sort("products_src_id", "valid_from"))

print("\nAudit log")
print(DeltaAuditSink(DeltaWarehouse(config.root), config.audit_table).read())
