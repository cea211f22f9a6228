from datetime import datetime, timedelta, timezone

import polars as pl
import pytest

from salesmart.common.config import WarehouseConfig
from salesmart.common.constants import (
    COMPANY_SALES_ENTITY,
    COMPANY_SALES_SYSTEM,
    INDIVIDUAL_SALES_ENTITY,
    INDIVIDUAL_SALES_SYSTEM,
)
from salesmart.processing.key_generator import SequenceKeyAllocator
from salesmart.processing.loader import StagingLoader
from salesmart.storage import DeltaWarehouse


class FixedClock:
    """Deterministic clock; ``advance`` moves it forward between runs."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def warehouse(tmp_path):
    return DeltaWarehouse(tmp_path / "warehouse")


@pytest.fixture
def allocator():
    return SequenceKeyAllocator()


@pytest.fixture
def warehouse_config(tmp_path):
    return WarehouseConfig(root=str(tmp_path / "warehouse"), audit_sinks=["logging", "delta"])


def _individual_sales(p1_price: str = "10.00") -> pl.DataFrame:
    return pl.DataFrame(
        {
            "ordernumber": ["10100", "10101"],
            "quantityordered": ["30", "5"],
            "price_each": [p1_price, "20.00"],
            "cogs_each": ["6.00", "12.00"],
            "orderdate": ["2024-01-05", "2024-04-02"],
            "status": ["Shipped", "Shipped"],
            "product_group": ["Classic Cars", "Motorcycles"],
            "product_group_code": ["CC", "MC"],
            "productcode": ["P1", "P2"],
            "customer_name": ["Anna", "Ben"],
            "customer_surname": ["Schmidt", "Meyer"],
            "customercode": ["C1", "C2"],
            "customertype": ["individual", "individual"],
            "postalcode": ["10115", "80331"],
            "address": ["Main St 1", "Ring 2"],
            "city": ["Berlin", "Munich"],
            "country": ["DE", "DE"],
            "discount_code": ["D10", None],
            "discount_rate": ["10", None],
            "payment_code": ["PAY1", "PAY2"],
            "payment_method": ["card", "cash"],
            "refresh_dt": ["2024-01-10 00:00:00", "2024-01-10 00:00:00"],
        }
    )


def _company_sales(p1_price: str = "10.00") -> pl.DataFrame:
    return pl.DataFrame(
        {
            "ordernumber": ["20100"],
            "quantityordered": ["2"],
            "price_each": [p1_price],
            "cogs_each": ["6.00"],
            "orderdate": ["2024-02-10"],
            "status": ["Shipped"],
            "product_group": ["Classic Cars"],
            "product_group_code": ["CC"],
            "productcode": ["P1"],
            "customername": ["Acme GmbH"],
            "customercode": ["C3"],
            "customertype": ["company"],
            "postalcode": ["20095"],
            "address": ["Harbor 3"],
            "city": ["Hamburg"],
            "country": ["DE"],
            "discount_code": [None],
            "discount_rate": [None],
            "payment_code": ["PAY3"],
            "payment_method": ["invoice"],
            "refresh_dt": ["2024-01-11 00:00:00"],
        }
    )


@pytest.fixture
def individual_sales():
    """Factory for the individual-sales extract; P1 price is adjustable."""
    return _individual_sales


@pytest.fixture
def company_sales():
    """Factory for the company-sales extract; P1 price is adjustable."""
    return _company_sales


@pytest.fixture
def stage_sales(warehouse):
    """Land both extracts in the staging layer of ``warehouse``."""

    def stage(individual: pl.DataFrame, company: pl.DataFrame) -> None:
        loader = StagingLoader(warehouse)
        loader.stage(individual, INDIVIDUAL_SALES_SYSTEM, INDIVIDUAL_SALES_ENTITY)
        loader.stage(company, COMPANY_SALES_SYSTEM, COMPANY_SALES_ENTITY)

    return stage
