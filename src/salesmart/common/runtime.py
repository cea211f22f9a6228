"""Runtime configuration for SalesMart.

This module provides a centralized RuntimeOptions class that encapsulates
all runtime configuration, replacing scattered environment variable checks.

Usage:
    # Create with defaults (reads from environment)
    options = RuntimeOptions.from_environment()

    # Create with explicit values (for testing/DI)
    options = RuntimeOptions(warehouse_root="/data/warehouse", partition_span_months=6)

    executor = PipelineExecutor(options.to_warehouse_config())
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from salesmart.common.config import WarehouseConfig
from salesmart.common.constants import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_PARTITION_SPAN_MONTHS,
)
from salesmart.common.errors import ConfigurationError


@dataclass
class RuntimeOptions:
    """Centralized runtime configuration for SalesMart pipelines.

    Attributes:
        warehouse_root: Directory holding every Delta table of the warehouse.
        partition_span_months: Width of one fact partition.
        lock_timeout_seconds: How long an invocation waits for its target table.
        stop_on_failure: Skip remaining steps after the first failure.
    """

    warehouse_root: str | None = None
    partition_span_months: int = DEFAULT_PARTITION_SPAN_MONTHS
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    stop_on_failure: bool = True

    @classmethod
    def from_environment(cls) -> RuntimeOptions:
        """Create RuntimeOptions from environment variables.

        Environment Variables:
            SALESMART_WAREHOUSE_ROOT: Warehouse root directory.
            SALESMART_PARTITION_MONTHS: Fact partition width in months (default: 3).
            SALESMART_LOCK_TIMEOUT: Lock wait in seconds (default: 30).
            SALESMART_STOP_ON_FAILURE: '0' to keep running after a failed step.

        Returns:
            RuntimeOptions instance configured from environment.
        """
        try:
            span = int(
                os.environ.get(
                    "SALESMART_PARTITION_MONTHS", DEFAULT_PARTITION_SPAN_MONTHS
                )
            )
            timeout = float(
                os.environ.get("SALESMART_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS)
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid SALESMART_* environment value: {e}") from e

        return cls(
            warehouse_root=os.environ.get("SALESMART_WAREHOUSE_ROOT"),
            partition_span_months=span,
            lock_timeout_seconds=timeout,
            stop_on_failure=os.environ.get("SALESMART_STOP_ON_FAILURE", "1") != "0",
        )

    def to_warehouse_config(self) -> WarehouseConfig:
        if not self.warehouse_root:
            raise ConfigurationError(
                "Warehouse root must be specified via one of:\n"
                "  1. Set SALESMART_WAREHOUSE_ROOT environment variable\n"
                "  2. Pass warehouse_root to RuntimeOptions"
            )
        return WarehouseConfig(
            root=self.warehouse_root,
            partition_span_months=self.partition_span_months,
            lock_timeout_seconds=self.lock_timeout_seconds,
            stop_on_failure=self.stop_on_failure,
        )
