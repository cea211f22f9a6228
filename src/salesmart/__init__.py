"""SalesMart - incremental dimensional merge engine for sales data."""

from salesmart.common.config import ConfigLoader, EntityConfig, WarehouseConfig
from salesmart.common.errors import (
    ClassificationError,
    ConcurrentInvocationError,
    ConfigurationError,
    InvariantViolationError,
    MissingDependencyError,
    NonRetriableError,
    PartitionCoverageError,
    RetriableError,
    SalesMartError,
    StorageUnavailableError,
)
from salesmart.common.runtime import RuntimeOptions
from salesmart.models import ChangeSet, ClassifiedBatch, MergeCounts, MergeResult
from salesmart.orchestration.executor import ExecutionSummary, PipelineExecutor
from salesmart.orchestration.orchestrator import Orchestrator
from salesmart.storage import DeltaWarehouse

__all__ = [
    "PipelineExecutor",
    "ExecutionSummary",
    "Orchestrator",
    "DeltaWarehouse",
    # Configuration
    "ConfigLoader",
    "EntityConfig",
    "WarehouseConfig",
    "RuntimeOptions",
    # Results
    "ChangeSet",
    "ClassifiedBatch",
    "MergeCounts",
    "MergeResult",
    # Errors
    "SalesMartError",
    "RetriableError",
    "NonRetriableError",
    "ConcurrentInvocationError",
    "StorageUnavailableError",
    "ConfigurationError",
    "ClassificationError",
    "InvariantViolationError",
    "PartitionCoverageError",
    "MissingDependencyError",
]

__version__ = "0.1.0"
