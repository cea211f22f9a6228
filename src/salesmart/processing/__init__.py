"""
SalesMart Processing Module.

Change detection, key allocation, reference resolution and the merges.
"""

from salesmart.processing.calendar import DateDimensionLoader
from salesmart.processing.change_detector import ChangeDetector
from salesmart.processing.facts import FactMerger, with_measures
from salesmart.processing.key_generator import (
    DeltaKeyAllocator,
    SequenceKeyAllocator,
    SurrogateKeyAllocator,
)
from salesmart.processing.merger import EntityMerger, create_merge_strategy
from salesmart.processing.partitions import PartitionManager
from salesmart.processing.resolver import ReferenceResolver

__all__ = [
    "ChangeDetector",
    "DateDimensionLoader",
    "DeltaKeyAllocator",
    "EntityMerger",
    "FactMerger",
    "PartitionManager",
    "ReferenceResolver",
    "SequenceKeyAllocator",
    "SurrogateKeyAllocator",
    "create_merge_strategy",
    "with_measures",
]
