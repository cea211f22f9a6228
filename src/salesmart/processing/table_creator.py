from __future__ import annotations

import logging

import polars as pl

from salesmart.catalog import unknown_member_row
from salesmart.common.config import EntityConfig
from salesmart.common.constants import UNKNOWN_MEMBER_KEY
from salesmart.storage import DeltaWarehouse

logger = logging.getLogger(__name__)


class TableCreator:
    """
    Provisions conformed and dimension tables on first use.

    A new table is created from the catalog schema already holding its
    unknown member row. On an existing table the row is inserted only when
    missing and is never updated afterwards.
    """

    def __init__(self, warehouse: DeltaWarehouse):
        self.warehouse = warehouse

    def ensure_table(self, entity: EntityConfig) -> bool:
        """
        Make sure the table for ``entity`` exists and carries its unknown member.

        Returns:
            True when the table was created by this call.
        """
        path = self.warehouse.table_path(entity.layer, entity.table_name)
        seed = unknown_member_row(entity)

        if not self.warehouse.exists(path):
            logger.info(f"Creating {entity.layer}.{entity.table_name} at {path}")
            self.warehouse.append(path, seed)
            return True

        sk = entity.surrogate_key
        seeded = (
            self.warehouse.scan(path)
            .filter(pl.col(sk) == UNKNOWN_MEMBER_KEY)
            .select(pl.len())
            .collect()
            .item()
        )
        if not seeded:
            logger.info(f"Seeding unknown member into {entity.table_name}")
            self.warehouse.merge(
                path, seed, f"t.{sk} = s.{sk}"
            ).when_not_matched_insert_all().execute()
        return False
