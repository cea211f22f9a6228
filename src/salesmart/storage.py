"""Delta Lake storage for the warehouse, via polars and delta-rs."""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

import polars as pl
from deltalake import CommitProperties, DeltaTable

from salesmart.common.constants import (
    INVOCATION_METADATA_KEY,
    LAYER_CONFORMED,
    LAYER_CONTROL,
    LAYER_DIMENSION,
    LAYER_FACT,
    LAYER_STAGING,
)

if TYPE_CHECKING:
    from deltalake.table import TableMerger

logger = logging.getLogger(__name__)

_LAYERS = {LAYER_STAGING, LAYER_CONFORMED, LAYER_DIMENSION, LAYER_FACT, LAYER_CONTROL}

# Invocation whose commits are being written in the current context
_invocation: ContextVar[str | None] = ContextVar("salesmart_invocation", default=None)


@contextmanager
def tagged_commits(invocation_id: str) -> Generator[str, None, None]:
    """Tag every commit written in the block with ``invocation_id``."""
    token = _invocation.set(invocation_id)
    try:
        yield invocation_id
    finally:
        _invocation.reset(token)


def _commit_options() -> dict[str, Any]:
    invocation_id = _invocation.get()
    if invocation_id is None:
        return {}
    return {
        "commit_properties": CommitProperties(
            custom_metadata={INVOCATION_METADATA_KEY: invocation_id}
        )
    }


class DeltaWarehouse:
    """
    Thin layer over the Delta tables under one warehouse root.

    Layout: ``<root>/<layer>/<table>``; staged extracts live under
    ``<root>/staging/<source_system>/<source_entity>``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def table_path(self, layer: str, table_name: str) -> Path:
        if layer not in _LAYERS:
            raise ValueError(f"Unknown warehouse layer: {layer}")
        return self.root / layer / table_name

    def staging_path(self, source_system: str, source_entity: str) -> Path:
        return self.root / LAYER_STAGING / source_system.lower() / source_entity.lower()

    def exists(self, path: Path) -> bool:
        return DeltaTable.is_deltatable(str(path))

    def read(
        self, path: Path, schema: dict[str, pl.DataType] | None = None
    ) -> pl.DataFrame:
        """Read a whole table. A missing table reads as empty when a schema is given."""
        if not self.exists(path):
            if schema is None:
                raise FileNotFoundError(f"No Delta table at {path}")
            return pl.DataFrame(schema=schema)
        return pl.read_delta(str(path))

    def scan(self, path: Path) -> pl.LazyFrame:
        return pl.scan_delta(str(path))

    def version(self, path: Path) -> int | None:
        """Current committed version, or None when the table does not exist yet."""
        if not self.exists(path):
            return None
        return DeltaTable(str(path)).version()

    def commits_since(self, path: Path, version: int) -> list[dict[str, Any]]:
        """Commit infos of every version after ``version``, newest first."""
        current = self.version(path)
        if current is None or current <= version:
            return []
        return DeltaTable(str(path)).history(limit=current - version)

    def restore(self, path: Path, version: int) -> None:
        logger.info(f"Restoring {path} to version {version}")
        DeltaTable(str(path)).restore(version)

    def append(
        self,
        path: Path,
        frame: pl.DataFrame,
        partition_by: list[str] | None = None,
    ) -> None:
        """Append rows, creating the table on first write."""
        write_options = _commit_options()
        if partition_by:
            write_options["partition_by"] = partition_by
        frame.write_delta(
            str(path), mode="append", delta_write_options=write_options or None
        )

    def overwrite(self, path: Path, frame: pl.DataFrame) -> None:
        """Replace the table content (and schema) with ``frame``."""
        frame.write_delta(
            str(path),
            mode="overwrite",
            delta_write_options={"schema_mode": "overwrite", **_commit_options()},
        )

    def merge(self, path: Path, source: pl.DataFrame, predicate: str) -> TableMerger:
        """
        Start a MERGE of ``source`` (alias ``s``) into the table (alias ``t``).

        The caller adds the when-clauses and calls ``execute()``; everything
        lands in a single Delta commit.
        """
        return source.write_delta(
            str(path),
            mode="merge",
            delta_merge_options={
                "predicate": predicate,
                "source_alias": "s",
                "target_alias": "t",
                **_commit_options(),
            },
        )
