import os
from typing import Any, Literal

import yaml
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field, ValidationError, model_validator

from salesmart.common.constants import (
    AUDIT_TABLE,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_PARTITION_SPAN_MONTHS,
    SOURCE_DATE_FORMATS,
)
from salesmart.common.errors import ConfigurationError

ColumnType = Literal["string", "int", "float", "date", "datetime", "bool"]


class EntityConfig(BaseModel):
    """
    Declaration of a conformed entity or dimension projection.
    Defines keys, tracked attributes and the merge semantics.
    """

    table_name: str
    layer: Literal["conformed", "dimension"]
    scd_type: Literal[1, 2] = 1
    surrogate_key: str | None = None
    natural_keys: list[str] = Field(default_factory=list)
    comparison_columns: list[str] = Field(
        default_factory=list,
        description="Attributes whose change classifies a row as CHANGED.",
    )
    attributes: dict[str, ColumnType] = Field(default_factory=dict)
    conform_sources: bool = Field(
        default=False,
        description="When True the natural key alone identifies a row and the "
        "sources are merged into one representative. Otherwise the natural key "
        "is scoped by (source_system, source_entity).",
    )
    key_sequence: str | None = Field(
        default=None,
        description="Surrogate key sequence name. Defaults to the table name.",
    )

    @model_validator(mode="before")
    @classmethod
    def flatten_keys(cls, data: Any) -> Any:
        """Flatten nested 'keys' parameter from YAML into top-level fields."""
        if isinstance(data, dict):
            keys = data.get("keys", {})
            if keys:
                if "surrogate_key" in keys:
                    data["surrogate_key"] = keys["surrogate_key"]
                if "natural_keys" in keys:
                    data["natural_keys"] = keys["natural_keys"]
        return data

    @model_validator(mode="after")
    def validate_entity_rules(self) -> "EntityConfig":
        if not self.surrogate_key:
            raise ValueError(f"{self.table_name} requires keys.surrogate_key")
        if not self.natural_keys:
            raise ValueError(f"{self.table_name} requires keys.natural_keys")
        if self.scd_type == 2 and not self.comparison_columns:
            raise ValueError(
                f"SCD Type 2 entity {self.table_name} requires 'comparison_columns'. "
                "Without them no change can ever open a new version."
            )
        unknown = [c for c in self.comparison_columns if c not in self.attributes]
        if unknown:
            raise ValueError(
                f"{self.table_name}: comparison columns {unknown} are not declared attributes"
            )
        clashing = [k for k in self.natural_keys if k in self.attributes]
        if clashing:
            raise ValueError(
                f"{self.table_name}: natural keys {clashing} must not be declared as attributes"
            )
        return self

    @property
    def is_versioned(self) -> bool:
        return self.scd_type == 2

    @property
    def sequence_name(self) -> str:
        return self.key_sequence or self.table_name

    @property
    def identity_columns(self) -> list[str]:
        """Columns that identify one stored row (one active version for Type-2)."""
        if self.conform_sources:
            return list(self.natural_keys)
        return [*self.natural_keys, "source_system", "source_entity"]


class WarehouseConfig(BaseModel):
    """Location and behaviour of one warehouse run."""

    root: str
    partition_span_months: int = Field(default=DEFAULT_PARTITION_SPAN_MONTHS, ge=1)
    lock_timeout_seconds: float = Field(default=DEFAULT_LOCK_TIMEOUT_SECONDS, ge=0)
    stop_on_failure: bool = True
    audit_table: str = AUDIT_TABLE
    audit_sinks: list[Literal["logging", "delta"]] = Field(
        default_factory=lambda: ["logging", "delta"]
    )
    date_formats: list[str] = Field(default_factory=lambda: list(SOURCE_DATE_FORMATS))


class ConfigLoader:
    """
    Loads and validates YAML configuration files with Jinja2 templating support.
    Uses Pydantic for schema validation and parsing.
    """

    def __init__(self, env_vars: dict[str, str] | None = None):
        self.env_vars = env_vars or os.environ.copy()

    def _render(self, file_path: str) -> dict[str, Any]:
        with open(file_path) as f:
            raw_content = f.read()

        env = SandboxedEnvironment(undefined=StrictUndefined)
        try:
            rendered_content = env.from_string(raw_content).render(self.env_vars)
            config_dict = yaml.safe_load(rendered_content)
        except (TemplateError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Could not render configuration {file_path}: {e}",
                {"path": file_path},
            ) from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                f"Configuration {file_path} must be a mapping", {"path": file_path}
            )
        return config_dict

    def load_config(self, file_path: str) -> WarehouseConfig:
        """
        Reads a YAML file, renders it with Jinja2 using env_vars,
        and parses it into a WarehouseConfig object using Pydantic.
        """
        config_dict = self._render(file_path)
        try:
            return WarehouseConfig(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation error in {file_path}: {e}",
                {"path": file_path},
            ) from e

    def load_entity(self, file_path: str) -> EntityConfig:
        """Parse an entity declaration (conformed entity or dimension)."""
        config_dict = self._render(file_path)
        try:
            return EntityConfig(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(
                f"Entity validation error in {file_path}: {e}",
                {"path": file_path},
            ) from e
