from datetime import date, datetime, timezone

# Unknown member / unassigned defaults
UNKNOWN_MEMBER_KEY = -1
UNASSIGNED_LABEL = "n.a."
UNASSIGNED_NUMBER = -1
UNASSIGNED_AMOUNT = 0.0
UNKNOWN_DATE = date(1900, 1, 1)
MANUAL_SOURCE = "MANUAL"

# SCD Type 2 validity window
DEFAULT_VALID_FROM = datetime(1900, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
OPEN_ENDED_VALIDITY = datetime(9999, 12, 31, 0, 0, 0, tzinfo=timezone.utc)

# Source systems and their staged entities
INDIVIDUAL_SALES_SYSTEM = "SA_INDIVIDUAL_SALES"
INDIVIDUAL_SALES_ENTITY = "SRC_INDIVIDUAL_SALES"
COMPANY_SALES_SYSTEM = "SA_COMPANY_SALES"
COMPANY_SALES_ENTITY = "SRC_COMPANY_SALES"

SOURCES = {
    INDIVIDUAL_SALES_SYSTEM: INDIVIDUAL_SALES_ENTITY,
    COMPANY_SALES_SYSTEM: COMPANY_SALES_ENTITY,
}

# Technical columns shared by every conformed / dimension table
SOURCE_SYSTEM_COL = "source_system"
SOURCE_ENTITY_COL = "source_entity"
INSERT_DT_COL = "insert_dt"
UPDATE_DT_COL = "update_dt"
IS_ACTIVE_COL = "is_active"
VALID_FROM_COL = "valid_from"
VALID_TO_COL = "valid_to"
OBSERVED_AT_COL = "observed_at"
PARTITION_COL = "partition_name"

# Staged MERGE routing
ACTION_COL = "_action"
ACTION_INSERT_NEW = "INSERT_NEW"
ACTION_UPDATE = "UPDATE"
ACTION_RETIRE = "RETIRE"
ACTION_INSERT_VERSION = "INSERT_VERSION"
TARGET_KEY_COL = "_target_key"

# Warehouse layout
LAYER_STAGING = "staging"
LAYER_CONFORMED = "conformed"
LAYER_DIMENSION = "dimension"
LAYER_FACT = "fact"
LAYER_CONTROL = "control"

KEY_SEQUENCES_TABLE = "key_sequences"
PARTITION_REGISTRY_TABLE = "fact_partitions"
AUDIT_TABLE = "mta_load_logs"

# Commit metadata key naming the invocation that wrote a Delta commit
INVOCATION_METADATA_KEY = "salesmart.invocation"

DEFAULT_PARTITION_SPAN_MONTHS = 3
DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0

# Accepted textual date layouts in staged extracts, tried in order
SOURCE_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%Y %H:%M", "%d.%m.%Y")
