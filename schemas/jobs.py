"""
Pydantic schemas for job definitions and the orchestrator config file
"""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from models.base import RunMode

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(value: str) -> str:
    """Allow-list check for schema, table and column names."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValueError(f"Invalid SQL identifier: {value!r}")
    return value


class SinkSpec(BaseModel):
    """One target table on one database connection"""
    name: str = Field(..., description="Sink label used in logs and the error ledger, e.g. 'live'")
    connection: str = Field(..., description="Key into SINK_DATABASE_URLS")
    table: str
    schema_name: Optional[str] = Field(None, alias="schema")

    @field_validator("table")
    @classmethod
    def check_table(cls, v):
        return validate_identifier(v)

    @field_validator("schema_name")
    @classmethod
    def check_schema(cls, v):
        return validate_identifier(v) if v is not None else v

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table}" if self.schema_name else self.table

    class Config:
        frozen = True
        populate_by_name = True


class ColumnSpec(BaseModel):
    """Mapping of one source payload field onto one target column"""
    column: str
    source: Optional[str] = Field(None, description="Payload field; defaults to the column name")
    transforms: List[str] = Field(default_factory=list)
    default: Any = None
    update_on_conflict: bool = True
    keep_existing_on_null: bool = Field(
        False, description="On key conflict a NULL value keeps the stored one"
    )
    required: bool = Field(
        False, description="Reject and ledger the record when the value ends up NULL"
    )
    invalid_message: Optional[str] = Field(
        None, description="Ledger message for a rejected required column"
    )

    @field_validator("column")
    @classmethod
    def check_column(cls, v):
        return validate_identifier(v)

    @property
    def source_field(self) -> str:
        return self.source or self.column

    @property
    def rejection_message(self) -> str:
        return self.invalid_message or f"INVALID_{self.column.upper()}"

    class Config:
        frozen = True


class FilterSpec(BaseModel):
    """
    Domain predicate deciding which records are in scope.

    Records failing the filter are resolved without any write. The date rule
    keeps a record only when its timestamp is strictly later than
    ``min_date``; ``missing_date`` decides the fate of records whose
    timestamp is absent or unparseable.
    """
    min_date_field: Optional[str] = None
    min_date: Optional[datetime] = None
    missing_date: Literal["include", "exclude"] = "exclude"
    required_fields: List[str] = Field(default_factory=list)
    equals: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_date_rule(self):
        if (self.min_date_field is None) != (self.min_date is None):
            raise ValueError("min_date_field and min_date must be set together")
        return self

    class Config:
        frozen = True


class JobSpec(BaseModel):
    """
    Definition of one entity migration.

    Immutable for the duration of a run; loaded once from the orchestrator
    config file.
    """
    name: str
    source_table: str
    topic: str
    group_id: str
    migration_step: Optional[str] = None

    key_field: str
    key_column: Optional[str] = None
    columns: List[ColumnSpec] = Field(default_factory=list)
    sinks: List[SinkSpec]

    filter: Optional[FilterSpec] = None
    on_invalid_key: Literal["ledger", "skip"] = "ledger"
    batch_fatal_policy: Literal["any_sink", "all_sinks"] = "any_sink"

    batch_size: int = Field(default=500, ge=1)
    page_size: int = Field(default=10000, ge=1)

    @model_validator(mode="before")
    @classmethod
    def fill_defaults(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("key_column"):
                data["key_column"] = data.get("key_field")
            if not data.get("migration_step") and data.get("name"):
                data["migration_step"] = f"{data['name']}_migration"
        return data

    @field_validator("key_column")
    @classmethod
    def check_key_column(cls, v):
        return validate_identifier(v) if v is not None else v

    @model_validator(mode="after")
    def check_consistency(self):
        if not self.sinks:
            raise ValueError(f"Job '{self.name}' has no target sinks")

        sink_names = [s.name for s in self.sinks]
        if len(set(sink_names)) != len(sink_names):
            raise ValueError(f"Job '{self.name}' has duplicate sink names: {sink_names}")

        column_names = [c.column for c in self.columns]
        if self.key_column in column_names:
            raise ValueError(f"Key column '{self.key_column}' must not be listed in columns")
        if len(set(column_names)) != len(column_names):
            raise ValueError(f"Job '{self.name}' has duplicate columns")
        return self

    @property
    def target_tables(self) -> List[str]:
        return [s.qualified_name for s in self.sinks]

    @property
    def upsert_columns(self) -> List[str]:
        """Fixed column order of every UpsertRow for this job."""
        return [self.key_column] + [c.column for c in self.columns]

    class Config:
        frozen = True


class OrchestratorConfig(BaseModel):
    """Ordered job list plus run mode"""
    mode: RunMode = RunMode.ONCE
    cycle_delay_seconds: float = Field(default=60.0, ge=0)
    jobs: List[JobSpec]

    @field_validator("jobs")
    @classmethod
    def check_jobs(cls, v):
        if not v:
            raise ValueError("At least one job must be configured")
        names = [j.name for j in v]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate job names: {sorted(duplicates)}")
        return v

    def select(self, names: Optional[List[str]]) -> "OrchestratorConfig":
        """Restrict the job list to ``names``, keeping configured order."""
        if not names:
            return self
        unknown = set(names) - {j.name for j in self.jobs}
        if unknown:
            raise ConfigurationError(
                "Unknown job names requested",
                context={"unknown_jobs": sorted(unknown)}
            )
        return self.model_copy(update={"jobs": [j for j in self.jobs if j.name in names]})

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "OrchestratorConfig":
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                "Failed to read orchestrator config",
                context={"config_path": str(path)},
                original_exception=e
            )

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid orchestrator config",
                context={"config_path": str(path), "errors": e.error_count()},
                original_exception=e
            )
