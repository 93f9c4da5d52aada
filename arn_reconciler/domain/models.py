"""
Domain models for the ARN reconciler.

Defines the records read from the source table, the outcomes written to the
results table, run metadata, and the access grant handed to remote calls. All
models are frozen: once built they are only ever appended to the store.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

TOKEN_PREVIEW_CHARS = 20


class OutcomeKind(str, Enum):
    # status checks
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    NOT_FOUND = "NOT_FOUND"
    INVALID = "INVALID"
    ERROR = "ERROR"
    # deletions
    DELETED = "DELETED"
    ALREADY_DELETED = "ALREADY_DELETED"
    DRY_RUN = "DRY_RUN"


CHECK_KINDS = (
    OutcomeKind.ENABLED,
    OutcomeKind.DISABLED,
    OutcomeKind.NOT_FOUND,
    OutcomeKind.INVALID,
    OutcomeKind.ERROR,
)
DELETE_KINDS = (
    OutcomeKind.DELETED,
    OutcomeKind.ALREADY_DELETED,
    OutcomeKind.DRY_RUN,
    OutcomeKind.INVALID,
    OutcomeKind.ERROR,
)


class RunMode(str, Enum):
    CHECK = "check"
    DELETE = "delete"


class RunState(str, Enum):
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"


_FROZEN = {"frozen": True, "populate_by_name": True}


class SourceDescriptor(BaseModel):
    """
    Location of the endpoint inventory: table plus ARN and id columns.
    """

    table: str = Field(..., description="Source table, optionally schema-qualified.")
    arn_column: str = Field(..., description="Column holding the endpoint ARN.")
    id_column: str = Field(..., description="Monotonic ordinal column.")

    model_config = _FROZEN

    @field_validator("table", "arn_column", "id_column")
    @classmethod
    def _valid_identifier(cls, value: str) -> str:
        if not SQL_IDENTIFIER.match(value):
            raise ValueError(f"not a valid SQL identifier: {value!r}")
        return value


class Record(BaseModel):
    """
    One source row: the ordinal used for watermarking and the endpoint ARN.
    """

    ordinal: int = Field(..., description="Source id; totally ordered.")
    arn: str = Field(..., description="Endpoint identifier addressed by the remote call.")

    model_config = _FROZEN


class EndpointAttributes(BaseModel):
    """
    Attributes of a platform endpoint as reported by the remote service.
    """

    enabled: bool
    token: Optional[str] = None
    user_id: Optional[str] = None
    custom_user_data: Optional[str] = None

    model_config = _FROZEN

    @classmethod
    def from_sns(cls, attributes: Dict[str, str]) -> "EndpointAttributes":
        """Build from the string map returned by GetEndpointAttributes."""
        return cls(
            enabled=str(attributes.get("Enabled", "")).lower() == "true",
            token=attributes.get("Token") or None,
            user_id=attributes.get("UserId"),
            custom_user_data=attributes.get("CustomUserData"),
        )

    @property
    def token_preview(self) -> Optional[str]:
        if not self.token:
            return None
        return self.token[:TOKEN_PREVIEW_CHARS] + "..."


class Grant(BaseModel):
    """
    Short-lived access material. `expires_at=None` means it never expires.
    """

    material: Optional[Dict[str, str]] = None
    expires_at: Optional[datetime] = None
    generation: int = 0

    model_config = _FROZEN


class Run(BaseModel):
    run_id: str
    mode: RunMode
    started_at: datetime
    source: Optional[SourceDescriptor] = None
    parent_run_id: Optional[str] = None
    exhausted_at: Optional[datetime] = None

    model_config = _FROZEN


class Outcome(BaseModel):
    """
    Result of checking or deleting one record within one run.
    """

    run_id: str
    batch_number: int
    ordinal: int
    arn: str
    kind: OutcomeKind
    reason: str
    error_message: Optional[str] = None
    retry_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime

    model_config = _FROZEN


class WatermarkInfo(BaseModel):
    max_ordinal: Optional[int] = None
    outcome_count: int = 0
    max_batch: int = 0

    model_config = _FROZEN


class RunListing(BaseModel):
    """
    Audit view of one run as reported by `list_runs`.
    """

    run_id: str
    mode: RunMode
    started_at: datetime
    last_activity: Optional[datetime] = None
    processed_records: int = 0
    first_ordinal: Optional[int] = None
    last_ordinal: Optional[int] = None
    counts: Dict[str, int] = Field(default_factory=dict)
    exhausted: bool = False

    model_config = _FROZEN


class RunSummary(BaseModel):
    """
    Final report produced by the orchestrator.
    """

    run_id: str
    mode: RunMode
    total_processed: int
    counts: Dict[str, int]
    batches: int
    chunks: int
    final_watermark: Optional[int]
    state: RunState
    stopped: bool = False
    elapsed_seconds: float

    model_config = _FROZEN


__all__ = [
    "CHECK_KINDS",
    "DELETE_KINDS",
    "EndpointAttributes",
    "Grant",
    "Outcome",
    "OutcomeKind",
    "Record",
    "Run",
    "RunListing",
    "RunMode",
    "RunState",
    "RunSummary",
    "SourceDescriptor",
    "SQL_IDENTIFIER",
    "TOKEN_PREVIEW_CHARS",
    "WatermarkInfo",
]
