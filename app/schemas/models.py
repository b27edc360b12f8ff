"""
TIMBRADO-NOMINA Pydantic Schemas
Request/response models for the API. JSON uses camelCase.
"""

from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Any

from app.services.cfdi_store import StampStatus
from app.services.stamp_service import StampOutcome


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─────────────────────────────────────────────────────────────
# TIMBRADO
# ─────────────────────────────────────────────────────────────

class StampRequest(_CamelModel):
    """Identifies the CFDI record to stamp."""
    record_id: str = Field(..., description="ID del registro en mx_cfdi_records")
    company_id: str = Field(..., description="Empresa dueña del registro y de la configuración PAC")

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True,
        json_schema_extra={"examples": [{"recordId": "b6c1...", "companyId": "8f2a..."}]},
    )


class StampResponse(_CamelModel):
    success: bool
    uuid: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: StampOutcome) -> "StampResponse":
        return cls(success=outcome.success, uuid=outcome.uuid, message=outcome.message)


class StampRunRequest(_CamelModel):
    company_id: str
    payroll_run_id: str


class StampRunItem(_CamelModel):
    record_id: Optional[str] = None
    success: bool
    uuid: Optional[str] = None
    message: Optional[str] = None


class StampRunResponse(_CamelModel):
    total: int
    stamped: int
    failed: int
    results: list[StampRunItem]


# ─────────────────────────────────────────────────────────────
# REGISTROS
# ─────────────────────────────────────────────────────────────

class CreateRecordRequest(_CamelModel):
    company_id: str
    employee_id: Optional[str] = None
    payroll_run_id: Optional[str] = None
    document: dict[str, Any] = Field(..., description="FiscalDocument en su forma JSON")


class CreateRecordResponse(_CamelModel):
    success: bool = True
    record_id: str
    status: StampStatus


class FindPendingRequest(_CamelModel):
    company_id: str
    employee_id: str


class FindPendingResponse(_CamelModel):
    success: bool = True
    cfdi_record_id: Optional[str] = None


class ResubmitRequest(_CamelModel):
    record_id: str
    company_id: str


class ResubmitResponse(_CamelModel):
    success: bool = True
    record_id: str
    previous_record_id: str
    status: StampStatus


# ─────────────────────────────────────────────────────────────
# ERRORS + HEALTH
# ─────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check."""
    status: str = "ok"
    version: str
    environment: str
