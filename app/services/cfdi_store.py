"""
TIMBRADO-NOMINA: Persistencia de registros CFDI
================================================
Gateway sobre Supabase para las dos tablas del timbrado:

  mx_pac_configurations  (company_id, provider, credentials json, sandbox)
  mx_cfdi_records        (id, company_id, employee_id, payroll_run_id,
                          previous_record_id, serie, folio, status,
                          document json, uuid, stamped_xml, error_message,
                          created_at, stamped_at)

Cada transición terminal es un único UPDATE de una fila: status, uuid /
error y stamped_at se escriben juntos o no se escriben.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, field_validator
from supabase import Client as SupabaseClient

from app.core.errors import ConfigurationMissing
from app.modules.pac_client import PacConfiguration, PacCredentials
from app.services.encryption_service import CredentialDecryptionError, EncryptionService

logger = logging.getLogger("timbrado.cfdi_store")

CONFIG_TABLE = "mx_pac_configurations"
RECORDS_TABLE = "mx_cfdi_records"


class StampStatus(str, Enum):
    PENDING = "pending"
    STAMPED = "stamped"
    ERROR = "error"


# Rows written before stamping existed use "draft" for a not-yet-submitted record.
LEGACY_DRAFT_STATUS = "draft"
PENDING_STATUSES = [StampStatus.PENDING.value, LEGACY_DRAFT_STATUS]


class StampRecord(BaseModel):
    """One submission attempt of a FiscalDocument."""
    id: str
    company_id: str
    employee_id: Optional[str] = None
    payroll_run_id: Optional[str] = None
    previous_record_id: Optional[str] = None
    serie: Optional[str] = None
    folio: Optional[str] = None
    status: StampStatus = StampStatus.PENDING
    document: dict[str, Any] = {}
    uuid: Optional[str] = None
    stamped_xml: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    stamped_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _draft_is_pending(cls, value: Any) -> Any:
        if value == LEGACY_DRAFT_STATUS:
            return StampStatus.PENDING
        return value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CfdiStore:
    """Lecturas y escrituras de timbrado. Todas las llamadas son síncronas (supabase-py)."""

    def __init__(self, supabase: SupabaseClient, encryption: Optional[EncryptionService] = None):
        self.db = supabase
        self.encryption = encryption

    # ══════════════════════════════════════════════════════════
    # CONFIGURACIÓN PAC
    # ══════════════════════════════════════════════════════════

    def get_pac_configuration(self, company_id: str) -> Optional[PacConfiguration]:
        """
        PAC account of a company, None when not configured.
        A password_encrypted value takes precedence over a plain password.
        """
        result = self.db.table(CONFIG_TABLE).select(
            "provider, credentials, sandbox"
        ).eq("company_id", company_id).limit(1).execute()

        if not result.data:
            return None

        row = result.data[0]
        creds = row.get("credentials") or {}
        password = creds.get("password") or ""
        if creds.get("password_encrypted"):
            if self.encryption is None:
                raise ConfigurationMissing(
                    "La contraseña PAC está cifrada y no hay servicio de cifrado configurado"
                )
            try:
                password = self.encryption.decrypt_password(creds["password_encrypted"], company_id)
            except CredentialDecryptionError as e:
                raise ConfigurationMissing(str(e)) from e

        sandbox = row.get("sandbox")
        return PacConfiguration(
            provider=row.get("provider") or "",
            credentials=PacCredentials(username=creds.get("username") or "", password=password),
            sandbox=True if sandbox is None else bool(sandbox),
        )

    # ══════════════════════════════════════════════════════════
    # REGISTROS CFDI
    # ══════════════════════════════════════════════════════════

    def get_record(self, record_id: str, company_id: str) -> Optional[StampRecord]:
        result = self.db.table(RECORDS_TABLE).select("*").eq(
            "id", record_id
        ).eq("company_id", company_id).limit(1).execute()
        if not result.data:
            return None
        return StampRecord.model_validate(result.data[0])

    def insert_record(
        self,
        company_id: str,
        document: dict,
        employee_id: Optional[str] = None,
        payroll_run_id: Optional[str] = None,
        previous_record_id: Optional[str] = None,
    ) -> StampRecord:
        """Insert a new attempt in `pending` status."""
        row = {
            "company_id": company_id,
            "employee_id": employee_id,
            "payroll_run_id": payroll_run_id,
            "previous_record_id": previous_record_id,
            "serie": document.get("series"),
            "folio": document.get("folio"),
            "status": StampStatus.PENDING.value,
            "document": document,
            "created_at": _now(),
        }
        result = self.db.table(RECORDS_TABLE).insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Insert into {RECORDS_TABLE} returned no row")
        return StampRecord.model_validate(result.data[0])

    def mark_stamped(self, record_id: str, uuid: str, stamped_xml: str,
                     stamped_at: Optional[str] = None) -> None:
        self.db.table(RECORDS_TABLE).update({
            "status": StampStatus.STAMPED.value,
            "uuid": uuid,
            "stamped_xml": stamped_xml,
            "error_message": None,
            "stamped_at": stamped_at or _now(),
        }).eq("id", record_id).execute()
        logger.info(f"CFDI {record_id} -> stamped (uuid={uuid})")

    def mark_error(self, record_id: str, reason: str,
                   failed_at: Optional[str] = None) -> None:
        self.db.table(RECORDS_TABLE).update({
            "status": StampStatus.ERROR.value,
            "uuid": None,
            "stamped_xml": None,
            "error_message": reason,
            "stamped_at": failed_at or _now(),
        }).eq("id", record_id).execute()
        logger.info(f"CFDI {record_id} -> error ({reason})")

    def find_pending(self, company_id: str, employee_id: str) -> Optional[str]:
        """Id of the newest pending record of an employee."""
        result = self.db.table(RECORDS_TABLE).select("id").eq(
            "company_id", company_id
        ).eq("employee_id", employee_id).in_(
            "status", PENDING_STATUSES
        ).order("created_at", desc=True).limit(1).execute()
        if not result.data:
            return None
        return result.data[0]["id"]

    def list_pending_for_run(self, company_id: str, payroll_run_id: str) -> list[str]:
        """Ids of the pending records of a payroll run, oldest first."""
        result = self.db.table(RECORDS_TABLE).select("id").eq(
            "company_id", company_id
        ).eq("payroll_run_id", payroll_run_id).in_(
            "status", PENDING_STATUSES
        ).order("created_at").execute()
        return [row["id"] for row in (result.data or [])]
