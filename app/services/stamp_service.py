"""
TIMBRADO-NOMINA: Servicio de Timbrado (orquestador)
====================================================
Máquina de estados por registro CFDI:

    pending ──► stamped   (terminal)
    pending ──► error     (terminal; un reintento crea un registro nuevo)

stamp_record:
  1. cargar registro            → RecordNotFound (404)
  2. guardia de idempotencia    → AlreadyStamped / RecordNotPending (400), sin red
  3. configuración PAC          → ConfigurationMissing (400)
  4. adaptador por proveedor    → UnsupportedProvider (400)
  5. documento del registro     → InvalidDocument (400)
  6. timbrar y persistir el estado terminal en una sola escritura

Los pasos 3-5 dejan el registro en `error` con el motivo. El resultado es
siempre un StampOutcome; sólo la cancelación de la tarea se propaga, después
de persistir `error` con motivo "cancelled".
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from app.core.errors import (
    AlreadyStamped, ConfigurationMissing, RecordNotFound, RecordNotPending,
    StampServiceError, UnsupportedProvider,
)
from app.modules.pac_client import (
    Failed, PacClient, StampResult, Stamped, describe_exception,
)
from app.modules.pac_registry import get_pac_client
from app.sat.cfdi_document import InvalidDocument, load_document
from app.sat.cfdi_xml import serialize
from app.services import audit_service
from app.services.cfdi_store import CfdiStore, StampRecord, StampStatus

logger = logging.getLogger("timbrado.stamp_service")

CANCELLED_REASON = "cancelled"

PacFactory = Callable[..., PacClient]


class StampOutcome(BaseModel):
    """Answer of the invocation boundary. Never an exception."""
    success: bool
    uuid: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    status_code: int = 200
    record_id: Optional[str] = None


class BatchOutcome(BaseModel):
    total: int
    stamped: int
    failed: int
    results: list[StampOutcome]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StampingService:
    """
    Usage:
        service = StampingService(store=CfdiStore(supabase, encryption))
        outcome = await service.stamp_record(record_id, company_id)
    """

    def __init__(
        self,
        store: CfdiStore,
        pac_factory: PacFactory = get_pac_client,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.pac_factory = pac_factory
        self.http_client = http_client

    # ══════════════════════════════════════════════════════════
    # TIMBRADO
    # ══════════════════════════════════════════════════════════

    async def stamp_record(self, record_id: str, company_id: str) -> StampOutcome:
        try:
            return await self._stamp(record_id, company_id)
        except StampServiceError as e:
            logger.info(f"Stamp {record_id} rejected: {e.code} {e.message}")
            return StampOutcome(
                success=False, message=e.message, code=e.code,
                status_code=e.status_code, record_id=record_id,
            )
        except Exception as e:
            logger.exception(f"Unexpected error stamping {record_id}: {e}")
            return StampOutcome(
                success=False, message=f"Error interno al timbrar: {describe_exception(e)}",
                code="INTERNAL_ERROR", status_code=500, record_id=record_id,
            )

    async def _stamp(self, record_id: str, company_id: str) -> StampOutcome:
        record = self._load_record(record_id, company_id)
        if record.status == StampStatus.STAMPED:
            raise AlreadyStamped(record.id, record.uuid)
        if record.status != StampStatus.PENDING:
            raise RecordNotPending(record.id, record.status.value)

        try:
            config = self.store.get_pac_configuration(company_id)
            if config is None:
                raise ConfigurationMissing(
                    f"La empresa {company_id} no tiene configuración de PAC"
                )
            if not config.credentials.is_complete:
                raise ConfigurationMissing(
                    "Credenciales PAC incompletas: se requieren usuario y contraseña"
                )
            client = self.pac_factory(config.provider, http_client=self.http_client)
            document = load_document(record.document)
        except (ConfigurationMissing, UnsupportedProvider, InvalidDocument) as e:
            await self._persist_failure(record, e.message)
            raise

        try:
            result: StampResult = await client.stamp(document, config.credentials, config.sandbox)
        except asyncio.CancelledError:
            logger.warning(f"Stamp {record.id} cancelled while the PAC call was in flight")
            try:
                self.store.mark_error(record.id, CANCELLED_REASON, _now())
                await audit_service.log_action(
                    self.store.db, company_id, audit_service.STAMP_CANCELLED, record.id,
                )
            except Exception as e:
                # Cancellation must still reach the caller
                logger.exception(f"Could not persist cancellation of {record.id}: {e}")
            raise
        except Exception as e:
            # Adapters return Failed for transport errors; this is a bug path
            logger.exception(f"PAC adapter raised for {record.id}: {e}")
            result = Failed(reason=describe_exception(e))

        if isinstance(result, Stamped):
            self.store.mark_stamped(record.id, result.uuid, result.stamped_document, _now())
            await audit_service.log_action(
                self.store.db, company_id, audit_service.STAMP_SUCCEEDED, record.id,
                details={"uuid": result.uuid, "provider": config.provider},
            )
            return StampOutcome(
                success=True, uuid=result.uuid, message="CFDI timbrado correctamente",
                status_code=200, record_id=record.id,
            )

        await self._persist_failure(record, result.reason, provider=config.provider)
        return StampOutcome(
            success=False, message=result.reason, code="STAMP_FAILED",
            status_code=400, record_id=record.id,
        )

    async def _persist_failure(self, record: StampRecord, reason: str,
                               provider: Optional[str] = None) -> None:
        self.store.mark_error(record.id, reason, _now())
        details = {"reason": reason}
        if provider:
            details["provider"] = provider
        await audit_service.log_action(
            self.store.db, record.company_id, audit_service.STAMP_FAILED, record.id,
            details=details,
        )

    def _load_record(self, record_id: str, company_id: str) -> StampRecord:
        record = self.store.get_record(record_id, company_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    async def stamp_payroll_run(self, company_id: str, payroll_run_id: str) -> BatchOutcome:
        """Stamp every pending record of a payroll run, one after another."""
        record_ids = self.store.list_pending_for_run(company_id, payroll_run_id)
        logger.info(f"Payroll run {payroll_run_id}: {len(record_ids)} pending CFDI(s)")

        results = []
        for record_id in record_ids:
            results.append(await self.stamp_record(record_id, company_id))

        stamped = sum(1 for r in results if r.success)
        return BatchOutcome(
            total=len(results), stamped=stamped, failed=len(results) - stamped,
            results=results,
        )

    # ══════════════════════════════════════════════════════════
    # REGISTROS
    # ══════════════════════════════════════════════════════════

    async def create_record(self, company_id: str, document: dict,
                            employee_id: Optional[str] = None,
                            payroll_run_id: Optional[str] = None) -> StampRecord:
        """Validate a document and store it as a new pending record. Raises InvalidDocument."""
        validated = load_document(document)
        record = self.store.insert_record(
            company_id=company_id,
            document=validated.model_dump(mode="json"),
            employee_id=employee_id,
            payroll_run_id=payroll_run_id,
        )
        await audit_service.log_action(
            self.store.db, company_id, audit_service.RECORD_CREATED, record.id,
            details={"employee_id": employee_id, "payroll_run_id": payroll_run_id},
        )
        return record

    async def find_pending(self, company_id: str, employee_id: str) -> Optional[str]:
        return self.store.find_pending(company_id, employee_id)

    async def resubmit(self, record_id: str, company_id: str) -> StampRecord:
        """
        New pending attempt for a record that ended in `error`.
        The failed record is left untouched and linked from the new one.
        """
        record = self._load_record(record_id, company_id)
        if record.status == StampStatus.STAMPED:
            raise AlreadyStamped(record.id, record.uuid)
        if record.status != StampStatus.ERROR:
            raise RecordNotPending(record.id, record.status.value)

        attempt = self.store.insert_record(
            company_id=company_id,
            document=record.document,
            employee_id=record.employee_id,
            payroll_run_id=record.payroll_run_id,
            previous_record_id=record.id,
        )
        await audit_service.log_action(
            self.store.db, company_id, audit_service.RECORD_RESUBMITTED, attempt.id,
            details={"previous_record_id": record.id, "previous_error": record.error_message},
        )
        return attempt

    async def render_xml(self, record_id: str, company_id: str) -> tuple[str, StampStatus]:
        """Stamped XML of a record, or the serialization of its document when not stamped."""
        record = self._load_record(record_id, company_id)
        if record.status == StampStatus.STAMPED and record.stamped_xml:
            return record.stamped_xml, record.status
        return serialize(load_document(record.document)), record.status
