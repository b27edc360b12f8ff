"""
TIMBRADO-NOMINA: Router de Timbrado CFDI
=========================================
Endpoints REST para crear, timbrar, reintentar y descargar CFDI de nómina.

Errores tipados (StampServiceError) se convierten en ErrorResponse con el
handler global de main.py; /cfdi/stamp responde siempre con
{success, uuid?, message?} y el status del resultado.
"""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from app.schemas.models import (
    CreateRecordRequest, CreateRecordResponse,
    FindPendingRequest, FindPendingResponse,
    ResubmitRequest, ResubmitResponse,
    StampRequest, StampResponse,
    StampRunItem, StampRunRequest, StampRunResponse,
)


def create_cfdi_router(get_stamping_service) -> APIRouter:
    """
    Crea router CFDI con inyección de dependencias.

    Args:
        get_stamping_service: Dependency que retorna StampingService
    """
    router = APIRouter(prefix="/cfdi", tags=["CFDI Nómina"])

    # ── TIMBRADO ──

    @router.post("/stamp", response_model=StampResponse)
    async def stamp(data: StampRequest, service=Depends(get_stamping_service)):
        """Timbrar un registro CFDI pendiente con el PAC configurado de la empresa."""
        outcome = await service.stamp_record(data.record_id, data.company_id)
        body = StampResponse.from_outcome(outcome)
        return JSONResponse(
            status_code=outcome.status_code,
            content=body.model_dump(by_alias=True, exclude_none=True),
        )

    @router.post("/stamp-run", response_model=StampRunResponse)
    async def stamp_run(data: StampRunRequest, service=Depends(get_stamping_service)):
        """Timbrar todos los registros pendientes de una corrida de nómina."""
        batch = await service.stamp_payroll_run(data.company_id, data.payroll_run_id)
        return StampRunResponse(
            total=batch.total,
            stamped=batch.stamped,
            failed=batch.failed,
            results=[
                StampRunItem(record_id=r.record_id, success=r.success,
                             uuid=r.uuid, message=r.message)
                for r in batch.results
            ],
        )

    # ── REGISTROS ──

    @router.post("/records", response_model=CreateRecordResponse, status_code=201)
    async def create_record(data: CreateRecordRequest, service=Depends(get_stamping_service)):
        """Validar un documento fiscal y guardarlo como registro pendiente."""
        record = await service.create_record(
            company_id=data.company_id,
            document=data.document,
            employee_id=data.employee_id,
            payroll_run_id=data.payroll_run_id,
        )
        return CreateRecordResponse(record_id=record.id, status=record.status)

    @router.post("/find-pending", response_model=FindPendingResponse)
    async def find_pending(data: FindPendingRequest, service=Depends(get_stamping_service)):
        """ID del registro pendiente más reciente de un empleado."""
        record_id = await service.find_pending(data.company_id, data.employee_id)
        return FindPendingResponse(cfdi_record_id=record_id)

    @router.post("/resubmit", response_model=ResubmitResponse, status_code=201)
    async def resubmit(data: ResubmitRequest, service=Depends(get_stamping_service)):
        """Crear un nuevo intento pendiente para un registro en error."""
        attempt = await service.resubmit(data.record_id, data.company_id)
        return ResubmitResponse(
            record_id=attempt.id,
            previous_record_id=data.record_id,
            status=attempt.status,
        )

    @router.get("/{record_id}/xml")
    async def download_xml(
        record_id: str,
        company_id: str = Query(..., alias="companyId"),
        service=Depends(get_stamping_service),
    ):
        """XML timbrado, o vista previa del documento cuando aún no está timbrado."""
        xml, status = await service.render_xml(record_id, company_id)
        return Response(
            content=xml.encode("utf-8"),
            media_type="application/xml",
            headers={
                "Content-Disposition": f'attachment; filename="{record_id}.xml"',
                "X-CFDI-Status": status.value,
            },
        )

    return router
