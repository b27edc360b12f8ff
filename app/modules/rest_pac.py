"""
TIMBRADO-NOMINA — REST/JSON PAC adapter (Facturama-style API)

Wire contract:
- POST {base_url}/{version}/documents
- Authorization: Basic base64(username:password)
- Body: the provider's own JSON document (Issuer / Receiver / Items / Taxes,
  payroll under Complemento.Payroll). Built directly from FiscalDocument;
  the XML serializer is not involved.
- 2xx: {"Complement": {"TaxStamp": {"Uuid": ...}}, "OriginalString": ...}
- non-2xx: {"Message": ..., "ModelState": {...}} or an empty/HTML body

The mapping below is deliberately independent of cfdi_xml.py; the provider
models taxes and identities differently from the SAT schema.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.config import PacProvider, settings
from app.modules.pac_client import (
    Failed, PacClient, PacCredentials, StampResult, Stamped, describe_exception,
)
from app.sat.cfdi_document import (
    FiscalDocument, LineItem, PayrollComplement, TaxEntry,
)
from app.utils.cfdi_helpers import mask_rfc

logger = logging.getLogger(__name__)

# c_Impuesto -> provider tax name
TAX_NAMES = {
    "001": "ISR",
    "002": "IVA",
    "003": "IEPS",
}


def _num(value: Optional[Decimal]) -> Optional[float]:
    # JSON numbers at the wire edge only; all arithmetic stays in Decimal
    return None if value is None else float(value)


def _compact(data: dict) -> dict:
    """Drop None values and empty containers so optional fields are omitted."""
    return {k: v for k, v in data.items() if v is not None and v != [] and v != {}}


# ─────────────────────────────────────────────────────────────
# REQUEST MAPPING
# ─────────────────────────────────────────────────────────────

def _tax(entry: TaxEntry, is_retention: bool) -> dict:
    return _compact({
        "Name": TAX_NAMES.get(entry.tax, entry.tax),
        "Base": _num(entry.base),
        "Rate": _num(entry.rate),
        "Total": _num(entry.amount or Decimal(0)),
        "IsRetention": is_retention,
        "IsQuota": entry.factor_type == "Cuota",
        "IsExempt": entry.factor_type == "Exento",
    })


def _item(item: LineItem) -> dict:
    taxes = [_tax(t, False) for t in item.transferred_taxes]
    taxes += [_tax(t, True) for t in item.withheld_taxes]
    net = item.amount
    for t in item.transferred_taxes:
        net += t.amount or Decimal(0)
    for t in item.withheld_taxes:
        net -= t.amount or Decimal(0)
    return _compact({
        "ProductCode": item.product_code,
        "IdentificationNumber": item.identification,
        "Quantity": _num(item.quantity),
        "UnitCode": item.unit_code,
        "Unit": item.unit,
        "Description": item.description,
        "UnitPrice": _num(item.unit_price),
        "Subtotal": _num(item.amount),
        "Discount": _num(item.discount),
        "TaxObject": item.effective_tax_object,
        "Taxes": taxes,
        "Total": _num(net),
    })


def _payroll(payroll: PayrollComplement) -> dict:
    emp = payroll.employee
    bank = emp.bank_details
    issuer = payroll.issuer
    data: dict[str, Any] = {
        "Version": payroll.version,
        "Type": payroll.payroll_type,
        "PaymentDate": payroll.payment_date.isoformat(),
        "InitialPaymentDate": payroll.period_start.isoformat(),
        "FinalPaymentDate": payroll.period_end.isoformat(),
        "DaysPaid": _num(payroll.days_paid),
        "Issuer": _compact({
            "EmployerRegistration": issuer.employer_registration,
            "Curp": issuer.curp,
            "OriginEmployerRfc": issuer.origin_employer_rfc,
        }) if issuer else None,
        "Employee": _compact({
            "Curp": emp.curp,
            "SocialSecurityNumber": emp.social_security_number,
            "StartDateLaborRelations": emp.labor_start_date.isoformat() if emp.labor_start_date else None,
            "Seniority": emp.seniority,
            "ContractType": emp.contract_type,
            "Unionized": emp.unionized,
            "TypeOfJourney": emp.shift_type,
            "RegimeType": emp.regime_type,
            "EmployeeNumber": emp.employee_number,
            "Department": emp.department,
            "Position": emp.position,
            "PositionRisk": emp.risk_class,
            "FrequencyPayment": emp.pay_frequency,
            "Bank": bank.bank if bank else None,
            "BankAccount": bank.account if bank else None,
            "BaseSalary": _num(emp.base_contribution_salary),
            "DailySalary": _num(emp.integrated_daily_salary),
            "FederalEntityKey": emp.federal_entity_code,
        }),
    }

    if payroll.perceptions and payroll.perceptions.lines:
        p = payroll.perceptions
        data["Perceptions"] = _compact({
            "TotalSalaries": _num(p.total_salaries),
            "TotalSeparationCompensation": _num(p.total_severance),
            "TotalPensionRetirement": _num(p.total_retirement),
            "TotalTaxed": _num(p.total_taxed),
            "TotalExempt": _num(p.total_exempt),
            "Details": [{
                "PerceptionType": line.perception_type,
                "Code": line.code,
                "Description": line.concept,
                "TaxedAmount": _num(line.taxed_amount),
                "ExemptAmount": _num(line.exempt_amount),
            } for line in p.lines],
        })

    if payroll.deductions and payroll.deductions.lines:
        d = payroll.deductions
        data["Deductions"] = _compact({
            "TotalOtherDeductions": _num(d.total_other_deductions),
            "TotalTaxesWithheld": _num(d.total_taxes_withheld),
            "Details": [{
                "DeduccionType": line.deduction_type,
                "Code": line.code,
                "Description": line.concept,
                "Amount": _num(line.amount),
            } for line in d.lines],
        })

    if payroll.other_payments:
        data["OtherPayments"] = [_compact({
            "OtherPaymentType": line.payment_type,
            "Code": line.code,
            "Description": line.concept,
            "Amount": _num(line.amount),
            "EmploymentSubsidy": (
                {"Amount": _num(line.employment_subsidy)}
                if line.employment_subsidy is not None else None
            ),
        }) for line in payroll.other_payments]

    return _compact(data)


def build_payload(doc: FiscalDocument) -> dict:
    """Provider JSON document for a FiscalDocument."""
    payload = {
        "NameId": "16" if doc.is_payroll else "1",
        "Serie": doc.series,
        "Folio": doc.folio,
        "Date": doc.issued_at.strftime("%Y-%m-%dT%H:%M:%S"),
        "CfdiType": doc.document_type,
        "PaymentForm": doc.payment_form,
        "PaymentMethod": doc.payment_method,
        "Currency": doc.currency,
        "ExchangeRate": None if doc.currency == "MXN" else _num(doc.exchange_rate),
        "Exportation": doc.export_code,
        "ExpeditionPlace": doc.expedition_postal_code,
        "Issuer": {
            "Rfc": doc.issuer.rfc,
            "Name": doc.issuer.name,
            "FiscalRegime": doc.issuer.fiscal_regime,
        },
        "Receiver": {
            "Rfc": doc.recipient.rfc,
            "Name": doc.recipient.name,
            "CfdiUse": doc.recipient.cfdi_use,
            "FiscalRegime": doc.recipient.fiscal_regime,
            "TaxZipCode": doc.recipient.tax_postal_code,
        },
        "Items": [_item(i) for i in doc.items],
    }
    if doc.payroll is not None:
        payload["Complemento"] = {"Payroll": _payroll(doc.payroll)}
    return _compact(payload)


# ─────────────────────────────────────────────────────────────
# RESPONSE MAPPING
# ─────────────────────────────────────────────────────────────

def parse_stamp_response(response: httpx.Response) -> StampResult:
    """
    2xx     -> Stamped(Complement.TaxStamp.Uuid, OriginalString)
    non-2xx -> Failed(Message) or Failed("HTTP <status>")
    """
    try:
        data = response.json()
    except ValueError:
        data = None

    if response.is_success:
        if not isinstance(data, dict):
            return Failed(reason=f"Respuesta no-JSON del PAC (HTTP {response.status_code})")
        tax_stamp = (data.get("Complement") or {}).get("TaxStamp") or {}
        uuid = tax_stamp.get("Uuid")
        if not uuid:
            return Failed(reason="Respuesta del PAC sin UUID de timbrado")
        return Stamped(uuid=uuid, stamped_document=data.get("OriginalString") or "")

    message = data.get("Message") if isinstance(data, dict) else None
    if message:
        return Failed(reason=str(message))
    return Failed(reason=f"HTTP {response.status_code}")


class FacturamaRestClient(PacClient):
    """
    Usage:
        client = FacturamaRestClient()
        result = await client.stamp(document, credentials, sandbox=False)
    """

    provider = PacProvider.FACTURAMA

    def documents_url(self, sandbox: bool) -> str:
        path = settings.rest_documents_path.format(version=settings.rest_api_version)
        return self.base_url(sandbox).rstrip("/") + path

    async def stamp(self, document: FiscalDocument, credentials: PacCredentials,
                    sandbox: bool) -> StampResult:
        url = self.documents_url(sandbox)
        env = "sandbox" if sandbox else "production"

        try:
            payload = build_payload(document)
            logger.info(
                f"REST stamp request: provider={self.provider.value}, env={env}, "
                f"emisor={mask_rfc(document.issuer.rfc)}, items={len(document.items)}"
            )
            response = await self._post(
                url,
                json=payload,
                auth=httpx.BasicAuth(credentials.username, credentials.password),
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"REST stamp timeout ({env}): {e!r}")
            return Failed(reason=describe_exception(e))
        except Exception as e:
            logger.warning(f"REST stamp transport error ({env}): {e!r}")
            return Failed(reason=describe_exception(e))

        result = parse_stamp_response(response)
        if isinstance(result, Stamped):
            logger.info(f"REST stamp OK: uuid={result.uuid} (HTTP {response.status_code})")
        else:
            logger.warning(f"REST stamp rejected (HTTP {response.status_code}): {result.reason}")
        return result
