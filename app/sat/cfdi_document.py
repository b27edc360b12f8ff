"""
TIMBRADO-NOMINA: Modelo de documento CFDI 4.0 + Nómina 1.2
===========================================================
Provider-agnostic representation of a fiscal payroll document.

All amounts are Decimal. Floats coming from JSON are converted through
their string repr so 1160.0 never becomes 1159.99999...

Construction fails with InvalidDocument when:
- Total != SubTotal - Descuento + TotalImpuestosTrasladados - TotalImpuestosRetenidos
- an item's Importe != Cantidad * ValorUnitario - Descuento
- an amount is negative
- Moneda MXN with TipoCambio != 1, or a foreign currency with TipoCambio <= 0
- a required header / emisor / receptor field is empty or malformed
- a Nómina complement is attached to a TipoDeComprobante other than "N"
- a Nómina total does not match the sum of its lines
- a text field carries a control character XML 1.0 cannot represent
"""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import (
    BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator,
)

from app.core.errors import StampServiceError
from app.utils.cfdi_helpers import (
    to_cents, validate_curp, validate_postal_code, validate_rfc,
)

PAYROLL_DOCUMENT_TYPE = "N"
NATIONAL_CURRENCY = "MXN"
CFDI_VERSION = "4.0"
NOMINA_VERSION = "1.2"

# c_TipoDeduccion 002 = ISR
ISR_DEDUCTION_TYPE = "002"

# c_TipoPercepcion groups for TotalSeparacionIndemnizacion / TotalJubilacionPensionRetiro.
# Every other type counts toward TotalSueldos.
SEVERANCE_PERCEPTION_TYPES = frozenset({"022", "023", "025"})
RETIREMENT_PERCEPTION_TYPES = frozenset({"039", "044"})

# Code points XML 1.0 cannot carry, not even escaped.
_XML_INVALID_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


class InvalidDocument(StampServiceError):
    """Raised when a FiscalDocument violates one of its invariants."""
    status_code = 400
    code = "INVALID_DOCUMENT"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Documento fiscal inválido: " + "; ".join(errors))


def _to_decimal(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    return value


Money = Annotated[Decimal, BeforeValidator(_to_decimal)]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ─────────────────────────────────────────────────────────────
# PARTIES
# ─────────────────────────────────────────────────────────────

class Issuer(_Frozen):
    rfc: str
    name: str
    fiscal_regime: str


class Recipient(_Frozen):
    rfc: str
    name: str
    cfdi_use: str
    fiscal_regime: str
    tax_postal_code: str


# ─────────────────────────────────────────────────────────────
# CONCEPTOS + IMPUESTOS
# ─────────────────────────────────────────────────────────────

class TaxEntry(_Frozen):
    """Traslado or Retención. Exento entries carry neither rate nor amount."""
    base: Optional[Money] = None
    tax: str                      # c_Impuesto: 001 ISR, 002 IVA, 003 IEPS
    factor_type: Optional[str] = None   # Tasa | Cuota | Exento
    rate: Optional[Money] = None
    amount: Optional[Money] = None


class LineItem(_Frozen):
    product_code: str
    identification: Optional[str] = None
    quantity: Money
    unit_code: str
    unit: Optional[str] = None
    description: str
    unit_price: Money
    amount: Money
    discount: Optional[Money] = None
    tax_object: Optional[str] = None
    transferred_taxes: list[TaxEntry] = Field(default_factory=list)
    withheld_taxes: list[TaxEntry] = Field(default_factory=list)

    @property
    def effective_tax_object(self) -> str:
        if self.tax_object:
            return self.tax_object
        return "02" if (self.transferred_taxes or self.withheld_taxes) else "01"


class TaxSummary(_Frozen):
    """Document-level cfdi:Impuestos."""
    transferred: list[TaxEntry] = Field(default_factory=list)
    withheld: list[TaxEntry] = Field(default_factory=list)

    @property
    def total_transferred(self) -> Decimal:
        return sum((t.amount or Decimal(0) for t in self.transferred), Decimal(0))

    @property
    def total_withheld(self) -> Decimal:
        return sum((t.amount or Decimal(0) for t in self.withheld), Decimal(0))


# ─────────────────────────────────────────────────────────────
# NÓMINA 1.2
# ─────────────────────────────────────────────────────────────

class PayrollIssuer(_Frozen):
    employer_registration: Optional[str] = None    # RegistroPatronal
    curp: Optional[str] = None
    origin_employer_rfc: Optional[str] = None


class BankDetails(_Frozen):
    bank: Optional[str] = None       # c_Banco
    account: Optional[str] = None    # CuentaBancaria (CLABE or account)


class PayrollEmployee(_Frozen):
    curp: str
    social_security_number: Optional[str] = None
    labor_start_date: Optional[date] = None
    seniority: Optional[str] = None           # ISO-8601 weeks, e.g. P52W
    contract_type: str
    unionized: Optional[bool] = None
    shift_type: Optional[str] = None
    regime_type: str
    employee_number: str
    department: Optional[str] = None
    position: Optional[str] = None
    risk_class: Optional[str] = None
    pay_frequency: str
    bank_details: Optional[BankDetails] = None
    base_contribution_salary: Optional[Money] = None
    integrated_daily_salary: Optional[Money] = None
    federal_entity_code: str


class Perception(_Frozen):
    perception_type: str
    code: str
    concept: str
    taxed_amount: Money
    exempt_amount: Money


class Perceptions(_Frozen):
    lines: list[Perception]
    total_salaries: Optional[Money] = None
    total_severance: Optional[Money] = None
    total_retirement: Optional[Money] = None
    total_taxed: Optional[Money] = None
    total_exempt: Optional[Money] = None


class Deduction(_Frozen):
    deduction_type: str
    code: str
    concept: str
    amount: Money


class Deductions(_Frozen):
    lines: list[Deduction]
    total_other_deductions: Optional[Money] = None
    total_taxes_withheld: Optional[Money] = None


class OtherPayment(_Frozen):
    payment_type: str
    code: str
    concept: str
    amount: Money
    employment_subsidy: Optional[Money] = None    # SubsidioAlEmpleo/@SubsidioCausado


class PayrollComplement(_Frozen):
    version: str = NOMINA_VERSION
    payroll_type: str                      # O ordinaria, E extraordinaria
    payment_date: date
    period_start: date
    period_end: date
    days_paid: Money
    total_perceptions: Optional[Money] = None
    total_deductions: Optional[Money] = None
    total_other_payments: Optional[Money] = None
    issuer: Optional[PayrollIssuer] = None
    employee: PayrollEmployee
    perceptions: Optional[Perceptions] = None
    deductions: Optional[Deductions] = None
    other_payments: list[OtherPayment] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────
# COMPROBANTE
# ─────────────────────────────────────────────────────────────

class FiscalDocument(_Frozen):
    series: Optional[str] = None
    folio: Optional[str] = None
    issued_at: datetime
    payment_form: Optional[str] = None       # c_FormaPago
    payment_method: Optional[str] = None     # c_MetodoPago
    document_type: str                       # c_TipoDeComprobante
    currency: str = NATIONAL_CURRENCY
    exchange_rate: Money = Decimal(1)
    export_code: str = "01"
    expedition_postal_code: str
    subtotal: Money
    discount: Money = Decimal(0)
    total: Money
    issuer: Issuer
    recipient: Recipient
    items: list[LineItem]
    taxes: Optional[TaxSummary] = None
    payroll: Optional[PayrollComplement] = None

    @property
    def is_payroll(self) -> bool:
        return self.document_type == PAYROLL_DOCUMENT_TYPE

    @model_validator(mode="after")
    def _check_invariants(self) -> "FiscalDocument":
        errors: list[str] = []
        _check_required(self, errors)
        _check_characters(self, errors)
        _check_amounts(self, errors)
        if self.payroll is not None:
            if not self.is_payroll:
                errors.append(
                    f"Complemento de nómina en un comprobante tipo "
                    f"'{self.document_type}' (se requiere '{PAYROLL_DOCUMENT_TYPE}')"
                )
            _check_payroll(self.payroll, errors)
        if errors:
            raise InvalidDocument(errors)
        return self


def _check_required(doc: FiscalDocument, errors: list[str]) -> None:
    required = {
        "TipoDeComprobante": doc.document_type,
        "Moneda": doc.currency,
        "LugarExpedicion": doc.expedition_postal_code,
        "Emisor.Rfc": doc.issuer.rfc,
        "Emisor.Nombre": doc.issuer.name,
        "Emisor.RegimenFiscal": doc.issuer.fiscal_regime,
        "Receptor.Rfc": doc.recipient.rfc,
        "Receptor.Nombre": doc.recipient.name,
        "Receptor.UsoCFDI": doc.recipient.cfdi_use,
        "Receptor.RegimenFiscalReceptor": doc.recipient.fiscal_regime,
        "Receptor.DomicilioFiscalReceptor": doc.recipient.tax_postal_code,
    }
    for label, value in required.items():
        if not (value or "").strip():
            errors.append(f"{label} es obligatorio")

    if doc.issuer.rfc and not validate_rfc(doc.issuer.rfc):
        errors.append(f"Emisor.Rfc con formato inválido: '{doc.issuer.rfc}'")
    if doc.recipient.rfc and not validate_rfc(doc.recipient.rfc):
        errors.append(f"Receptor.Rfc con formato inválido: '{doc.recipient.rfc}'")
    if doc.expedition_postal_code and not validate_postal_code(doc.expedition_postal_code):
        errors.append(f"LugarExpedicion debe ser un C.P. de 5 dígitos: '{doc.expedition_postal_code}'")
    if doc.recipient.tax_postal_code and not validate_postal_code(doc.recipient.tax_postal_code):
        errors.append(
            f"DomicilioFiscalReceptor debe ser un C.P. de 5 dígitos: '{doc.recipient.tax_postal_code}'"
        )
    if not doc.items:
        errors.append("Se requiere al menos un Concepto")
    for i, item in enumerate(doc.items, 1):
        for label, value in (("ClaveProdServ", item.product_code),
                             ("ClaveUnidad", item.unit_code),
                             ("Descripcion", item.description)):
            if not (value or "").strip():
                errors.append(f"Concepto {i}: {label} es obligatorio")


def _text_fields(value: Any, path: str):
    """(path, text) for every string reachable from a model, list or scalar."""
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, BaseModel):
        for name in type(value).model_fields:
            yield from _text_fields(getattr(value, name), f"{path}.{name}" if path else name)
    elif isinstance(value, list):
        for i, entry in enumerate(value):
            yield from _text_fields(entry, f"{path}[{i}]")


def _check_characters(doc: FiscalDocument, errors: list[str]) -> None:
    for path, text in _text_fields(doc, ""):
        match = _XML_INVALID_CHARS.search(text)
        if match:
            errors.append(
                f"{path} contiene un carácter no permitido en XML (U+{ord(match.group()):04X})"
            )


def _check_amounts(doc: FiscalDocument, errors: list[str]) -> None:
    for label, value in (("SubTotal", doc.subtotal), ("Descuento", doc.discount),
                         ("Total", doc.total)):
        if value < 0:
            errors.append(f"{label} no puede ser negativo ({value})")

    if doc.currency == NATIONAL_CURRENCY:
        if doc.exchange_rate != 1:
            errors.append(f"TipoCambio debe ser 1 para {NATIONAL_CURRENCY} ({doc.exchange_rate})")
    elif doc.exchange_rate <= 0:
        errors.append(f"TipoCambio debe ser positivo para {doc.currency} ({doc.exchange_rate})")

    for i, item in enumerate(doc.items, 1):
        discount = item.discount or Decimal(0)
        for label, value in (("Cantidad", item.quantity), ("ValorUnitario", item.unit_price),
                             ("Importe", item.amount), ("Descuento", discount)):
            if value < 0:
                errors.append(f"Concepto {i}: {label} no puede ser negativo ({value})")
        expected = to_cents(item.quantity * item.unit_price - discount)
        if to_cents(item.amount) != expected:
            errors.append(
                f"Concepto {i}: Importe {item.amount} != Cantidad x ValorUnitario - Descuento ({expected})"
            )

    transferred = doc.taxes.total_transferred if doc.taxes else Decimal(0)
    withheld = doc.taxes.total_withheld if doc.taxes else Decimal(0)
    expected_total = to_cents(doc.subtotal - doc.discount + transferred - withheld)
    if to_cents(doc.total) != expected_total:
        errors.append(
            f"Total {doc.total} no cuadra con SubTotal - Descuento + Impuestos ({expected_total})"
        )


def _sum(values) -> Decimal:
    return sum(values, Decimal(0))


def _check_total(label: str, declared: Optional[Decimal], computed: Decimal,
                 errors: list[str]) -> None:
    if declared is not None and to_cents(declared) != to_cents(computed):
        errors.append(f"Nómina: {label} {declared} != suma de conceptos ({to_cents(computed)})")


def _check_payroll(payroll: PayrollComplement, errors: list[str]) -> None:
    employee = payroll.employee
    if not validate_curp(employee.curp):
        errors.append(f"Nómina: Receptor.Curp con formato inválido: '{employee.curp}'")
    if payroll.period_end < payroll.period_start:
        errors.append("Nómina: FechaFinalPago es anterior a FechaInicialPago")
    if payroll.days_paid <= 0:
        errors.append("Nómina: NumDiasPagados debe ser mayor a cero")

    perceptions = payroll.perceptions.lines if payroll.perceptions else []
    deductions = payroll.deductions.lines if payroll.deductions else []

    _check_total("TotalPercepciones", payroll.total_perceptions,
                 _sum(p.taxed_amount + p.exempt_amount for p in perceptions), errors)
    _check_total("TotalDeducciones", payroll.total_deductions,
                 _sum(d.amount for d in deductions), errors)
    _check_total("TotalOtrosPagos", payroll.total_other_payments,
                 _sum(o.amount for o in payroll.other_payments), errors)

    if payroll.perceptions:
        _check_total("TotalGravado", payroll.perceptions.total_taxed,
                     _sum(p.taxed_amount for p in perceptions), errors)
        _check_total("TotalExento", payroll.perceptions.total_exempt,
                     _sum(p.exempt_amount for p in perceptions), errors)

        def group_total(lines) -> Decimal:
            return _sum(p.taxed_amount + p.exempt_amount for p in lines)

        _check_total("TotalSeparacionIndemnizacion", payroll.perceptions.total_severance,
                     group_total(p for p in perceptions
                                 if p.perception_type in SEVERANCE_PERCEPTION_TYPES), errors)
        _check_total("TotalJubilacionPensionRetiro", payroll.perceptions.total_retirement,
                     group_total(p for p in perceptions
                                 if p.perception_type in RETIREMENT_PERCEPTION_TYPES), errors)
        _check_total("TotalSueldos", payroll.perceptions.total_salaries,
                     group_total(p for p in perceptions
                                 if p.perception_type not in SEVERANCE_PERCEPTION_TYPES
                                 and p.perception_type not in RETIREMENT_PERCEPTION_TYPES), errors)
    if payroll.deductions:
        _check_total("TotalImpuestosRetenidos", payroll.deductions.total_taxes_withheld,
                     _sum(d.amount for d in deductions
                          if d.deduction_type == ISR_DEDUCTION_TYPE), errors)
        _check_total("TotalOtrasDeducciones", payroll.deductions.total_other_deductions,
                     _sum(d.amount for d in deductions
                          if d.deduction_type != ISR_DEDUCTION_TYPE), errors)


def load_document(data: dict) -> FiscalDocument:
    """
    Build a FiscalDocument from its stored/JSON form.
    Schema errors (missing fields, bad types) are reported as InvalidDocument too.
    """
    try:
        return FiscalDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidDocument([
            f"{'.'.join(str(p) for p in err['loc']) or 'documento'}: {err['msg']}"
            for err in e.errors()
        ]) from e
