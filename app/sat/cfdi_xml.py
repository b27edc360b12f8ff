"""
TIMBRADO-NOMINA: Serializador XML CFDI 4.0 + Nómina 1.2
========================================================
serialize(FiscalDocument) -> str, pure and deterministic.

REGLAS:
- Attribute order is the XSD sequence of each element (cfdv40.xsd,
  nomina12.xsd), never alphabetical or dict order. Every element is declared
  as an ordered tuple of (attribute, value) pairs in this module.
- Attributes whose value is None are not written. Optional totals that are
  zero are passed as None by the caller code below.
- Wrapper elements (Impuestos, Traslados, Percepciones, OtrosPagos...) are
  only created when they will have children.
- Amounts: 2 decimals. TasaOCuota and TipoCambio: 6 decimals.
  NumDiasPagados: 3 decimals. Cantidad: integer when integral, else 6 decimals.
- Escaping is delegated to ElementTree; values are never pre-escaped.
"""
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Iterable, Optional

from app.sat.cfdi_document import (
    CFDI_VERSION, NATIONAL_CURRENCY, FiscalDocument, LineItem, PayrollComplement,
    TaxEntry, TaxSummary,
)
from app.utils.cfdi_helpers import format_decimal

CFDI_NS = "http://www.sat.gob.mx/cfd/4"
NOMINA_NS = "http://www.sat.gob.mx/nomina12"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

CFDI_SCHEMA_LOCATION = "http://www.sat.gob.mx/cfd/4 http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd"
NOMINA_SCHEMA_LOCATION = "http://www.sat.gob.mx/nomina12 http://www.sat.gob.mx/sitio_internet/cfd/nomina/nomina12.xsd"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

ET.register_namespace("cfdi", CFDI_NS)
ET.register_namespace("nomina12", NOMINA_NS)
ET.register_namespace("xsi", XSI_NS)

Attrs = Iterable[tuple[str, Optional[str]]]


# ─────────────────────────────────────────────────────────────
# FORMATTERS
# ─────────────────────────────────────────────────────────────

def _amount(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else format_decimal(value, 2)


def _rate(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else format_decimal(value, 6)


def _quantity(value: Decimal) -> str:
    if value == value.to_integral_value():
        return format_decimal(value, 0)
    return format_decimal(value, 6)


def _nonzero(value: Optional[Decimal]) -> Optional[str]:
    """Amount for attributes that are only written when non-zero."""
    if value is None or value == 0:
        return None
    return _amount(value)


def _date(value) -> Optional[str]:
    return None if value is None else value.isoformat()


# ─────────────────────────────────────────────────────────────
# BUILDER
# ─────────────────────────────────────────────────────────────

def _cfdi(name: str) -> str:
    return f"{{{CFDI_NS}}}{name}"


def _nom(name: str) -> str:
    return f"{{{NOMINA_NS}}}{name}"


def _set_attrs(elem: ET.Element, attrs: Attrs) -> ET.Element:
    for key, value in attrs:
        if value is not None:
            elem.set(key, value)
    return elem


def _child(parent: ET.Element, tag: str, attrs: Attrs = ()) -> ET.Element:
    return _set_attrs(ET.SubElement(parent, tag), attrs)


# ─────────────────────────────────────────────────────────────
# COMPROBANTE
# ─────────────────────────────────────────────────────────────

def serialize(doc: FiscalDocument) -> str:
    """Render a FiscalDocument as CFDI 4.0 XML text (UTF-8 declaration included)."""
    schema_location = CFDI_SCHEMA_LOCATION
    if doc.payroll is not None:
        schema_location = f"{schema_location} {NOMINA_SCHEMA_LOCATION}"

    root = _set_attrs(ET.Element(_cfdi("Comprobante")), [
        (f"{{{XSI_NS}}}schemaLocation", schema_location),
        ("Version", CFDI_VERSION),
        ("Serie", doc.series or None),
        ("Folio", doc.folio or None),
        ("Fecha", doc.issued_at.strftime("%Y-%m-%dT%H:%M:%S")),
        ("FormaPago", doc.payment_form or None),
        ("SubTotal", _amount(doc.subtotal)),
        ("Descuento", _nonzero(doc.discount)),
        ("Moneda", doc.currency),
        ("TipoCambio", None if doc.currency == NATIONAL_CURRENCY else _rate(doc.exchange_rate)),
        ("Total", _amount(doc.total)),
        ("TipoDeComprobante", doc.document_type),
        ("Exportacion", doc.export_code),
        ("MetodoPago", doc.payment_method or None),
        ("LugarExpedicion", doc.expedition_postal_code),
    ])

    _child(root, _cfdi("Emisor"), [
        ("Rfc", doc.issuer.rfc),
        ("Nombre", doc.issuer.name),
        ("RegimenFiscal", doc.issuer.fiscal_regime),
    ])
    _child(root, _cfdi("Receptor"), [
        ("Rfc", doc.recipient.rfc),
        ("Nombre", doc.recipient.name),
        ("DomicilioFiscalReceptor", doc.recipient.tax_postal_code),
        ("RegimenFiscalReceptor", doc.recipient.fiscal_regime),
        ("UsoCFDI", doc.recipient.cfdi_use),
    ])

    conceptos = _child(root, _cfdi("Conceptos"))
    for item in doc.items:
        _build_concepto(conceptos, item)

    if doc.taxes is not None:
        _build_document_taxes(root, doc.taxes)

    if doc.payroll is not None:
        complemento = _child(root, _cfdi("Complemento"))
        _build_nomina(complemento, doc.payroll)

    return XML_DECLARATION + ET.tostring(root, encoding="unicode")


def _build_concepto(parent: ET.Element, item: LineItem) -> None:
    concepto = _child(parent, _cfdi("Concepto"), [
        ("ClaveProdServ", item.product_code),
        ("NoIdentificacion", item.identification or None),
        ("Cantidad", _quantity(item.quantity)),
        ("ClaveUnidad", item.unit_code),
        ("Unidad", item.unit or None),
        ("Descripcion", item.description),
        ("ValorUnitario", _amount(item.unit_price)),
        ("Importe", _amount(item.amount)),
        ("Descuento", _nonzero(item.discount)),
        ("ObjetoImp", item.effective_tax_object),
    ])
    if not (item.transferred_taxes or item.withheld_taxes):
        return
    impuestos = _child(concepto, _cfdi("Impuestos"))
    if item.transferred_taxes:
        traslados = _child(impuestos, _cfdi("Traslados"))
        for tax in item.transferred_taxes:
            _child(traslados, _cfdi("Traslado"), _tax_attrs(tax))
    if item.withheld_taxes:
        retenciones = _child(impuestos, _cfdi("Retenciones"))
        for tax in item.withheld_taxes:
            _child(retenciones, _cfdi("Retencion"), _tax_attrs(tax))


def _tax_attrs(tax: TaxEntry) -> Attrs:
    return [
        ("Base", _amount(tax.base)),
        ("Impuesto", tax.tax),
        ("TipoFactor", tax.factor_type),
        ("TasaOCuota", _rate(tax.rate)),
        ("Importe", _amount(tax.amount)),
    ]


def _build_document_taxes(root: ET.Element, taxes: TaxSummary) -> None:
    if not (taxes.transferred or taxes.withheld):
        return
    impuestos = _child(root, _cfdi("Impuestos"), [
        ("TotalImpuestosRetenidos", _amount(taxes.total_withheld) if taxes.withheld else None),
        ("TotalImpuestosTrasladados", _amount(taxes.total_transferred) if taxes.transferred else None),
    ])
    # XSD sequence at document level: Retenciones before Traslados
    if taxes.withheld:
        retenciones = _child(impuestos, _cfdi("Retenciones"))
        for tax in taxes.withheld:
            _child(retenciones, _cfdi("Retencion"), [
                ("Impuesto", tax.tax),
                ("Importe", _amount(tax.amount)),
            ])
    if taxes.transferred:
        traslados = _child(impuestos, _cfdi("Traslados"))
        for tax in taxes.transferred:
            _child(traslados, _cfdi("Traslado"), _tax_attrs(tax))


# ─────────────────────────────────────────────────────────────
# NÓMINA 1.2
# ─────────────────────────────────────────────────────────────

def _build_nomina(parent: ET.Element, payroll: PayrollComplement) -> None:
    nomina = _child(parent, _nom("Nomina"), [
        ("Version", payroll.version),
        ("TipoNomina", payroll.payroll_type),
        ("FechaPago", _date(payroll.payment_date)),
        ("FechaInicialPago", _date(payroll.period_start)),
        ("FechaFinalPago", _date(payroll.period_end)),
        ("NumDiasPagados", format_decimal(payroll.days_paid, 3)),
        ("TotalPercepciones", _nonzero(payroll.total_perceptions)),
        ("TotalDeducciones", _nonzero(payroll.total_deductions)),
        ("TotalOtrosPagos", _nonzero(payroll.total_other_payments)),
    ])

    issuer = payroll.issuer
    if issuer is not None and (issuer.curp or issuer.employer_registration or issuer.origin_employer_rfc):
        _child(nomina, _nom("Emisor"), [
            ("Curp", issuer.curp or None),
            ("RegistroPatronal", issuer.employer_registration or None),
            ("RfcPatronOrigen", issuer.origin_employer_rfc or None),
        ])

    emp = payroll.employee
    bank = emp.bank_details
    unionized = None if emp.unionized is None else ("Sí" if emp.unionized else "No")
    _child(nomina, _nom("Receptor"), [
        ("Curp", emp.curp),
        ("NumSeguridadSocial", emp.social_security_number or None),
        ("FechaInicioRelLaboral", _date(emp.labor_start_date)),
        ("Antigüedad", emp.seniority or None),
        ("TipoContrato", emp.contract_type),
        ("Sindicalizado", unionized),
        ("TipoJornada", emp.shift_type or None),
        ("TipoRegimen", emp.regime_type),
        ("NumEmpleado", emp.employee_number),
        ("Departamento", emp.department or None),
        ("Puesto", emp.position or None),
        ("RiesgoPuesto", emp.risk_class or None),
        ("PeriodicidadPago", emp.pay_frequency),
        ("Banco", (bank.bank or None) if bank else None),
        ("CuentaBancaria", (bank.account or None) if bank else None),
        ("SalarioBaseCotApor", _amount(emp.base_contribution_salary)),
        ("SalarioDiarioIntegrado", _amount(emp.integrated_daily_salary)),
        ("ClaveEntFed", emp.federal_entity_code),
    ])

    perceptions = payroll.perceptions
    if perceptions is not None and perceptions.lines:
        percepciones = _child(nomina, _nom("Percepciones"), [
            ("TotalSueldos", _nonzero(perceptions.total_salaries)),
            ("TotalSeparacionIndemnizacion", _nonzero(perceptions.total_severance)),
            ("TotalJubilacionPensionRetiro", _nonzero(perceptions.total_retirement)),
            ("TotalGravado", _amount(perceptions.total_taxed)),
            ("TotalExento", _amount(perceptions.total_exempt)),
        ])
        for line in perceptions.lines:
            _child(percepciones, _nom("Percepcion"), [
                ("TipoPercepcion", line.perception_type),
                ("Clave", line.code),
                ("Concepto", line.concept),
                ("ImporteGravado", _amount(line.taxed_amount)),
                ("ImporteExento", _amount(line.exempt_amount)),
            ])

    deductions = payroll.deductions
    if deductions is not None and deductions.lines:
        deducciones = _child(nomina, _nom("Deducciones"), [
            ("TotalOtrasDeducciones", _nonzero(deductions.total_other_deductions)),
            ("TotalImpuestosRetenidos", _nonzero(deductions.total_taxes_withheld)),
        ])
        for line in deductions.lines:
            _child(deducciones, _nom("Deduccion"), [
                ("TipoDeduccion", line.deduction_type),
                ("Clave", line.code),
                ("Concepto", line.concept),
                ("Importe", _amount(line.amount)),
            ])

    if payroll.other_payments:
        otros = _child(nomina, _nom("OtrosPagos"))
        for line in payroll.other_payments:
            otro = _child(otros, _nom("OtroPago"), [
                ("TipoOtroPago", line.payment_type),
                ("Clave", line.code),
                ("Concepto", line.concept),
                ("Importe", _amount(line.amount)),
            ])
            if line.employment_subsidy is not None:
                _child(otro, _nom("SubsidioAlEmpleo"), [
                    ("SubsidioCausado", _amount(line.employment_subsidy)),
                ])
