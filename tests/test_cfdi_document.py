"""
TIMBRADO-NOMINA — FiscalDocument invariants

Run: pytest tests/test_cfdi_document.py -v
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.core.errors import StampServiceError
from app.sat.cfdi_document import FiscalDocument, InvalidDocument, load_document
from cfdi_samples import invoice_data, payroll_data


class TestValidDocuments:
    def test_invoice_with_matching_total(self):
        doc = load_document(invoice_data())
        assert doc.subtotal == Decimal("1000.00")
        assert doc.taxes.total_transferred == Decimal("160.00")
        assert doc.total == Decimal("1160.00")

    def test_payroll_document(self):
        doc = load_document(payroll_data())
        assert doc.is_payroll
        assert doc.payroll.employee.curp == "XEXX010101HNEXXXA4"
        assert len(doc.payroll.perceptions.lines) == 2

    def test_float_amounts_are_exact(self):
        data = invoice_data()
        data["subtotal"] = 1000.0
        data["total"] = 1160.0
        doc = load_document(data)
        assert doc.total == Decimal("1160.0")

    def test_document_is_immutable(self):
        doc = load_document(invoice_data())
        with pytest.raises(ValidationError):
            doc.total = Decimal("1")

    def test_json_dump_round_trips(self):
        doc = load_document(payroll_data())
        again = load_document(doc.model_dump(mode="json"))
        assert again == doc

    def test_tax_object_defaults(self):
        doc = load_document(invoice_data())
        assert doc.items[0].effective_tax_object == "02"
        data = invoice_data()
        data["items"][0]["transferred_taxes"] = []
        data["taxes"] = None
        data["total"] = "1000.00"
        assert load_document(data).items[0].effective_tax_object == "01"


class TestTotalsInvariant:
    def test_total_mismatch_rejected(self):
        data = invoice_data()
        data["total"] = "1159.99"
        with pytest.raises(InvalidDocument) as exc_info:
            load_document(data)
        assert any("Total" in e for e in exc_info.value.errors)

    def test_withheld_taxes_subtract(self):
        data = invoice_data()
        isr = {"base": "1000.00", "tax": "001", "factor_type": "Tasa",
               "rate": "0.100000", "amount": "100.00"}
        data["items"][0]["withheld_taxes"] = [isr]
        data["taxes"]["withheld"] = [isr]
        data["total"] = "1060.00"
        assert load_document(data).total == Decimal("1060.00")

    def test_item_amount_must_equal_quantity_times_price_minus_discount(self):
        data = invoice_data()
        data["items"][0]["quantity"] = "2"
        with pytest.raises(InvalidDocument) as exc_info:
            load_document(data)
        assert any("Concepto 1: Importe" in e for e in exc_info.value.errors)

    def test_negative_amount_rejected(self):
        data = invoice_data()
        data["discount"] = "-10.00"
        data["total"] = "1170.00"
        with pytest.raises(InvalidDocument) as exc_info:
            load_document(data)
        assert any("Descuento no puede ser negativo" in e for e in exc_info.value.errors)

    def test_mxn_requires_exchange_rate_one(self):
        data = invoice_data()
        data["exchange_rate"] = "17.5"
        with pytest.raises(InvalidDocument, match="TipoCambio"):
            load_document(data)

    def test_foreign_currency_needs_positive_rate(self):
        data = invoice_data()
        data["currency"] = "USD"
        data["exchange_rate"] = "0"
        with pytest.raises(InvalidDocument, match="TipoCambio debe ser positivo"):
            load_document(data)
        data["exchange_rate"] = "17.25"
        assert load_document(data).exchange_rate == Decimal("17.25")


class TestRequiredFields:
    def test_empty_issuer_name(self):
        data = invoice_data()
        data["issuer"] = dict(data["issuer"], name="  ")
        with pytest.raises(InvalidDocument, match="Emisor.Nombre es obligatorio"):
            load_document(data)

    def test_malformed_rfc(self):
        data = invoice_data()
        data["recipient"] = dict(data["recipient"], rfc="XAXX01")
        with pytest.raises(InvalidDocument, match="Receptor.Rfc"):
            load_document(data)

    def test_bad_postal_code(self):
        data = invoice_data()
        data["expedition_postal_code"] = "441"
        with pytest.raises(InvalidDocument, match="LugarExpedicion"):
            load_document(data)

    def test_no_items(self):
        data = invoice_data()
        data["items"] = []
        data["subtotal"] = "0"
        data["taxes"] = None
        data["total"] = "0"
        with pytest.raises(InvalidDocument, match="al menos un Concepto"):
            load_document(data)

    def test_missing_field_reported_as_invalid_document(self):
        data = invoice_data()
        del data["issuer"]
        with pytest.raises(InvalidDocument) as exc_info:
            load_document(data)
        assert exc_info.value.errors[0].startswith("issuer")

    def test_unknown_field_rejected(self):
        data = invoice_data()
        data["foo"] = "bar"
        with pytest.raises(InvalidDocument):
            load_document(data)

    def test_all_errors_reported_together(self):
        data = invoice_data()
        data["total"] = "1.00"
        data["issuer"] = dict(data["issuer"], name="")
        with pytest.raises(InvalidDocument) as exc_info:
            load_document(data)
        assert len(exc_info.value.errors) == 2

    def test_invalid_document_is_a_400_service_error(self):
        data = invoice_data()
        data["total"] = "1.00"
        with pytest.raises(StampServiceError) as exc_info:
            FiscalDocument.model_validate(data)
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "INVALID_DOCUMENT"


class TestPayrollInvariants:
    def test_payroll_complement_on_income_document(self):
        data = payroll_data()
        data["document_type"] = "I"
        with pytest.raises(InvalidDocument, match="Complemento de nómina"):
            load_document(data)

    def test_perception_total_mismatch(self):
        data = payroll_data()
        data["payroll"]["total_perceptions"] = "9999.00"
        with pytest.raises(InvalidDocument, match="TotalPercepciones"):
            load_document(data)

    def test_taxes_withheld_only_counts_isr(self):
        data = payroll_data()
        data["payroll"]["deductions"]["total_taxes_withheld"] = "1500.00"
        with pytest.raises(InvalidDocument, match="TotalImpuestosRetenidos"):
            load_document(data)

    def test_taxed_total_mismatch(self):
        data = payroll_data()
        data["payroll"]["perceptions"]["total_taxed"] = "10000.00"
        with pytest.raises(InvalidDocument, match="TotalGravado"):
            load_document(data)

    def test_optional_totals_may_be_omitted(self):
        data = payroll_data()
        data["payroll"]["total_perceptions"] = None
        data["payroll"]["deductions"]["total_other_deductions"] = None
        assert load_document(data).payroll.total_perceptions is None

    def test_bad_curp(self):
        data = payroll_data()
        data["payroll"]["employee"]["curp"] = "XEXX010101"
        with pytest.raises(InvalidDocument, match="Curp"):
            load_document(data)

    def test_period_end_before_start(self):
        data = payroll_data()
        data["payroll"]["period_end"] = "2025-12-31"
        with pytest.raises(InvalidDocument, match="FechaFinalPago"):
            load_document(data)

    def test_days_paid_must_be_positive(self):
        data = payroll_data()
        data["payroll"]["days_paid"] = "0"
        with pytest.raises(InvalidDocument, match="NumDiasPagados"):
            load_document(data)

    def test_salaries_total_mismatch(self):
        data = payroll_data()
        data["payroll"]["perceptions"]["total_salaries"] = "99999.00"
        with pytest.raises(InvalidDocument, match="TotalSueldos"):
            load_document(data)

    def test_severance_total_without_severance_lines(self):
        data = payroll_data()
        data["payroll"]["perceptions"]["total_severance"] = "123.45"
        with pytest.raises(InvalidDocument, match="TotalSeparacionIndemnizacion"):
            load_document(data)

    def test_perception_aggregates_split_by_type(self):
        data = payroll_data()
        perceptions = data["payroll"]["perceptions"]
        perceptions["lines"] += [
            {"perception_type": "025", "code": "00700", "concept": "Indemnizaciones",
             "taxed_amount": "3000.00", "exempt_amount": "0.00"},
            {"perception_type": "039", "code": "00800", "concept": "Jubilaciones",
             "taxed_amount": "0.00", "exempt_amount": "2000.00"},
        ]
        perceptions.update(total_salaries="10000.00", total_severance="3000.00",
                           total_retirement="2000.00", total_taxed="12750.00",
                           total_exempt="2250.00")
        data["payroll"]["total_perceptions"] = "15000.00"
        data["subtotal"] = "15000.00"
        data["total"] = "13500.00"
        data["items"][0]["unit_price"] = "15000.00"
        data["items"][0]["amount"] = "13500.00"

        payroll = load_document(data).payroll
        assert payroll.perceptions.total_severance == Decimal("3000.00")

        perceptions["total_salaries"] = "15000.00"
        with pytest.raises(InvalidDocument, match="TotalSueldos"):
            load_document(data)


class TestXmlCharacters:
    def test_control_character_in_description(self):
        data = invoice_data()
        data["items"][0]["description"] = "Servicio \x01 mensual"
        with pytest.raises(InvalidDocument, match="description") as exc_info:
            load_document(data)
        assert "U+0001" in exc_info.value.message

    def test_control_character_in_recipient_name(self):
        data = invoice_data()
        data["recipient"]["name"] = "PEREZ\x0bHIJOS"
        with pytest.raises(InvalidDocument, match="recipient.name"):
            load_document(data)

    def test_control_character_in_payroll_concept(self):
        data = payroll_data()
        data["payroll"]["deductions"]["lines"][0]["concept"] = "ISR\x1f"
        with pytest.raises(InvalidDocument, match="concept"):
            load_document(data)

    def test_tab_and_newline_are_allowed(self):
        data = invoice_data()
        data["items"][0]["description"] = "Servicio\tmensual\nenero"
        assert load_document(data).items[0].description == "Servicio\tmensual\nenero"
