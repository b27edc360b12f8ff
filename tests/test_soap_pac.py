"""
TIMBRADO-NOMINA — SOAP PAC adapter (request building + response mapping)

Run: pytest tests/test_soap_pac.py -v
"""
import asyncio
import html
from unittest.mock import patch

import httpx

from app.core.config import settings
from app.modules.pac_client import Failed, PacCredentials, Stamped
from app.modules.soap_pac import (
    UNKNOWN_STAMP_ERROR, FinkokSoapClient, build_envelope, parse_stamp_response,
)
from app.sat.cfdi_document import load_document
from cfdi_samples import payroll_data

CREDS = PacCredentials(username="pac-user@empresa.mx", password="s3cr3t&<pwd>")

SUCCESS_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">
  <SOAP-ENV:Body>
    <ns1:stampResponse xmlns:ns1="http://facturacion.finkok.com/stamp">
      <ns1:stampResult>
        <s0:xml>{xml}</s0:xml>
        <s0:UUID>ABCD-1234</s0:UUID>
        <s0:Fecha>2026-01-15T10:00:05</s0:Fecha>
        <s0:CodEstatus>Comprobante timbrado satisfactoriamente</s0:CodEstatus>
      </ns1:stampResult>
    </ns1:stampResponse>
  </SOAP-ENV:Body>
</SOAP-ENV:Envelope>"""

FAULT_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">
  <SOAP-ENV:Body>
    <SOAP-ENV:Fault>
      <faultcode>SOAP-ENV:Server</faultcode>
      <faultstring>RFC inválido</faultstring>
    </SOAP-ENV:Fault>
  </SOAP-ENV:Body>
</SOAP-ENV:Envelope>"""

INCIDENT_BODY = """<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">
  <SOAP-ENV:Body><ns1:stampResponse><ns1:stampResult>
    <s0:Incidencias><s0:Incidencia>
      <s0:CodigoError>705</s0:CodigoError>
      <s0:MensajeIncidencia>XML mal formado &amp; no valido</s0:MensajeIncidencia>
    </s0:Incidencia></s0:Incidencias>
  </ns1:stampResult></ns1:stampResponse></SOAP-ENV:Body>
</SOAP-ENV:Envelope>"""


def make_client(handler) -> FinkokSoapClient:
    return FinkokSoapClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestEnvelope:
    def test_payload_and_credentials_are_escaped(self):
        envelope = build_envelope('<cfdi:Comprobante Total="1.00"/>', CREDS)
        assert "&lt;cfdi:Comprobante" in envelope
        assert "<cfdi:Comprobante" not in envelope
        assert "s3cr3t&amp;&lt;pwd&gt;" in envelope

    def test_single_stamp_operation(self):
        envelope = build_envelope("<x/>", CREDS)
        assert envelope.count("<stam:stamp>") == 1
        assert "<stam:username>pac-user@empresa.mx</stam:username>" in envelope
        assert "soapenv:Envelope" in envelope


class TestResponseMapping:
    def test_uuid_means_stamped(self):
        stamped_xml = '<cfdi:Comprobante Total="8500.00"><tfd:TimbreFiscalDigital UUID="ABCD-1234"/></cfdi:Comprobante>'
        body = SUCCESS_BODY.format(xml=html.escape(stamped_xml))
        result = parse_stamp_response(body, "<original/>")
        assert isinstance(result, Stamped)
        assert result.uuid == "ABCD-1234"
        assert result.stamped_document == stamped_xml

    def test_stamped_without_xml_keeps_original(self):
        body = "<s0:UUID>ABCD-1234</s0:UUID>"
        result = parse_stamp_response(body, "<original/>")
        assert result == Stamped(uuid="ABCD-1234", stamped_document="<original/>")

    def test_fault_string_passed_through(self):
        result = parse_stamp_response(FAULT_BODY, "<original/>")
        assert result == Failed(reason="RFC inválido")

    def test_incident_message(self):
        result = parse_stamp_response(INCIDENT_BODY, "<original/>")
        assert result == Failed(reason="XML mal formado & no valido")

    def test_fault_string_in_cdata(self):
        body = FAULT_BODY.replace("RFC inválido", "<![CDATA[RFC & nombre no coinciden]]>")
        result = parse_stamp_response(body, "<original/>")
        assert result == Failed(reason="RFC & nombre no coinciden")

    def test_cdata_content_is_not_unescaped(self):
        body = "<faultstring>Emisor &amp; <![CDATA[Receptor &amp; <RFC>]]></faultstring>"
        result = parse_stamp_response(body, "<original/>")
        assert result == Failed(reason="Emisor & Receptor &amp; <RFC>")

    def test_unknown_error(self):
        result = parse_stamp_response("<html>502 Bad Gateway</html>", "<original/>")
        assert result == Failed(reason=UNKNOWN_STAMP_ERROR)

    def test_malformed_response_still_yields_uuid(self):
        result = parse_stamp_response("<broken><UUID>FFFF-0001</UUID><unclosed>", "<o/>")
        assert isinstance(result, Stamped)
        assert result.uuid == "FFFF-0001"


class TestFinkokSoapClient:
    def setup_method(self):
        self.document = load_document(payroll_data())
        self.requests: list[httpx.Request] = []

    def _handler(self, body: str, status: int = 200):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(status, text=body)
        return handler

    def test_stamp_success(self):
        client = make_client(self._handler(SUCCESS_BODY.format(xml="&lt;cfdi/&gt;")))
        result = asyncio.run(client.stamp(self.document, CREDS, sandbox=True))
        assert result == Stamped(uuid="ABCD-1234", stamped_document="<cfdi/>")

    def test_request_shape(self):
        client = make_client(self._handler(FAULT_BODY))
        asyncio.run(client.stamp(self.document, CREDS, sandbox=True))
        request = self.requests[0]
        assert request.method == "POST"
        assert request.headers["SOAPAction"] == "stamp"
        assert request.headers["Content-Type"].startswith("text/xml")
        body = request.content.decode("utf-8")
        assert "&lt;cfdi:Comprobante" in body
        assert "XEXX010101HNEXXXA4" in body

    def test_sandbox_flag_selects_url(self):
        asyncio.run(make_client(self._handler(FAULT_BODY)).stamp(self.document, CREDS, sandbox=True))
        asyncio.run(make_client(self._handler(FAULT_BODY)).stamp(self.document, CREDS, sandbox=False))
        assert self.requests[0].url.host == "demo-facturacion.finkok.com"
        assert self.requests[1].url.host == "facturacion.finkok.com"

    def test_http_200_with_fault_is_failed(self):
        client = make_client(self._handler(FAULT_BODY, status=200))
        result = asyncio.run(client.stamp(self.document, CREDS, sandbox=True))
        assert result == Failed(reason="RFC inválido")

    def test_http_500_with_fault(self):
        client = make_client(self._handler(FAULT_BODY, status=500))
        result = asyncio.run(client.stamp(self.document, CREDS, sandbox=True))
        assert result == Failed(reason="RFC inválido")

    def test_connection_error_is_failed(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused")
        result = asyncio.run(make_client(handler).stamp(self.document, CREDS, sandbox=True))
        assert result == Failed(reason="Connection refused")

    def test_hard_timeout(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, text=SUCCESS_BODY)

        with patch.object(settings, "soap_hard_timeout_seconds", 0.05):
            result = asyncio.run(make_client(handler).stamp(self.document, CREDS, sandbox=True))
        assert isinstance(result, Failed)
        assert "Tiempo de espera agotado" in result.reason
