"""
TIMBRADO-NOMINA — SOAP PAC adapter (Finkok stamp service)

Wire contract:
- POST {base_url} with Content-Type: text/xml and SOAPAction: "stamp"
- Body: standard SOAP 1.1 envelope, single operation
    <stam:stamp>
        <stam:xml>{serialized CFDI, escaped}</stam:xml>
        <stam:username>...</stam:username>
        <stam:password>...</stam:password>
    </stam:stamp>
- Response: XML text. Success is the presence of a <UUID> token, NOT the
  HTTP status: the service answers 200 with an embedded fault or an
  <Incidencia> list when it rejects a document.

The response is read with targeted pattern matching instead of a full XML
parse so a slightly malformed reply still yields its UUID or fault text.
"""

import asyncio
import html
import logging
import re
import xml.etree.ElementTree as ET

from app.core.config import PacProvider, settings
from app.modules.pac_client import (
    Failed, PacClient, PacCredentials, StampResult, Stamped, describe_exception,
)
from app.sat.cfdi_document import FiscalDocument
from app.sat.cfdi_xml import serialize
from app.utils.cfdi_helpers import mask_rfc

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
STAMP_NS = "http://facturacion.finkok.com/stamp"
SOAP_ACTION = "stamp"

UNKNOWN_STAMP_ERROR = "Error de timbrado desconocido"

ET.register_namespace("soapenv", SOAP_ENV_NS)
ET.register_namespace("stam", STAMP_NS)


def _tag_re(name: str) -> re.Pattern:
    # Optional namespace prefix on both tags, body may span lines
    return re.compile(
        rf"<(?:[\w.-]+:)?{name}(?:\s[^>]*)?>(.*?)</(?:[\w.-]+:)?{name}>",
        re.DOTALL,
    )


_UUID_RE = _tag_re("UUID")
_XML_RE = _tag_re("xml")
_FAULT_RE = _tag_re("faultstring")
_INCIDENT_RE = _tag_re("MensajeIncidencia")


def build_envelope(cfdi_xml: str, credentials: PacCredentials) -> str:
    """SOAP envelope for the stamp operation. Values are escaped by ElementTree."""
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    operation = ET.SubElement(body, f"{{{STAMP_NS}}}stamp")
    for name, value in (("xml", cfdi_xml),
                        ("username", credentials.username),
                        ("password", credentials.password)):
        ET.SubElement(operation, f"{{{STAMP_NS}}}{name}").text = value
    return ET.tostring(envelope, encoding="unicode")


_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)


def _text_content(raw: str) -> str:
    """Element text: CDATA sections are taken literally, the rest is unescaped."""
    parts = []
    last = 0
    for match in _CDATA_RE.finditer(raw):
        parts.append(html.unescape(raw[last:match.start()]))
        parts.append(match.group(1))
        last = match.end()
    parts.append(html.unescape(raw[last:]))
    return "".join(parts)


def _first(pattern: re.Pattern, text: str) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    value = _text_content(match.group(1)).strip()
    return value or None


def parse_stamp_response(body: str, original_xml: str) -> StampResult:
    """
    Map a stamp response to a StampResult.

    UUID present  -> Stamped; the returned <xml> is the stamped document,
                     the submitted XML when the PAC does not echo it.
    UUID absent   -> Failed with the faultstring, else the first
                     MensajeIncidencia, else a generic reason.
    """
    uuid = _first(_UUID_RE, body)
    if uuid:
        stamped = _first(_XML_RE, body) or original_xml
        return Stamped(uuid=uuid, stamped_document=stamped)

    reason = _first(_FAULT_RE, body) or _first(_INCIDENT_RE, body) or UNKNOWN_STAMP_ERROR
    return Failed(reason=reason)


class FinkokSoapClient(PacClient):
    """
    Usage:
        client = FinkokSoapClient()
        result = await client.stamp(document, credentials, sandbox=True)
    """

    provider = PacProvider.FINKOK

    async def stamp(self, document: FiscalDocument, credentials: PacCredentials,
                    sandbox: bool) -> StampResult:
        url = self.base_url(sandbox)
        env = "sandbox" if sandbox else "production"

        try:
            cfdi_xml = serialize(document)
            envelope = build_envelope(cfdi_xml, credentials)
            headers = {
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": SOAP_ACTION,
            }

            logger.info(
                f"SOAP stamp request: provider={self.provider.value}, env={env}, "
                f"emisor={mask_rfc(document.issuer.rfc)}, "
                f"serie/folio={document.series or '-'}/{document.folio or '-'}"
            )

            # The remote service can hang after accepting the connection;
            # the hard timeout bounds the whole exchange.
            response = await asyncio.wait_for(
                self._post(url, content=envelope.encode("utf-8"), headers=headers),
                timeout=settings.soap_hard_timeout_seconds,
            )
            result = parse_stamp_response(response.text, cfdi_xml)

        except asyncio.TimeoutError:
            logger.warning(
                f"SOAP stamp timed out after {settings.soap_hard_timeout_seconds}s ({env})"
            )
            return Failed(
                reason=f"Tiempo de espera agotado ({settings.soap_hard_timeout_seconds:g}s) "
                       f"al timbrar con {self.provider.value}"
            )
        except Exception as e:
            logger.warning(f"SOAP stamp transport error ({env}): {e!r}")
            return Failed(reason=describe_exception(e))

        if isinstance(result, Stamped):
            logger.info(f"SOAP stamp OK: uuid={result.uuid} (HTTP {response.status_code})")
        else:
            logger.warning(
                f"SOAP stamp rejected (HTTP {response.status_code}): {result.reason}"
            )
        return result
