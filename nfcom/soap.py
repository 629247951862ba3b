"""
SOAP 1.2 client for the NFCom web services.

Only the request shapes the authority uses are supported. The action is
carried in the Content-Type header; no SOAPAction header is sent.

Failure classification (the orchestrator's retry logic depends on it):
    connect/read timeout        -> TimeoutError          (transient)
    body read timeout           -> TimeoutError          (transient)
    HTTP 503                    -> TransientServiceError (transient)
    TLS handshake failure       -> ProtocolFault         (fatal)
    other connection failure    -> ProtocolFault         (fatal)
    other non-2xx HTTP status   -> ProtocolFault         (fatal)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests
import urllib3
from lxml import etree

from .canonicalization import parse_xml
from .config import EndpointConfig
from .credentials import Credential
from .errors import ProtocolFault, StructuralError, TimeoutError, TransientServiceError

logger = logging.getLogger(__name__)

SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
CONTENT_TYPE_TEMPLATE = 'application/soap+xml;charset=UTF-8;action="{action}"'

WSDL_BASE = "http://www.portalfiscal.inf.br/nfcom/wsdl"


class EnvelopeShape(str, Enum):
    """
    Where the service namespace is declared.

    ENVELOPE_NAMESPACE: on the soap:Envelope, message element prefixed,
        payload as plain XML body content.
    PAYLOAD_NAMESPACE: on the message element itself as default namespace,
        placed directly in the Body with no further wrapper.
    """
    ENVELOPE_NAMESPACE = "envelope_namespace"
    PAYLOAD_NAMESPACE = "payload_namespace"


@dataclass(frozen=True)
class SoapOperation:
    """A web-service operation: message element, namespace, action, shape."""
    namespace: str
    action: str
    shape: EnvelopeShape
    message_element: str = "nfcomDadosMsg"


RECEPTION = SoapOperation(
    namespace=f"{WSDL_BASE}/NFComRecepcao",
    action=f"{WSDL_BASE}/NFComRecepcao/nfcomRecepcao",
    shape=EnvelopeShape.PAYLOAD_NAMESPACE,
)

STATUS = SoapOperation(
    namespace=f"{WSDL_BASE}/NFComStatusServico",
    action=f"{WSDL_BASE}/NFComStatusServico/nfcomStatusServico",
    shape=EnvelopeShape.ENVELOPE_NAMESPACE,
)

QUERY = SoapOperation(
    namespace=f"{WSDL_BASE}/NFComConsulta",
    action=f"{WSDL_BASE}/NFComConsulta/nfcomConsultaNF",
    shape=EnvelopeShape.ENVELOPE_NAMESPACE,
)

INUTILIZATION = SoapOperation(
    namespace=f"{WSDL_BASE}/NFComInutilizacao",
    action=f"{WSDL_BASE}/NFComInutilizacao/nfcomInutilizacao",
    shape=EnvelopeShape.ENVELOPE_NAMESPACE,
)


@dataclass(frozen=True)
class SoapRequest:
    """
    One request: exactly one of `text` (e.g. a compressed payload) or
    `element` (plain XML) is the message content.
    """
    operation: SoapOperation
    text: Optional[str] = None
    element: Optional[etree._Element] = None

    def __post_init__(self):
        if (self.text is None) == (self.element is None):
            raise ValueError("SoapRequest needs exactly one of text or element")

    @property
    def action(self) -> str:
        return self.operation.action


def build_envelope(request: SoapRequest) -> bytes:
    """Serialize a request as an unformatted SOAP 1.2 envelope."""
    operation = request.operation

    if operation.shape is EnvelopeShape.ENVELOPE_NAMESPACE:
        envelope = etree.Element(
            f"{{{SOAP12_NS}}}Envelope",
            nsmap={"soap": SOAP12_NS, "nfcom": operation.namespace},
        )
        body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
        message = etree.SubElement(body, f"{{{operation.namespace}}}{operation.message_element}")
    else:
        envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap": SOAP12_NS})
        body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
        message = etree.SubElement(
            body,
            f"{{{operation.namespace}}}{operation.message_element}",
            nsmap={None: operation.namespace},
        )

    if request.element is not None:
        message.append(parse_xml(etree.tostring(request.element)))
    else:
        message.text = request.text

    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def _is_read_timeout(error: requests.exceptions.ConnectionError) -> bool:
    cause = error.args[0] if error.args else None
    return isinstance(cause, urllib3.exceptions.ReadTimeoutError) or "Read timed out" in str(error)


def content_type(action: str) -> str:
    return CONTENT_TYPE_TEMPLATE.format(action=action)


def extract_fault(body: bytes) -> Optional[str]:
    """Reason text of a SOAP Fault in body, or None if there is none."""
    try:
        root = parse_xml(body)
    except StructuralError:
        return None
    faults = root.xpath("//*[local-name()='Fault']")
    if not faults:
        return None
    texts = faults[0].xpath(".//*[local-name()='Text' or local-name()='faultstring']/text()")
    return texts[0].strip() if texts else "Unknown SOAP fault"


class SoapClient:
    """
    Sends envelopes over mutually-authenticated TLS.

    The credential's certificate and key are presented as the TLS client
    certificate; server validation follows config.verify_tls.
    """

    def __init__(self, config: EndpointConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def call(self, request: SoapRequest, credential: Credential, url: str) -> bytes:
        """Build the envelope for a request and send it."""
        return self.send(build_envelope(request), request.action, credential, url)

    def send(self, envelope: bytes, action: str, credential: Credential, url: str) -> bytes:
        """
        POST an envelope and return the raw response body.

        Raises:
            TimeoutError, TransientServiceError: transient, may be retried
            ProtocolFault: TLS failure, connection failure or HTTP error
        """
        headers = {"Content-Type": content_type(action)}
        logger.debug("SOAP request to %s (%s):\n%s", url, action, envelope.decode("utf-8", "replace"))

        with credential.pem_files() as client_cert:
            try:
                response = self.session.post(
                    url,
                    data=envelope,
                    headers=headers,
                    cert=client_cert,
                    verify=self.config.verify_tls,
                    timeout=self.config.timeout,
                )
            except requests.exceptions.Timeout as e:
                raise TimeoutError(f"Timeout talking to {url}: {e}") from e
            except requests.exceptions.SSLError as e:
                raise ProtocolFault(f"TLS handshake with {url} failed: {e}") from e
            except requests.exceptions.ConnectionError as e:
                # requests reports a read timeout hit while loading the body as a connection error
                if _is_read_timeout(e):
                    raise TimeoutError(f"Timeout reading response from {url}: {e}") from e
                raise ProtocolFault(f"Connection to {url} failed: {e}") from e
            except requests.exceptions.RequestException as e:
                raise ProtocolFault(f"Request to {url} failed: {e}") from e

        body = response.content
        logger.debug("SOAP response %s:\n%s", response.status_code, body.decode("utf-8", "replace"))

        if response.status_code == 503:
            raise TransientServiceError(
                "Authority temporarily unavailable (HTTP 503)",
                status_code="503",
                reason=response.reason,
                raw_response=body,
            )
        if not 200 <= response.status_code < 300:
            fault = extract_fault(body)
            reason = fault or response.reason
            raise ProtocolFault(
                f"HTTP {response.status_code}: {reason}",
                status_code=str(response.status_code),
                reason=reason,
                raw_response=body,
            )
        return body
