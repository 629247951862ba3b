"""
Authority response interpretation.

A reply is a SOAP 1.2 envelope whose body holds nfcomResultMsg. The result
is either plain XML (typically processing errors) or a gzip+base64 payload
(the normal path). There is no flag telling them apart: when the expected
status element is not found as plain XML, the content is treated as
compressed.

Status code table (stable contract):

    100, 150          Authorized
    110, 301, 302     Denied
    101, 151, 155     Denied (cancelled / historical state)
    108, 503          TransientFailure (service momentarily unavailable)
    anything else     Rejected
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from lxml import etree

from .canonicalization import as_element, parse_xml
from .errors import ProtocolFault, StructuralError
from .outcomes import Authorized, Denied, Rejected, SubmissionOutcome, TransientFailure
from .signing import NFCOM_NS, SignedDocument
from .soap import extract_fault
from .transport import decode_xml

logger = logging.getLogger(__name__)

RESULT_ELEMENT = "nfcomResultMsg"

AUTHORIZED_CODES = frozenset({"100", "150"})
DENIED_CODES = frozenset({"110", "301", "302"})
CANCELLED_CODES = frozenset({"101", "151", "155"})
TRANSIENT_CODES = frozenset({"108", "503"})
SERVICE_ONLINE_CODE = "107"
INUTILIZED_CODE = "102"

PROC_VERSION = "1.00"


class Situation(str, Enum):
    """Situation of a document as reported by the query service."""
    AUTHORIZED = "AUTHORIZED"
    DENIED = "DENIED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


def situation_for(code: Optional[str]) -> Situation:
    if code in AUTHORIZED_CODES:
        return Situation.AUTHORIZED
    if code in DENIED_CODES:
        return Situation.DENIED
    if code in CANCELLED_CODES:
        return Situation.CANCELLED
    return Situation.UNKNOWN


@dataclass(frozen=True)
class ServiceStatus:
    online: bool
    code: str
    reason: Optional[str]
    environment: Optional[str] = None
    state_code: Optional[str] = None
    timestamp: Optional[str] = None
    average_time: Optional[str] = None
    version: Optional[str] = None


@dataclass(frozen=True)
class QueryResult:
    code: str
    reason: Optional[str]
    situation: Situation
    protocol_number: Optional[str] = None
    authority_timestamp: Optional[str] = None


@dataclass(frozen=True)
class InutilizationResult:
    """Authority answer to a number-range voiding request."""
    voided: bool
    code: str
    reason: Optional[str]
    protocol_number: Optional[str] = None
    timestamp: Optional[str] = None


def _find(node: etree._Element, name: str) -> Optional[etree._Element]:
    """First descendant-or-self with a local name, ignoring namespaces."""
    if etree.QName(node).localname == name:
        return node
    found: List[etree._Element] = node.xpath(".//*[local-name()=$name]", name=name)
    return found[0] if found else None


def _text(node: Optional[etree._Element], name: str) -> Optional[str]:
    if node is None:
        return None
    found = _find(node, name)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def build_confirmed_document(signed_document: Union[SignedDocument, str, bytes], protocol: etree._Element) -> str:
    """
    Assemble nfcomProc: the signed NFCom followed by the authority's protNFCom.

    Raises:
        StructuralError: NFCom or protNFCom missing
    """
    if isinstance(signed_document, SignedDocument):
        signed_document = signed_document.xml
    nfcom = _find(as_element(signed_document), "NFCom")
    if nfcom is None:
        raise StructuralError("NFCom element not found in signed document")
    if etree.QName(protocol).localname != "protNFCom":
        raise StructuralError("protNFCom element not found in protocol block")

    proc = etree.Element(f"{{{NFCOM_NS}}}nfcomProc", nsmap={None: NFCOM_NS}, versao=PROC_VERSION)
    proc.append(parse_xml(etree.tostring(nfcom)))
    proc.append(parse_xml(etree.tostring(protocol)))
    return etree.tostring(proc, xml_declaration=True, encoding="UTF-8").decode("utf-8")


class ResponseInterpreter:
    """Turns raw authority responses into outcomes and typed results."""

    def unwrap(self, raw_response: bytes, status_element: str = "retNFCom") -> etree._Element:
        """
        Strip the envelope and return the status element.

        Raises:
            ProtocolFault: the body is a SOAP Fault
            StructuralError: malformed XML, missing result or status element,
                or an undecodable compressed payload
        """
        fault = extract_fault(raw_response)
        if fault is not None:
            raise ProtocolFault(f"SOAP fault: {fault}", reason=fault, raw_response=raw_response)

        root = parse_xml(raw_response)
        result = _find(root, RESULT_ELEMENT)
        if result is None:
            raise StructuralError(f"Response has no {RESULT_ELEMENT}", raw_response=raw_response)

        status = _find(result, status_element)
        if status is not None:
            return status

        payload = (result.text or "").strip()
        if not payload:
            raise StructuralError(f"{RESULT_ELEMENT} has neither {status_element} nor a payload",
                                  raw_response=raw_response)
        decompressed = decode_xml(payload)
        logger.debug("Decompressed response:\n%s", decompressed)

        status = _find(parse_xml(decompressed), status_element)
        if status is None:
            raise StructuralError(f"Decompressed response has no {status_element}", raw_response=raw_response)
        return status

    def interpret(
        self,
        raw_response: bytes,
        signed_document: Optional[Union[SignedDocument, str]] = None,
    ) -> SubmissionOutcome:
        """Interpret a reception response."""
        ret = self.unwrap(raw_response)
        code = _text(ret, "cStat")
        reason = _text(ret, "xMotivo") or ""
        if not code:
            raise StructuralError("retNFCom has no cStat", raw_response=raw_response)

        if code in AUTHORIZED_CODES:
            return self._authorized(code, reason, ret, signed_document, raw_response)
        if code in DENIED_CODES or code in CANCELLED_CODES:
            return Denied(code=code, reason=reason)
        if code in TRANSIENT_CODES:
            return TransientFailure(reason=reason, code=code)
        return Rejected(code=code, reason=reason)

    def _authorized(self, code, reason, ret, signed_document, raw_response) -> Authorized:
        protocol = _find(ret, "protNFCom")
        info = _find(protocol, "infProt") if protocol is not None else None
        fields = {name: _text(info, name) for name in ("nProt", "dhRecbto", "chNFCom")}
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise StructuralError(
                f"Authorized response [{code}] lacks protocol fields: {', '.join(missing)}",
                status_code=code,
                reason=reason,
                raw_response=raw_response,
            )

        confirmed = None
        if signed_document is not None:
            confirmed = build_confirmed_document(signed_document, protocol)

        return Authorized(
            code=code,
            reason=reason,
            protocol_number=fields["nProt"],
            authority_timestamp=fields["dhRecbto"],
            access_key=fields["chNFCom"],
            confirmed_document=confirmed,
            protocol_xml=etree.tostring(protocol, encoding="unicode"),
        )

    def interpret_status(self, raw_response: bytes) -> ServiceStatus:
        """Interpret a service-status response."""
        ret = self.unwrap(raw_response, status_element="retConsStatServNFCom")
        code = _text(ret, "cStat")
        if not code:
            raise StructuralError("retConsStatServNFCom has no cStat", raw_response=raw_response)
        return ServiceStatus(
            online=code == SERVICE_ONLINE_CODE,
            code=code,
            reason=_text(ret, "xMotivo"),
            environment=_text(ret, "tpAmb"),
            state_code=_text(ret, "cUF"),
            timestamp=_text(ret, "dhRecbto"),
            average_time=_text(ret, "tMed"),
            version=ret.get("versao"),
        )

    def interpret_query(self, raw_response: bytes) -> QueryResult:
        """Interpret a document-query response."""
        ret = self.unwrap(raw_response, status_element="retConsSitNFCom")
        code = _text(ret, "cStat")
        if not code:
            raise StructuralError("retConsSitNFCom has no cStat", raw_response=raw_response)
        protocol = _find(ret, "infProt")
        return QueryResult(
            code=code,
            reason=_text(ret, "xMotivo"),
            situation=situation_for(code),
            protocol_number=_text(protocol, "nProt"),
            authority_timestamp=_text(protocol, "dhRecbto"),
        )

    def interpret_inutilization(self, raw_response: bytes) -> InutilizationResult:
        """Interpret a number-range voiding response. Only 102 means voided."""
        ret = self.unwrap(raw_response, status_element="retInutNFCom")
        info = _find(ret, "infInut")
        if info is None:
            info = ret
        code = _text(info, "cStat")
        if not code:
            raise StructuralError("retInutNFCom has no cStat", raw_response=raw_response)
        return InutilizationResult(
            voided=code == INUTILIZED_CODE,
            code=code,
            reason=_text(info, "xMotivo"),
            protocol_number=_text(info, "nProt"),
            timestamp=_text(info, "dhRecbto"),
        )
