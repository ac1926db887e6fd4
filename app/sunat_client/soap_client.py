"""
Cliente SOAP 1.1 para los servicios de comprobantes de SUNAT

Servicios:
- billService.sendBill: Factura, Boleta, NC, ND -> respuesta inmediata (CDR)
- billService.sendSummary: Resumen diario / Comunicación de baja -> ticket
- billService.getStatus: estado de un ticket (0 procesado, 98 en proceso, 99 con errores)
- billConsultService.getStatusCdr: recuperar el CDR de un comprobante ya enviado

Notas importantes:
- Autenticación WS-Security UsernameToken (usuario SOL = RUC + usuario)
- El WSDL de SUNAT importa recursos que requieren autenticación; el envelope se arma a mano con lxml.
- NO usar elem1 or elem2 con lxml Elements (pueden ser "falsy" si no tienen hijos).
"""
import base64
import binascii
import logging
import re
from typing import Optional, Union

import requests
from lxml import etree
from requests import Session
from requests.adapters import HTTPAdapter
from zeep.wsse.username import UsernameToken

from .cdr import describe_code, outcome_from_cdr
from .config import SunatConfig
from .exceptions import SunatClientError, SunatResponseError, SunatTransientError
from .models import Accepted, Pending, ReceiptReference, Rejected, SolCredentials

logger = logging.getLogger(__name__)

SOAP11_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SUNAT_SERVICE_NS = "http://service.sunat.gob.pe"

# Códigos de falla que indican indisponibilidad temporal del servicio
TRANSIENT_FAULT_CODES = frozenset(
    ["0109", "0200", "0201", "0202", "0203"] + [f"{n:04d}" for n in range(130, 139)]
)
AUTH_FAULT_CODES = frozenset(["0102", "0103", "0104", "0111"])

TICKET_ACCEPTED = "0"
TICKET_IN_PROCESS = "98"
TICKET_WITH_ERRORS = "99"

_FAULT_CODE_RE = re.compile(r"(\d{4})")


def classify_fault(code: Optional[str]) -> str:
    """
    Clasifica un código de falla SOAP de SUNAT.

    Returns:
        'transient', 'permanent' o 'rejection'
    """
    clean = (code or "").strip()
    if clean in TRANSIENT_FAULT_CODES:
        return "transient"
    if clean.isdigit() and int(clean) >= 1000:
        return "rejection"
    return "permanent"


def _localname(tag) -> str:
    if not isinstance(tag, str):
        return ""
    if tag.startswith("{") and "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _find_first_by_localname(root, name: str):
    for el in root.iter():
        if _localname(el.tag) == name:
            return el
    return None


def _first_text(root, name: str) -> Optional[str]:
    el = _find_first_by_localname(root, name)
    if el is None or el.text is None:
        return None
    text = el.text.strip()
    return text or None


def _decode_b64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError) as e:
        raise SunatResponseError(f"{what} no es base64 válido: {e}", "INVALID_BASE64") from e


def build_soap_envelope(operation: str, params: dict, credentials: SolCredentials) -> bytes:
    """
    Envelope SOAP 1.1 con cabecera WS-Security.

    Args:
        operation: sendBill, sendSummary, getStatus o getStatusCdr
        params: hijos (sin namespace) del elemento de operación, en orden
    """
    envelope = etree.Element(
        etree.QName(SOAP11_NS, "Envelope"),
        nsmap={"soapenv": SOAP11_NS, "ser": SUNAT_SERVICE_NS},
    )
    etree.SubElement(envelope, etree.QName(SOAP11_NS, "Header"))
    body = etree.SubElement(envelope, etree.QName(SOAP11_NS, "Body"))
    op = etree.SubElement(body, etree.QName(SUNAT_SERVICE_NS, operation))
    for key, value in params.items():
        child = etree.SubElement(op, key)
        child.text = str(value)

    UsernameToken(credentials.sol_user, credentials.sol_pass).apply(envelope, {})
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8", pretty_print=False)


def parse_fault(root) -> Optional[dict]:
    """Extrae faultcode/faultstring; el código SUNAT (4 dígitos) puede venir en cualquiera de los dos."""
    fault = _find_first_by_localname(root, "Fault")
    if fault is None:
        return None
    faultcode = _first_text(fault, "faultcode") or ""
    faultstring = _first_text(fault, "faultstring") or ""
    detail_message = _first_text(fault, "message")

    match = _FAULT_CODE_RE.search(faultcode) or _FAULT_CODE_RE.search(faultstring)
    code = match.group(1) if match else (faultcode or "SOAP_FAULT")

    message = faultstring
    if not message or message == code:
        message = detail_message or describe_code(code)
    return {"code": code, "message": message, "faultcode": faultcode}


class SunatClient:
    """Cliente SOAP para SUNAT (BETA/PROD) con autenticación SOL."""

    def __init__(self, config: SunatConfig, credentials: SolCredentials, session: Optional[Session] = None):
        if not credentials or not credentials.sol_user or not credentials.sol_pass:
            raise SunatClientError("Faltan credenciales SOL (sol_user/sol_pass)", "MISSING_CREDENTIALS")
        self.config = config
        self.credentials = credentials
        self.connect_timeout = config.connect_timeout
        self.read_timeout = config.read_timeout
        self.session = session or self._create_session()

    def _create_session(self) -> Session:
        session = Session()
        session.verify = self.config.ca_bundle_path or True
        session.mount("https://", HTTPAdapter())
        return session

    # ---------------------------------------------------------------------
    # Transporte
    # ---------------------------------------------------------------------
    def _call(self, service_key: str, operation: str, params: dict):
        """POST del envelope y parseo de la respuesta. Devuelve el root del envelope de respuesta."""
        url = self.config.get_soap_service_url(service_key)
        soap_bytes = build_soap_envelope(operation, params, self.credentials)
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "Accept": "text/xml, */*",
            "SOAPAction": '""',
        }

        logger.info("SUNAT %s -> %s (usuario %s)", operation, url, self.credentials.masked_user())
        try:
            resp = self.session.post(
                url,
                data=soap_bytes,
                headers=headers,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except requests.exceptions.Timeout as e:
            raise SunatTransientError(f"Timeout al contactar SUNAT ({operation}): {e}", "TIMEOUT") from e
        except requests.exceptions.ConnectionError as e:
            raise SunatTransientError(f"Error de conexión con SUNAT ({operation}): {e}", "CONNECTION_ERROR") from e
        except requests.exceptions.RequestException as e:
            raise SunatClientError(f"Request inválido a SUNAT ({operation}): {e}", "REQUEST_ERROR") from e

        status = resp.status_code
        root = None
        try:
            root = etree.fromstring(resp.content) if resp.content else None
        except etree.XMLSyntaxError:
            root = None

        if root is not None:
            fault = parse_fault(root)
            if fault is not None:
                # Fault genérico (sin código SUNAT) en un 5xx: el servicio está caído
                if not fault["code"].isdigit() and (status >= 500 or status == 429):
                    raise SunatTransientError(fault["message"] or f"HTTP {status}", f"HTTP_{status}", http_status=status)
                return root, fault

        if status >= 500 or status == 429:
            raise SunatTransientError(f"SUNAT respondió HTTP {status} en {operation}", f"HTTP_{status}", http_status=status)
        if status >= 400:
            raise SunatClientError(f"SUNAT respondió HTTP {status} en {operation}", f"HTTP_{status}")
        if root is None:
            raise SunatResponseError(f"Respuesta de {operation} no es XML válido", "INVALID_RESPONSE", http_status=status)
        return root, None

    def _raise_or_reject(self, operation: str, fault: dict):
        kind = classify_fault(fault["code"])
        logger.warning("SUNAT %s fault %s (%s): %s", operation, fault["code"], kind, fault["message"])
        if kind == "transient":
            raise SunatTransientError(fault["message"], fault["code"])
        if kind == "rejection":
            return Rejected(code=fault["code"], message=fault["message"])
        raise SunatClientError(fault["message"], fault["code"])

    # ---------------------------------------------------------------------
    # Operaciones
    # ---------------------------------------------------------------------
    def submit(self, zip_filename: str, zip_base64: str, operation: str = "sendBill"):
        """
        Envía el ZIP (base64) del comprobante firmado.

        Returns:
            Accepted | Rejected | Pending

        Raises:
            SunatTransientError: reintentar con backoff
            SunatClientError: error permanente (credenciales, request mal formado)
        """
        if operation not in ("sendBill", "sendSummary"):
            raise ValueError(f"Operación de envío inválida: {operation}")

        root, fault = self._call("bill_service", operation, {"fileName": zip_filename, "contentFile": zip_base64})
        if fault is not None:
            return self._raise_or_reject(operation, fault)

        ticket = _first_text(root, "ticket")
        if ticket:
            logger.info("SUNAT %s %s -> ticket %s", operation, zip_filename, ticket)
            return Pending(ticket=ticket)

        application_response = _first_text(root, "applicationResponse")
        if application_response:
            outcome = outcome_from_cdr(_decode_b64(application_response, "applicationResponse"))
            logger.info("SUNAT %s %s -> %s %s", operation, zip_filename, type(outcome).__name__, outcome.code)
            return outcome

        raise SunatResponseError(f"SUNAT no devolvió CDR ni ticket en {operation}", "NO_CDR")

    def _get_status(self, ticket: str):
        root, fault = self._call("bill_service", "getStatus", {"ticket": ticket})
        return root, fault

    def poll_ticket(self, ticket: str):
        """
        Consulta el estado de un ticket.

        Returns:
            Accepted | Rejected | Pending (98 = en proceso)
        """
        root, fault = self._get_status(ticket)
        if fault is not None:
            return self._raise_or_reject("getStatus", fault)

        status_code = _first_text(root, "statusCode")
        content = _first_text(root, "content")
        if status_code is None:
            raise SunatResponseError("getStatus sin statusCode", "INVALID_RESPONSE")

        if status_code == TICKET_IN_PROCESS:
            return Pending(ticket=ticket)

        if content:
            return outcome_from_cdr(_decode_b64(content, "content"))

        if status_code.lstrip("0") == "":
            return Accepted(code=TICKET_ACCEPTED, message=describe_code(TICKET_ACCEPTED))
        return Rejected(code=status_code, message=f"Rechazado por SUNAT (código: {status_code})")

    def fetch_receipt(self, reference: Union[str, ReceiptReference]) -> bytes:
        """
        Recupera el CDR (ZIP) de un ticket o de un comprobante ya enviado.

        Raises:
            SunatResponseError: SUNAT no tiene CDR para la referencia
        """
        if isinstance(reference, ReceiptReference):
            params = {
                "rucComprobante": reference.ruc,
                "tipoComprobante": reference.doc_code,
                "serieComprobante": reference.series,
                "numeroComprobante": str(int(reference.number)),
            }
            root, fault = self._call("bill_consult", "getStatusCdr", params)
            operation = "getStatusCdr"
        else:
            root, fault = self._get_status(reference)
            operation = "getStatus"

        if fault is not None:
            kind = classify_fault(fault["code"])
            if kind == "transient":
                raise SunatTransientError(fault["message"], fault["code"])
            raise SunatClientError(fault["message"], fault["code"])

        content = _first_text(root, "content")
        if not content:
            status_code = _first_text(root, "statusCode") or ""
            status_message = _first_text(root, "statusMessage") or describe_code(status_code)
            raise SunatResponseError(f"{operation} sin CDR: {status_code} {status_message}".strip(), status_code or "NO_CDR")
        return _decode_b64(content, "content")

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
