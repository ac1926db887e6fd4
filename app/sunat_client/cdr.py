"""
Parser de la Constancia de Recepción (CDR) que devuelve SUNAT.

El CDR es un ApplicationResponse UBL comprimido en ZIP:
- cbc:ResponseCode: "0" = aceptado (las observaciones 4xxx van en cbc:Note), otro = rechazado
- cbc:Description: texto del resultado
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from lxml import etree

from .cpe_zip import extract_xml_from_zip
from .exceptions import SunatResponseError
from .models import Accepted, Rejected

logger = logging.getLogger(__name__)

# Códigos frecuentes (excepciones 0100-1999, rechazos 2000-3999, observaciones 4000+)
ERROR_CODES = {
    "0": "Aceptado",
    "0100": "El sistema no puede responder su solicitud. Intente nuevamente",
    "0102": "Usuario o contraseña incorrectos",
    "0103": "El Usuario ingresado no existe",
    "0104": "La Clave ingresada es incorrecta",
    "0109": "El sistema no puede responder su solicitud. (El servicio de autenticación no está disponible)",
    "0111": "No tiene el perfil para enviar comprobantes electrónicos",
    "0130": "El sistema no puede responder su solicitud. (No se pudo obtener el ticket de proceso)",
    "0151": "El nombre del archivo ZIP es incorrecto",
    "0154": "El RUC del archivo no corresponde al RUC del usuario",
    "0155": "El archivo ZIP esta vacio",
    "0156": "El archivo ZIP esta corrupto",
    "0161": "El nombre del archivo XML no coincide con el nombre del archivo ZIP",
    "0200": "No se pudo procesar su solicitud. (Ocurrio un error en el batch)",
    "1033": "El comprobante fue registrado previamente con otros datos",
    "2000": "Rechazo - Error en el RUC del emisor",
    "2010": "Rechazo - Número de RUC del emisor no existe",
    "2011": "Rechazo - Número de RUC del emisor no está activo",
    "2012": "Rechazo - Número de RUC del emisor no está habilitado para emitir electrónicamente",
    "2100": "Rechazo - El archivo ZIP está dañado",
    "2200": "Rechazo - Firma digital inválida",
    "2300": "Rechazo - El comprobante fue enviado anteriormente",
    "2335": "El documento electrónico ingresado ha sido alterado",
    "4000": "Observación - Error en el formato del monto total",
    "4001": "Observación - Total de IGV no coincide",
}


def describe_code(code: Optional[str]) -> str:
    """Descripción legible de un código SUNAT (o 'Código X' si no está catalogado)."""
    clean = (code or "").strip()
    if clean in ERROR_CODES:
        return ERROR_CODES[clean]
    if clean.isdigit() and clean.lstrip("0") == "":
        return ERROR_CODES["0"]
    return f"Código {clean}"


def is_accepted_code(code: Optional[str]) -> bool:
    return (code or "").strip().startswith("0")


@dataclass
class CdrData:
    response_code: str
    description: str
    notes: List[str] = field(default_factory=list)
    reference_id: Optional[str] = None

    @property
    def is_accepted(self) -> bool:
        return is_accepted_code(self.response_code)


def _first_text(root, xpath: str) -> Optional[str]:
    nodes = root.xpath(xpath)
    if not nodes:
        return None
    text = nodes[0].text if hasattr(nodes[0], "text") else str(nodes[0])
    text = (text or "").strip()
    return text or None


def parse_cdr_xml(cdr_xml: bytes) -> CdrData:
    """
    Raises:
        SunatResponseError: XML inválido o sin ResponseCode
    """
    try:
        root = etree.fromstring(cdr_xml)
    except etree.XMLSyntaxError as e:
        raise SunatResponseError(f"CDR no es XML válido: {e}", "CDR_INVALID") from e

    response_code = _first_text(
        root, '//*[local-name()="DocumentResponse"]/*[local-name()="Response"]/*[local-name()="ResponseCode"]'
    ) or _first_text(root, '//*[local-name()="ResponseCode"]')
    if response_code is None:
        raise SunatResponseError("No se encontró ResponseCode en el CDR", "CDR_INVALID")

    description = _first_text(
        root, '//*[local-name()="DocumentResponse"]/*[local-name()="Response"]/*[local-name()="Description"]'
    ) or _first_text(root, '//*[local-name()="Description"]')

    notes = [
        (n.text or "").strip()
        for n in root.xpath('/*/*[local-name()="Note"]')
        if (n.text or "").strip()
    ]
    reference_id = _first_text(
        root, '//*[local-name()="DocumentResponse"]/*[local-name()="Response"]/*[local-name()="ReferenceID"]'
    )

    return CdrData(
        response_code=response_code,
        description=description or describe_code(response_code),
        notes=notes,
        reference_id=reference_id,
    )


def parse_cdr(cdr_zip: bytes) -> CdrData:
    """Parsea el CDR comprimido (bytes del ZIP)."""
    return parse_cdr_xml(extract_xml_from_zip(cdr_zip))


def outcome_from_cdr(cdr_zip: bytes):
    """CDR -> Accepted | Rejected (el ZIP se conserva en el resultado)."""
    cdr = parse_cdr(cdr_zip)
    if cdr.notes:
        logger.info("CDR %s con observaciones: %s", cdr.reference_id or "-", "; ".join(cdr.notes))
    if cdr.is_accepted:
        return Accepted(code=cdr.response_code, message=cdr.description, cdr_zip=cdr_zip)
    return Rejected(code=cdr.response_code, message=cdr.description, cdr_zip=cdr_zip)
