"""
Validaciones fiscales previas a la firma (RUC, DNI, totales, reglas por tipo)
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .exceptions import SunatValidationError
from .models import DocType

RUC_PREFIXES = ("10", "15", "16", "17", "20")
RUC_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)

BOLETA_ID_THRESHOLD = Decimal("700")
TOTALS_TOLERANCE = Decimal("0.02")
IGV_RATE = Decimal("0.18")

MAX_DEFERRED_LINES = 500
SUMMARY_LINE_TYPES = (DocType.BOLETA, DocType.NOTA_CREDITO, DocType.NOTA_DEBITO)
# Estado de la línea del resumen: 1 Adicionar, 2 Modificar, 3 Anular
SUMMARY_ADD = "1"
SUMMARY_CONDITION_CODES = (SUMMARY_ADD, "2", "3")

# Catálogo 06: tipo de documento de identidad
CUSTOMER_DOC_CODES = {
    "DNI": "1",
    "RUC": "6",
    "CE": "4",
    "PASAPORTE": "7",
    "SIN_DOCUMENTO": "0",
}

_NO_DOCUMENT = ("", "-", "00000000")


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        if not other.valid:
            self.valid = False


def is_valid_ruc(ruc: Optional[str]) -> bool:
    """
    RUC: 11 dígitos, prefijo 10/15/16/17/20 y dígito verificador módulo 11.
    """
    if not ruc:
        return False
    clean = ruc.strip()
    if not re.fullmatch(r"\d{11}", clean):
        return False
    if clean[:2] not in RUC_PREFIXES:
        return False
    total = sum(int(d) * w for d, w in zip(clean[:10], RUC_WEIGHTS))
    check = (11 - total % 11) % 10
    return int(clean[10]) == check


def is_valid_dni(dni: Optional[str]) -> bool:
    if not dni:
        return False
    return re.fullmatch(r"\d{8}", dni.strip()) is not None


def is_valid_ce(ce: Optional[str]) -> bool:
    if not ce:
        return False
    return re.fullmatch(r"[A-Za-z0-9]{1,12}", ce.strip()) is not None


def to_decimal(value: Any, name: str) -> Decimal:
    if value is None:
        raise SunatValidationError(f"Falta monto: {name}", "MISSING_AMOUNT")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise SunatValidationError(f"Monto inválido en {name}: {value!r}", "INVALID_AMOUNT")


def validate_doc_number(doc_type: str, doc_number: Optional[str]) -> ValidationResult:
    result = ValidationResult()
    number = (doc_number or "").strip()
    if not number:
        result.error("Número de documento es requerido")
        return result

    kind = (doc_type or "").upper()
    if kind in ("RUC", "6"):
        if not is_valid_ruc(number):
            result.error("RUC inválido: debe tener 11 dígitos y formato válido")
    elif kind in ("DNI", "1"):
        if not is_valid_dni(number):
            result.error("DNI inválido: debe tener exactamente 8 dígitos")
    elif kind in ("CE", "4"):
        if not is_valid_ce(number):
            result.error("Carnet de Extranjería inválido: máximo 12 caracteres alfanuméricos")
    elif kind in ("PASAPORTE", "7"):
        if len(number) > 20:
            result.error("Pasaporte inválido: debe tener entre 1 y 20 caracteres")
    elif kind in ("SIN_DOCUMENTO", "0", "-"):
        if number not in _NO_DOCUMENT:
            result.warnings.append('Para "Sin documento" se recomienda usar "-" o "00000000"')
    else:
        result.warnings.append(f'Tipo de documento "{doc_type}" no tiene validación específica')
    return result


def validate_totals(taxable: Decimal, igv: Decimal, total: Decimal) -> ValidationResult:
    result = ValidationResult()
    for name, value in (("gravable", taxable), ("IGV", igv), ("total", total)):
        if value < 0:
            result.error(f"Monto {name} no puede ser negativo")

    expected_igv = (taxable * IGV_RATE).quantize(Decimal("0.01"))
    if abs(igv - expected_igv) > TOTALS_TOLERANCE:
        result.warnings.append(f"IGV ({igv}) no coincide con 18% del gravable ({expected_igv})")

    expected_total = taxable + igv
    if abs(total - expected_total) > TOTALS_TOLERANCE:
        result.error(f"Total ({total}) no coincide con gravable + IGV ({expected_total})")
    return result


def _check_issuer(draft: Dict[str, Any], result: ValidationResult) -> None:
    issuer = draft.get("issuer") or {}
    if not is_valid_ruc(issuer.get("ruc")):
        result.error("RUC del emisor inválido")
    if not (issuer.get("razon_social") or "").strip():
        result.error("Razón social del emisor es requerida")


def _check_line_ref(line: Dict[str, Any], idx: int, allowed, result: ValidationResult) -> None:
    if line.get("doc_type") not in allowed:
        result.error(f"Línea {idx}: tipo de documento inválido ({line.get('doc_type')!r})")
    if not line.get("series"):
        result.error(f"Línea {idx}: serie requerida")
    try:
        number = int(line.get("number") or 0)
    except (TypeError, ValueError):
        number = 0
    if number <= 0:
        result.error(f"Línea {idx}: número de documento inválido")


def check_deferred_draft(draft: Dict[str, Any]) -> ValidationResult:
    """
    Resumen Diario (RC) y Comunicación de Baja (RA): emisor, fechas y de 1 a 500 líneas.
    """
    result = ValidationResult()
    doc_type = draft.get("doc_type")
    if not draft.get("series"):
        result.error("Serie es requerida")
    if not draft.get("number"):
        result.error("Número correlativo es requerido")
    if not draft.get("issue_date"):
        result.error("Fecha de generación (issue_date) es requerida")
    if not draft.get("reference_date"):
        result.error("Fecha de referencia (reference_date) es requerida")
    _check_issuer(draft, result)

    lines = draft.get("lines") or []
    if not lines:
        result.error("Debe incluir al menos un documento")
    if len(lines) > MAX_DEFERRED_LINES:
        result.error(f"Máximo {MAX_DEFERRED_LINES} documentos por envío")

    for idx, line in enumerate(lines, start=1):
        if doc_type == DocType.SUMMARY:
            _check_line_ref(line, idx, SUMMARY_LINE_TYPES, result)
            if str(line.get("status") or SUMMARY_ADD) not in SUMMARY_CONDITION_CODES:
                result.error(f"Línea {idx}: estado inválido (1=Adicionar, 2=Modificar, 3=Anular)")
            totals = line.get("totals") or {}
            result.merge(
                validate_totals(
                    to_decimal(totals.get("taxable"), f"lines[{idx}].totals.taxable"),
                    to_decimal(totals.get("igv"), f"lines[{idx}].totals.igv"),
                    to_decimal(totals.get("total"), f"lines[{idx}].totals.total"),
                )
            )
        else:
            _check_line_ref(line, idx, DocType.CPE, result)
            if len((line.get("reason") or "").strip()) < 3:
                result.error(f"Línea {idx}: motivo de baja requerido (mínimo 3 caracteres)")
    return result


def check_draft(draft: Dict[str, Any]) -> ValidationResult:
    """Valida un borrador sin lanzar excepción. Ver validate_draft()."""
    result = ValidationResult()
    doc_type = draft.get("doc_type")
    if doc_type not in DocType.ALL:
        result.error(f"Tipo de documento inválido: {doc_type!r}")
        return result
    if doc_type in DocType.DEFERRED:
        return check_deferred_draft(draft)

    if not draft.get("series"):
        result.error("Serie es requerida")
    if not draft.get("number"):
        result.error("Número correlativo es requerido")
    if not draft.get("issue_date"):
        result.error("Fecha de emisión (issue_date) es requerida")

    _check_issuer(draft, result)

    customer = draft.get("customer") or {}
    if len((customer.get("name") or "").strip()) < 2:
        result.error("Nombre del cliente es requerido (mínimo 2 caracteres)")

    items = draft.get("items") or []
    if not items:
        result.error("El comprobante debe tener al menos un ítem")
    for idx, item in enumerate(items, start=1):
        if not (item.get("description") or "").strip():
            result.error(f"Ítem {idx}: descripción requerida")
        if to_decimal(item.get("quantity"), f"items[{idx}].quantity") <= 0:
            result.error(f"Ítem {idx}: cantidad debe ser mayor a cero")

    totals = draft.get("totals") or {}
    taxable = to_decimal(totals.get("taxable"), "totals.taxable")
    igv = to_decimal(totals.get("igv"), "totals.igv")
    total = to_decimal(totals.get("total"), "totals.total")
    result.merge(validate_totals(taxable, igv, total))

    customer_doc_type = (customer.get("doc_type") or "").upper()
    customer_doc_number = (customer.get("doc_number") or "").strip()

    if doc_type == DocType.FACTURA:
        if customer_doc_type not in ("RUC", "6"):
            result.error("FACTURA requiere RUC como tipo de documento")
        if not is_valid_ruc(customer_doc_number):
            result.error("RUC inválido para FACTURA: debe tener 11 dígitos válidos")
    elif doc_type == DocType.BOLETA:
        if total > BOLETA_ID_THRESHOLD and customer_doc_number in _NO_DOCUMENT:
            result.error(f"Para montos mayores a S/ {BOLETA_ID_THRESHOLD} se requiere documento de identidad")
        if customer_doc_number not in _NO_DOCUMENT:
            result.merge(validate_doc_number(customer_doc_type, customer_doc_number))
    else:
        reference = draft.get("reference") or {}
        if not reference.get("full_number"):
            result.error("Nota de crédito/débito requiere el comprobante de referencia")
        if reference.get("doc_type") not in (DocType.FACTURA, DocType.BOLETA):
            result.error("Comprobante de referencia debe ser FACTURA o BOLETA")
        if not (reference.get("reason") or "").strip():
            result.error("Nota de crédito/débito requiere motivo (reason)")
        if customer_doc_number not in _NO_DOCUMENT:
            result.merge(validate_doc_number(customer_doc_type, customer_doc_number))

    return result


def validate_draft(draft: Dict[str, Any]) -> ValidationResult:
    """
    Valida el borrador antes de construir el XML.

    Raises:
        SunatValidationError: con la lista de errores si el borrador es inválido
    """
    result = check_draft(draft)
    if not result.valid:
        raise SunatValidationError("Borrador inválido: " + "; ".join(result.errors), errors=result.errors)
    return result
