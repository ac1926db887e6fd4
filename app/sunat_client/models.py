"""
Modelos de datos para SUNAT
"""
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Union


class DocType:
    """
    Tipos de comprobante y su código de catálogo 01.

    SUMMARY (Resumen Diario, RC) y VOIDED (Comunicación de Baja, RA) se envían con
    sendSummary y siempre devuelven ticket.
    """
    FACTURA = "FACTURA"
    BOLETA = "BOLETA"
    NOTA_CREDITO = "NOTA_CREDITO"
    NOTA_DEBITO = "NOTA_DEBITO"
    SUMMARY = "SUMMARY"
    VOIDED = "VOIDED"

    CPE = (FACTURA, BOLETA, NOTA_CREDITO, NOTA_DEBITO)
    DEFERRED = (SUMMARY, VOIDED)
    ALL = CPE + DEFERRED

    SUNAT_CODES = {
        FACTURA: "01",
        BOLETA: "03",
        NOTA_CREDITO: "07",
        NOTA_DEBITO: "08",
        SUMMARY: "RC",
        VOIDED: "RA",
    }

    DEFAULT_SERIES = {
        FACTURA: "F001",
        BOLETA: "B001",
        NOTA_CREDITO: "FC01",
        NOTA_DEBITO: "FD01",
        SUMMARY: "RC",
        VOIDED: "RA",
    }

    @classmethod
    def sunat_code(cls, doc_type: str) -> str:
        try:
            return cls.SUNAT_CODES[doc_type]
        except KeyError:
            raise ValueError(f"Tipo de documento desconocido: {doc_type!r}")


class DocumentState:
    DRAFT = "DRAFT"
    SIGNED = "SIGNED"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    ERROR = "ERROR"

    ALL = (DRAFT, SIGNED, SENT, ACCEPTED, ERROR)
    TERMINAL = (ACCEPTED, ERROR)


class JobStatus:
    QUEUED = "QUEUED"
    PENDING = "PENDING"  # lock tomado, intento en curso
    DONE = "DONE"
    FAILED = "FAILED"

    ALL = (QUEUED, PENDING, DONE, FAILED)
    OPEN = (QUEUED, PENDING)


class JobAction:
    SEND = "SEND"
    SEND_SUMMARY = "SEND_SUMMARY"
    CHECK_TICKET = "CHECK_TICKET"

    ALL = (SEND, SEND_SUMMARY, CHECK_TICKET)

    @classmethod
    def send_for(cls, doc_type: str) -> str:
        return cls.SEND_SUMMARY if doc_type in DocType.DEFERRED else cls.SEND


def format_full_number(doc_type: str, series: str, number: int, issue_date: Optional[str] = None) -> str:
    """
    F001-00000123 para comprobantes; RC-20260316-00001 para resúmenes y bajas
    (fecha de generación sin guiones).
    """
    if doc_type in DocType.DEFERRED:
        day = (issue_date or "").replace("-", "")
        return f"{series}-{day}-{int(number):05d}"
    return f"{series}-{int(number):08d}"


# Campos derivados que se limpian en un reset administrativo
RESETTABLE_FIELDS = (
    "xml_signed",
    "hash",
    "zip_sent_base64",
    "sunat_code",
    "sunat_message",
    "sunat_ticket",
    "cdr_zip",
)


@dataclass
class ElectronicDocument:
    """Comprobante electrónico y su estado frente a SUNAT"""
    id: Optional[int]
    store_id: str
    doc_type: str
    series: str
    number: int
    draft: Dict[str, Any] = field(default_factory=dict)
    state: str = DocumentState.DRAFT
    xml_signed: Optional[str] = None
    hash: Optional[str] = None
    zip_sent_base64: Optional[str] = None
    sunat_code: Optional[str] = None
    sunat_message: Optional[str] = None
    sunat_ticket: Optional[str] = None
    cdr_zip: Optional[bytes] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def full_number(self) -> str:
        return format_full_number(self.doc_type, self.series, self.number, self.draft.get("issue_date"))

    @property
    def is_terminal(self) -> bool:
        return self.state in DocumentState.TERMINAL

    def signing_payload(self) -> Dict[str, Any]:
        """Draft + metadata de numeración, que es lo que firma el Signer."""
        payload = dict(self.draft)
        payload["doc_type"] = self.doc_type
        payload["series"] = self.series
        payload["number"] = int(self.number)
        return payload

    def with_updates(self, **changes) -> "ElectronicDocument":
        return replace(self, **changes)


@dataclass
class SunatJob:
    id: Optional[int]
    document_id: int
    action: str = JobAction.SEND
    status: str = JobStatus.QUEUED
    ticket: Optional[str] = None
    next_run_at: Optional[str] = None
    locked_at: Optional[str] = None
    locked_by: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


@dataclass
class SunatSettings:
    """Configuración SUNAT por tienda (tenant)"""
    store_id: str
    ruc: str
    razon_social: str
    address: Optional[str] = None
    ubigeo: Optional[str] = None
    env: str = "BETA"
    sol_user: Optional[str] = None
    sol_pass: Optional[str] = None
    cert_pfx_base64: Optional[str] = None
    cert_password: Optional[str] = None
    series: Dict[str, str] = field(default_factory=lambda: dict(DocType.DEFAULT_SERIES))

    def issuer(self) -> Dict[str, Any]:
        return {
            "ruc": self.ruc,
            "razon_social": self.razon_social,
            "address": self.address,
            "ubigeo": self.ubigeo,
        }


@dataclass(frozen=True)
class SolCredentials:
    sol_user: str
    sol_pass: str
    source: str = "DB"

    def masked_user(self) -> str:
        if len(self.sol_user) > 4:
            return self.sol_user[:4] + "***"
        return "***"


@dataclass(frozen=True)
class ReceiptReference:
    """Identifica un comprobante para getStatusCdr"""
    ruc: str
    doc_code: str
    series: str
    number: int


# ---------------------------------------------------------------------------
# Resultado de un envío / consulta: variante cerrada
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Accepted:
    code: str
    message: str
    cdr_zip: Optional[bytes] = None


@dataclass(frozen=True)
class Rejected:
    code: str
    message: str
    cdr_zip: Optional[bytes] = None


@dataclass(frozen=True)
class Pending:
    ticket: str


SubmissionOutcome = Union[Accepted, Rejected, Pending]


@dataclass(frozen=True)
class Signed:
    """Evento de firma exitosa para la máquina de estados"""
    xml_signed: str
    hash: str
