"""
Comandos sobre comprobantes: creación, encolado, resúmenes diarios, bajas, consulta de estado
y resets administrativos.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.sunat_client.exceptions import SunatConfigError, SunatStateError, SunatValidationError
from app.sunat_client.models import (
    DocType,
    DocumentState,
    ElectronicDocument,
    JobAction,
    SunatJob,
    SunatSettings,
)
from app.sunat_client.validation import MAX_DEFERRED_LINES, SUMMARY_ADD, SUMMARY_LINE_TYPES, validate_draft

from .store import DocumentStore

logger = logging.getLogger(__name__)


def _job_summary(job: Optional[SunatJob]) -> Optional[Dict[str, Any]]:
    if job is None:
        return None
    return {
        "id": job.id,
        "action": job.action,
        "status": job.status,
        "attempts": job.attempts,
        "next_run_at": job.next_run_at,
        "locked_by": job.locked_by,
        "last_error": job.last_error,
        "ticket": job.ticket,
    }


class SunatService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def _document(self, document_id: int) -> ElectronicDocument:
        document = self.store.get_document(document_id)
        if document is None:
            raise SunatStateError(f"Documento {document_id} no existe", "DOCUMENT_NOT_FOUND")
        return document

    def configure_store(self, settings: SunatSettings) -> None:
        self.store.save_settings(settings)
        logger.info("Configuración SUNAT guardada para tienda %s (RUC %s, %s)", settings.store_id, settings.ruc, settings.env)

    def create_document(self, store_id: str, doc_type: str, draft: Dict[str, Any]) -> ElectronicDocument:
        """
        Valida el borrador y lo guarda como DRAFT con serie/número asignados.

        El emisor se completa con la configuración de la tienda si el borrador no lo trae.

        Raises:
            SunatConfigError: tienda sin configuración SUNAT
            SunatValidationError: borrador inválido (no se consume correlativo)
        """
        settings = self.store.get_settings(store_id)
        if settings is None:
            raise SunatConfigError(f"La tienda {store_id} no tiene configuración SUNAT", "SUNAT_SETTINGS_REQUIRED")
        if doc_type not in DocType.ALL:
            raise SunatStateError(f"Tipo de documento desconocido: {doc_type!r}", "INVALID_DOC_TYPE")

        draft = dict(draft)
        draft.setdefault("issuer", settings.issuer())

        # Se valida con un correlativo provisional para no consumir números con borradores inválidos
        preview = dict(draft, doc_type=doc_type, series=settings.series.get(doc_type, DocType.DEFAULT_SERIES[doc_type]), number=1)
        validate_draft(preview)
        return self.store.create_document(store_id, doc_type, draft)

    def enqueue_submission(self, document_id: int) -> SunatJob:
        """
        Encola el envío (o la consulta del ticket) de un documento. Idempotente: si ya hay un
        job abierto, lo devuelve sin crear otro.

        Raises:
            SunatStateError: documento inexistente o ya en estado final
        """
        document = self._document(document_id)
        if document.is_terminal:
            raise SunatStateError(
                f"Documento {document.full_number} ya está en estado final {document.state}", "ALREADY_FINAL"
            )

        action, ticket = JobAction.send_for(document.doc_type), None
        if document.state == DocumentState.SENT:
            if not document.sunat_ticket:
                raise SunatStateError(f"Documento {document.full_number} en SENT sin ticket", "MISSING_TICKET")
            action, ticket = JobAction.CHECK_TICKET, document.sunat_ticket

        job, created = self.store.enqueue_job(document.id, action=action, ticket=ticket)
        if created:
            logger.info("Job %s %s encolado para %s", job.id, job.action, document.full_number)
        else:
            logger.info("Documento %s ya tiene job abierto %s (%s)", document.full_number, job.id, job.status)
        return job

    def _reported_in_summaries(self, store_id: str) -> set:
        """IDs (tipo, serie-número) ya incluidos en resúmenes que no terminaron en ERROR."""
        reported = set()
        states = [s for s in DocumentState.ALL if s != DocumentState.ERROR]
        for summary in self.store.list_documents(store_id, doc_types=[DocType.SUMMARY], states=states):
            for line in summary.draft.get("lines") or []:
                reported.add((line["doc_type"], f"{line['series']}-{int(line['number']):08d}"))
        return reported

    @staticmethod
    def _summary_line(document: ElectronicDocument) -> Dict[str, Any]:
        draft = document.draft
        customer = draft.get("customer") or {}
        line = {
            "doc_type": document.doc_type,
            "series": document.series,
            "number": document.number,
            "customer": {"doc_type": customer.get("doc_type"), "doc_number": customer.get("doc_number")},
            "totals": dict(draft.get("totals") or {}),
            "currency": draft.get("currency") or "PEN",
            "status": SUMMARY_ADD,
        }
        reference = draft.get("reference")
        if document.doc_type != DocType.BOLETA and reference:
            line["reference"] = {"doc_type": reference["doc_type"], "full_number": reference["full_number"]}
        return line

    @staticmethod
    def _summarizable(document: ElectronicDocument) -> bool:
        if document.doc_type == DocType.BOLETA:
            return True
        reference = document.draft.get("reference") or {}
        return reference.get("doc_type") == DocType.BOLETA

    def create_daily_summary(
        self,
        store_id: str,
        reference_date: str,
        issue_date: Optional[str] = None,
        document_ids: Optional[Sequence[int]] = None,
    ) -> Tuple[ElectronicDocument, SunatJob]:
        """
        Arma el Resumen Diario (RC) de las boletas y notas asociadas emitidas en reference_date
        y encola su envío con sendSummary.

        Sin document_ids toma las boletas y notas aceptadas de ese día que no figuren en un
        resumen previo (salvo resúmenes en ERROR). Máximo 500 documentos por resumen.

        Raises:
            SunatStateError: no hay documentos que informar (NOTHING_TO_REPORT) o un documento
                indicado no es resumible (NOT_SUMMARIZABLE)
        """
        if document_ids:
            candidates = [self._document(document_id) for document_id in document_ids]
            for document in candidates:
                if document.store_id != store_id or not self._summarizable(document):
                    raise SunatStateError(
                        f"Documento {document.full_number} no puede incluirse en un resumen", "NOT_SUMMARIZABLE"
                    )
        else:
            reported = self._reported_in_summaries(store_id)
            candidates = [
                document
                for document in self.store.list_documents(
                    store_id, doc_types=list(SUMMARY_LINE_TYPES), states=[DocumentState.ACCEPTED]
                )
                if document.draft.get("issue_date") == reference_date
                and self._summarizable(document)
                and (document.doc_type, document.full_number) not in reported
            ]

        candidates = candidates[:MAX_DEFERRED_LINES]
        if not candidates:
            raise SunatStateError(f"No hay boletas ni notas que informar del {reference_date}", "NOTHING_TO_REPORT")

        draft = {
            "reference_date": reference_date,
            "issue_date": issue_date or date.today().isoformat(),
            "lines": [self._summary_line(document) for document in candidates],
        }
        summary = self.create_document(store_id, DocType.SUMMARY, draft)
        logger.info("Resumen %s creado con %d documento(s) del %s", summary.full_number, len(candidates), reference_date)
        return summary, self.enqueue_submission(summary.id)

    def void_documents(
        self, store_id: str, document_ids: Sequence[int], reason: str, issue_date: Optional[str] = None
    ) -> Tuple[ElectronicDocument, SunatJob]:
        """
        Comunicación de Baja (RA) de comprobantes aceptados de una misma fecha de emisión.

        Raises:
            SunatStateError: documento inexistente, de otra tienda o no aceptado (NOT_VOIDABLE)
            SunatValidationError: documentos de fechas de emisión distintas o sin documentos
        """
        if not document_ids:
            raise SunatValidationError("Debe indicar al menos un documento a dar de baja")
        documents: List[ElectronicDocument] = [self._document(document_id) for document_id in document_ids]
        for document in documents:
            if (
                document.store_id != store_id
                or document.doc_type not in DocType.CPE
                or document.state != DocumentState.ACCEPTED
            ):
                raise SunatStateError(
                    f"Documento {document.full_number} ({document.state}) no puede darse de baja", "NOT_VOIDABLE"
                )
        issue_dates = {document.draft.get("issue_date") for document in documents}
        if len(issue_dates) != 1:
            raise SunatValidationError(
                "Los documentos de una comunicación de baja deben tener la misma fecha de emisión",
                errors=[f"Fechas encontradas: {', '.join(sorted(str(d) for d in issue_dates))}"],
            )

        draft = {
            "reference_date": issue_dates.pop(),
            "issue_date": issue_date or date.today().isoformat(),
            "lines": [
                {"doc_type": d.doc_type, "series": d.series, "number": d.number, "reason": reason}
                for d in documents
            ],
        }
        voided = self.create_document(store_id, DocType.VOIDED, draft)
        logger.info("Comunicación de baja %s creada con %d documento(s)", voided.full_number, len(documents))
        return voided, self.enqueue_submission(voided.id)

    def get_document_status(self, document_id: int) -> Dict[str, Any]:
        document = self._document(document_id)
        return {
            "document_id": document.id,
            "store_id": document.store_id,
            "doc_type": document.doc_type,
            "full_number": document.full_number,
            "state": document.state,
            "hash": document.hash,
            "sunat_code": document.sunat_code,
            "sunat_message": document.sunat_message,
            "sunat_ticket": document.sunat_ticket,
            "has_cdr": document.cdr_zip is not None,
            "updated_at": document.updated_at,
            "job": _job_summary(self.store.latest_job_for(document.id)),
        }

    def admin_reset_failed_jobs(self, document_id: Optional[int] = None) -> int:
        if document_id is not None:
            self._document(document_id)
        return self.store.reset_failed_jobs(document_id=document_id)

    def admin_reset_document(self, document_id: int) -> ElectronicDocument:
        """Vuelve el documento a DRAFT (para re-firmar) y cancela sus jobs abiertos."""
        self._document(document_id)
        return self.store.reset_document(document_id)
