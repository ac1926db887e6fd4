"""
Worker de envíos SUNAT.

Cada ciclo carga un lote de jobs elegibles, toma el lock de cada uno y ejecuta un único
intento por job: firma (si el documento está en DRAFT), envío (sendBill para comprobantes,
sendSummary para resúmenes y bajas) o consulta de ticket, transición del documento y guardado
atómico de job + documento. Ninguna excepción sale del ciclo.

Varias instancias (procesos) pueden correr sobre la misma base: la exclusión la da el lock
condicional del store, no un lock en memoria.
"""
import logging
import os
import random
import signal
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, List, Optional

from app.sunat_client.cdr import outcome_from_cdr
from app.sunat_client.cert import CertificateBundle, resolve_certificate
from app.sunat_client.config import WorkerSettings, get_sol_credentials_from_env, get_sunat_config
from app.sunat_client.cpe_zip import build_cpe_filename, build_zip_base64
from app.sunat_client.exceptions import (
    SunatClientError,
    SunatConfigError,
    SunatSignatureError,
    SunatStateError,
    SunatTransientError,
    SunatValidationError,
)
from app.sunat_client.models import (
    DocType,
    DocumentState,
    ElectronicDocument,
    JobAction,
    JobStatus,
    Pending,
    ReceiptReference,
    Rejected,
    Signed,
    SolCredentials,
    SunatJob,
    SunatSettings,
)
from app.sunat_client.soap_client import SunatClient
from app.sunat_client.xml_signer import sign

from .scheduler import (
    follow_up_ticket_job,
    mark_done,
    mark_failed,
    mark_recheck,
    mark_retry,
    now_iso,
    utc_now,
)
from .state_machine import transition
from .store import DocumentStore

logger = logging.getLogger(__name__)

DUPLICATE_CODE = "1033"
SEND_BILL = "sendBill"
SEND_SUMMARY = "sendSummary"

# Resultados de process_job (para logs y tests)
RESULT_DONE = "done"
RESULT_RETRY = "retry"
RESULT_RECHECK = "recheck"
RESULT_FAILED = "failed"
RESULT_LOCK_LOST = "lock_lost"


def resolve_sol_credentials(settings: SunatSettings) -> SolCredentials:
    """Credenciales SOL. Prioridad: SUNAT_SOL_USER/SUNAT_SOL_PASS > SunatSettings."""
    from_env = get_sol_credentials_from_env()
    if from_env:
        return SolCredentials(sol_user=from_env[0], sol_pass=from_env[1], source="ENV")
    if settings.sol_user and settings.sol_pass:
        return SolCredentials(sol_user=settings.sol_user, sol_pass=settings.sol_pass, source="DB")
    raise SunatConfigError(
        f"Faltan credenciales SOL para la tienda {settings.store_id}. "
        "Configure SUNAT_SOL_USER y SUNAT_SOL_PASS o las credenciales de la tienda",
        "MISSING_CREDENTIALS",
    )


def default_client_factory(settings: SunatSettings) -> SunatClient:
    return SunatClient(get_sunat_config(settings.env or None), resolve_sol_credentials(settings))


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class SunatWorker:
    """Procesa jobs SUNAT del store: un intento por job y por ciclo."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[WorkerSettings] = None,
        client_factory: Callable[[SunatSettings], SunatClient] = default_client_factory,
        certificate_resolver: Callable[[SunatSettings], CertificateBundle] = resolve_certificate,
        worker_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or WorkerSettings()
        self.client_factory = client_factory
        self.certificate_resolver = certificate_resolver
        self.worker_id = worker_id or default_worker_id()
        self.rng = rng or random.Random()
        self.clock = clock
        self.cycles = 0
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Ciclo
    # ------------------------------------------------------------------
    def claim_jobs(self) -> List[SunatJob]:
        """Carga un lote y devuelve los jobs cuyo lock se obtuvo."""
        now = self.clock()
        claimed = []
        for job in self.store.load_eligible_jobs(self.settings.batch_size, now):
            if not self.store.try_lock(job.id, self.worker_id, now):
                logger.debug("Job %s: lock tomado por otro worker, se omite", job.id)
                continue
            if job.status == JobStatus.PENDING:
                job.attempts += 1  # lock vencido recuperado
            job.status = JobStatus.PENDING
            job.locked_at = now_iso(now)
            job.locked_by = self.worker_id
            claimed.append(job)
        return claimed

    def run_once(self, executor: Optional[ThreadPoolExecutor] = None) -> int:
        """
        Un ciclo completo. Sin executor los jobs se procesan en serie (tests, --once).

        Returns:
            cantidad de jobs procesados
        """
        jobs = self.claim_jobs()
        if jobs:
            logger.info("Worker %s: %d job(s) bloqueados", self.worker_id, len(jobs))
        if executor is None:
            for job in jobs:
                self.process_job(job)
        else:
            self._wait_batch([executor.submit(self.process_job, job) for job in jobs])

        self.cycles += 1
        if self.settings.health_every_cycles and self.cycles % self.settings.health_every_cycles == 0:
            self.log_health()
        return len(jobs)

    def _wait_batch(self, futures) -> None:
        pending = set(futures)
        deadline = None
        while pending:
            done, pending = wait(pending, timeout=1.0)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    logger.error("Job terminó con excepción no controlada", exc_info=exc)
            if pending and self._stop.is_set():
                if deadline is None:
                    deadline = time.monotonic() + self.settings.shutdown_timeout
                    logger.info("Apagado: esperando %d job(s) en curso", len(pending))
                elif time.monotonic() >= deadline:
                    logger.warning("Apagado: %d job(s) siguen en curso tras %.0fs", len(pending), self.settings.shutdown_timeout)
                    return

    def log_health(self) -> None:
        stats = self.store.job_stats()
        logger.info(
            "Health worker %s: queued=%d pending=%d done=%d failed=%d",
            self.worker_id,
            stats.get(JobStatus.QUEUED, 0),
            stats.get(JobStatus.PENDING, 0),
            stats.get(JobStatus.DONE, 0),
            stats.get(JobStatus.FAILED, 0),
        )

    def stop(self, *_args) -> None:
        if not self._stop.is_set():
            logger.info("Worker %s: señal de apagado recibida", self.worker_id)
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)

    def run_forever(self) -> None:
        self._install_signal_handlers()
        logger.info(
            "Worker %s iniciado (intervalo %.1fs, lote %d, concurrencia %d)",
            self.worker_id,
            self.settings.poll_interval,
            self.settings.batch_size,
            self.settings.max_concurrent_jobs,
        )
        executor = ThreadPoolExecutor(max_workers=self.settings.max_concurrent_jobs, thread_name_prefix="sunat-job")
        try:
            while not self._stop.is_set():
                try:
                    self.run_once(executor)
                except Exception:
                    logger.exception("Error en ciclo del worker %s", self.worker_id)
                self._stop.wait(self.settings.poll_interval)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            released = self.store.release_locks(self.worker_id)
            logger.info("Worker %s detenido (%d lock(s) liberados)", self.worker_id, released)

    # ------------------------------------------------------------------
    # Un intento
    # ------------------------------------------------------------------
    def _save(self, job: SunatJob, document: Optional[ElectronicDocument], result: str, follow_up: Optional[SunatJob] = None) -> str:
        if not self.store.save_job_result(job, document, follow_up, worker_id=self.worker_id):
            return RESULT_LOCK_LOST
        return result

    def _store_settings(self, document: ElectronicDocument) -> SunatSettings:
        settings = self.store.get_settings(document.store_id)
        if settings is None:
            raise SunatConfigError(f"La tienda {document.store_id} no tiene configuración SUNAT", "SUNAT_SETTINGS_REQUIRED")
        return settings

    def _sign(self, document: ElectronicDocument, settings: SunatSettings) -> ElectronicDocument:
        certificate = self.certificate_resolver(settings)
        xml_signed, digest = sign(document.signing_payload(), certificate)
        logger.info("Documento %s firmado (hash %s)", document.full_number, digest)
        return transition(document, Signed(xml_signed=xml_signed, hash=digest)).apply(document)

    def _attach_zip(self, document: ElectronicDocument, settings: SunatSettings):
        xml_name = build_cpe_filename(
            settings.ruc, document.doc_type, document.series, document.number, document.draft.get("issue_date")
        )
        zip_name, zip_b64 = build_zip_base64(xml_name, document.xml_signed)
        return zip_name, document.with_updates(zip_sent_base64=zip_b64)

    def _submit(self, client: SunatClient, document: ElectronicDocument, settings: SunatSettings, zip_name: str, operation: str):
        outcome = client.submit(zip_name, document.zip_sent_base64, operation)
        if operation == SEND_BILL and isinstance(outcome, Rejected) and outcome.code == DUPLICATE_CODE:
            # Ya registrado en SUNAT (reenvío tras un timeout): se recupera el CDR existente
            logger.warning("Documento %s ya registrado en SUNAT; recuperando CDR", document.full_number)
            reference = ReceiptReference(
                ruc=settings.ruc,
                doc_code=DocType.sunat_code(document.doc_type),
                series=document.series,
                number=document.number,
            )
            outcome = outcome_from_cdr(client.fetch_receipt(reference))
        return outcome

    def process_job(self, job: SunatJob) -> str:
        """Ejecuta un intento del job (que debe estar bloqueado por este worker)."""
        now = self.clock()
        document = self.store.get_document(job.document_id)
        if document is None:
            mark_failed(job, now, f"Documento {job.document_id} no existe")
            return self._save(job, None, RESULT_FAILED)
        if document.is_terminal:
            mark_done(job, now, note=f"Documento ya en estado {document.state}; sin acción")
            return self._save(job, None, RESULT_DONE)
        if job.attempts >= self.settings.max_attempts:
            logger.error("Job %s (%s): tope de intentos alcanzado tras recuperar lock vencido", job.id, document.full_number)
            mark_failed(job, now, f"Tope de {self.settings.max_attempts} intentos alcanzado", count_attempt=False)
            return self._save(job, None, RESULT_FAILED)

        # Cambios del documento que se guardan aunque el envío falle (firma, zip)
        changed: Optional[ElectronicDocument] = None
        try:
            settings = self._store_settings(document)
            if job.action in (JobAction.SEND, JobAction.SEND_SUMMARY):
                if job.action != JobAction.send_for(document.doc_type):
                    raise SunatStateError(
                        f"Acción {job.action} no corresponde a un documento {document.doc_type}", "INVALID_ACTION"
                    )
                operation = SEND_SUMMARY if job.action == JobAction.SEND_SUMMARY else SEND_BILL
                if document.state == DocumentState.DRAFT:
                    document = changed = self._sign(document, settings)
                if document.state != DocumentState.SIGNED:
                    raise SunatStateError(
                        f"Documento {document.full_number} en estado {document.state}: no se puede enviar",
                        "INVALID_STATE",
                    )
                zip_name, document = self._attach_zip(document, settings)
                changed = document
                with self.client_factory(settings) as client:
                    outcome = self._submit(client, document, settings, zip_name, operation)
            else:
                ticket = job.ticket or document.sunat_ticket
                if not ticket:
                    raise SunatStateError(f"Job {job.id} sin ticket para consultar", "MISSING_TICKET")
                with self.client_factory(settings) as client:
                    outcome = client.poll_ticket(ticket)
            return self._apply_outcome(job, document, outcome, now)
        except SunatTransientError as e:
            logger.warning("Job %s (%s): error transitorio: %s", job.id, document.full_number, e)
            mark_retry(job, now, str(e), self.settings, rng=self.rng)
            result = RESULT_FAILED if job.status == JobStatus.FAILED else RESULT_RETRY
            return self._save(job, changed, result)
        except SunatValidationError as e:
            logger.error("Job %s (%s): borrador inválido: %s", job.id, document.full_number, e)
            mark_failed(job, now, str(e))
            return self._save(job, None, RESULT_FAILED)
        except (SunatSignatureError, SunatConfigError, SunatClientError, SunatStateError) as e:
            logger.error("Job %s (%s): error permanente [%s]: %s", job.id, document.full_number, e.code, e)
            mark_failed(job, now, f"{e.code}: {e}")
            return self._save(job, changed, RESULT_FAILED)
        except Exception as e:
            logger.exception("Job %s (%s): error inesperado", job.id, document.full_number)
            mark_retry(job, now, f"Error inesperado: {e}", self.settings, rng=self.rng)
            result = RESULT_FAILED if job.status == JobStatus.FAILED else RESULT_RETRY
            return self._save(job, changed, result)

    def _apply_outcome(self, job: SunatJob, document: ElectronicDocument, outcome, now: datetime) -> str:
        if isinstance(outcome, Pending) and job.action == JobAction.CHECK_TICKET:
            logger.info("Ticket %s de %s aún en proceso", outcome.ticket, document.full_number)
            mark_recheck(job, now, self.settings)
            return self._save(job, None, RESULT_RECHECK)

        updated = transition(document, outcome).apply(document)
        follow_up = None
        if isinstance(outcome, Pending):
            mark_done(job, now)
            follow_up = follow_up_ticket_job(job, outcome.ticket, now, self.settings)
            logger.info("Documento %s enviado; ticket %s", document.full_number, outcome.ticket)
        elif isinstance(outcome, Rejected):
            mark_done(job, now, note=f"Rechazado {outcome.code}: {outcome.message}")
            logger.warning("Documento %s rechazado por SUNAT: %s %s", document.full_number, outcome.code, outcome.message)
        else:
            mark_done(job, now)
            logger.info("Documento %s aceptado por SUNAT: %s %s", document.full_number, outcome.code, outcome.message)
        return self._save(job, updated, RESULT_DONE, follow_up)
