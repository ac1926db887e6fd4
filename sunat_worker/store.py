"""
Persistencia de comprobantes y jobs SUNAT.

DocumentStore define el contrato que consume el worker; SqliteStore lo implementa con
transacciones BEGIN IMMEDIATE y UPDATE condicionales (lock compare-and-set sobre locked_at).
Cada operación abre su propia conexión, así el store se puede usar desde varios hilos y
desde varios procesos sobre el mismo archivo.
"""
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from app.sunat_client.exceptions import SunatConfigError, SunatStateError
from app.sunat_client.models import (
    DocType,
    DocumentState,
    ElectronicDocument,
    JobAction,
    JobStatus,
    SunatJob,
    SunatSettings,
    format_full_number,
)

from .scheduler import now_iso, utc_now
from .state_machine import reset as reset_transition

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sunat_settings (
    store_id TEXT PRIMARY KEY,
    ruc TEXT NOT NULL,
    razon_social TEXT NOT NULL,
    address TEXT,
    ubigeo TEXT,
    env TEXT NOT NULL DEFAULT 'BETA',
    sol_user TEXT,
    sol_pass TEXT,
    cert_pfx_base64 TEXT,
    cert_password TEXT,
    series_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sunat_sequences (
    store_id TEXT NOT NULL,
    doc_type TEXT NOT NULL,
    series TEXT NOT NULL,
    next_number INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (store_id, doc_type)
);

CREATE TABLE IF NOT EXISTS electronic_documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id TEXT NOT NULL,
    doc_type TEXT NOT NULL,
    series TEXT NOT NULL,
    number INTEGER NOT NULL,
    full_number TEXT NOT NULL,
    draft_json TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'DRAFT',
    xml_signed TEXT,
    hash TEXT,
    zip_sent_base64 TEXT,
    sunat_code TEXT,
    sunat_message TEXT,
    sunat_ticket TEXT,
    cdr_zip BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (store_id, series, number)
);

CREATE TABLE IF NOT EXISTS sunat_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES electronic_documents(id),
    action TEXT NOT NULL DEFAULT 'SEND',
    status TEXT NOT NULL DEFAULT 'QUEUED',
    ticket TEXT,
    next_run_at TEXT NOT NULL,
    locked_at TEXT,
    locked_by TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sunat_jobs_status_next ON sunat_jobs(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_sunat_jobs_document ON sunat_jobs(document_id);
CREATE INDEX IF NOT EXISTS idx_documents_state ON electronic_documents(state);
"""

_DOCUMENT_FIELDS = (
    "state",
    "xml_signed",
    "hash",
    "zip_sent_base64",
    "sunat_code",
    "sunat_message",
    "sunat_ticket",
    "cdr_zip",
)

_JOB_FIELDS = (
    "status",
    "ticket",
    "next_run_at",
    "locked_at",
    "locked_by",
    "attempts",
    "last_error",
    "completed_at",
)


class LockLost(Exception):
    """El job ya no pertenece a este worker (lock recuperado por otro o reset administrativo)."""


class DocumentStore(ABC):
    """Contrato de persistencia consumido por el worker y los comandos."""

    # Jobs: ciclo del worker
    @abstractmethod
    def load_eligible_jobs(self, limit: int, now: Optional[datetime] = None) -> List[SunatJob]:
        ...

    @abstractmethod
    def try_lock(self, job_id: int, worker_id: str, now: Optional[datetime] = None) -> bool:
        ...

    @abstractmethod
    def save_job_result(
        self,
        job: SunatJob,
        document: Optional[ElectronicDocument] = None,
        follow_up: Optional[SunatJob] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        ...

    @abstractmethod
    def release_locks(self, worker_id: str) -> int:
        ...

    @abstractmethod
    def job_stats(self) -> Dict[str, int]:
        ...

    # Jobs: consultas y comandos
    @abstractmethod
    def create_job(self, job: SunatJob) -> SunatJob:
        ...

    @abstractmethod
    def enqueue_job(self, document_id: int, action: str = JobAction.SEND, ticket: Optional[str] = None) -> Tuple[SunatJob, bool]:
        ...

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[SunatJob]:
        ...

    @abstractmethod
    def open_job_for(self, document_id: int) -> Optional[SunatJob]:
        ...

    @abstractmethod
    def latest_job_for(self, document_id: int) -> Optional[SunatJob]:
        ...

    @abstractmethod
    def reset_failed_jobs(self, document_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
        ...

    # Documentos
    @abstractmethod
    def create_document(self, store_id: str, doc_type: str, draft: Dict[str, Any]) -> ElectronicDocument:
        ...

    @abstractmethod
    def get_document(self, document_id: int) -> Optional[ElectronicDocument]:
        ...

    @abstractmethod
    def list_documents(
        self, store_id: str, doc_types: Optional[Sequence[str]] = None, states: Optional[Sequence[str]] = None
    ) -> List[ElectronicDocument]:
        ...

    @abstractmethod
    def save_document(self, document: ElectronicDocument) -> None:
        ...

    @abstractmethod
    def reset_document(self, document_id: int) -> ElectronicDocument:
        ...

    @abstractmethod
    def allocate_number(self, store_id: str, doc_type: str) -> Tuple[str, int]:
        ...

    # Configuración por tienda
    @abstractmethod
    def save_settings(self, settings: SunatSettings) -> None:
        ...

    @abstractmethod
    def get_settings(self, store_id: str) -> Optional[SunatSettings]:
        ...


def _row_to_document(row: sqlite3.Row) -> ElectronicDocument:
    cdr = row["cdr_zip"]
    return ElectronicDocument(
        id=row["id"],
        store_id=row["store_id"],
        doc_type=row["doc_type"],
        series=row["series"],
        number=row["number"],
        draft=json.loads(row["draft_json"] or "{}"),
        state=row["state"],
        xml_signed=row["xml_signed"],
        hash=row["hash"],
        zip_sent_base64=row["zip_sent_base64"],
        sunat_code=row["sunat_code"],
        sunat_message=row["sunat_message"],
        sunat_ticket=row["sunat_ticket"],
        cdr_zip=bytes(cdr) if cdr is not None else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_job(row: sqlite3.Row) -> SunatJob:
    return SunatJob(
        id=row["id"],
        document_id=row["document_id"],
        action=row["action"],
        status=row["status"],
        ticket=row["ticket"],
        next_run_at=row["next_run_at"],
        locked_at=row["locked_at"],
        locked_by=row["locked_by"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _row_to_settings(row: sqlite3.Row) -> SunatSettings:
    series = dict(DocType.DEFAULT_SERIES)
    if row["series_json"]:
        series.update(json.loads(row["series_json"]))
    return SunatSettings(
        store_id=row["store_id"],
        ruc=row["ruc"],
        razon_social=row["razon_social"],
        address=row["address"],
        ubigeo=row["ubigeo"],
        env=row["env"],
        sol_user=row["sol_user"],
        sol_pass=row["sol_pass"],
        cert_pfx_base64=row["cert_pfx_base64"],
        cert_password=row["cert_password"],
        series=series,
    )


class SqliteStore(DocumentStore):
    """Implementación SQLite (WAL) del store de comprobantes y jobs."""

    def __init__(self, db_path: str, stale_lock_seconds: int = 300):
        self.db_path = db_path
        self.stale_lock_seconds = stale_lock_seconds

    # -------------------------
    # Conexión / transacciones
    # -------------------------
    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON;")
        con.execute("PRAGMA journal_mode = WAL;")
        con.execute("PRAGMA synchronous = FULL;")
        con.execute("PRAGMA busy_timeout = 5000;")
        return con

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    def init_db(self) -> None:
        con = self._connect()
        try:
            con.executescript(SCHEMA)
        finally:
            con.close()

    def _stale_cutoff(self, now: datetime) -> str:
        return now_iso(now - timedelta(seconds=self.stale_lock_seconds))

    # -------------------------
    # Settings / secuencias
    # -------------------------
    def save_settings(self, settings: SunatSettings) -> None:
        ts = now_iso()
        with self._tx() as con:
            con.execute(
                """
                INSERT INTO sunat_settings (
                    store_id, ruc, razon_social, address, ubigeo, env, sol_user, sol_pass,
                    cert_pfx_base64, cert_password, series_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id) DO UPDATE SET
                    ruc = excluded.ruc,
                    razon_social = excluded.razon_social,
                    address = excluded.address,
                    ubigeo = excluded.ubigeo,
                    env = excluded.env,
                    sol_user = excluded.sol_user,
                    sol_pass = excluded.sol_pass,
                    cert_pfx_base64 = excluded.cert_pfx_base64,
                    cert_password = excluded.cert_password,
                    series_json = excluded.series_json,
                    updated_at = excluded.updated_at
                """,
                (
                    settings.store_id,
                    settings.ruc,
                    settings.razon_social,
                    settings.address,
                    settings.ubigeo,
                    settings.env,
                    settings.sol_user,
                    settings.sol_pass,
                    settings.cert_pfx_base64,
                    settings.cert_password,
                    json.dumps(settings.series, sort_keys=True),
                    ts,
                    ts,
                ),
            )

    def get_settings(self, store_id: str) -> Optional[SunatSettings]:
        with self._read() as con:
            row = con.execute("SELECT * FROM sunat_settings WHERE store_id = ?", (store_id,)).fetchone()
        return _row_to_settings(row) if row else None

    def _allocate(self, con: sqlite3.Connection, store_id: str, doc_type: str) -> Tuple[str, int]:
        if doc_type not in DocType.ALL:
            raise ValueError(f"Tipo de documento desconocido: {doc_type!r}")
        settings_row = con.execute("SELECT * FROM sunat_settings WHERE store_id = ?", (store_id,)).fetchone()
        if settings_row is None:
            raise SunatConfigError(f"La tienda {store_id} no tiene configuración SUNAT", "SUNAT_SETTINGS_REQUIRED")
        series = _row_to_settings(settings_row).series.get(doc_type) or DocType.DEFAULT_SERIES[doc_type]

        con.execute(
            "INSERT OR IGNORE INTO sunat_sequences (store_id, doc_type, series, next_number) VALUES (?, ?, ?, 1)",
            (store_id, doc_type, series),
        )
        row = con.execute(
            "SELECT series, next_number FROM sunat_sequences WHERE store_id = ? AND doc_type = ?",
            (store_id, doc_type),
        ).fetchone()
        con.execute(
            "UPDATE sunat_sequences SET next_number = next_number + 1 WHERE store_id = ? AND doc_type = ?",
            (store_id, doc_type),
        )
        return row["series"], int(row["next_number"])

    def allocate_number(self, store_id: str, doc_type: str) -> Tuple[str, int]:
        """Incremento atómico del correlativo: devuelve (serie, número asignado)."""
        with self._tx() as con:
            return self._allocate(con, store_id, doc_type)

    # -------------------------
    # Documentos
    # -------------------------
    def create_document(self, store_id: str, doc_type: str, draft: Dict[str, Any]) -> ElectronicDocument:
        """Crea un documento DRAFT con serie/número asignados en la misma transacción."""
        ts = now_iso()
        with self._tx() as con:
            series, number = self._allocate(con, store_id, doc_type)
            full_number = format_full_number(doc_type, series, number, draft.get("issue_date"))
            cur = con.execute(
                """
                INSERT INTO electronic_documents (
                    store_id, doc_type, series, number, full_number, draft_json, state, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    store_id,
                    doc_type,
                    series,
                    number,
                    full_number,
                    json.dumps(draft, default=str, sort_keys=True),
                    DocumentState.DRAFT,
                    ts,
                    ts,
                ),
            )
            row = con.execute("SELECT * FROM electronic_documents WHERE id = ?", (cur.lastrowid,)).fetchone()
        logger.info("Documento %s creado (%s, tienda %s)", full_number, doc_type, store_id)
        return _row_to_document(row)

    def get_document(self, document_id: int) -> Optional[ElectronicDocument]:
        with self._read() as con:
            row = con.execute("SELECT * FROM electronic_documents WHERE id = ?", (document_id,)).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(
        self, store_id: str, doc_types: Optional[Sequence[str]] = None, states: Optional[Sequence[str]] = None
    ) -> List[ElectronicDocument]:
        sql = "SELECT * FROM electronic_documents WHERE store_id = ?"
        params: List[Any] = [store_id]
        if doc_types:
            sql += f" AND doc_type IN ({', '.join('?' for _ in doc_types)})"
            params += list(doc_types)
        if states:
            sql += f" AND state IN ({', '.join('?' for _ in states)})"
            params += list(states)
        with self._read() as con:
            rows = con.execute(sql + " ORDER BY id", params).fetchall()
        return [_row_to_document(r) for r in rows]

    def _update_document(self, con: sqlite3.Connection, document: ElectronicDocument) -> None:
        assignments = ", ".join(f"{name} = ?" for name in _DOCUMENT_FIELDS)
        values = [getattr(document, name) for name in _DOCUMENT_FIELDS]
        document.updated_at = now_iso()
        cur = con.execute(
            f"UPDATE electronic_documents SET {assignments}, updated_at = ? WHERE id = ?",
            values + [document.updated_at, document.id],
        )
        if cur.rowcount != 1:
            raise SunatStateError(f"Documento {document.id} no existe", "DOCUMENT_NOT_FOUND")

    def save_document(self, document: ElectronicDocument) -> None:
        with self._tx() as con:
            self._update_document(con, document)

    def reset_document(self, document_id: int) -> ElectronicDocument:
        """
        Reset administrativo: documento -> DRAFT y cierre de sus jobs abiertos.
        Un worker que tenga uno de esos jobs pierde el lock y no podrá guardar su resultado.
        """
        ts = now_iso()
        with self._tx() as con:
            row = con.execute("SELECT * FROM electronic_documents WHERE id = ?", (document_id,)).fetchone()
            if row is None:
                raise SunatStateError(f"Documento {document_id} no existe", "DOCUMENT_NOT_FOUND")
            document = reset_transition(_row_to_document(row)).apply(_row_to_document(row))
            self._update_document(con, document)
            cancelled = con.execute(
                """
                UPDATE sunat_jobs
                SET status = ?, locked_at = NULL, locked_by = NULL, completed_at = ?, updated_at = ?,
                    last_error = 'Cancelado por reset administrativo del documento'
                WHERE document_id = ? AND status IN (?, ?)
                """,
                (JobStatus.DONE, ts, ts, document_id, JobStatus.QUEUED, JobStatus.PENDING),
            ).rowcount
        logger.info("Documento %s reiniciado a DRAFT (%d jobs cancelados)", document.full_number, cancelled)
        return document

    # -------------------------
    # Jobs
    # -------------------------
    def _insert_job(self, con: sqlite3.Connection, job: SunatJob) -> SunatJob:
        ts = now_iso()
        job.created_at = job.created_at or ts
        job.updated_at = ts
        job.next_run_at = job.next_run_at or ts
        cur = con.execute(
            """
            INSERT INTO sunat_jobs (
                document_id, action, status, ticket, next_run_at, locked_at, locked_by,
                attempts, last_error, created_at, updated_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.document_id,
                job.action,
                job.status,
                job.ticket,
                job.next_run_at,
                job.locked_at,
                job.locked_by,
                job.attempts,
                job.last_error,
                job.created_at,
                job.updated_at,
                job.completed_at,
            ),
        )
        job.id = cur.lastrowid
        return job

    def create_job(self, job: SunatJob) -> SunatJob:
        with self._tx() as con:
            return self._insert_job(con, job)

    def enqueue_job(self, document_id: int, action: str = JobAction.SEND, ticket: Optional[str] = None) -> Tuple[SunatJob, bool]:
        """
        Crea un job si el documento no tiene otro abierto.

        Returns:
            (job, created): el job abierto existente y False, o el nuevo y True
        """
        with self._tx() as con:
            row = con.execute(
                "SELECT * FROM sunat_jobs WHERE document_id = ? AND status IN (?, ?) ORDER BY id DESC LIMIT 1",
                (document_id, JobStatus.QUEUED, JobStatus.PENDING),
            ).fetchone()
            if row is not None:
                return _row_to_job(row), False
            job = SunatJob(id=None, document_id=document_id, action=action, ticket=ticket)
            return self._insert_job(con, job), True

    def get_job(self, job_id: int) -> Optional[SunatJob]:
        with self._read() as con:
            row = con.execute("SELECT * FROM sunat_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def open_job_for(self, document_id: int) -> Optional[SunatJob]:
        with self._read() as con:
            row = con.execute(
                "SELECT * FROM sunat_jobs WHERE document_id = ? AND status IN (?, ?) ORDER BY id DESC LIMIT 1",
                (document_id, JobStatus.QUEUED, JobStatus.PENDING),
            ).fetchone()
        return _row_to_job(row) if row else None

    def latest_job_for(self, document_id: int) -> Optional[SunatJob]:
        with self._read() as con:
            row = con.execute(
                "SELECT * FROM sunat_jobs WHERE document_id = ? ORDER BY id DESC LIMIT 1", (document_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def load_eligible_jobs(self, limit: int, now: Optional[datetime] = None) -> List[SunatJob]:
        """Jobs listos (o con lock vencido), los más antiguos primero."""
        now = now or utc_now()
        with self._read() as con:
            rows = con.execute(
                """
                SELECT * FROM sunat_jobs
                WHERE (status = ? AND locked_at IS NULL AND next_run_at <= ?)
                   OR (status = ? AND locked_at IS NOT NULL AND locked_at < ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (JobStatus.QUEUED, now_iso(now), JobStatus.PENDING, self._stale_cutoff(now), int(limit)),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def try_lock(self, job_id: int, worker_id: str, now: Optional[datetime] = None) -> bool:
        """
        Compare-and-set del lock. Falla (False) si el job ya no es elegible o si otro job del
        mismo documento tiene un lock vigente.

        Recuperar un lock vencido cuenta como un intento (attempts + 1).
        """
        now = now or utc_now()
        ts = now_iso(now)
        cutoff = self._stale_cutoff(now)
        with self._tx() as con:
            before = con.execute("SELECT status, locked_by FROM sunat_jobs WHERE id = ?", (job_id,)).fetchone()
            cur = con.execute(
                """
                UPDATE sunat_jobs
                SET status = ?, locked_at = ?, locked_by = ?, updated_at = ?,
                    attempts = attempts + (CASE WHEN status = ? THEN 1 ELSE 0 END)
                WHERE id = ?
                  AND (
                        (status = ? AND locked_at IS NULL AND next_run_at <= ?)
                     OR (status = ? AND locked_at IS NOT NULL AND locked_at < ?)
                  )
                  AND NOT EXISTS (
                        SELECT 1 FROM sunat_jobs other
                        WHERE other.document_id = sunat_jobs.document_id
                          AND other.id != sunat_jobs.id
                          AND other.status = ?
                          AND other.locked_at >= ?
                  )
                """,
                (
                    JobStatus.PENDING,
                    ts,
                    worker_id,
                    ts,
                    JobStatus.PENDING,
                    job_id,
                    JobStatus.QUEUED,
                    ts,
                    JobStatus.PENDING,
                    cutoff,
                    JobStatus.PENDING,
                    cutoff,
                ),
            )
            locked = cur.rowcount == 1
        if locked and before is not None and before["status"] == JobStatus.PENDING:
            logger.warning("Job %s: lock vencido de %s recuperado por %s", job_id, before["locked_by"], worker_id)
        return locked

    def save_job_result(
        self,
        job: SunatJob,
        document: Optional[ElectronicDocument] = None,
        follow_up: Optional[SunatJob] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        """
        Guarda job + documento (+ job de seguimiento) en una sola transacción.

        Si se indica worker_id, solo se guarda si el job sigue bloqueado por ese worker.

        Returns:
            False si el lock se perdió (nada se guarda)
        """
        assignments = ", ".join(f"{name} = ?" for name in _JOB_FIELDS)
        values = [getattr(job, name) for name in _JOB_FIELDS]
        job.updated_at = now_iso()
        sql = f"UPDATE sunat_jobs SET {assignments}, updated_at = ? WHERE id = ?"
        params = values + [job.updated_at, job.id]
        if worker_id is not None:
            sql += " AND status = ? AND locked_by = ?"
            params += [JobStatus.PENDING, worker_id]

        try:
            with self._tx() as con:
                if con.execute(sql, params).rowcount != 1:
                    raise LockLost(f"job {job.id}")
                if document is not None:
                    self._update_document(con, document)
                if follow_up is not None:
                    self._insert_job(con, follow_up)
        except LockLost:
            logger.warning("Job %s: lock perdido, resultado descartado (worker %s)", job.id, worker_id)
            return False
        return True

    def reset_failed_jobs(self, document_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        FAILED -> QUEUED (attempts=0) para documentos no terminales sin otro job abierto.
        Se re-encola solo el último job fallido de cada documento, con la acción que
        corresponde al estado actual del documento: CHECK_TICKET con su ticket si está SENT,
        envío (SEND / SEND_SUMMARY) si está DRAFT o SIGNED.
        """
        ts = now_iso(now)
        doc_filter = "AND f.document_id = ?" if document_id is not None else ""
        params: List[Any] = [JobStatus.FAILED, DocumentState.DRAFT, DocumentState.SIGNED, DocumentState.SENT]
        if document_id is not None:
            params.append(document_id)
        params += [JobStatus.QUEUED, JobStatus.PENDING]

        count = 0
        with self._tx() as con:
            rows = con.execute(
                f"""
                SELECT j.id, d.doc_type, d.state, d.sunat_ticket
                FROM sunat_jobs j
                JOIN electronic_documents d ON d.id = j.document_id
                WHERE j.id IN (
                    SELECT MAX(f.id)
                    FROM sunat_jobs f
                    JOIN electronic_documents fd ON fd.id = f.document_id
                    WHERE f.status = ?
                      AND fd.state IN (?, ?, ?)
                      {doc_filter}
                      AND NOT EXISTS (
                          SELECT 1 FROM sunat_jobs o
                          WHERE o.document_id = f.document_id AND o.status IN (?, ?)
                      )
                    GROUP BY f.document_id
                )
                """,
                params,
            ).fetchall()
            for row in rows:
                if row["state"] == DocumentState.SENT:
                    if not row["sunat_ticket"]:
                        logger.warning("Job %s: documento SENT sin ticket, no se re-encola", row["id"])
                        continue
                    action, ticket = JobAction.CHECK_TICKET, row["sunat_ticket"]
                else:
                    action, ticket = JobAction.send_for(row["doc_type"]), None
                con.execute(
                    """
                    UPDATE sunat_jobs
                    SET status = ?, action = ?, ticket = ?, attempts = 0, next_run_at = ?, updated_at = ?,
                        locked_at = NULL, locked_by = NULL, last_error = NULL, completed_at = NULL
                    WHERE id = ?
                    """,
                    (JobStatus.QUEUED, action, ticket, ts, ts, row["id"]),
                )
                count += 1
        logger.info("Reset de jobs fallidos: %d re-encolados", count)
        return count

    def release_locks(self, worker_id: str) -> int:
        """Devuelve a QUEUED los jobs que este worker tenga bloqueados (apagado ordenado)."""
        ts = now_iso()
        with self._tx() as con:
            return con.execute(
                """
                UPDATE sunat_jobs SET status = ?, locked_at = NULL, locked_by = NULL, updated_at = ?
                WHERE status = ? AND locked_by = ?
                """,
                (JobStatus.QUEUED, ts, JobStatus.PENDING, worker_id),
            ).rowcount

    def job_stats(self) -> Dict[str, int]:
        stats = {status: 0 for status in JobStatus.ALL}
        with self._read() as con:
            for row in con.execute("SELECT status, COUNT(*) AS n FROM sunat_jobs GROUP BY status"):
                stats[row["status"]] = row["n"]
        return stats
