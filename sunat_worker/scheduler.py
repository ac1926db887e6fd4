"""
Scheduler de jobs SUNAT: backoff exponencial con jitter y decisiones de ciclo de vida.

Las decisiones son funciones puras sobre SunatJob; la persistencia atómica la hace el store.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.sunat_client.models import JobAction, JobStatus, SunatJob
from app.sunat_client.config import WorkerSettings

JITTER_RATIO = 0.5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Sin tzinfo se asume UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def now_iso(now: Optional[datetime] = None) -> str:
    """ISO-8601 en UTC con microsegundos: las columnas de fecha se comparan como texto en SQL."""
    return as_utc(now or utc_now()).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def compute_backoff(
    attempts: int,
    base: float = 30.0,
    cap: float = 3600.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Segundos de espera tras `attempts` fallos transitorios.

    raw = base * 2^(attempts-1); se suma jitter en [0, raw/2) y luego se aplica el tope.
    Como el jitter nunca llega a duplicar raw, backoff(a) <= backoff(b) para a < b.
    """
    if attempts < 1:
        return 0.0
    rng = rng or random
    raw = base * (2 ** min(attempts - 1, 32))
    jitter = rng.random() * JITTER_RATIO * raw
    return min(cap, raw + jitter)


def is_stale(job: SunatJob, now: datetime, stale_after_seconds: int) -> bool:
    locked_at = parse_iso(job.locked_at)
    if locked_at is None:
        return False
    return locked_at < as_utc(now) - timedelta(seconds=stale_after_seconds)


def _release(job: SunatJob, now: datetime) -> None:
    job.locked_at = None
    job.locked_by = None
    job.updated_at = now_iso(now)


def mark_done(job: SunatJob, now: datetime, note: Optional[str] = None) -> SunatJob:
    job.status = JobStatus.DONE
    job.completed_at = now_iso(now)
    if note is not None:
        job.last_error = note
    _release(job, now)
    return job


def mark_failed(job: SunatJob, now: datetime, error: str, count_attempt: bool = True) -> SunatJob:
    """Fallo permanente: sin más reintentos automáticos."""
    job.status = JobStatus.FAILED
    if count_attempt:
        job.attempts += 1
    job.last_error = error
    job.completed_at = now_iso(now)
    _release(job, now)
    return job


def mark_retry(
    job: SunatJob,
    now: datetime,
    error: str,
    settings: WorkerSettings,
    rng: Optional[random.Random] = None,
) -> SunatJob:
    """
    Fallo transitorio: re-encola con backoff, o FAILED si se alcanzó el tope de intentos.
    """
    attempts = job.attempts + 1
    if attempts >= settings.max_attempts:
        return mark_failed(job, now, f"{error} (tope de {settings.max_attempts} intentos alcanzado)")

    delay = compute_backoff(attempts, settings.backoff_base_seconds, settings.backoff_cap_seconds, rng=rng)
    job.attempts = attempts
    job.status = JobStatus.QUEUED
    job.last_error = error
    job.next_run_at = now_iso(now + timedelta(seconds=delay))
    _release(job, now)
    return job


def mark_recheck(job: SunatJob, now: datetime, settings: WorkerSettings) -> SunatJob:
    """Ticket aún en proceso (98): se vuelve a consultar más tarde, sin contar como fallo."""
    job.status = JobStatus.QUEUED
    job.last_error = None
    job.next_run_at = now_iso(now + timedelta(seconds=settings.ticket_recheck_seconds))
    _release(job, now)
    return job


def follow_up_ticket_job(job: SunatJob, ticket: str, now: datetime, settings: WorkerSettings) -> SunatJob:
    """Job CHECK_TICKET para un envío que devolvió ticket."""
    return SunatJob(
        id=None,
        document_id=job.document_id,
        action=JobAction.CHECK_TICKET,
        status=JobStatus.QUEUED,
        ticket=ticket,
        next_run_at=now_iso(now + timedelta(seconds=settings.ticket_poll_delay_seconds)),
        attempts=0,
        created_at=now_iso(now),
        updated_at=now_iso(now),
    )
