from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
import threading

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.sunat_client.exceptions import SunatConfigError
from app.sunat_client.models import DocumentState, JobAction, JobStatus, SunatJob, SunatSettings
from sunat_worker.scheduler import mark_done, now_iso
from sunat_worker.store import DocumentStore, SqliteStore

from _sunat_fixtures import ISSUER_RUC, sample_draft


@pytest.fixture()
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "sunat_test.sqlite"), stale_lock_seconds=300)
    s.init_db()
    s.save_settings(SunatSettings(store_id="tienda-1", ruc=ISSUER_RUC, razon_social="EMPRESA DE PRUEBA SAC"))
    return s


def _document(store):
    return store.create_document("tienda-1", "FACTURA", sample_draft("FACTURA", with_meta=False))


def test_allocate_number_is_sequential_per_doc_type(store):
    assert store.allocate_number("tienda-1", "FACTURA") == ("F001", 1)
    assert store.allocate_number("tienda-1", "FACTURA") == ("F001", 2)
    assert store.allocate_number("tienda-1", "BOLETA") == ("B001", 1)


def test_allocate_number_concurrent_has_no_duplicates(store):
    results = []

    def grab():
        for _ in range(10):
            results.append(store.allocate_number("tienda-1", "FACTURA"))

    threads = [threading.Thread(target=grab) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    numbers = [n for _, n in results]
    assert sorted(numbers) == list(range(1, 41))


def test_allocate_number_requires_settings(store):
    with pytest.raises(SunatConfigError):
        store.allocate_number("otra-tienda", "FACTURA")


def test_create_and_get_document_round_trip(store):
    document = _document(store)
    loaded = store.get_document(document.id)

    assert loaded.full_number == "F001-00000001"
    assert loaded.state == DocumentState.DRAFT
    assert loaded.draft["customer"]["name"] == "CLIENTE DE PRUEBA SA"


def test_enqueue_job_is_idempotent(store):
    document = _document(store)
    first, created = store.enqueue_job(document.id)
    second, created_again = store.enqueue_job(document.id)

    assert created is True
    assert created_again is False
    assert first.id == second.id


def test_try_lock_only_one_winner(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)

    assert store.try_lock(job.id, "worker-a") is True
    assert store.try_lock(job.id, "worker-b") is False
    assert store.get_job(job.id).locked_by == "worker-a"
    assert store.get_job(job.id).status == JobStatus.PENDING


def test_try_lock_concurrent_threads(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)
    wins = []

    def attempt(name):
        if store.try_lock(job.id, name):
            wins.append(name)

    threads = [threading.Thread(target=attempt, args=(f"w{i}",)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1


def test_lock_refused_while_other_job_of_same_document_is_in_flight(store):
    document = _document(store)
    first = store.create_job(SunatJob(id=None, document_id=document.id))
    second = store.create_job(SunatJob(id=None, document_id=document.id, action=JobAction.CHECK_TICKET, ticket="T"))

    assert store.try_lock(first.id, "worker-a") is True
    assert store.try_lock(second.id, "worker-b") is False


def test_future_job_is_not_eligible(store):
    document = _document(store)
    later = now_iso(datetime.now(timezone.utc) + timedelta(minutes=5))
    job = store.create_job(SunatJob(id=None, document_id=document.id, next_run_at=later))

    assert store.load_eligible_jobs(10) == []
    assert store.try_lock(job.id, "worker-a") is False


def test_eligible_jobs_are_oldest_first_and_bounded(store):
    ids = []
    for _ in range(3):
        document = _document(store)
        ids.append(store.enqueue_job(document.id)[0].id)

    jobs = store.load_eligible_jobs(2)
    assert [j.id for j in jobs] == ids[:2]


def test_stale_lock_is_recovered(store):
    document = _document(store)
    past = datetime.now(timezone.utc) - timedelta(seconds=600)
    job = store.create_job(SunatJob(id=None, document_id=document.id, next_run_at=now_iso(past - timedelta(seconds=1))))

    assert store.try_lock(job.id, "worker-muerto", now=past) is True
    assert store.try_lock(job.id, "worker-b", now=past + timedelta(seconds=10)) is False

    eligible = store.load_eligible_jobs(10)
    assert [j.id for j in eligible] == [job.id]
    assert store.try_lock(job.id, "worker-b") is True
    assert store.get_job(job.id).locked_by == "worker-b"


def test_stale_lock_recovery_counts_as_attempt(store):
    document = _document(store)
    past = datetime.now(timezone.utc) - timedelta(seconds=600)
    job = store.create_job(SunatJob(id=None, document_id=document.id, next_run_at=now_iso(past - timedelta(seconds=1))))

    store.try_lock(job.id, "worker-muerto", now=past)
    assert store.get_job(job.id).attempts == 0

    assert store.try_lock(job.id, "worker-b") is True
    assert store.get_job(job.id).attempts == 1


def test_save_job_result_requires_lock_owner(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)
    store.try_lock(job.id, "worker-a")

    loaded = store.get_job(job.id)
    mark_done(loaded, datetime.now(timezone.utc))
    updated = document.with_updates(state=DocumentState.SIGNED, hash="h")

    assert store.save_job_result(loaded, updated, worker_id="worker-b") is False
    assert store.get_document(document.id).state == DocumentState.DRAFT

    assert store.save_job_result(loaded, updated, worker_id="worker-a") is True
    assert store.get_job(job.id).status == JobStatus.DONE
    assert store.get_document(document.id).hash == "h"


def test_save_job_result_inserts_follow_up_atomically(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)
    store.try_lock(job.id, "worker-a")

    loaded = store.get_job(job.id)
    mark_done(loaded, datetime.now(timezone.utc))
    follow_up = SunatJob(id=None, document_id=document.id, action=JobAction.CHECK_TICKET, ticket="T-1")

    assert store.save_job_result(loaded, follow_up=follow_up, worker_id="worker-a") is True
    assert follow_up.id is not None
    assert store.open_job_for(document.id).id == follow_up.id


def test_reset_document_cancels_open_jobs(store):
    document = _document(store)
    store.save_document(document.with_updates(state=DocumentState.ERROR, sunat_code="2335", xml_signed="<x/>"))
    job, _ = store.enqueue_job(document.id)
    store.try_lock(job.id, "worker-a")

    reset_doc = store.reset_document(document.id)

    assert reset_doc.state == DocumentState.DRAFT
    assert reset_doc.sunat_code is None and reset_doc.xml_signed is None
    cancelled = store.get_job(job.id)
    assert cancelled.status == JobStatus.DONE
    assert cancelled.locked_by is None
    assert store.open_job_for(document.id) is None


def test_reset_failed_jobs(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)
    store.try_lock(job.id, "worker-a")
    loaded = store.get_job(job.id)
    loaded.status, loaded.attempts, loaded.last_error = JobStatus.FAILED, 8, "timeout"
    loaded.locked_at = loaded.locked_by = None
    store.save_job_result(loaded, worker_id="worker-a")

    assert store.reset_failed_jobs() == 1
    requeued = store.get_job(job.id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.attempts == 0
    assert requeued.last_error is None
    assert store.reset_failed_jobs() == 0


def test_release_locks_and_stats(store):
    document = _document(store)
    job, _ = store.enqueue_job(document.id)
    store.try_lock(job.id, "worker-a")

    assert store.job_stats()[JobStatus.PENDING] == 1
    assert store.release_locks("worker-a") == 1
    stats = store.job_stats()
    assert stats[JobStatus.PENDING] == 0
    assert stats[JobStatus.QUEUED] == 1


def _fail_job(store, job):
    store.try_lock(job.id, "worker-a")
    loaded = store.get_job(job.id)
    loaded.status, loaded.attempts, loaded.last_error = JobStatus.FAILED, 8, "timeout"
    loaded.locked_at = loaded.locked_by = None
    assert store.save_job_result(loaded, worker_id="worker-a") is True
    return loaded


def test_reset_failed_jobs_requeues_ticket_check_for_sent_document(store):
    document = _document(store)
    store.save_document(document.with_updates(state=DocumentState.SENT, sunat_ticket="T-7", xml_signed="<x/>"))
    job, _ = store.enqueue_job(document.id, action=JobAction.CHECK_TICKET, ticket="T-7")
    _fail_job(store, job)

    assert store.reset_failed_jobs(document_id=document.id) == 1
    requeued = store.get_job(job.id)
    assert requeued.action == JobAction.CHECK_TICKET
    assert requeued.ticket == "T-7"


def test_reset_failed_jobs_after_document_reset_sends_again(store):
    document = _document(store)
    store.save_document(document.with_updates(state=DocumentState.SENT, sunat_ticket="T-7", xml_signed="<x/>"))
    job, _ = store.enqueue_job(document.id, action=JobAction.CHECK_TICKET, ticket="T-7")
    _fail_job(store, job)
    store.reset_document(document.id)

    assert store.reset_failed_jobs() == 1
    requeued = store.get_job(job.id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.action == JobAction.SEND
    assert requeued.ticket is None


def test_reset_failed_jobs_only_latest_failed_job_per_document(store):
    document = _document(store)
    first, _ = store.enqueue_job(document.id)
    _fail_job(store, first)
    second, _ = store.enqueue_job(document.id)
    _fail_job(store, second)

    assert store.reset_failed_jobs() == 1
    assert store.get_job(first.id).status == JobStatus.FAILED
    assert store.get_job(second.id).status == JobStatus.QUEUED


def test_reset_failed_jobs_skips_sent_document_without_ticket(store):
    document = _document(store)
    store.save_document(document.with_updates(state=DocumentState.SENT, xml_signed="<x/>"))
    job, _ = store.enqueue_job(document.id, action=JobAction.CHECK_TICKET, ticket="T-7")
    _fail_job(store, job)

    assert store.reset_failed_jobs() == 0
    assert store.get_job(job.id).status == JobStatus.FAILED


def test_list_documents_filters_by_type_and_state(store):
    factura = _document(store)
    boleta = store.create_document("tienda-1", "BOLETA", sample_draft("BOLETA", with_meta=False))
    store.save_document(boleta.with_updates(state=DocumentState.ACCEPTED, sunat_code="0"))

    assert [d.id for d in store.list_documents("tienda-1")] == [factura.id, boleta.id]
    assert [d.id for d in store.list_documents("tienda-1", doc_types=["BOLETA"])] == [boleta.id]
    assert store.list_documents("tienda-1", states=[DocumentState.ACCEPTED])[0].id == boleta.id
    assert store.list_documents("otra-tienda") == []


def test_summary_document_number_includes_issue_date(store):
    draft = {"issue_date": "2026-03-16", "reference_date": "2026-03-15", "lines": []}
    summary = store.create_document("tienda-1", "SUMMARY", draft)

    assert summary.series == "RC"
    assert summary.full_number == "RC-20260316-00001"
    assert store.get_document(summary.id).full_number == "RC-20260316-00001"


def test_document_store_declares_every_store_operation():
    public = {
        name
        for name, value in vars(SqliteStore).items()
        if callable(value) and not name.startswith("_") and name != "init_db"
    }

    assert public <= DocumentStore.__abstractmethods__
    assert {"enqueue_job", "list_documents", "reset_failed_jobs", "job_stats"} <= DocumentStore.__abstractmethods__
