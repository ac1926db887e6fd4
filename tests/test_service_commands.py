from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.sunat_client.exceptions import SunatConfigError, SunatStateError, SunatValidationError
from app.sunat_client.models import DocumentState, JobAction, JobStatus, SunatSettings
from sunat_worker.service import SunatService
from sunat_worker.store import SqliteStore

from _sunat_fixtures import ISSUER_RUC, sample_draft


@pytest.fixture()
def service(tmp_path):
    store = SqliteStore(str(tmp_path / "service_test.sqlite"))
    store.init_db()
    svc = SunatService(store)
    svc.configure_store(
        SunatSettings(
            store_id="tienda-1",
            ruc=ISSUER_RUC,
            razon_social="EMPRESA DE PRUEBA SAC",
            address="AV. LOS OLIVOS 123",
            series={"FACTURA": "F002"},
        )
    )
    return svc


def _draft_without_issuer(doc_type="FACTURA"):
    draft = sample_draft(doc_type, with_meta=False)
    del draft["issuer"]
    return draft


def test_create_document_fills_issuer_and_uses_store_series(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())

    assert document.full_number == "F002-00000001"
    assert document.draft["issuer"]["ruc"] == ISSUER_RUC
    assert document.state == DocumentState.DRAFT

    boleta = service.create_document("tienda-1", "BOLETA", _draft_without_issuer("BOLETA"))
    assert boleta.full_number == "B001-00000001"


def test_invalid_draft_does_not_consume_number(service):
    draft = _draft_without_issuer()
    draft["items"] = []
    with pytest.raises(SunatValidationError):
        service.create_document("tienda-1", "FACTURA", draft)

    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    assert document.number == 1


def test_create_document_requires_configured_store(service):
    with pytest.raises(SunatConfigError):
        service.create_document("sin-config", "FACTURA", _draft_without_issuer())


def test_enqueue_submission_is_idempotent(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())

    first = service.enqueue_submission(document.id)
    second = service.enqueue_submission(document.id)

    assert first.id == second.id
    assert first.action == JobAction.SEND
    assert first.status == JobStatus.QUEUED


def test_enqueue_sent_document_checks_ticket(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    service.store.save_document(document.with_updates(state=DocumentState.SENT, sunat_ticket="T-5"))

    job = service.enqueue_submission(document.id)

    assert job.action == JobAction.CHECK_TICKET
    assert job.ticket == "T-5"


@pytest.mark.parametrize("state", [DocumentState.ACCEPTED, DocumentState.ERROR])
def test_enqueue_terminal_document_is_refused(service, state):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    service.store.save_document(document.with_updates(state=state))

    with pytest.raises(SunatStateError) as excinfo:
        service.enqueue_submission(document.id)
    assert excinfo.value.code == "ALREADY_FINAL"


def test_unknown_document(service):
    with pytest.raises(SunatStateError):
        service.get_document_status(999)
    with pytest.raises(SunatStateError):
        service.admin_reset_document(999)


def test_get_document_status_includes_latest_job(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    assert service.get_document_status(document.id)["job"] is None

    job = service.enqueue_submission(document.id)
    status = service.get_document_status(document.id)

    assert status["state"] == DocumentState.DRAFT
    assert status["full_number"] == "F002-00000001"
    assert status["has_cdr"] is False
    assert status["job"]["id"] == job.id
    assert status["job"]["status"] == JobStatus.QUEUED


def test_admin_reset_error_document_back_to_draft(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    service.store.save_document(
        document.with_updates(
            state=DocumentState.ERROR,
            xml_signed="<Invoice/>",
            hash="abc=",
            zip_sent_base64="UEs=",
            sunat_code="2335",
            sunat_message="alterado",
            cdr_zip=b"PK",
        )
    )

    reset_doc = service.admin_reset_document(document.id)

    assert reset_doc.state == DocumentState.DRAFT
    stored = service.store.get_document(document.id)
    for name in ("xml_signed", "hash", "zip_sent_base64", "sunat_code", "sunat_message", "sunat_ticket", "cdr_zip"):
        assert getattr(stored, name) is None
    assert service.enqueue_submission(document.id).action == JobAction.SEND


def test_admin_reset_failed_jobs_skips_terminal_documents(service):
    store = service.store
    ids = []
    for state in (DocumentState.SIGNED, DocumentState.ACCEPTED):
        document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
        job = service.enqueue_submission(document.id)
        store.try_lock(job.id, "w")
        loaded = store.get_job(job.id)
        loaded.status, loaded.locked_at, loaded.locked_by = JobStatus.FAILED, None, None
        store.save_job_result(loaded, document.with_updates(state=state), worker_id="w")
        ids.append(job.id)

    assert service.admin_reset_failed_jobs() == 1
    assert store.get_job(ids[0]).status == JobStatus.QUEUED
    assert store.get_job(ids[1]).status == JobStatus.FAILED


def test_admin_reset_failed_jobs_for_one_document(service):
    document = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())
    assert service.admin_reset_failed_jobs(document.id) == 0


def _accepted(service, doc_type, draft=None):
    document = service.create_document("tienda-1", doc_type, draft or _draft_without_issuer(doc_type))
    service.store.save_document(document.with_updates(state=DocumentState.ACCEPTED, sunat_code="0"))
    return service.store.get_document(document.id)


def _boleta_credit_note():
    draft = _draft_without_issuer("NOTA_CREDITO")
    draft["customer"] = {"doc_type": "DNI", "doc_number": "45678912", "name": "JUAN PEREZ", "address": None}
    draft["reference"]["doc_type"] = "BOLETA"
    draft["reference"]["full_number"] = "B001-00000001"
    return draft


def test_daily_summary_picks_accepted_boletas_and_their_notes(service):
    boleta = _accepted(service, "BOLETA")
    note = _accepted(service, "NOTA_CREDITO", _boleta_credit_note())
    _accepted(service, "FACTURA")
    service.create_document("tienda-1", "BOLETA", _draft_without_issuer("BOLETA"))

    summary, job = service.create_daily_summary("tienda-1", "2026-03-15", issue_date="2026-03-16")

    assert summary.doc_type == "SUMMARY"
    assert summary.full_number == "RC-20260316-00001"
    assert summary.draft["reference_date"] == "2026-03-15"
    lines = summary.draft["lines"]
    assert [(l["doc_type"], l["number"]) for l in lines] == [("BOLETA", boleta.number), ("NOTA_CREDITO", note.number)]
    assert lines[1]["reference"] == {"doc_type": "BOLETA", "full_number": "B001-00000001"}
    assert job.action == JobAction.SEND_SUMMARY
    assert job.status == JobStatus.QUEUED


def test_daily_summary_skips_documents_already_reported(service):
    _accepted(service, "BOLETA")
    summary, _ = service.create_daily_summary("tienda-1", "2026-03-15", issue_date="2026-03-16")

    with pytest.raises(SunatStateError) as exc_info:
        service.create_daily_summary("tienda-1", "2026-03-15", issue_date="2026-03-16")
    assert exc_info.value.code == "NOTHING_TO_REPORT"

    service.store.save_document(summary.with_updates(state=DocumentState.ERROR, sunat_code="2220"))
    retry, _ = service.create_daily_summary("tienda-1", "2026-03-15", issue_date="2026-03-16")
    assert retry.number == 2
    assert len(retry.draft["lines"]) == 1


def test_daily_summary_other_date_has_nothing_to_report(service):
    _accepted(service, "BOLETA")

    with pytest.raises(SunatStateError) as exc_info:
        service.create_daily_summary("tienda-1", "2026-03-14")
    assert exc_info.value.code == "NOTHING_TO_REPORT"


def test_daily_summary_with_explicit_documents_rejects_facturas(service):
    factura = _accepted(service, "FACTURA")

    with pytest.raises(SunatStateError) as exc_info:
        service.create_daily_summary("tienda-1", "2026-03-15", document_ids=[factura.id])
    assert exc_info.value.code == "NOT_SUMMARIZABLE"


def test_void_documents_creates_voided_and_enqueues(service):
    factura = _accepted(service, "FACTURA")

    voided, job = service.void_documents("tienda-1", [factura.id], "Error en el RUC del cliente", issue_date="2026-03-16")

    assert voided.doc_type == "VOIDED"
    assert voided.full_number == "RA-20260316-00001"
    assert voided.draft["reference_date"] == "2026-03-15"
    assert voided.draft["lines"] == [
        {"doc_type": "FACTURA", "series": "F002", "number": 1, "reason": "Error en el RUC del cliente"}
    ]
    assert job.action == JobAction.SEND_SUMMARY


def test_void_documents_requires_accepted_documents(service):
    draft_only = service.create_document("tienda-1", "FACTURA", _draft_without_issuer())

    with pytest.raises(SunatStateError) as exc_info:
        service.void_documents("tienda-1", [draft_only.id], "Error en el RUC del cliente")
    assert exc_info.value.code == "NOT_VOIDABLE"


def test_void_documents_requires_same_issue_date(service):
    first = _accepted(service, "FACTURA")
    other_day = _draft_without_issuer()
    other_day["issue_date"] = "2026-03-14"
    second = _accepted(service, "FACTURA", other_day)

    with pytest.raises(SunatValidationError):
        service.void_documents("tienda-1", [first.id, second.id], "Error en el RUC del cliente")


def test_enqueue_summary_document_uses_send_summary(service):
    _accepted(service, "BOLETA")
    summary, job = service.create_daily_summary("tienda-1", "2026-03-15", issue_date="2026-03-16")

    assert service.enqueue_submission(summary.id).id == job.id
    assert JobAction.send_for("SUMMARY") == JobAction.SEND_SUMMARY
    assert JobAction.send_for("VOIDED") == JobAction.SEND_SUMMARY
    assert JobAction.send_for("BOLETA") == JobAction.SEND
