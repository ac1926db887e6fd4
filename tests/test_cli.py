from pathlib import Path
import json
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.sunat_client.models import DocumentState
from sunat_worker.cli import main
from sunat_worker.store import SqliteStore

from _sunat_fixtures import ISSUER_RUC, sample_draft


@pytest.fixture()
def db_args(tmp_path, monkeypatch):
    for name in ("SUNAT_CERT_PFX", "SUNAT_CERT_PASSWORD", "SUNAT_SOL_USER", "SUNAT_SOL_PASS"):
        monkeypatch.delenv(name, raising=False)
    db = tmp_path / "cli.sqlite"
    assert main(["--db", str(db), "init-db"]) == 0
    assert main([
        "--db", str(db), "configure",
        "--store-id", "tienda-1",
        "--ruc", ISSUER_RUC,
        "--razon-social", "EMPRESA DE PRUEBA SAC",
    ]) == 0
    return ["--db", str(db)]


def _create(db_args, tmp_path, capsys) -> int:
    draft_file = tmp_path / "draft.json"
    draft_file.write_text(json.dumps(sample_draft("FACTURA", with_meta=False)), encoding="utf-8")
    capsys.readouterr()
    assert main(db_args + ["create", "--store-id", "tienda-1", "--doc-type", "FACTURA", "--draft-json", str(draft_file), "--enqueue"]) == 0
    out = capsys.readouterr().out
    assert "full_number: F001-00000001" in out
    return int(out.split("document_id: ")[1].split()[0])


def test_create_enqueue_and_status(db_args, tmp_path, capsys):
    document_id = _create(db_args, tmp_path, capsys)

    assert main(db_args + ["enqueue", str(document_id)]) == 0
    assert "status: QUEUED" in capsys.readouterr().out

    assert main(db_args + ["status", str(document_id)]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["state"] == "DRAFT"
    assert status["job"]["action"] == "SEND"


def test_run_worker_once_without_certificate_fails_job(db_args, tmp_path, capsys):
    document_id = _create(db_args, tmp_path, capsys)

    assert main(db_args + ["run-worker", "--once", "--worker-id", "cli-test"]) == 0
    assert "processed: 1" in capsys.readouterr().out

    main(db_args + ["status", str(document_id)])
    status = json.loads(capsys.readouterr().out)
    assert status["job"]["status"] == "FAILED"
    assert status["job"]["last_error"].startswith("CERT_MISSING")

    assert main(db_args + ["reset-failed", "--document-id", str(document_id)]) == 0
    assert "reset: 1" in capsys.readouterr().out


def test_reset_document_and_errors(db_args, tmp_path, capsys):
    document_id = _create(db_args, tmp_path, capsys)

    assert main(db_args + ["reset-document", str(document_id)]) == 0
    assert "F001-00000001: DRAFT" in capsys.readouterr().out

    assert main(db_args + ["status", "999"]) == 1
    assert "DOCUMENT_NOT_FOUND" in capsys.readouterr().err


def test_summary_and_void_commands(db_args, tmp_path, capsys):
    document_id = _create(db_args, tmp_path, capsys)

    assert main(db_args + ["void", "--store-id", "tienda-1", "--reason", "Error en el RUC", str(document_id)]) == 1
    assert "NOT_VOIDABLE" in capsys.readouterr().err
    assert main(db_args + ["summary", "--store-id", "tienda-1", "--date", "2026-03-15"]) == 1
    assert "NOTHING_TO_REPORT" in capsys.readouterr().err

    store = SqliteStore(db_args[1])
    document = store.get_document(document_id)
    store.save_document(document.with_updates(state=DocumentState.ACCEPTED, sunat_code="0"))

    assert main(db_args + [
        "void", "--store-id", "tienda-1", "--reason", "Error en el RUC", "--issue-date", "2026-03-16", str(document_id),
    ]) == 0
    out = capsys.readouterr().out
    assert "full_number: RA-20260316-00001" in out
    assert "job_id: " in out
