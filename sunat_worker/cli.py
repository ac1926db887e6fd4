import argparse
import base64
import json
import logging
import os
import sys
from pathlib import Path

from app.sunat_client.config import WorkerSettings
from app.sunat_client.exceptions import SunatException
from app.sunat_client.models import DocType, SunatSettings

from .service import SunatService
from .store import SqliteStore
from .worker import SunatWorker

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = (os.getenv("SUNAT_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True))


def _cmd_configure(service: SunatService, args) -> int:
    cert_b64 = None
    if args.cert_pfx:
        cert_b64 = base64.b64encode(Path(args.cert_pfx).read_bytes()).decode("ascii")
    service.configure_store(
        SunatSettings(
            store_id=args.store_id,
            ruc=args.ruc,
            razon_social=args.razon_social,
            address=args.address,
            ubigeo=args.ubigeo,
            env=args.env,
            sol_user=args.sol_user,
            sol_pass=args.sol_pass,
            cert_pfx_base64=cert_b64,
            cert_password=args.cert_password,
        )
    )
    print(f"store_id: {args.store_id}")
    return 0


def _cmd_create(service: SunatService, args) -> int:
    draft = json.loads(Path(args.draft_json).read_text(encoding="utf-8"))
    document = service.create_document(args.store_id, args.doc_type, draft)
    print(f"document_id: {document.id}")
    print(f"full_number: {document.full_number}")
    if args.enqueue:
        job = service.enqueue_submission(document.id)
        print(f"job_id: {job.id}")
    return 0


def _print_deferred(document, job) -> int:
    print(f"document_id: {document.id}")
    print(f"full_number: {document.full_number}")
    print(f"job_id: {job.id}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="sunat_worker", description="Envío de comprobantes electrónicos a SUNAT")
    parser.add_argument("--db", default=None, help="Ruta SQLite (default: SUNAT_DB_PATH o sunat_queue.sqlite)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")

    p_conf = sub.add_parser("configure")
    p_conf.add_argument("--store-id", required=True)
    p_conf.add_argument("--ruc", required=True)
    p_conf.add_argument("--razon-social", required=True)
    p_conf.add_argument("--address", default=None)
    p_conf.add_argument("--ubigeo", default=None)
    p_conf.add_argument("--env", default="BETA", choices=["BETA", "PROD"])
    p_conf.add_argument("--sol-user", default=None)
    p_conf.add_argument("--sol-pass", default=None)
    p_conf.add_argument("--cert-pfx", default=None, help="Archivo .pfx/.p12 del certificado")
    p_conf.add_argument("--cert-password", default=None)

    p_create = sub.add_parser("create")
    p_create.add_argument("--store-id", required=True)
    p_create.add_argument("--doc-type", required=True, choices=list(DocType.ALL))
    p_create.add_argument("--draft-json", required=True, help="Archivo JSON con el borrador")
    p_create.add_argument("--enqueue", action="store_true")

    p_enqueue = sub.add_parser("enqueue")
    p_enqueue.add_argument("document_id", type=int)

    p_status = sub.add_parser("status")
    p_status.add_argument("document_id", type=int)

    p_summary = sub.add_parser("summary", help="Resumen Diario de boletas y notas asociadas")
    p_summary.add_argument("--store-id", required=True)
    p_summary.add_argument("--date", required=True, help="Fecha de emisión de los documentos (YYYY-MM-DD)")
    p_summary.add_argument("--issue-date", default=None, help="Fecha de generación (default: hoy)")
    p_summary.add_argument("--document-id", type=int, action="append", default=None)

    p_void = sub.add_parser("void", help="Comunicación de Baja")
    p_void.add_argument("--store-id", required=True)
    p_void.add_argument("--reason", required=True)
    p_void.add_argument("--issue-date", default=None)
    p_void.add_argument("document_ids", type=int, nargs="+")

    p_reset_failed = sub.add_parser("reset-failed")
    p_reset_failed.add_argument("--document-id", type=int, default=None)

    p_reset_doc = sub.add_parser("reset-document")
    p_reset_doc.add_argument("document_id", type=int)

    p_run = sub.add_parser("run-worker")
    p_run.add_argument("--once", action="store_true", help="Un solo ciclo y salir")
    p_run.add_argument("--worker-id", default=None)

    args = parser.parse_args(argv)
    _configure_logging()

    try:
        settings = WorkerSettings.from_env()
        store = SqliteStore(args.db or settings.db_path, stale_lock_seconds=settings.stale_lock_seconds)
        service = SunatService(store)

        if args.cmd == "init-db":
            store.init_db()
            print(f"db: {store.db_path}")
            return 0
        if args.cmd == "configure":
            return _cmd_configure(service, args)
        if args.cmd == "create":
            return _cmd_create(service, args)
        if args.cmd == "enqueue":
            job = service.enqueue_submission(args.document_id)
            print(f"job_id: {job.id}")
            print(f"status: {job.status}")
            return 0
        if args.cmd == "status":
            _print_json(service.get_document_status(args.document_id))
            return 0
        if args.cmd == "summary":
            return _print_deferred(
                *service.create_daily_summary(args.store_id, args.date, args.issue_date, args.document_id)
            )
        if args.cmd == "void":
            return _print_deferred(
                *service.void_documents(args.store_id, args.document_ids, args.reason, args.issue_date)
            )
        if args.cmd == "reset-failed":
            print(f"reset: {service.admin_reset_failed_jobs(args.document_id)}")
            return 0
        if args.cmd == "reset-document":
            document = service.admin_reset_document(args.document_id)
            print(f"{document.full_number}: {document.state}")
            return 0
        if args.cmd == "run-worker":
            worker = SunatWorker(store, settings, worker_id=args.worker_id)
            if args.once:
                print(f"processed: {worker.run_once()}")
            else:
                worker.run_forever()
            return 0
    except SunatException as exc:
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    return 2
