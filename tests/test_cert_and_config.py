from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.sunat_client.cert import load_pfx, load_pfx_base64, resolve_certificate
from app.sunat_client.config import SunatConfig, WorkerSettings, get_sunat_config
from app.sunat_client.exceptions import SunatConfigError, SunatSignatureError
from app.sunat_client.models import SunatSettings

from _sunat_fixtures import ISSUER_RUC, PFX_PASSWORD, make_pfx, make_pfx_base64


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "SUNAT_CERT_PFX",
        "SUNAT_CERT_PASSWORD",
        "SUNAT_ENV",
        "SUNAT_CONFIRM_PROD",
        "SUNAT_BILL_SERVICE_URL",
        "SUNAT_SOAP_TIMEOUT_READ",
        "SUNAT_MAX_ATTEMPTS",
        "SUNAT_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_valid_pfx():
    bundle = load_pfx(make_pfx(), PFX_PASSWORD)
    info = bundle.info()
    assert info["key_size"] == 2048
    assert ISSUER_RUC in info["subject"]


def test_wrong_password_is_invalid_certificate():
    with pytest.raises(SunatSignatureError) as excinfo:
        load_pfx(make_pfx(), "otra-clave")
    assert excinfo.value.code == "CERT_INVALID"


def test_expired_certificate_is_rejected():
    with pytest.raises(SunatSignatureError) as excinfo:
        load_pfx(make_pfx(expired=True), PFX_PASSWORD)
    assert excinfo.value.code == "CERT_EXPIRED"


def test_small_rsa_key_is_rejected():
    with pytest.raises(SunatSignatureError) as excinfo:
        load_pfx(make_pfx(bits=1024), PFX_PASSWORD)
    assert excinfo.value.code == "CERT_KEY_SIZE"


def test_empty_and_non_base64_pfx():
    with pytest.raises(SunatSignatureError) as excinfo:
        load_pfx(b"", PFX_PASSWORD)
    assert excinfo.value.code == "CERT_MISSING"

    with pytest.raises(SunatSignatureError) as excinfo:
        load_pfx_base64("%%%no-base64%%%", PFX_PASSWORD)
    assert excinfo.value.code == "CERT_INVALID"


def test_resolve_certificate_prefers_env(monkeypatch):
    settings = SunatSettings(store_id="t", ruc=ISSUER_RUC, razon_social="X", cert_pfx_base64=make_pfx_base64(), cert_password=PFX_PASSWORD)
    assert resolve_certificate(settings).source == "DB"

    monkeypatch.setenv("SUNAT_CERT_PFX", make_pfx_base64())
    monkeypatch.setenv("SUNAT_CERT_PASSWORD", PFX_PASSWORD)
    assert resolve_certificate(None).source == "ENV"


def test_resolve_certificate_missing():
    with pytest.raises(SunatSignatureError) as excinfo:
        resolve_certificate(SunatSettings(store_id="t", ruc=ISSUER_RUC, razon_social="X"))
    assert excinfo.value.code == "CERT_MISSING"


def test_sunat_config_environments(monkeypatch):
    beta = get_sunat_config()
    assert beta.env == "BETA"
    assert "e-beta.sunat.gob.pe" in beta.get_soap_service_url("bill_service")
    assert beta.get_soap_service_url("bill_consult").endswith("billConsultService")

    with pytest.raises(SunatConfigError) as excinfo:
        SunatConfig("PROD")
    assert excinfo.value.code == "PROD_NOT_CONFIRMED"

    monkeypatch.setenv("SUNAT_CONFIRM_PROD", "YES")
    prod = SunatConfig("prod")
    assert prod.is_production
    assert "e-factura.sunat.gob.pe" in prod.get_soap_service_url("bill_service")

    with pytest.raises(SunatConfigError):
        SunatConfig("QA")
    with pytest.raises(ValueError):
        beta.get_soap_service_url("otro")


def test_timeouts_from_env(monkeypatch):
    monkeypatch.setenv("SUNAT_SOAP_TIMEOUT_READ", "90")
    config = SunatConfig("BETA")
    assert (config.connect_timeout, config.read_timeout) == (30, 90)

    monkeypatch.setenv("SUNAT_SOAP_TIMEOUT_READ", "noventa")
    with pytest.raises(SunatConfigError):
        SunatConfig("BETA")


def test_worker_settings_from_env(monkeypatch):
    defaults = WorkerSettings.from_env()
    assert defaults.max_attempts == 8
    assert defaults.backoff_base_seconds == 30.0
    assert defaults.stale_lock_seconds == 300

    monkeypatch.setenv("SUNAT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("SUNAT_DB_PATH", "/tmp/cola.sqlite")
    settings = WorkerSettings.from_env()
    assert settings.max_attempts == 5
    assert settings.db_path == "/tmp/cola.sqlite"

    monkeypatch.setenv("SUNAT_MAX_ATTEMPTS", "0")
    with pytest.raises(SunatConfigError):
        WorkerSettings.from_env()
