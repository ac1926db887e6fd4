"""
Configuración para cliente SUNAT y para el worker de envíos
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

from .exceptions import SunatConfigError

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise SunatConfigError(f"{name} debe ser entero, recibido: {raw!r}", "INVALID_CONFIG")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise SunatConfigError(f"{name} debe ser numérico, recibido: {raw!r}", "INVALID_CONFIG")


def get_sol_credentials_from_env() -> Optional[Tuple[str, str]]:
    """
    Credenciales SOL desde el entorno (prioridad sobre las guardadas en DB).

    Returns:
        (sol_user, sol_pass) o None si no están las dos variables
    """
    user = (os.getenv("SUNAT_SOL_USER") or "").strip()
    password = os.getenv("SUNAT_SOL_PASS") or ""
    if user and password:
        return user, password
    return None


def get_cert_pfx_from_env() -> Optional[Tuple[str, str]]:
    """
    Certificado PFX en base64 + password desde el entorno.

    Returns:
        (pfx_base64, password) o None
    """
    pfx_b64 = (os.getenv("SUNAT_CERT_PFX") or "").strip()
    password = os.getenv("SUNAT_CERT_PASSWORD")
    if pfx_b64 and password is not None:
        return pfx_b64, password
    return None


class SunatConfig:
    """Configuración del cliente SUNAT por ambiente"""

    ENV_BETA = "BETA"
    ENV_PROD = "PROD"

    # Endpoints oficiales (billService: envío, billConsultService: consulta de CDR)
    SOAP_SERVICES = {
        "BETA": {
            "bill_service": "https://e-beta.sunat.gob.pe/ol-ti-itcpfegem-beta/billService",
            "bill_consult": "https://e-beta.sunat.gob.pe/ol-ti-itcpfegem-beta/billConsultService",
        },
        "PROD": {
            "bill_service": "https://e-factura.sunat.gob.pe/ol-ti-itcpfegem/billService",
            "bill_consult": "https://e-factura.sunat.gob.pe/ol-ti-itcpfegem/billConsultService",
        },
    }

    def __init__(self, env: str = ENV_BETA):
        """
        Inicializa la configuración SUNAT

        Args:
            env: Ambiente ('BETA' o 'PROD')
        """
        env_norm = (env or "").strip().upper()
        if env_norm not in (self.ENV_BETA, self.ENV_PROD):
            raise SunatConfigError(f"Ambiente inválido: {env!r}. Debe ser 'BETA' o 'PROD'", "INVALID_ENV")

        if env_norm == self.ENV_PROD and (os.getenv("SUNAT_CONFIRM_PROD") or "").strip() != "YES":
            raise SunatConfigError("Ambiente PROD requiere SUNAT_CONFIRM_PROD=YES", "PROD_NOT_CONFIRMED")

        self.env = env_norm

        # Timeouts (segundos): conexión / respuesta
        self.connect_timeout = _env_int("SUNAT_SOAP_TIMEOUT_CONNECT", 30)
        self.read_timeout = _env_int("SUNAT_SOAP_TIMEOUT_READ", 60)

        self.ca_bundle_path = os.getenv("SUNAT_CA_BUNDLE_PATH") or None

    @property
    def is_production(self) -> bool:
        return self.env == self.ENV_PROD

    def get_soap_service_url(self, service_key: str) -> str:
        """
        URL del servicio SOAP según ambiente.

        Args:
            service_key: 'bill_service' o 'bill_consult'

        Nota:
            SUNAT_BILL_SERVICE_URL / SUNAT_BILL_CONSULT_URL permiten apuntar a un OSE o a un mock.
        """
        valid_keys = ["bill_service", "bill_consult"]
        if service_key not in valid_keys:
            raise ValueError(f"Servicio SOAP inválido: {service_key}. Válidos: {valid_keys}")

        override = os.getenv("SUNAT_BILL_SERVICE_URL" if service_key == "bill_service" else "SUNAT_BILL_CONSULT_URL")
        if override:
            return override.strip()
        return self.SOAP_SERVICES[self.env][service_key]


def get_sunat_config(env: Optional[str] = None) -> SunatConfig:
    """
    Obtiene la configuración SUNAT desde variables de entorno

    Args:
        env: Ambiente ('BETA' o 'PROD'). Si None, usa SUNAT_ENV
    """
    if env is None:
        env = os.getenv("SUNAT_ENV", SunatConfig.ENV_BETA)
    return SunatConfig(env)


@dataclass
class WorkerSettings:
    """Parámetros del worker y del scheduler de jobs."""

    db_path: str = "sunat_queue.sqlite"
    poll_interval: float = 10.0
    batch_size: int = 10
    max_concurrent_jobs: int = 3
    stale_lock_seconds: int = 300
    backoff_base_seconds: float = 30.0
    backoff_cap_seconds: float = 3600.0
    max_attempts: int = 8
    ticket_poll_delay_seconds: int = 5
    ticket_recheck_seconds: int = 120
    shutdown_timeout: float = 30.0
    health_every_cycles: int = 6

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        settings = cls(
            db_path=os.getenv("SUNAT_DB_PATH") or cls.db_path,
            poll_interval=_env_float("SUNAT_POLL_INTERVAL", cls.poll_interval),
            batch_size=_env_int("SUNAT_BATCH_SIZE", cls.batch_size),
            max_concurrent_jobs=_env_int("SUNAT_MAX_CONCURRENT_JOBS", cls.max_concurrent_jobs),
            stale_lock_seconds=_env_int("SUNAT_STALE_LOCK_SECONDS", cls.stale_lock_seconds),
            backoff_base_seconds=_env_float("SUNAT_BACKOFF_BASE_SECONDS", cls.backoff_base_seconds),
            backoff_cap_seconds=_env_float("SUNAT_BACKOFF_CAP_SECONDS", cls.backoff_cap_seconds),
            max_attempts=_env_int("SUNAT_MAX_ATTEMPTS", cls.max_attempts),
            ticket_poll_delay_seconds=_env_int("SUNAT_TICKET_POLL_DELAY", cls.ticket_poll_delay_seconds),
            ticket_recheck_seconds=_env_int("SUNAT_TICKET_RECHECK_SECONDS", cls.ticket_recheck_seconds),
            shutdown_timeout=_env_float("SUNAT_SHUTDOWN_TIMEOUT", cls.shutdown_timeout),
            health_every_cycles=_env_int("SUNAT_HEALTH_EVERY_CYCLES", cls.health_every_cycles),
        )
        if settings.max_attempts < 1:
            raise SunatConfigError("SUNAT_MAX_ATTEMPTS debe ser >= 1", "INVALID_CONFIG")
        if settings.max_concurrent_jobs < 1:
            raise SunatConfigError("SUNAT_MAX_CONCURRENT_JOBS debe ser >= 1", "INVALID_CONFIG")
        return settings
