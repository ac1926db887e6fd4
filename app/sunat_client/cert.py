"""
Carga y validación del certificado digital (PFX / PKCS#12) usado para firmar
"""
import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import get_cert_pfx_from_env
from .exceptions import SunatSignatureError
from .models import SunatSettings

logger = logging.getLogger(__name__)

MIN_RSA_BITS = 2048


@dataclass
class CertificateBundle:
    """Clave privada + certificado X.509 listos para firmar"""
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    additional_certificates: List[x509.Certificate] = field(default_factory=list)
    source: str = "DB"

    def cert_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def info(self) -> dict:
        return {
            "subject": self.certificate.subject.rfc4514_string(),
            "issuer": self.certificate.issuer.rfc4514_string(),
            "serial_number": str(self.certificate.serial_number),
            "not_valid_before": self.certificate.not_valid_before_utc.isoformat(),
            "not_valid_after": self.certificate.not_valid_after_utc.isoformat(),
            "key_size": self.private_key.key_size,
            "source": self.source,
        }


def validate_certificate(bundle: CertificateBundle, now: Optional[datetime] = None) -> None:
    """
    Valida vigencia y tipo/tamaño de clave.

    Raises:
        SunatSignatureError: certificado vencido, aún no vigente, o clave no RSA >= 2048
    """
    now = now or datetime.now(timezone.utc)
    cert = bundle.certificate

    if cert.not_valid_after_utc < now:
        raise SunatSignatureError(f"Certificado expirado. Válido hasta: {cert.not_valid_after_utc}", "CERT_EXPIRED")
    if cert.not_valid_before_utc > now:
        raise SunatSignatureError(
            f"Certificado aún no válido. Válido desde: {cert.not_valid_before_utc}", "CERT_NOT_YET_VALID"
        )
    if not isinstance(bundle.private_key, rsa.RSAPrivateKey):
        raise SunatSignatureError("La clave privada debe ser RSA", "CERT_KEY_TYPE")
    if bundle.private_key.key_size < MIN_RSA_BITS:
        raise SunatSignatureError(
            f"La clave RSA debe ser de al menos {MIN_RSA_BITS} bits. Actual: {bundle.private_key.key_size} bits",
            "CERT_KEY_SIZE",
        )


def load_pfx(pfx_data: bytes, password: Optional[str], source: str = "DB", now: Optional[datetime] = None) -> CertificateBundle:
    """Carga un PKCS#12 en memoria y lo valida."""
    if not pfx_data:
        raise SunatSignatureError("Certificado no configurado", "CERT_MISSING")
    try:
        private_key, certificate, additional = pkcs12.load_key_and_certificates(
            pfx_data,
            password.encode("utf-8") if password else None,
        )
    except ValueError as e:
        raise SunatSignatureError(f"Error al cargar certificado PKCS#12 (contraseña o formato): {e}", "CERT_INVALID") from e

    if private_key is None:
        raise SunatSignatureError("No se pudo extraer la clave privada del certificado", "CERT_INVALID")
    if certificate is None:
        raise SunatSignatureError("No se pudo extraer el certificado del archivo", "CERT_INVALID")

    bundle = CertificateBundle(
        private_key=private_key,
        certificate=certificate,
        additional_certificates=list(additional or []),
        source=source,
    )
    validate_certificate(bundle, now=now)
    logger.info(
        "Certificado válido. Emisor: %s, válido hasta: %s",
        certificate.issuer.rfc4514_string(),
        certificate.not_valid_after_utc,
    )
    return bundle


def load_pfx_base64(pfx_base64: str, password: Optional[str], source: str = "DB", now: Optional[datetime] = None) -> CertificateBundle:
    try:
        data = base64.b64decode((pfx_base64 or "").strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise SunatSignatureError(f"Certificado PFX no es base64 válido: {e}", "CERT_INVALID") from e
    return load_pfx(data, password, source=source, now=now)


def load_pfx_file(path: str, password: Optional[str], now: Optional[datetime] = None) -> CertificateBundle:
    cert_file = Path(path)
    if not cert_file.exists():
        raise SunatSignatureError(f"Certificado no encontrado: {path}", "CERT_MISSING")
    return load_pfx(cert_file.read_bytes(), password, source="FILE", now=now)


def resolve_certificate(settings: Optional[SunatSettings], now: Optional[datetime] = None) -> CertificateBundle:
    """
    Certificado de firma para una tienda. Prioridad: SUNAT_CERT_PFX/SUNAT_CERT_PASSWORD > SunatSettings.
    """
    from_env = get_cert_pfx_from_env()
    if from_env:
        pfx_b64, password = from_env
        return load_pfx_base64(pfx_b64, password, source="ENV", now=now)

    if settings is None or not settings.cert_pfx_base64:
        raise SunatSignatureError(
            "Certificado no configurado. Configure SUNAT_CERT_PFX y SUNAT_CERT_PASSWORD o el PFX de la tienda",
            "CERT_MISSING",
        )
    return load_pfx_base64(settings.cert_pfx_base64, settings.cert_password, source="DB", now=now)
