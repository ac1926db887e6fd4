"""
Módulo para firma digital XML de comprobantes SUNAT (UBL 2.1)

Requisitos:
- XML Digital Signature Enveloped, ubicada en ext:UBLExtensions/ext:ExtensionContent
- Certificado X.509 v3 embebido (X509Data)
- Algoritmo RSA >= 2048 bits, SHA-256, C14N exclusiva
- Resultado determinístico: mismo borrador + mismo certificado => mismo XML y mismo hash
"""
import logging
from typing import Any, Dict, Optional, Tuple

from lxml import etree
from signxml import XMLSigner, XMLVerifier, methods
from signxml.exceptions import InvalidInput, InvalidSignature

from .cert import CertificateBundle, validate_certificate
from .exceptions import SunatSignatureError
from .ubl import NS_DS, build_ubl_xml
from .validation import validate_draft

logger = logging.getLogger(__name__)

EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"


class XmlSigner:
    """
    Firma comprobantes según los requisitos de SUNAT:
    - Enveloped, RSA-SHA256, digest SHA-256
    - Firma dentro de ext:ExtensionContent
    """

    def __init__(self, certificate: CertificateBundle):
        if certificate is None:
            raise SunatSignatureError("Certificado no especificado", "CERT_MISSING")
        self.certificate = certificate

    def _signer(self) -> XMLSigner:
        return XMLSigner(
            method=methods.enveloped,
            signature_algorithm="rsa-sha256",
            digest_algorithm="sha256",
            c14n_algorithm=EXC_C14N,
        )

    def sign_tree(self, root: etree._Element) -> etree._Element:
        """Firma un árbol UBL que ya contiene el placeholder ds:Signature."""
        validate_certificate(self.certificate)
        try:
            return self._signer().sign(
                root,
                key=self.certificate.private_key,
                cert=self.certificate.cert_pem().decode("ascii"),
            )
        except (InvalidInput, ValueError, TypeError) as e:
            raise SunatSignatureError(f"Error al firmar XML: {e}", "SIGN_FAILED") from e

    def sign_draft(self, draft: Dict[str, Any]) -> Tuple[str, str]:
        """
        Valida el borrador, genera el UBL y lo firma.

        Returns:
            (xml_firmado, hash) donde hash es el DigestValue en base64

        Raises:
            SunatValidationError: borrador inválido
            SunatSignatureError: certificado inválido o error de firma
        """
        validate_draft(draft)
        signed_root = self.sign_tree(build_ubl_xml(draft))

        digest = signed_root.find(f".//{{{NS_DS}}}DigestValue")
        if digest is None or not (digest.text or "").strip():
            raise SunatSignatureError("La firma no contiene DigestValue", "SIGN_FAILED")

        signed_xml = etree.tostring(
            signed_root,
            encoding="UTF-8",
            xml_declaration=True,
            pretty_print=False,
        ).decode("utf-8")

        logger.info("XML firmado: %s-%s", draft.get("series"), draft.get("number"))
        return signed_xml, digest.text.strip()

    def verify(self, signed_xml: str) -> bool:
        """
        Verifica la firma contra el certificado de este firmador.

        Returns:
            True si la firma es válida, False en caso contrario
        """
        try:
            root = etree.fromstring(signed_xml.encode("utf-8"))
            XMLVerifier().verify(root, x509_cert=self.certificate.cert_pem().decode("ascii"))
            return True
        except (InvalidSignature, InvalidInput, etree.XMLSyntaxError) as e:
            logger.error("Error al verificar firma: %s", e)
            return False


def sign(draft: Dict[str, Any], certificate: Optional[CertificateBundle]) -> Tuple[str, str]:
    """sign(draft, certificate) -> (xml_firmado, hash)"""
    return XmlSigner(certificate).sign_draft(draft)
