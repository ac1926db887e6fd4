"""
Módulo cliente para integración con SUNAT (Perú): firma UBL 2.1, envío SOAP y CDR
"""
from .config import SunatConfig, WorkerSettings, get_sunat_config
from .soap_client import SunatClient, classify_fault
from .xml_signer import XmlSigner, sign
from .cert import CertificateBundle, load_pfx, load_pfx_base64, resolve_certificate
from .cdr import CdrData, describe_code, parse_cdr
from .models import (
    Accepted,
    DocType,
    DocumentState,
    ElectronicDocument,
    JobAction,
    JobStatus,
    Pending,
    ReceiptReference,
    Rejected,
    SolCredentials,
    SunatJob,
    SunatSettings,
)
from .exceptions import (
    InvalidTransition,
    SunatClientError,
    SunatConfigError,
    SunatException,
    SunatResponseError,
    SunatSignatureError,
    SunatStateError,
    SunatTransientError,
    SunatValidationError,
)

__all__ = [
    'SunatConfig',
    'WorkerSettings',
    'get_sunat_config',
    'SunatClient',
    'classify_fault',
    'XmlSigner',
    'sign',
    'CertificateBundle',
    'load_pfx',
    'load_pfx_base64',
    'resolve_certificate',
    'CdrData',
    'describe_code',
    'parse_cdr',
    'Accepted',
    'DocType',
    'DocumentState',
    'ElectronicDocument',
    'JobAction',
    'JobStatus',
    'Pending',
    'ReceiptReference',
    'Rejected',
    'SolCredentials',
    'SunatJob',
    'SunatSettings',
    'InvalidTransition',
    'SunatClientError',
    'SunatConfigError',
    'SunatException',
    'SunatResponseError',
    'SunatSignatureError',
    'SunatStateError',
    'SunatTransientError',
    'SunatValidationError',
]
