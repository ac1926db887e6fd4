"""
Empaquetado ZIP de comprobantes para SUNAT y extracción del CDR.

SUNAT exige un ZIP con un único XML llamado {RUC}-{TIPO}-{SERIE}-{NUMERO}.xml;
el fileName del request es el mismo nombre con extensión .zip.
"""
import base64
import zipfile
from io import BytesIO
from typing import Optional, Tuple

from .exceptions import SunatResponseError
from .models import DocType, format_full_number


def build_cpe_filename(ruc: str, doc_type: str, series: str, number: int, issue_date: Optional[str] = None) -> str:
    """
    Ejemplos:
        ('20131312955', 'FACTURA', 'F001', 123) -> '20131312955-01-F001-00000123.xml'
        ('20131312955', 'SUMMARY', 'RC', 1, '2026-03-16') -> '20131312955-RC-20260316-00001.xml'
    """
    if doc_type in DocType.DEFERRED:
        return f"{ruc}-{format_full_number(doc_type, series, number, issue_date)}.xml"
    return f"{ruc}-{DocType.sunat_code(doc_type)}-{series}-{int(number):08d}.xml"


def zip_filename(xml_filename: str) -> str:
    if xml_filename.lower().endswith(".xml"):
        return xml_filename[:-4] + ".zip"
    if xml_filename.lower().endswith(".zip"):
        return xml_filename
    return xml_filename + ".zip"


def build_zip(xml_filename: str, xml_content: str) -> bytes:
    # ZipInfo con fecha fija: el mismo XML produce siempre los mismos bytes
    info = zipfile.ZipInfo(xml_filename, date_time=(1980, 1, 1, 0, 0, 0))
    info.compress_type = zipfile.ZIP_DEFLATED
    mem = BytesIO()
    with zipfile.ZipFile(mem, mode="w") as zf:
        zf.writestr(info, xml_content.encode("utf-8"))
    return mem.getvalue()


def build_zip_base64(xml_filename: str, xml_content: str) -> Tuple[str, str]:
    """Returns: (nombre .zip, contenido base64)"""
    data = build_zip(xml_filename, xml_content)
    return zip_filename(xml_filename), base64.b64encode(data).decode("ascii")


def extract_xml_from_zip(zip_bytes: bytes, filename: Optional[str] = None) -> bytes:
    """
    Extrae un XML del ZIP (por nombre, o el primer .xml que no sea carpeta).

    Raises:
        SunatResponseError: ZIP dañado o sin XML
    """
    try:
        with zipfile.ZipFile(BytesIO(zip_bytes)) as zf:
            names = [n for n in zf.namelist() if not n.endswith("/")]
            if filename:
                if filename not in names:
                    raise SunatResponseError(f"El ZIP no contiene {filename}", "ZIP_ENTRY_MISSING")
                return zf.read(filename)
            xml_names = [n for n in names if n.lower().endswith(".xml")] or names
            if not xml_names:
                raise SunatResponseError("El ZIP está vacío", "ZIP_EMPTY")
            return zf.read(xml_names[0])
    except zipfile.BadZipFile as e:
        raise SunatResponseError(f"ZIP dañado: {e}", "ZIP_INVALID") from e
