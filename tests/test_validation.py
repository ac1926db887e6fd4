from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.sunat_client.exceptions import SunatValidationError
from app.sunat_client.validation import check_draft, is_valid_ruc, validate_doc_number, validate_draft

from _sunat_fixtures import sample_draft, sample_summary_draft, sample_voided_draft


@pytest.mark.parametrize(
    "ruc,expected",
    [
        ("20131312955", True),
        ("20100070970", True),
        ("20131312956", False),
        ("30131312955", False),
        ("2013131295", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_ruc(ruc, expected):
    assert is_valid_ruc(ruc) is expected


def test_sample_factura_is_valid():
    result = check_draft(sample_draft("FACTURA"))
    assert result.valid is True
    assert result.errors == []


def test_factura_requires_ruc_customer():
    draft = sample_draft("FACTURA")
    draft["customer"] = {"doc_type": "DNI", "doc_number": "45678912", "name": "JUAN PEREZ"}

    result = check_draft(draft)

    assert result.valid is False
    assert any("FACTURA requiere RUC" in e for e in result.errors)


def test_boleta_over_threshold_requires_identity_document():
    draft = sample_draft("BOLETA", series="B001")
    draft["customer"] = {"doc_type": "SIN_DOCUMENTO", "doc_number": "-", "name": "CLIENTES VARIOS"}
    draft["totals"] = {"taxable": "800.00", "igv": "144.00", "total": "944.00"}

    result = check_draft(draft)

    assert result.valid is False
    assert any("700" in e for e in result.errors)


def test_boleta_under_threshold_without_document_is_valid():
    draft = sample_draft("BOLETA", series="B001")
    draft["customer"] = {"doc_type": "SIN_DOCUMENTO", "doc_number": "-", "name": "CLIENTES VARIOS"}
    assert check_draft(draft).valid is True


def test_totals_mismatch_is_error_and_igv_mismatch_is_warning():
    draft = sample_draft("FACTURA")
    draft["totals"] = {"taxable": "100.00", "igv": "10.00", "total": "110.00"}
    result = check_draft(draft)
    assert result.valid is True
    assert any("IGV" in w for w in result.warnings)

    draft["totals"]["total"] = "150.00"
    result = check_draft(draft)
    assert result.valid is False
    assert any("no coincide con gravable" in e for e in result.errors)


def test_credit_note_requires_reference_and_reason():
    draft = sample_draft("NOTA_CREDITO", series="FC01")
    draft["reference"] = {"doc_type": "FACTURA", "full_number": "", "reason": ""}

    result = check_draft(draft)

    assert result.valid is False
    assert any("referencia" in e for e in result.errors)
    assert any("motivo" in e for e in result.errors)


def test_unknown_doc_type_stops_early():
    draft = sample_draft("FACTURA")
    draft["doc_type"] = "RECIBO"
    result = check_draft(draft)
    assert result.valid is False
    assert len(result.errors) == 1


def test_validate_draft_raises_with_error_list():
    draft = sample_draft("FACTURA")
    draft["items"] = []
    draft["issuer"]["ruc"] = "123"

    with pytest.raises(SunatValidationError) as excinfo:
        validate_draft(draft)

    assert excinfo.value.code == "VALIDATION_ERROR"
    assert len(excinfo.value.errors) >= 2


def test_invalid_amount_raises_validation_error():
    draft = sample_draft("FACTURA")
    draft["totals"]["igv"] = "dieciocho"
    with pytest.raises(SunatValidationError, match="Monto inválido"):
        check_draft(draft)


def test_validate_doc_number_by_kind():
    assert validate_doc_number("DNI", "1234567").valid is False
    assert validate_doc_number("CE", "ABC123").valid is True
    assert validate_doc_number("PASAPORTE", "X" * 21).valid is False
    assert validate_doc_number("SIN_DOCUMENTO", "12").warnings


def test_sample_summary_and_voided_are_valid():
    assert check_draft(sample_summary_draft()).valid
    assert check_draft(sample_voided_draft()).valid


def test_summary_requires_dates_and_known_line_types():
    draft = sample_summary_draft()
    del draft["reference_date"]
    draft["lines"][0]["doc_type"] = "FACTURA"
    draft["lines"][1]["status"] = "9"

    errors = " | ".join(check_draft(draft).errors)
    assert "reference_date" in errors
    assert "Línea 1: tipo de documento inválido" in errors
    assert "Línea 2: estado inválido" in errors


def test_summary_line_totals_are_checked():
    draft = sample_summary_draft()
    draft["lines"][0]["totals"]["total"] = "200.00"

    assert not check_draft(draft).valid


def test_deferred_line_limit():
    draft = sample_voided_draft()
    draft["lines"] = draft["lines"] * 501

    assert any("Máximo 500" in e for e in check_draft(draft).errors)
    draft["lines"] = []
    assert any("al menos un documento" in e for e in check_draft(draft).errors)


def test_voided_line_requires_reason():
    draft = sample_voided_draft()
    draft["lines"][0]["reason"] = " x "

    with pytest.raises(SunatValidationError) as exc_info:
        validate_draft(draft)
    assert any("motivo de baja" in e for e in exc_info.value.errors)
