"""
Generador de XML UBL 2.1 para comprobantes SUNAT (Factura, Boleta, Nota de Crédito, Nota de Débito)
y para los envíos diferidos (Resumen Diario SummaryDocuments, Comunicación de Baja VoidedDocuments)

El XML resultante no está firmado: incluye un <ds:Signature Id="placeholder"/> dentro de
ext:UBLExtensions/ext:ExtensionContent, que es donde el firmador coloca la firma.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from lxml import etree

from .models import DocType, format_full_number
from .validation import CUSTOMER_DOC_CODES, IGV_RATE, SUMMARY_ADD, to_decimal

NS_INVOICE = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
NS_CREDIT_NOTE = "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2"
NS_DEBIT_NOTE = "urn:oasis:names:specification:ubl:schema:xsd:DebitNote-2"
NS_CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
NS_CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
NS_EXT = "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2"
NS_DS = "http://www.w3.org/2000/09/xmldsig#"
NS_SUMMARY = "urn:sunat:names:specification:ubl:peru:schema:xsd:SummaryDocuments-1"
NS_VOIDED = "urn:sunat:names:specification:ubl:peru:schema:xsd:VoidedDocuments-1"
NS_SAC = "urn:sunat:names:specification:ubl:peru:schema:xsd:SunatAggregateComponents-1"

CATALOG_URI = "urn:pe:gob:sunat:cpe:see:gem:catalogos:catalogo{:02d}"

UNIT_CODES = {
    "UNIT": "NIU",
    "KG": "KGM",
    "LITER": "LTR",
    "METER": "MTR",
    "SERVICE": "ZZ",
}

# Catálogo 09 / 10: motivo por defecto de la nota
DEFAULT_NOTE_REASON_CODE = {
    DocType.NOTA_CREDITO: "01",  # Anulación de la operación
    DocType.NOTA_DEBITO: "02",  # Aumento en el valor
}

_ROOTS = {
    DocType.FACTURA: ("Invoice", NS_INVOICE, "InvoiceLine", "InvoicedQuantity"),
    DocType.BOLETA: ("Invoice", NS_INVOICE, "InvoiceLine", "InvoicedQuantity"),
    DocType.NOTA_CREDITO: ("CreditNote", NS_CREDIT_NOTE, "CreditNoteLine", "CreditedQuantity"),
    DocType.NOTA_DEBITO: ("DebitNote", NS_DEBIT_NOTE, "DebitNoteLine", "DebitedQuantity"),
}

_CENT = Decimal("0.01")


def format_amount(value: Any) -> str:
    return str(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_quantity(value: Any) -> str:
    text = format(Decimal(str(value)).quantize(Decimal("0.0000000001")), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def _cbc(parent, name: str, text=None, **attrs):
    el = etree.SubElement(parent, etree.QName(NS_CBC, name))
    for key, value in attrs.items():
        el.set(key, value)
    if text is not None:
        el.text = str(text)
    return el


def _cac(parent, name: str):
    return etree.SubElement(parent, etree.QName(NS_CAC, name))


def _tax_scheme(parent) -> None:
    scheme = _cac(parent, "TaxScheme")
    _cbc(scheme, "ID", "1000", schemeID="UN/ECE 5153", schemeAgencyID="6")
    _cbc(scheme, "Name", "IGV")
    _cbc(scheme, "TaxTypeCode", "VAT")


def _party(parent, wrapper: str, scheme_id: str, doc_number: str, name: str, address=None, ubigeo=None) -> None:
    party = _cac(_cac(parent, wrapper), "Party")
    ident = _cac(party, "PartyIdentification")
    _cbc(
        ident,
        "ID",
        doc_number,
        schemeID=scheme_id,
        schemeName="Documento de Identidad",
        schemeAgencyName="PE:SUNAT",
        schemeURI=CATALOG_URI.format(6),
    )
    _cbc(_cac(party, "PartyName"), "Name", name)
    legal = _cac(party, "PartyLegalEntity")
    _cbc(legal, "RegistrationName", name)
    if address:
        postal = _cac(legal, "RegistrationAddress")
        if ubigeo:
            _cbc(postal, "ID", ubigeo)
        _cbc(_cac(postal, "AddressLine"), "Line", address)
        _cbc(_cac(postal, "Country"), "IdentificationCode", "PE")


def _new_root(root_ns: str, root_name: str, sunat_aggregates: bool = False) -> etree._Element:
    """Raíz con ext:UBLExtensions y el ds:Signature placeholder que reemplaza el firmador."""
    nsmap = {None: root_ns, "cac": NS_CAC, "cbc": NS_CBC, "ext": NS_EXT, "ds": NS_DS}
    if sunat_aggregates:
        nsmap["sac"] = NS_SAC
    root = etree.Element(etree.QName(root_ns, root_name), nsmap=nsmap)

    extensions = etree.SubElement(root, etree.QName(NS_EXT, "UBLExtensions"))
    extension = etree.SubElement(extensions, etree.QName(NS_EXT, "UBLExtension"))
    content = etree.SubElement(extension, etree.QName(NS_EXT, "ExtensionContent"))
    placeholder = etree.SubElement(content, etree.QName(NS_DS, "Signature"))
    placeholder.set("Id", "placeholder")
    return root


def _signature(root, issuer: Dict[str, Any]) -> None:
    signature_id = f"SIGN-{issuer['ruc']}"
    signature = _cac(root, "Signature")
    _cbc(signature, "ID", signature_id)
    signatory = _cac(signature, "SignatoryParty")
    _cbc(_cac(signatory, "PartyIdentification"), "ID", issuer["ruc"])
    _cbc(_cac(signatory, "PartyName"), "Name", issuer["razon_social"])
    _cbc(_cac(_cac(signature, "DigitalSignatureAttachment"), "ExternalReference"), "URI", f"#{signature_id}")


def _sac(parent, name: str, text=None, **attrs):
    el = etree.SubElement(parent, etree.QName(NS_SAC, name))
    for key, value in attrs.items():
        el.set(key, value)
    if text is not None:
        el.text = str(text)
    return el


def build_ubl_xml(draft: Dict[str, Any]) -> etree._Element:
    """
    Construye el árbol UBL 2.1 a partir del borrador validado.

    Args:
        draft: payload con doc_type, series, number, issue_date, issue_time, issuer,
               customer, items, totals y (para notas) reference

    Returns:
        Elemento raíz lxml (sin firma)
    """
    doc_type = draft["doc_type"]
    if doc_type == DocType.SUMMARY:
        return build_summary_xml(draft)
    if doc_type == DocType.VOIDED:
        return build_voided_xml(draft)
    root_name, root_ns, line_name, qty_name = _ROOTS[doc_type]
    currency = draft.get("currency") or "PEN"
    issuer = draft["issuer"]
    customer = draft["customer"]
    totals = draft["totals"]
    doc_id = f"{draft['series']}-{int(draft['number']):08d}"

    root = _new_root(root_ns, root_name)

    _cbc(root, "UBLVersionID", "2.1")
    _cbc(root, "CustomizationID", "2.0")
    _cbc(root, "ID", doc_id)
    _cbc(root, "IssueDate", draft["issue_date"])
    _cbc(root, "IssueTime", draft.get("issue_time") or "00:00:00")

    if root_name == "Invoice":
        _cbc(
            root,
            "InvoiceTypeCode",
            DocType.sunat_code(doc_type),
            listID=draft.get("operation_type") or "0101",
            listAgencyName="PE:SUNAT",
            listName="Tipo de Documento",
            listURI=CATALOG_URI.format(1),
        )
    _cbc(root, "DocumentCurrencyCode", currency)

    if root_name != "Invoice":
        reference = draft["reference"]
        discrepancy = _cac(root, "DiscrepancyResponse")
        _cbc(discrepancy, "ReferenceID", reference["full_number"])
        _cbc(discrepancy, "ResponseCode", reference.get("reason_code") or DEFAULT_NOTE_REASON_CODE[doc_type])
        _cbc(discrepancy, "Description", reference["reason"])
        billing = _cac(_cac(root, "BillingReference"), "InvoiceDocumentReference")
        _cbc(billing, "ID", reference["full_number"])
        _cbc(billing, "DocumentTypeCode", DocType.sunat_code(reference["doc_type"]))

    _signature(root, issuer)

    _party(
        root,
        "AccountingSupplierParty",
        "6",
        issuer["ruc"],
        issuer["razon_social"],
        address=issuer.get("address"),
        ubigeo=issuer.get("ubigeo") or "150101",
    )
    customer_code = CUSTOMER_DOC_CODES.get((customer.get("doc_type") or "").upper(), "1")
    _party(
        root,
        "AccountingCustomerParty",
        customer_code,
        customer.get("doc_number") or "-",
        customer["name"],
        address=customer.get("address"),
    )

    taxable = to_decimal(totals["taxable"], "totals.taxable")
    igv = to_decimal(totals["igv"], "totals.igv")
    total = to_decimal(totals["total"], "totals.total")

    tax_total = _cac(root, "TaxTotal")
    _cbc(tax_total, "TaxAmount", format_amount(igv), currencyID=currency)
    subtotal = _cac(tax_total, "TaxSubtotal")
    _cbc(subtotal, "TaxableAmount", format_amount(taxable), currencyID=currency)
    _cbc(subtotal, "TaxAmount", format_amount(igv), currencyID=currency)
    _tax_scheme(_cac(subtotal, "TaxCategory"))

    monetary = _cac(root, "RequestedMonetaryTotal" if root_name == "DebitNote" else "LegalMonetaryTotal")
    _cbc(monetary, "LineExtensionAmount", format_amount(taxable), currencyID=currency)
    _cbc(monetary, "TaxInclusiveAmount", format_amount(total), currencyID=currency)
    _cbc(monetary, "PayableAmount", format_amount(total), currencyID=currency)

    for idx, item in enumerate(draft["items"], start=1):
        unit_price = to_decimal(item["unit_price"], f"items[{idx}].unit_price")
        quantity = to_decimal(item["quantity"], f"items[{idx}].quantity")
        line_subtotal = item.get("line_subtotal")
        line_subtotal = (
            to_decimal(line_subtotal, f"items[{idx}].line_subtotal") if line_subtotal is not None else unit_price * quantity
        )
        line_igv = line_subtotal * IGV_RATE

        line = _cac(root, line_name)
        _cbc(line, "ID", item.get("line_number") or idx)
        _cbc(
            line,
            qty_name,
            format_quantity(quantity),
            unitCode=UNIT_CODES.get((item.get("unit_type") or "UNIT").upper(), "NIU"),
        )
        _cbc(line, "LineExtensionAmount", format_amount(line_subtotal), currencyID=currency)

        alt_price = _cac(_cac(line, "PricingReference"), "AlternativeConditionPrice")
        _cbc(alt_price, "PriceAmount", format_amount(unit_price * (1 + IGV_RATE)), currencyID=currency)
        _cbc(
            alt_price,
            "PriceTypeCode",
            "01",
            listName="Tipo de Precio",
            listAgencyName="PE:SUNAT",
            listURI=CATALOG_URI.format(16),
        )

        line_tax = _cac(line, "TaxTotal")
        _cbc(line_tax, "TaxAmount", format_amount(line_igv), currencyID=currency)
        line_sub = _cac(line_tax, "TaxSubtotal")
        _cbc(line_sub, "TaxableAmount", format_amount(line_subtotal), currencyID=currency)
        _cbc(line_sub, "TaxAmount", format_amount(line_igv), currencyID=currency)
        category = _cac(line_sub, "TaxCategory")
        _cbc(category, "Percent", "18")
        _cbc(category, "TaxExemptionReasonCode", "10")  # Gravado - Operación Onerosa
        _tax_scheme(category)

        _cbc(_cac(line, "Item"), "Description", item["description"])
        _cbc(_cac(line, "Price"), "PriceAmount", format_amount(unit_price), currencyID=currency)

    return root


def _deferred_root(draft: Dict[str, Any], root_ns: str, root_name: str, customization: str) -> etree._Element:
    issuer = draft["issuer"]
    root = _new_root(root_ns, root_name, sunat_aggregates=True)
    _cbc(root, "UBLVersionID", "2.0")
    _cbc(root, "CustomizationID", customization)
    _cbc(root, "ID", format_full_number(draft["doc_type"], draft["series"], draft["number"], draft["issue_date"]))
    _cbc(root, "ReferenceDate", draft["reference_date"])
    _cbc(root, "IssueDate", draft["issue_date"])
    _signature(root, issuer)

    supplier = _cac(root, "AccountingSupplierParty")
    _cbc(supplier, "CustomerAssignedAccountID", issuer["ruc"])
    _cbc(supplier, "AdditionalAccountID", "6")
    _cbc(_cac(_cac(supplier, "Party"), "PartyLegalEntity"), "RegistrationName", issuer["razon_social"])
    return root


def build_summary_xml(draft: Dict[str, Any]) -> etree._Element:
    """
    SummaryDocuments (Resumen Diario) con una sac:SummaryDocumentsLine por boleta o nota asociada.

    Cada línea: doc_type, series, number, customer {doc_type, doc_number}, totals
    {taxable, igv, total}, currency, status (1/2/3) y, para notas, reference {doc_type, full_number}.
    """
    root = _deferred_root(draft, NS_SUMMARY, "SummaryDocuments", "1.1")

    for idx, line in enumerate(draft["lines"], start=1):
        currency = line.get("currency") or "PEN"
        customer = line.get("customer") or {}
        totals = line["totals"]
        taxable = to_decimal(totals["taxable"], f"lines[{idx}].totals.taxable")
        igv = to_decimal(totals["igv"], f"lines[{idx}].totals.igv")

        row = _sac(root, "SummaryDocumentsLine")
        _cbc(row, "LineID", idx)
        _cbc(row, "DocumentTypeCode", DocType.sunat_code(line["doc_type"]))
        _cbc(row, "ID", f"{line['series']}-{int(line['number']):08d}")

        party = _cac(row, "AccountingCustomerParty")
        _cbc(party, "CustomerAssignedAccountID", customer.get("doc_number") or "-")
        _cbc(party, "AdditionalAccountID", CUSTOMER_DOC_CODES.get((customer.get("doc_type") or "").upper(), "0"))

        reference = line.get("reference")
        if reference:
            billing = _cac(_cac(row, "BillingReference"), "InvoiceDocumentReference")
            _cbc(billing, "ID", reference["full_number"])
            _cbc(billing, "DocumentTypeCode", DocType.sunat_code(reference["doc_type"]))

        _cbc(_cac(row, "Status"), "ConditionCode", str(line.get("status") or SUMMARY_ADD))
        _sac(row, "TotalAmount", format_amount(totals["total"]), currencyID=currency)

        if taxable > 0:
            payment = _sac(row, "BillingPayment")
            _cbc(payment, "PaidAmount", format_amount(taxable), currencyID=currency)
            _cbc(payment, "InstructionID", "01")  # Gravado

        allowance = _cac(row, "AllowanceCharge")
        _cbc(allowance, "ChargeIndicator", "false")
        _cbc(allowance, "Amount", "0.00", currencyID=currency)

        tax_total = _cac(row, "TaxTotal")
        _cbc(tax_total, "TaxAmount", format_amount(igv), currencyID=currency)
        subtotal = _cac(tax_total, "TaxSubtotal")
        _cbc(subtotal, "TaxAmount", format_amount(igv), currencyID=currency)
        _tax_scheme(_cac(subtotal, "TaxCategory"))

    return root


def build_voided_xml(draft: Dict[str, Any]) -> etree._Element:
    """VoidedDocuments (Comunicación de Baja): doc_type, series, number y reason por línea."""
    root = _deferred_root(draft, NS_VOIDED, "VoidedDocuments", "1.0")

    for idx, line in enumerate(draft["lines"], start=1):
        row = _sac(root, "VoidedDocumentsLine")
        _cbc(row, "LineID", idx)
        _cbc(row, "DocumentTypeCode", DocType.sunat_code(line["doc_type"]))
        _sac(row, "DocumentSerialID", line["series"])
        _sac(row, "DocumentNumberID", f"{int(line['number']):08d}")
        _sac(row, "VoidReasonDescription", line["reason"])

    return root


def build_ubl_bytes(draft: Dict[str, Any]) -> bytes:
    return etree.tostring(build_ubl_xml(draft), xml_declaration=True, encoding="UTF-8", pretty_print=False)
