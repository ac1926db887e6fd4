"""
Máquina de estados del comprobante electrónico.

Funciones puras: reciben el documento y un evento (firma o resultado de SUNAT) y devuelven
el nuevo estado + los campos a actualizar. No tocan la base ni la red.

    DRAFT  --Signed-->            SIGNED
    SIGNED --Accepted-->          ACCEPTED
    SIGNED --Pending(ticket)-->   SENT
    SIGNED --Rejected-->          ERROR
    SENT   --Accepted-->          ACCEPTED
    SENT   --Rejected-->          ERROR
    SENT   --Pending-->           SENT (sin cambios, ticket aún en proceso)
    *      --reset-->             DRAFT (limpia campos derivados)
"""
from dataclasses import dataclass, field
from typing import Any, Dict

from app.sunat_client.exceptions import InvalidTransition
from app.sunat_client.models import (
    RESETTABLE_FIELDS,
    Accepted,
    DocumentState,
    ElectronicDocument,
    Pending,
    Rejected,
    Signed,
)


@dataclass(frozen=True)
class Transition:
    state: str
    updates: Dict[str, Any] = field(default_factory=dict)

    def apply(self, document: ElectronicDocument) -> ElectronicDocument:
        return document.with_updates(state=self.state, **self.updates)


def _event_name(event) -> str:
    return type(event).__name__


def transition(document: ElectronicDocument, event) -> Transition:
    """
    Raises:
        InvalidTransition: evento no permitido en el estado actual (incluye estados terminales)
    """
    state = document.state

    if isinstance(event, Signed):
        if state != DocumentState.DRAFT:
            raise InvalidTransition(state, _event_name(event))
        return Transition(DocumentState.SIGNED, {"xml_signed": event.xml_signed, "hash": event.hash})

    if state not in (DocumentState.SIGNED, DocumentState.SENT):
        raise InvalidTransition(state, _event_name(event))

    if isinstance(event, Accepted):
        updates = {"sunat_code": event.code, "sunat_message": event.message}
        if event.cdr_zip is not None:
            updates["cdr_zip"] = event.cdr_zip
        return Transition(DocumentState.ACCEPTED, updates)

    if isinstance(event, Rejected):
        updates = {"sunat_code": event.code, "sunat_message": event.message}
        if event.cdr_zip is not None:
            updates["cdr_zip"] = event.cdr_zip
        return Transition(DocumentState.ERROR, updates)

    if isinstance(event, Pending):
        if state == DocumentState.SENT:
            return Transition(DocumentState.SENT, {})
        return Transition(DocumentState.SENT, {"sunat_ticket": event.ticket})

    raise InvalidTransition(state, _event_name(event))


def reset(document: ElectronicDocument) -> Transition:
    """Reset administrativo: cualquier estado -> DRAFT, limpiando firma y respuesta de SUNAT."""
    return Transition(DocumentState.DRAFT, {name: None for name in RESETTABLE_FIELDS})
