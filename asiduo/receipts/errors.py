"""Error taxonomy for receipt processing."""

from __future__ import annotations

_FIELD_LABELS = {
    "tax_id": "RUC",
    "amount": "monto total",
    "invoice_number": "número de comprobante",
    "text": "texto legible",
}


class ReceiptError(Exception):
    """Base class for errors that end a work item with a user-facing reply.

    Subclasses are terminal: retrying the same image cannot succeed.
    """

    user_message = (
        "Lo sentimos, hubo un problema al procesar tu comprobante. "
        "Por favor, intenta nuevamente con una imagen más clara."
    )


class InsufficientReceiptData(ReceiptError):
    """Required fields were not found after every extraction rule ran."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Información insuficiente en el comprobante: {', '.join(self.missing)}")

    @property
    def user_message(self) -> str:  # type: ignore[override]
        labels = ", ".join(_FIELD_LABELS.get(m, m) for m in self.missing)
        return (
            f"No pudimos leer {labels} en tu comprobante. "
            "Envía una foto nítida donde se vea el comprobante completo."
        )


class UnknownMerchant(ReceiptError):
    """The RUC was read correctly but belongs to no onboarded merchant."""

    def __init__(self, tax_id: str) -> None:
        self.tax_id = tax_id
        super().__init__(f"Negocio no registrado con RUC: {tax_id}")

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return (
            f"El negocio con RUC {self.tax_id} aún no participa en el programa "
            "de fidelidad."
        )


class DuplicateReceipt(ReceiptError):
    """The receipt was already credited. Not an operational error."""

    def __init__(self, purchase_id: str | None = None) -> None:
        self.purchase_id = purchase_id
        super().__init__(
            f"Este comprobante ya ha sido registrado anteriormente ({purchase_id})"
        )

    user_message = "Este comprobante ya ha sido registrado anteriormente."


class InvariantViolation(ReceiptError):
    """Data or programming invariant broken; fatal for the work item only."""

    user_message = (
        "Tuvimos un problema interno con tu comprobante. "
        "Nuestro equipo lo revisará; no es necesario que lo vuelvas a enviar."
    )


class CollaboratorError(Exception):
    """A transient failure in OCR, messaging or storage collaborators."""
