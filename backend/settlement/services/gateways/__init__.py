# Overview: Gateway adapter registry keyed by provider name.

from __future__ import annotations

from ...validation import NotFoundError
from .base import (  # noqa: F401
    Bill,
    BillCreationError,
    GatewayAdapter,
    GatewayPayloadError,
    GatewaySignatureError,
    OUTCOME_FAILED,
    OUTCOME_PAID,
    PaymentEvent,
)
from .billplz import BillplzAdapter
from .chip import ChipAdapter
from .sandbox import SandboxAdapter


# Payment method with no hosted bill: the buyer pays by uploading a receipt
MANUAL_RECEIPT = "manual_receipt"

_ADAPTERS: dict[str, GatewayAdapter] = {
    adapter.name: adapter for adapter in (BillplzAdapter(), ChipAdapter(), SandboxAdapter())
}


class UnknownGateway(NotFoundError):
    pass


def get_adapter(name: str) -> GatewayAdapter:
    adapter = _ADAPTERS.get((name or "").strip().lower())
    if adapter is None:
        raise UnknownGateway(f"Unknown payment gateway '{name}'")
    return adapter


def payment_methods() -> list[str]:
    return sorted(_ADAPTERS) + [MANUAL_RECEIPT]
