"""Payment gateway capability and the in-process sandbox implementation."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

from gametrust.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldResult:
    external_ref: str | None
    ok: bool


class PaymentGateway(Protocol):
    """What the escrow ledger needs from a payment rail.

    Implementations raise ``PaymentProviderError`` (``transient=True`` for
    timeouts/rate limits) and must honour ``idempotency_key`` so a retried call
    never moves funds twice.
    """

    name: str

    def hold(self, buyer_id: str, amount: int, *, idempotency_key: str) -> HoldResult: ...

    def release(self, external_ref: str, amount: int, *, payee_id: str, idempotency_key: str) -> bool: ...

    def refund(self, external_ref: str, amount: int, *, idempotency_key: str) -> bool: ...


@dataclass
class SandboxGateway:
    """Instant, in-memory gateway used in development and tests."""

    name: str = "sandbox"
    decline_buyers: set[str] = field(default_factory=set)
    calls: list[tuple[str, str, int]] = field(default_factory=list)
    _results: dict[str, object] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def hold(self, buyer_id: str, amount: int, *, idempotency_key: str) -> HoldResult:
        with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]  # type: ignore[return-value]
            self.calls.append(("hold", idempotency_key, amount))
            if buyer_id in self.decline_buyers:
                result = HoldResult(external_ref=None, ok=False)
            else:
                result = HoldResult(external_ref=f"sbx_hold_{uuid4().hex[:16]}", ok=True)
            self._results[idempotency_key] = result
            return result

    def release(self, external_ref: str, amount: int, *, payee_id: str, idempotency_key: str) -> bool:
        return self._move("release", idempotency_key, amount)

    def refund(self, external_ref: str, amount: int, *, idempotency_key: str) -> bool:
        return self._move("refund", idempotency_key, amount)

    def _move(self, operation: str, idempotency_key: str, amount: int) -> bool:
        with self._lock:
            if idempotency_key not in self._results:
                self.calls.append((operation, idempotency_key, amount))
                self._results[idempotency_key] = True
            return bool(self._results[idempotency_key])


_gateway: PaymentGateway | None = None


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """Instantiate the gateway selected by ``PAYMENT_PROVIDER``."""

    if settings.PAYMENT_PROVIDER == "stripe":
        from gametrust.services.psp_stripe import StripeGateway

        return StripeGateway(settings)
    if settings.app_env.lower() not in {"dev", "local", "test"}:
        logger.warning("Sandbox payment gateway active outside dev", extra={"env": settings.app_env})
    return SandboxGateway()


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_payment_gateway(get_settings())
    return _gateway


def set_payment_gateway(gateway: PaymentGateway | None) -> None:
    global _gateway
    _gateway = gateway


__all__ = [
    "HoldResult",
    "PaymentGateway",
    "SandboxGateway",
    "build_payment_gateway",
    "get_payment_gateway",
    "set_payment_gateway",
]
